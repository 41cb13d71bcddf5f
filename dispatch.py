# dispatch.py
"""
Notification dispatcher.

Every push goes through NotificationDispatcher.dispatch(intent). For each target user it
claims an idempotency slot keyed by (environment, notification_key, event_id, user_id),
applies the user's notification preferences, then sends through OneSignal and records
the outcome against the claimed slot. A second dispatch with the same event_id for the
same user is reported as suppressed_duplicate and never reaches OneSignal.
"""
import asyncio
import heapq
import threading
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from utils import debug_print, now_utc, safe_print


ONESIGNAL_API_URL = "https://onesignal.com/api/v1/notifications"
ONESIGNAL_BATCH_SIZE = 2000
SEND_LOG_TABLE = "notification_send_log"
PREFERENCES_TABLE = "user_notification_preferences"

# Result values written to the send log
PENDING = "pending"
ACCEPTED = "accepted"
FAILED = "failed"
SUPPRESSED_DUPLICATE = "suppressed_duplicate"
SUPPRESSED_PREFERENCE = "suppressed_preference"


# --------------------------------------------------------
# ----------------------- Catalog ------------------------
# --------------------------------------------------------

CATALOG = {
    "goal-scored": {
        "preference_key": "score-updates",
        "preference_default": True,
        "dedupe_ttl_seconds": 120,
        "collapse_id_format": "goal:{api_match_id}",
        "thread_id_format": "match:{api_match_id}",
        "android_group": "totl_scores",
    },
    "goal-disallowed": {
        "preference_key": "score-updates",
        "preference_default": True,
        "dedupe_ttl_seconds": 120,
        "collapse_id_format": "goal_disallowed:{api_match_id}",
        "thread_id_format": "match:{api_match_id}",
        "android_group": "totl_scores",
    },
    "kickoff": {
        "preference_key": "score-updates",
        "preference_default": True,
        "dedupe_ttl_seconds": 300,
        "collapse_id_format": "kickoff:{api_match_id}:{half}",
        "thread_id_format": "match:{api_match_id}",
        "android_group": "totl_scores",
    },
    "half-time": {
        "preference_key": None,
        "preference_default": True,
        "dedupe_ttl_seconds": 600,
        "collapse_id_format": "halftime:{api_match_id}",
        "thread_id_format": "match:{api_match_id}",
        "android_group": "totl_scores",
    },
    "final-whistle": {
        "preference_key": "final-whistle",
        "preference_default": True,
        "dedupe_ttl_seconds": 3600,
        "collapse_id_format": "ft:{api_match_id}",
        "thread_id_format": "match:{api_match_id}",
        "android_group": "totl_results",
    },
    "gameweek-complete": {
        "preference_key": "gw-results",
        "preference_default": True,
        "dedupe_ttl_seconds": 7200,
        "collapse_id_format": "gw_complete:{gw}",
        "thread_id_format": "totl_gameweek",
        "android_group": "totl_results",
    },
}


def format_grouping(fmt: Optional[str], params: Optional[Dict[str, Any]]) -> Optional[str]:
    if not fmt:
        return None
    try:
        return fmt.format(**(params or {}))
    except (KeyError, IndexError):
        debug_print(f"[dispatch] grouping format {fmt!r} missing params")
        return None


def get_environment(value: Optional[str]) -> str:
    if value in ("development", "dev"):
        return "dev"
    if value == "staging":
        return "staging"
    return "prod"


def is_allowed_by_preferences(entry: Dict[str, Any], prefs: Optional[Dict[str, Any]]) -> bool:
    pref_key = entry.get("preference_key")
    if not pref_key:
        return True
    if not prefs or pref_key not in prefs:
        return bool(entry.get("preference_default", True))
    return prefs.get(pref_key) is not False


# --------------------------------------------------------
# ------------------- Idempotency stores -----------------
# --------------------------------------------------------

class MemoryIdempotencyStore:
    """
    Process-local send log with a TTL per claim. Suitable for a single worker or tests;
    use SupabaseSendLog when more than one process can dispatch.
    Expired claims (and their recorded results) are evicted as new claims come in.
    """

    def __init__(self, default_ttl_seconds: int = 3600):
        self.default_ttl_seconds = default_ttl_seconds
        self._claims = {}
        self._results = {}
        # (expires_at, log_id, key), soonest expiry first
        self._expiry = []
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            _, log_id, key = heapq.heappop(self._expiry)
            self._results.pop(log_id, None)
            # The key may have been re-claimed since; only drop the claim this entry made
            current = self._claims.get(key)
            if current and current[1] == log_id:
                del self._claims[key]

    async def claim(self, environment, notification_key, event_id, user_id, ttl_seconds=None) -> Optional[str]:
        ttl = ttl_seconds or self.default_ttl_seconds
        key = (environment, notification_key, event_id, user_id)
        now = time.time()

        with self._lock:
            self._evict_expired(now)
            existing = self._claims.get(key)
            if existing and now < existing[0]:
                return None
            log_id = uuid.uuid4().hex
            expires_at = now + ttl
            self._claims[key] = (expires_at, log_id)
            self._results[log_id] = {"result": PENDING}
            heapq.heappush(self._expiry, (expires_at, log_id, key))
            return log_id

    async def record(self, log_id: str, result: str, **details) -> None:
        with self._lock:
            if log_id in self._results:
                self._results[log_id] = {"result": result, **details}

    def result_for(self, log_id: str) -> Optional[Dict[str, Any]]:
        return self._results.get(log_id)


class SupabaseSendLog:
    """Insert-first claims against the notification_send_log table (unique per env/key/event/user)."""

    def __init__(self, client):
        self.client = client

    async def claim(self, environment, notification_key, event_id, user_id, ttl_seconds=None) -> Optional[str]:
        existing = (
            await self.client.table(SEND_LOG_TABLE)
            .select("id, result")
            .eq("environment", environment)
            .eq("notification_key", notification_key)
            .eq("event_id", event_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        ).data
        if existing:
            return None

        try:
            inserted = (
                await self.client.table(SEND_LOG_TABLE)
                .insert({
                    "environment": environment,
                    "notification_key": notification_key,
                    "event_id": event_id,
                    "user_id": user_id,
                    "result": PENDING,
                    "targeting_summary": {},
                    "payload_summary": {},
                })
                .execute()
            ).data
        except PostgrestAPIError as e:
            # Another invocation claimed it between our select and insert
            if e.code == "23505" or "duplicate key" in (e.message or ""):
                return None
            raise

        return inserted[0]["id"] if inserted else None

    async def record(self, log_id: str, result: str, **details) -> None:
        update = {"result": result, "updated_at": now_utc().isoformat()}
        update.update({k: v for k, v in details.items() if v is not None})
        await self.client.table(SEND_LOG_TABLE).update(update).eq("id", log_id).execute()


# --------------------------------------------------------
# ----------------------- OneSignal ----------------------
# --------------------------------------------------------

def build_onesignal_payload(app_id: str, notification_key: str, title: str, body: str,
                            external_user_ids: List[str], data=None, grouping_params=None,
                            badge_count=None) -> Dict[str, Any]:
    entry = CATALOG[notification_key]
    payload = {
        "app_id": app_id,
        "headings": {"en": title},
        "contents": {"en": body},
        "include_external_user_ids": external_user_ids,
    }

    collapse_id = format_grouping(entry.get("collapse_id_format"), grouping_params)
    thread_id = format_grouping(entry.get("thread_id_format"), grouping_params)
    if collapse_id:
        payload["collapse_id"] = collapse_id
    if thread_id:
        payload["thread_id"] = thread_id
    if entry.get("android_group"):
        payload["android_group"] = entry["android_group"]
    if data:
        payload["data"] = data
    if badge_count is not None:
        payload["ios_badgeType"] = "SetTo"
        payload["ios_badgeCount"] = badge_count

    return payload


def payload_summary(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": payload["headings"]["en"],
        "body": payload["contents"]["en"][:100],
        "external_user_ids_count": len(payload.get("include_external_user_ids") or []),
        "collapse_id": payload.get("collapse_id"),
        "thread_id": payload.get("thread_id"),
        "android_group": payload.get("android_group"),
    }


class OneSignalSender:
    def __init__(self, app_id: Optional[str], rest_api_key: Optional[str], timeout: float = 15.0, transport=None):
        self.app_id = app_id
        self.rest_api_key = rest_api_key
        self.timeout = timeout
        self.transport = transport

    async def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.rest_api_key:
            return {"success": False, "error": {"message": "ONESIGNAL_REST_API_KEY not configured"}}

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self.rest_api_key}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(ONESIGNAL_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            return {"success": False, "error": {"message": type(e).__name__}}

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            return {"success": False, "error": {"status": response.status_code, "body": body}}

        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list) and errors:
            return {"success": False, "error": {"errors": errors}}

        return {"success": True, "notification_id": body.get("id"), "recipients": body.get("recipients", 0)}


# --------------------------------------------------------
# ---------------------- Dispatcher ----------------------
# --------------------------------------------------------

PreferencesLoader = Callable[[List[str]], Awaitable[Dict[str, Dict[str, Any]]]]


def empty_result(notification_key: str, event_id: str, total_users: int) -> Dict[str, Any]:
    return {
        "notification_key": notification_key,
        "event_id": event_id,
        "total_users": total_users,
        "results": {
            ACCEPTED: 0,
            FAILED: 0,
            SUPPRESSED_DUPLICATE: 0,
            SUPPRESSED_PREFERENCE: 0,
        },
        "errors": [],
    }


class NotificationDispatcher:
    def __init__(self, store, sender: OneSignalSender, load_preferences: Optional[PreferencesLoader] = None,
                 environment: str = "prod"):
        self.store = store
        self.sender = sender
        self.load_preferences = load_preferences
        self.environment = environment

    async def dispatch(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        """
        intent keys: notification_key, event_id, user_ids, title, body, and optionally
        data, grouping_params, skip_preference_check, badge_count.
        """
        notification_key = intent["notification_key"]
        event_id = intent["event_id"]
        user_ids = list(dict.fromkeys(intent.get("user_ids") or []))
        result = empty_result(notification_key, event_id, len(user_ids))

        entry = CATALOG.get(notification_key)
        if entry is None:
            safe_print(f"[dispatch] Unknown notification_key: {notification_key}")
            return result
        if not user_ids:
            return result

        prefs_by_user = {}
        check_prefs = bool(entry.get("preference_key")) and not intent.get("skip_preference_check")
        if check_prefs and self.load_preferences is not None:
            prefs_by_user = await self.load_preferences(user_ids)

        ttl = entry.get("dedupe_ttl_seconds")
        log_ids = await asyncio.gather(*(
            self.store.claim(self.environment, notification_key, event_id, uid, ttl)
            for uid in user_ids
        ))

        to_send = []
        for uid, log_id in zip(user_ids, log_ids):
            if log_id is None:
                result["results"][SUPPRESSED_DUPLICATE] += 1
                continue
            if check_prefs and not is_allowed_by_preferences(entry, prefs_by_user.get(uid)):
                result["results"][SUPPRESSED_PREFERENCE] += 1
                await self.store.record(log_id, SUPPRESSED_PREFERENCE)
                continue
            to_send.append((uid, log_id))

        for start in range(0, len(to_send), ONESIGNAL_BATCH_SIZE):
            batch = to_send[start:start + ONESIGNAL_BATCH_SIZE]
            await self._send_batch(intent, batch, result)

        r = result["results"]
        safe_print(
            f"[dispatch] {notification_key}/{event_id}: {r[ACCEPTED]} accepted, {r[FAILED]} failed, "
            f"{r[SUPPRESSED_DUPLICATE]} dup, {r[SUPPRESSED_PREFERENCE]} pref"
        )
        return result

    async def _send_batch(self, intent, batch, result):
        payload = build_onesignal_payload(
            self.sender.app_id,
            intent["notification_key"],
            intent.get("title") or "",
            intent.get("body") or "",
            [uid for uid, _ in batch],
            data={"type": intent["notification_key"], **(intent.get("data") or {})},
            grouping_params=intent.get("grouping_params"),
            badge_count=intent.get("badge_count"),
        )
        sent = await self.sender.send(payload)
        summary = payload_summary(payload)

        if sent.get("success"):
            outcome = ACCEPTED
        else:
            outcome = FAILED
            result["errors"].append(sent.get("error"))

        for uid, log_id in batch:
            await self.store.record(
                log_id,
                outcome,
                onesignal_notification_id=sent.get("notification_id"),
                target_type="external_user_ids",
                payload_summary=summary,
                error=sent.get("error"),
            )
        result["results"][outcome] += len(batch)

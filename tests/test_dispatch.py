# test_dispatch.py
import httpx
import pytest
from postgrest.exceptions import APIError as PostgrestAPIError

import dispatch
from dispatch import (
    CATALOG,
    MemoryIdempotencyStore,
    NotificationDispatcher,
    OneSignalSender,
    SupabaseSendLog,
    build_onesignal_payload,
    format_grouping,
    get_environment,
    is_allowed_by_preferences,
)


class RecordingSender:
    def __init__(self, success=True):
        self.app_id = "app-123"
        self.success = success
        self.payloads = []

    async def send(self, payload):
        self.payloads.append(payload)
        if self.success:
            return {"success": True, "notification_id": f"n{len(self.payloads)}"}
        return {"success": False, "error": {"status": 400, "body": {"errors": ["bad"]}}}


def goal_intent(user_ids, **extra):
    intent = {
        "notification_key": "goal-scored",
        "event_id": "goal:555:j_smith:23:ontrack",
        "user_ids": user_ids,
        "title": "Goal Arsenal!",
        "body": "23' J. Smith\nArsenal [1] - 0 Forest ✅",
        "data": {"api_match_id": 555},
        "grouping_params": {"api_match_id": 555},
    }
    intent.update(extra)
    return intent


# ------------------------ Catalog -----------------------

def test_environment_names():
    assert get_environment("development") == "dev"
    assert get_environment("staging") == "staging"
    assert get_environment(None) == "prod"


def test_grouping_format_missing_param():
    assert format_grouping("kickoff:{api_match_id}:{half}", {"api_match_id": 1}) is None
    assert format_grouping("kickoff:{api_match_id}:{half}", {"api_match_id": 1, "half": 2}) == "kickoff:1:2"


def test_preferences_default_and_opt_out():
    entry = CATALOG["goal-scored"]
    assert is_allowed_by_preferences(entry, None) is True
    assert is_allowed_by_preferences(entry, {"score-updates": False}) is False
    assert is_allowed_by_preferences(CATALOG["half-time"], {"score-updates": False}) is True


def test_onesignal_payload():
    payload = build_onesignal_payload(
        "app-123", "gameweek-complete", "Gameweek 12 Complete!", "All games finished.",
        ["u1"], data={"gw": 12}, grouping_params={"gw": 12}, badge_count=1,
    )
    assert payload["collapse_id"] == "gw_complete:12"
    assert payload["android_group"] == "totl_results"
    assert payload["include_external_user_ids"] == ["u1"]
    assert payload["ios_badgeType"] == "SetTo"
    assert payload["ios_badgeCount"] == 1


# ---------------------- Dispatcher ----------------------

@pytest.mark.asyncio
async def test_same_event_is_sent_once():
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), sender)

    first = await dispatcher.dispatch(goal_intent(["u1", "u2"]))
    second = await dispatcher.dispatch(goal_intent(["u1", "u2"]))

    assert first["results"]["accepted"] == 2
    assert second["results"]["accepted"] == 0
    assert second["results"]["suppressed_duplicate"] == 2
    assert len(sender.payloads) == 1, "duplicate event reached the push provider"


@pytest.mark.asyncio
async def test_new_group_suffix_is_a_new_event():
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), sender)

    await dispatcher.dispatch(goal_intent(["u1"]))
    moved = await dispatcher.dispatch(goal_intent(["u1"], event_id="goal:555:j_smith:23:offtrack"))

    assert moved["results"]["accepted"] == 1


@pytest.mark.asyncio
async def test_environments_do_not_share_claims():
    store = MemoryIdempotencyStore()
    prod = NotificationDispatcher(store, RecordingSender(), environment="prod")
    dev = NotificationDispatcher(store, RecordingSender(), environment="dev")

    await prod.dispatch(goal_intent(["u1"]))
    result = await dev.dispatch(goal_intent(["u1"]))

    assert result["results"]["accepted"] == 1


@pytest.mark.asyncio
async def test_preference_suppression():
    async def load_preferences(user_ids):
        return {"u2": {"score-updates": False}}

    sender = RecordingSender()
    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), sender, load_preferences=load_preferences)

    result = await dispatcher.dispatch(goal_intent(["u1", "u2"]))

    assert result["results"]["accepted"] == 1
    assert result["results"]["suppressed_preference"] == 1
    assert sender.payloads[0]["include_external_user_ids"] == ["u1"]


@pytest.mark.asyncio
async def test_skip_preference_check():
    async def load_preferences(user_ids):
        raise AssertionError("preferences should not be loaded")

    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), RecordingSender(), load_preferences=load_preferences)

    result = await dispatcher.dispatch(goal_intent(["u1"], skip_preference_check=True))

    assert result["results"]["accepted"] == 1


@pytest.mark.asyncio
async def test_failed_send_is_counted_and_recorded():
    store = MemoryIdempotencyStore()
    dispatcher = NotificationDispatcher(store, RecordingSender(success=False))

    result = await dispatcher.dispatch(goal_intent(["u1", "u2"]))

    assert result["results"]["failed"] == 2
    assert result["results"]["accepted"] == 0
    assert len(result["errors"]) == 1


@pytest.mark.asyncio
async def test_batches(monkeypatch):
    monkeypatch.setattr(dispatch, "ONESIGNAL_BATCH_SIZE", 2)
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), sender)

    result = await dispatcher.dispatch(goal_intent(["u1", "u2", "u3"]))

    assert [len(p["include_external_user_ids"]) for p in sender.payloads] == [2, 1]
    assert result["results"]["accepted"] == 3


@pytest.mark.asyncio
async def test_unknown_key_sends_nothing():
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(MemoryIdempotencyStore(), sender)

    result = await dispatcher.dispatch(goal_intent(["u1"], notification_key="chat-message"))

    assert result["results"]["accepted"] == 0
    assert sender.payloads == []


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_memory_claim_expires(monkeypatch):
    clock = Clock()
    monkeypatch.setattr(dispatch.time, "time", clock)
    store = MemoryIdempotencyStore()

    assert await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=120)
    assert await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=120) is None

    clock.now += 121

    assert await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=120)


@pytest.mark.asyncio
async def test_memory_store_evicts_expired_claims(monkeypatch):
    clock = Clock()
    monkeypatch.setattr(dispatch.time, "time", clock)
    store = MemoryIdempotencyStore()

    for i in range(1000):
        log_id = await store.claim("prod", "goal-scored", f"goal:555:saka:{i}", "u1", ttl_seconds=120)
        await store.record(log_id, "accepted")
    assert len(store._claims) == 1000

    clock.now += 121
    fresh = await store.claim("prod", "kickoff", "kickoff:555:1", "u1", ttl_seconds=300)

    assert len(store._claims) == 1, f"expired claims were kept: {len(store._claims)}"
    assert len(store._results) == 1
    assert store.result_for(fresh) == {"result": "pending"}


@pytest.mark.asyncio
async def test_memory_store_keeps_reclaimed_key(monkeypatch):
    clock = Clock()
    monkeypatch.setattr(dispatch.time, "time", clock)
    store = MemoryIdempotencyStore()

    await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=10)
    clock.now += 11
    await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=100)
    clock.now += 11

    # Re-claimed after the first expiry; the second claim is still held
    assert await store.claim("prod", "goal-scored", "e1", "u1", ttl_seconds=100) is None


# ----------------------- OneSignal ----------------------

@pytest.mark.asyncio
async def test_onesignal_sender_success():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"id": "abc", "recipients": 2})

    sender = OneSignalSender("app-123", "rest-key", transport=httpx.MockTransport(handler))
    result = await sender.send({"app_id": "app-123"})

    assert result["success"] is True
    assert result["notification_id"] == "abc"
    assert seen["auth"] == "Basic rest-key"


@pytest.mark.asyncio
async def test_onesignal_sender_errors():
    def handler(request):
        return httpx.Response(200, json={"errors": ["All included players are not subscribed"]})

    sender = OneSignalSender("app-123", "rest-key", transport=httpx.MockTransport(handler))
    result = await sender.send({"app_id": "app-123"})

    assert result["success"] is False


@pytest.mark.asyncio
async def test_onesignal_sender_without_key():
    result = await OneSignalSender("app-123", None).send({})
    assert result["success"] is False


# ----------------------- Send log -----------------------

class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.op = "select"
        self.payload = None

    def select(self, *args):
        return self

    def eq(self, *args):
        return self

    def limit(self, *args):
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    async def execute(self):
        self.client.ops.append((self.op, self.payload))
        if self.op == "insert" and self.client.insert_error:
            raise self.client.insert_error
        data = {"select": self.client.existing, "insert": [{"id": "log-1"}], "update": []}[self.op]

        class Response:
            pass

        r = Response()
        r.data = data
        return r


class FakeClient:
    def __init__(self, existing=None, insert_error=None):
        self.existing = existing or []
        self.insert_error = insert_error
        self.ops = []

    def table(self, name):
        return FakeQuery(self, name)


@pytest.mark.asyncio
async def test_send_log_claims_and_records():
    client = FakeClient()
    log = SupabaseSendLog(client)

    log_id = await log.claim("prod", "goal-scored", "e1", "u1")
    await log.record(log_id, "accepted", onesignal_notification_id="n1")

    assert log_id == "log-1"
    assert client.ops[1][0] == "insert"
    assert client.ops[2][1]["result"] == "accepted"
    assert client.ops[2][1]["onesignal_notification_id"] == "n1"


@pytest.mark.asyncio
async def test_send_log_existing_row_is_duplicate():
    log = SupabaseSendLog(FakeClient(existing=[{"id": "old", "result": "accepted"}]))
    assert await log.claim("prod", "goal-scored", "e1", "u1") is None


@pytest.mark.asyncio
async def test_send_log_unique_violation_is_duplicate():
    error = PostgrestAPIError({"code": "23505", "message": "duplicate key value violates unique constraint"})
    log = SupabaseSendLog(FakeClient(insert_error=error))
    assert await log.claim("prod", "goal-scored", "e1", "u1") is None


@pytest.mark.asyncio
async def test_send_log_other_errors_propagate():
    error = PostgrestAPIError({"code": "42P01", "message": "relation does not exist"})
    log = SupabaseSendLog(FakeClient(insert_error=error))
    with pytest.raises(PostgrestAPIError):
        await log.claim("prod", "goal-scored", "e1", "u1")

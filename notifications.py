# notifications.py
import asyncio
import math
from typing import Any, Dict, Iterable, List, Optional

from live_events import (
    FINAL_WHISTLE,
    GAMEWEEK_COMPLETE,
    GOAL,
    GOAL_DISALLOWED,
    HALF_TIME_EVENT,
    KICKOFF,
    FixtureContext,
    NotificationEvent,
    ScoreChange,
    classify_change,
    gameweek_complete_event,
)
from utils import debug_print, safe_print


HOME = "H"
DRAW = "D"
AWAY = "A"
PICK_OUTCOMES = (HOME, DRAW, AWAY)

ONTRACK = "ontrack"
OFFTRACK = "offtrack"
NOPICK = "nopick"
CORRECT = "correct"
WRONG = "wrong"

GROUP_SUFFIX = {
    ONTRACK: " ✅",
    OFFTRACK: " ❌",
    NOPICK: "",
}

# Event kind -> catalog key used by the dispatcher
NOTIFICATION_KEYS = {
    GOAL: "goal-scored",
    GOAL_DISALLOWED: "goal-disallowed",
    KICKOFF: "kickoff",
    HALF_TIME_EVENT: "half-time",
    FINAL_WHISTLE: "final-whistle",
    GAMEWEEK_COMPLETE: "gameweek-complete",
}

# Data payload "type" the apps switch on
DATA_TYPES = {
    GOAL: "goal",
    GOAL_DISALLOWED: "goal_disallowed",
    KICKOFF: "kickoff",
    HALF_TIME_EVENT: "half_time",
    FINAL_WHISTLE: "game_finished",
    GAMEWEEK_COMPLETE: "gameweek_finished",
}

ONLY_PERCENT_THRESHOLD = 20


# --------------------------------------------------------
# ---------------- Outcomes & partitioning ---------------
# --------------------------------------------------------

def outcome_from_scores(home_score, away_score) -> str:
    home = home_score or 0
    away = away_score or 0
    if home > away:
        return HOME
    if away > home:
        return AWAY
    return DRAW


def normalize_pick(pick) -> Optional[str]:
    if not isinstance(pick, str):
        return None
    p = pick.strip().upper()
    return p if p in PICK_OUTCOMES else None


def partition_recipients(user_ids: Iterable[str], picks: Dict[str, str], outcome: str) -> Dict[str, List[str]]:
    """
    Split recipients by whether their pick matches the current outcome.
    Every input user lands in exactly one group; duplicates in user_ids are dropped
    and input order is kept within each group.
    """
    groups = {ONTRACK: [], OFFTRACK: [], NOPICK: []}
    for uid in dict.fromkeys(user_ids):
        pick = normalize_pick(picks.get(uid))
        if pick is None:
            groups[NOPICK].append(uid)
        elif pick == outcome:
            groups[ONTRACK].append(uid)
        else:
            groups[OFFTRACK].append(uid)
    return groups


def partition_final(user_ids: Iterable[str], picks: Dict[str, str], result: str) -> Dict[str, List[str]]:
    # Full-time only has two groups; no pick counts as wrong
    groups = {CORRECT: [], WRONG: []}
    for uid in dict.fromkeys(user_ids):
        if normalize_pick(picks.get(uid)) == result:
            groups[CORRECT].append(uid)
        else:
            groups[WRONG].append(uid)
    return groups


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def correct_percentage(picks: Dict[str, str], result: str) -> int:
    valid = [p for p in (normalize_pick(v) for v in picks.values()) if p]
    if not valid:
        return 0
    correct = sum(1 for p in valid if p == result)
    return round_half_up(100 * correct / len(valid))


def percentage_text(pct: int) -> str:
    if pct <= ONLY_PERCENT_THRESHOLD:
        return f"Only {pct}% of players got this fixture correct"
    return f"{pct}% of players got this fixture correct"


# --------------------------------------------------------
# ---------------------- Messages ------------------------
# --------------------------------------------------------

def score_line(event: NotificationEvent) -> str:
    return f"{event.home_team} {event.home_score}-{event.away_score} {event.away_team}"


def goal_score_line(event: NotificationEvent) -> str:
    # Brackets mark the side the goal counted for
    if event.is_home_team:
        return f"{event.home_team} [{event.home_score}] - {event.away_score} {event.away_team}"
    return f"{event.home_team} {event.home_score} - [{event.away_score}] {event.away_team}"


def goal_message(event: NotificationEvent):
    if event.is_own_goal:
        return "Own Goal", f"{event.minute}' Own goal by {event.scorer}\n{goal_score_line(event)}"
    return f"Goal {event.team_name}!", f"{event.minute}' {event.scorer}\n{goal_score_line(event)}"


def goal_disallowed_message(event: NotificationEvent):
    body = f"{event.minute}' {event.scorer}'s goal for {event.team_name} was disallowed\n{score_line(event)}"
    return "Goal Disallowed", body


def kickoff_message(event: NotificationEvent):
    body = "Second half underway" if event.half == 2 else "Kickoff!"
    return f"{event.home_team} vs {event.away_team}", body


def half_time_message(event: NotificationEvent):
    return "Half-Time", score_line(event)


def final_whistle_title(event: NotificationEvent) -> str:
    return f"FT: {score_line(event)}"


def final_whistle_body(group: str, pct: int) -> str:
    mark = "✅ Got it right!" if group == CORRECT else "❌ Wrong pick"
    return f"{percentage_text(pct)}\n{mark}"


def gameweek_complete_message(event: NotificationEvent):
    return f"Gameweek {event.gw} Complete!", "All games finished. Check your results!"


def event_data(event: NotificationEvent) -> Dict[str, Any]:
    data = {"type": DATA_TYPES[event.kind]}
    if event.api_match_id is not None:
        data["api_match_id"] = event.api_match_id
        data["fixture_index"] = event.fixture_index
    if event.gw is not None:
        data["gw"] = event.gw
    if event.half is not None:
        data["half"] = event.half
    return data


def grouping_params(event: NotificationEvent) -> Dict[str, Any]:
    if event.kind == GAMEWEEK_COMPLETE:
        return {"gw": event.gw}
    params = {"api_match_id": event.api_match_id}
    if event.kind == KICKOFF:
        params["half"] = event.half
    return params


def make_intent(event: NotificationEvent, user_ids: List[str], title: str, body: str,
                event_id: Optional[str] = None, **extra) -> Dict[str, Any]:
    intent = {
        "notification_key": NOTIFICATION_KEYS[event.kind],
        "event_id": event_id or event.event_id,
        "user_ids": user_ids,
        "title": title,
        "body": body,
        "data": event_data(event),
        "grouping_params": grouping_params(event),
    }
    intent.update(extra)
    return intent


# --------------------------------------------------------
# ------------------- Intent building --------------------
# --------------------------------------------------------

def _partitioned_intents(event, user_ids, picks, title, body, **extra):
    outcome = outcome_from_scores(event.home_score, event.away_score)
    groups = partition_recipients(user_ids, picks, outcome)
    return [
        make_intent(event, members, title, body + GROUP_SUFFIX[group],
                    event_id=f"{event.event_id}:{group}", **extra)
        for group, members in groups.items()
    ]


def build_intents(event: NotificationEvent, user_ids: List[str], picks: Dict[str, str],
                  final_result: Optional[str] = None) -> List[Dict[str, Any]]:
    """One intent per recipient group. Empty groups are returned too; dispatch_groups drops them."""
    user_ids = list(dict.fromkeys(user_ids))

    if event.kind == GOAL:
        title, body = goal_message(event)
        return _partitioned_intents(event, user_ids, picks, title, body)

    if event.kind == HALF_TIME_EVENT:
        title, body = half_time_message(event)
        return _partitioned_intents(event, user_ids, picks, title, body, skip_preference_check=True)

    if event.kind == GOAL_DISALLOWED:
        title, body = goal_disallowed_message(event)
        return [make_intent(event, user_ids, title, body)]

    if event.kind == KICKOFF:
        title, body = kickoff_message(event)
        return [make_intent(event, user_ids, title, body)]

    if event.kind == FINAL_WHISTLE:
        result = final_result or outcome_from_scores(event.home_score, event.away_score)
        pct = correct_percentage(picks, result)
        title = final_whistle_title(event)
        groups = partition_final(user_ids, picks, result)
        return [
            make_intent(event, members, title, final_whistle_body(group, pct),
                        event_id=f"{event.event_id}:{group}")
            for group, members in groups.items()
        ]

    if event.kind == GAMEWEEK_COMPLETE:
        title, body = gameweek_complete_message(event)
        return [make_intent(event, user_ids, title, body, badge_count=1)]

    raise ValueError(f"Unknown event kind: {event.kind}")


# --------------------------------------------------------
# --------------------- Group dispatch -------------------
# --------------------------------------------------------

async def dispatch_groups(dispatcher, intents: List[Dict[str, Any]]) -> Dict[str, int]:
    """
    Send every non-empty group concurrently and sum what came back.
    A group whose call raises is left out of the tally; the rest still count.
    If every call raised, the first error is re-raised.
    """
    live = [i for i in intents if i.get("user_ids")]
    tally = {"accepted": 0, "failed": 0, "groups": len(live)}
    if not live:
        return tally

    outcomes = await asyncio.gather(*(dispatcher.dispatch(i) for i in live), return_exceptions=True)

    errors = []
    for intent, outcome in zip(live, outcomes):
        if isinstance(outcome, Exception):
            safe_print(f"[dispatch] ❌ {intent['event_id']} failed: {type(outcome).__name__}")
            errors.append(outcome)
            continue
        results = outcome.get("results") or {}
        tally["accepted"] += results.get("accepted", 0)
        tally["failed"] += results.get("failed", 0)

    if errors and len(errors) == len(live):
        raise errors[0]
    return tally


# --------------------------------------------------------
# ------------------- Webhook pipeline -------------------
# --------------------------------------------------------

def webhook_summary(message: str, event: Optional[NotificationEvent] = None,
                    sent: int = 0, failed: int = 0) -> Dict[str, Any]:
    return {
        "message": message,
        "event": event.kind if event else None,
        "event_id": event.event_id if event else None,
        "sentTo": sent,
        "failed": failed,
    }


async def notify_gameweek_complete(store, dispatcher, fixture: FixtureContext, request_id: str = "-"):
    if not await store.gameweek_all_finished(fixture):
        return None

    event = gameweek_complete_event(fixture.gw)
    user_ids = await store.fetch_gameweek_user_ids(fixture)
    if not user_ids:
        return None

    tally = await dispatch_groups(dispatcher, build_intents(event, user_ids, {}))
    safe_print(f"[scoreWebhook] [{request_id}] Gameweek {fixture.gw} complete: {tally['accepted']} sent")
    return tally


async def process_score_change(change: ScoreChange, store, dispatcher, request_id: str = "-") -> Dict[str, Any]:
    """
    Run one live_scores change through classification and dispatch.
    Returns the webhook response body. Unknown fixtures and quiet changes come back
    as no-op summaries; store failures propagate.
    """
    record = change.record
    fixture = await store.find_fixture(record.api_match_id)
    if fixture is None:
        safe_print(f"[scoreWebhook] [{request_id}] No fixture for api_match_id {record.api_match_id}")
        return webhook_summary("Fixture not found")

    event = classify_change(change.old_record, record, fixture)
    if event is None:
        debug_print(f"[scoreWebhook] [{request_id}] No notifiable change for {record.api_match_id}")
        return webhook_summary("No notification needed")

    picks = await store.fetch_fixture_picks(fixture)
    user_ids = list(picks.keys())
    if not user_ids:
        safe_print(f"[scoreWebhook] [{request_id}] {event.event_id}: no users with picks")
        # The last match of a gameweek still closes it out for everyone else
        if event.kind == FINAL_WHISTLE:
            await notify_gameweek_complete(store, dispatcher, fixture, request_id)
        return webhook_summary("No recipients", event)

    final_result = None
    if event.kind == FINAL_WHISTLE:
        final_result = await store.fetch_declared_outcome(fixture)

    tally = await dispatch_groups(dispatcher, build_intents(event, user_ids, picks, final_result))
    safe_print(
        f"[scoreWebhook] [{request_id}] {event.event_id}: {tally['accepted']} sent, "
        f"{tally['failed']} failed across {tally['groups']} group(s)"
    )

    if event.kind == FINAL_WHISTLE:
        await notify_gameweek_complete(store, dispatcher, fixture, request_id)

    return webhook_summary("Notifications processed", event, tally["accepted"], tally["failed"])

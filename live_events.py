# live_events.py
"""
Live score change handling: turns a (old, new) pair of live_scores rows into at most
one notifiable event with a deterministic event id.

Nothing in here touches the network. The same two snapshots always classify to the
same event and the same event id, so the webhook can run on every poll and leave
at-most-once delivery to the dispatcher's send log.
"""
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from utils import safe_print


# --------------------------------------------------------
# ------------------- Status constants -------------------
# --------------------------------------------------------

SCHEDULED = "SCHEDULED"
IN_PLAY = "IN_PLAY"
PAUSED = "PAUSED"
HALF_TIME = "HALF_TIME"
FINISHED = "FINISHED"
FT = "FT"

FINISHED_STATUSES = (FINISHED, FT)
BREAK_STATUSES = (PAUSED, HALF_TIME)

# Event kinds
GOAL = "goal"
GOAL_DISALLOWED = "goal_disallowed"
KICKOFF = "kickoff"
HALF_TIME_EVENT = "half_time"
FINAL_WHISTLE = "final_whistle"
GAMEWEEK_COMPLETE = "gameweek_complete"

SCORER_SLUG_MAX = 30


# --------------------------------------------------------
# ----------------------- Models -------------------------
# --------------------------------------------------------

def _lenient_int(v):
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


class GoalEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scorer: Optional[str] = None
    minute: Optional[int] = None
    # "home" / "away" when the feed says which side, otherwise a team name
    team: Optional[str] = None
    team_id: Optional[int] = Field(default=None, alias="teamId")
    is_own_goal: Optional[bool] = Field(default=False, alias="isOwnGoal")

    coerce_ints = field_validator("minute", "team_id", mode="before")(_lenient_int)


class RedCard(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    player: Optional[str] = None
    minute: Optional[int] = None
    team: Optional[str] = None
    team_id: Optional[int] = Field(default=None, alias="teamId")

    coerce_ints = field_validator("minute", "team_id", mode="before")(_lenient_int)


class LiveScoreSnapshot(BaseModel):
    """One observed state of a live_scores row. Every field may be missing on first sight."""

    model_config = ConfigDict(extra="ignore")

    api_match_id: Optional[int] = None
    gw: Optional[int] = None
    fixture_index: Optional[int] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    status: Optional[str] = None
    minute: Optional[int] = None
    goals: List[GoalEvent] = Field(default_factory=list)
    red_cards: List[RedCard] = Field(default_factory=list)
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None

    @field_validator("goals", "red_cards", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        if v is None:
            return []
        # Drop anything that isn't an object rather than rejecting the whole row
        return [item for item in v if isinstance(item, (dict, BaseModel))]

    @property
    def home(self) -> int:
        return self.home_score or 0

    @property
    def away(self) -> int:
        return self.away_score or 0


class FixtureContext(BaseModel):
    """Static fixture info the classifier needs alongside the two snapshots."""

    api_match_id: int
    gw: int
    fixture_index: int
    home_team: str
    away_team: str
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    # Which fixtures table the row came from (decides which picks table to read)
    source: str = "fixtures"
    # Gameweek / matchday number used as the picks filter
    picks_gw: Optional[int] = None


class ScoreChange(BaseModel):
    """Canonical form of every accepted webhook payload shape."""

    shape: str
    table: Optional[str] = None
    record: LiveScoreSnapshot
    old_record: LiveScoreSnapshot = Field(default_factory=LiveScoreSnapshot)


class NotificationEvent(BaseModel):
    kind: str
    event_id: str
    api_match_id: Optional[int] = None
    gw: Optional[int] = None
    fixture_index: Optional[int] = None
    home_team: str = ""
    away_team: str = ""
    home_score: int = 0
    away_score: int = 0
    minute: Optional[int] = None
    scorer: Optional[str] = None
    team_name: Optional[str] = None
    is_home_team: Optional[bool] = None
    is_own_goal: bool = False
    half: Optional[int] = None


# --------------------------------------------------------
# ------------------ Payload adapters --------------------
# --------------------------------------------------------

def _from_database_webhook(payload: Dict[str, Any]) -> ScoreChange:
    # Supabase database webhook: {type, table, record, old_record}
    return ScoreChange(
        shape="database_webhook",
        table=payload.get("table"),
        record=LiveScoreSnapshot.model_validate(payload.get("record") or {}),
        old_record=LiveScoreSnapshot.model_validate(payload.get("old_record") or {}),
    )


def _from_realtime_change(payload: Dict[str, Any]) -> ScoreChange:
    # Realtime / pg_net style: {new, old}
    return ScoreChange(
        shape="realtime_change",
        record=LiveScoreSnapshot.model_validate(payload.get("new") or {}),
        old_record=LiveScoreSnapshot.model_validate(payload.get("old") or {}),
    )


def _from_bare_record(payload: Dict[str, Any]) -> ScoreChange:
    # Bare live_scores row posted directly; there is no previous state
    return ScoreChange(
        shape="bare_record",
        record=LiveScoreSnapshot.model_validate(payload),
        old_record=LiveScoreSnapshot(),
    )


PAYLOAD_ADAPTERS = (
    (lambda p: bool(p.get("record")) and bool(p.get("table")), _from_database_webhook),
    (lambda p: bool(p.get("new")), _from_realtime_change),
    (lambda p: p.get("api_match_id") is not None, _from_bare_record),
)


def parse_webhook_payload(payload) -> Optional[ScoreChange]:
    """
    Normalize any accepted trigger payload into a ScoreChange.
    Returns None for anything we can't act on (unknown shape, no api_match_id,
    unparseable row). Callers treat None as a no-op, not an error.
    """
    if not isinstance(payload, dict):
        return None

    for matches, adapter in PAYLOAD_ADAPTERS:
        if not matches(payload):
            continue
        try:
            change = adapter(payload)
        except ValidationError as e:
            safe_print(f"[scoreWebhook] ⚠️ Unparseable payload ({e.error_count()} errors)")
            return None
        if change.record.api_match_id is None:
            return None
        return change

    return None


# --------------------------------------------------------
# ---------------------- Event ids -----------------------
# --------------------------------------------------------

def normalize_scorer(scorer: str) -> str:
    """
    Slug used inside goal event ids.
    'Mohamed Salah!!' -> 'mohamed_salah', "  O'Brien-Smith  " -> 'o_brien_smith'
    """
    slug = re.sub(r"[^a-z0-9]+", "_", (scorer or "").strip().lower()).strip("_")
    return slug[:SCORER_SLUG_MAX].rstrip("_")


def build_goal_event_id(api_match_id, scorer, minute) -> str:
    return f"goal:{api_match_id}:{normalize_scorer(scorer)}:{minute}"


def build_goal_disallowed_event_id(api_match_id, minute) -> str:
    return f"goal_disallowed:{api_match_id}:{minute}"


def build_kickoff_event_id(api_match_id, half: int) -> str:
    return f"kickoff:{api_match_id}:{half}"


def build_halftime_event_id(api_match_id) -> str:
    return f"halftime:{api_match_id}"


def build_final_whistle_event_id(api_match_id) -> str:
    return f"ft:{api_match_id}"


def build_gameweek_complete_event_id(gw) -> str:
    return f"gw_complete:{gw}"


def goal_key(goal: GoalEvent) -> str:
    scorer = (goal.scorer or "").strip().lower()
    minute = "" if goal.minute is None else str(goal.minute)
    return f"{scorer}|{minute}"


def unseen_goals(old_goals: List[GoalEvent], new_goals: List[GoalEvent]) -> List[GoalEvent]:
    """
    Goals in new_goals that weren't in old_goals. A goal whose scorer changed but whose
    minute was already taken is a feed correction, not a new goal: a minute only yields
    unseen goals once it holds more goals than before.
    """
    old_keys = {goal_key(g) for g in old_goals}
    old_per_minute = Counter(g.minute for g in old_goals)
    new_per_minute = Counter(g.minute for g in new_goals)
    return [
        g for g in new_goals
        if goal_key(g) not in old_keys and new_per_minute[g.minute] > old_per_minute[g.minute]
    ]


# --------------------------------------------------------
# ----------------- Scoring side lookup ------------------
# --------------------------------------------------------

def match_team_by_name(team: Optional[str], home_team: str, away_team: str) -> bool:
    """
    Last-resort guess at which side a feed team name refers to.
    Returns True for home. Exact match first, then substring either way
    ("Forest" vs "Nottingham Forest"); if both sides match the longer pairing wins.
    Anything unmatched is reported as away.
    """
    scoring = (team or "").strip().lower()
    home = (home_team or "").strip().lower()
    away = (away_team or "").strip().lower()

    if not scoring:
        safe_print(f"[determineScoringTeam] Goal has no team, assuming away ({away_team})")
        return False

    if scoring == home or scoring == away:
        return scoring == home

    home_match = bool(home) and (scoring in home or home in scoring)
    away_match = bool(away) and (scoring in away or away in scoring)

    if home_match and away_match:
        return len(home) >= len(away)
    if home_match:
        return True
    if away_match:
        return False

    safe_print(f'[determineScoringTeam] Could not match goal team "{team}" to "{home_team}" or "{away_team}"')
    return False


def resolve_scoring_side(goal: GoalEvent, fixture: FixtureContext,
                         home_team: Optional[str] = None, away_team: Optional[str] = None) -> bool:
    """Which side the goal's player plays for (True = home), before any own-goal flip."""
    side = (goal.team or "").strip().lower()
    if side in ("home", "away"):
        return side == "home"

    if goal.team_id is not None:
        if fixture.home_team_id is not None and goal.team_id == fixture.home_team_id:
            return True
        if fixture.away_team_id is not None and goal.team_id == fixture.away_team_id:
            return False

    return match_team_by_name(goal.team, home_team or fixture.home_team, away_team or fixture.away_team)


def tally_goals(goals: List[GoalEvent], fixture: FixtureContext,
                home_team: Optional[str] = None, away_team: Optional[str] = None) -> Tuple[int, int]:
    """Score implied by the goal list. Own goals count for the other side."""
    home = 0
    away = 0
    for goal in goals:
        for_home = resolve_scoring_side(goal, fixture, home_team, away_team)
        if goal.is_own_goal is True:
            for_home = not for_home
        if for_home:
            home += 1
        else:
            away += 1
    return home, away


# --------------------------------------------------------
# -------------------- Classification --------------------
# --------------------------------------------------------

def _latest(goals: List[GoalEvent]) -> GoalEvent:
    # max() keeps the first of equal minutes
    return max(goals, key=lambda g: g.minute or 0)


def _live_names(new: LiveScoreSnapshot, fixture: FixtureContext) -> Tuple[str, str]:
    return new.home_team or fixture.home_team, new.away_team or fixture.away_team


def _live_fixture(new: LiveScoreSnapshot, fixture: FixtureContext) -> FixtureContext:
    # Feed team ids live on the live_scores row, not the fixtures table
    return fixture.model_copy(update={
        "home_team_id": new.home_team_id if new.home_team_id is not None else fixture.home_team_id,
        "away_team_id": new.away_team_id if new.away_team_id is not None else fixture.away_team_id,
    })


def _base_event(kind: str, event_id: str, new: LiveScoreSnapshot, fixture: FixtureContext, **extra) -> NotificationEvent:
    fields = {
        "kind": kind,
        "event_id": event_id,
        "api_match_id": fixture.api_match_id,
        "gw": fixture.gw,
        "fixture_index": fixture.fixture_index,
        "home_team": fixture.home_team,
        "away_team": fixture.away_team,
        "home_score": new.home,
        "away_score": new.away,
        "minute": new.minute,
    }
    fields.update(extra)
    return NotificationEvent(**fields)


def _disallowed_event(old, new, fixture) -> NotificationEvent:
    live_home, live_away = _live_names(new, fixture)
    ctx = _live_fixture(new, fixture)

    new_keys = {goal_key(g) for g in new.goals}
    removed = [g for g in old.goals if goal_key(g) not in new_keys]

    if removed:
        goal = _latest(removed)
        minute = goal.minute or 0
        is_home = resolve_scoring_side(goal, ctx, live_home, live_away)
        return _base_event(
            GOAL_DISALLOWED, build_goal_disallowed_event_id(fixture.api_match_id, minute), new, fixture,
            minute=minute,
            scorer=goal.scorer or "Unknown",
            team_name=live_home if is_home else live_away,
            is_home_team=is_home,
            home_team=live_home,
            away_team=live_away,
        )

    # Score dropped but the goal list doesn't say which goal went
    minute = new.minute or 0
    is_home = new.home < old.home
    return _base_event(
        GOAL_DISALLOWED, build_goal_disallowed_event_id(fixture.api_match_id, minute), new, fixture,
        minute=minute,
        scorer="Unknown",
        team_name=fixture.home_team if is_home else fixture.away_team,
        is_home_team=is_home,
    )


def _goal_event(new, new_goals, fixture) -> NotificationEvent:
    live_home, live_away = _live_names(new, fixture)
    ctx = _live_fixture(new, fixture)

    goal = _latest(new_goals)
    scorer = goal.scorer or "Unknown"
    minute = goal.minute or 0
    is_own_goal = goal.is_own_goal is True

    player_side_home = resolve_scoring_side(goal, ctx, live_home, live_away)
    is_home = not player_side_home if is_own_goal else player_side_home
    home_score, away_score = tally_goals(new.goals, ctx, live_home, live_away)

    return _base_event(
        GOAL, build_goal_event_id(fixture.api_match_id, scorer, minute), new, fixture,
        minute=minute,
        scorer=scorer,
        team_name=live_home if is_home else live_away,
        is_home_team=is_home,
        is_own_goal=is_own_goal,
        home_team=live_home,
        away_team=live_away,
        home_score=home_score,
        away_score=away_score,
    )


def classify_change(old: Optional[LiveScoreSnapshot], new: LiveScoreSnapshot,
                    fixture: FixtureContext) -> Optional[NotificationEvent]:
    """
    Decide which (if any) notification a score change produces.
    Checks run in a fixed order and the first hit wins:
      1. score went down        -> goal disallowed
      2. goal not seen before   -> goal (latest by minute only)
      3. IN_PLAY at 0-0         -> kickoff, first half
      4. break -> IN_PLAY       -> kickoff, second half
      5. IN_PLAY -> PAUSED      -> half-time
      6. first FINISHED/FT      -> final whistle
    """
    old = old or LiveScoreSnapshot()
    match_id = fixture.api_match_id

    if new.home < old.home or new.away < old.away:
        return _disallowed_event(old, new, fixture)

    if new.goals:
        new_goals = unseen_goals(old.goals, new.goals)
        if new_goals:
            return _goal_event(new, new_goals, fixture)

    if new.status == IN_PLAY and new.home == 0 and new.away == 0:
        return _base_event(KICKOFF, build_kickoff_event_id(match_id, 1), new, fixture, half=1)

    if old.status in BREAK_STATUSES and new.status == IN_PLAY:
        return _base_event(KICKOFF, build_kickoff_event_id(match_id, 2), new, fixture, half=2)

    if old.status == IN_PLAY and new.status == PAUSED:
        return _base_event(HALF_TIME_EVENT, build_halftime_event_id(match_id), new, fixture)

    if new.status in FINISHED_STATUSES and old.status not in FINISHED_STATUSES:
        return _base_event(FINAL_WHISTLE, build_final_whistle_event_id(match_id), new, fixture)

    return None


def gameweek_complete_event(gw: int) -> NotificationEvent:
    return NotificationEvent(kind=GAMEWEEK_COMPLETE, event_id=build_gameweek_complete_event_id(gw), gw=gw)

# standings.py
"""
Standings and leaderboard computation.

Everything here is a pure function over rows already fetched from Supabase:
fixtures, results (or live scores), picks, per-gameweek points and league members.
Nothing is written back; tables are rebuilt on every request.
"""
import json
import os
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from live_events import FINISHED, IN_PLAY, PAUSED
from notifications import normalize_pick, outcome_from_scores
from utils import parse_iso8601_utc, safe_print


UNICORN_MIN_MEMBERS = 3
OUTRIGHT_WIN_POINTS = 3
SHARED_WIN_POINTS = 1

DEADLINE_BUFFER_MINUTES = 75

# Live statuses whose current scoreline counts for a live GW table
LIVE_OUTCOME_STATUSES = (IN_PLAY, PAUSED, FINISHED)

FORM_WINDOWS = {"form5": 5, "form10": 10}

# Leagues whose start gameweek predates created_at-based inference
DEFAULT_LEAGUE_START_OVERRIDES = {
    "Prem Predictions": 0,
    "FC Football": 0,
    "Easy League": 0,
    "The Bird league": 7,
    "gregVjofVcarl": 8,
    "Let Down": 8,
}


def load_league_start_overrides(raw: Optional[str] = None) -> Dict[str, int]:
    overrides = dict(DEFAULT_LEAGUE_START_OVERRIDES)
    raw = raw if raw is not None else os.getenv("LEAGUE_START_OVERRIDES")
    if not raw:
        return overrides
    try:
        extra = json.loads(raw)
    except ValueError:
        safe_print("⚠️ LEAGUE_START_OVERRIDES is not valid JSON, ignoring")
        return overrides
    if not isinstance(extra, dict):
        safe_print("⚠️ LEAGUE_START_OVERRIDES must be a JSON object, ignoring")
        return overrides
    for name, gw in extra.items():
        try:
            overrides[str(name)] = int(gw)
        except (TypeError, ValueError):
            safe_print(f"⚠️ LEAGUE_START_OVERRIDES[{name!r}] is not a number, skipping")
    return overrides


LEAGUE_START_OVERRIDES = load_league_start_overrides()


# --------------------------------------------------------
# ----------------------- Outcomes -----------------------
# --------------------------------------------------------

def row_to_outcome(row: Dict[str, Any]) -> Optional[str]:
    """Declared outcome of a results row: explicit H/D/A, else derived from goals."""
    declared = normalize_pick(row.get("result"))
    if declared:
        return declared
    home = row.get("home_goals")
    away = row.get("away_goals")
    if home is None or away is None:
        return None
    return outcome_from_scores(home, away)


def outcomes_from_results(rows: Iterable[Dict[str, Any]]) -> Dict[Tuple[int, int], str]:
    out = {}
    for r in rows:
        outcome = row_to_outcome(r)
        if outcome and r.get("gw") is not None and r.get("fixture_index") is not None:
            out[(int(r["gw"]), int(r["fixture_index"]))] = outcome
    return out


def outcomes_from_live(fixtures: Iterable[Dict[str, Any]], live_rows: Iterable[Dict[str, Any]]) -> Dict[Tuple[int, int], str]:
    """Current outcome per fixture from live_scores, for matches that are underway or done."""
    live_by_match = {r.get("api_match_id"): r for r in live_rows if r.get("api_match_id") is not None}
    out = {}
    for f in fixtures:
        live = live_by_match.get(f.get("api_match_id"))
        if not live or live.get("status") not in LIVE_OUTCOME_STATUSES:
            continue
        out[(int(f["gw"]), int(f["fixture_index"]))] = outcome_from_scores(live.get("home_score"), live.get("away_score"))
    return out


def index_picks(rows: Iterable[Dict[str, Any]]) -> Dict[Tuple[int, int], Dict[str, str]]:
    """(gw, fixture_index) -> {user_id: pick}, ignoring anything that isn't H/D/A."""
    idx = defaultdict(dict)
    for r in rows:
        pick = normalize_pick(r.get("pick"))
        if pick is None:
            continue
        idx[(int(r["gw"]), int(r["fixture_index"]))][r["user_id"]] = pick
    return idx


# --------------------------------------------------------
# ------------------- Gameweek tables --------------------
# --------------------------------------------------------

def _member_name(m: Dict[str, Any]) -> str:
    return m.get("name") or "User"


def compute_gw_table(gw: int, members: List[Dict[str, Any]], outcomes: Dict[Tuple[int, int], str],
                     picks: Dict[Tuple[int, int], Dict[str, str]]) -> List[Dict[str, Any]]:
    """
    Score and unicorns per member for one gameweek. Only fixtures with an outcome count.
    A unicorn goes to the sole correct member of a fixture, and only when the group
    has at least three members.
    Sorted by score desc, unicorns desc, name asc.
    """
    member_ids = [m["id"] for m in members]
    rows = {m["id"]: {"user_id": m["id"], "name": _member_name(m), "score": 0, "unicorns": 0} for m in members}
    unicorns_allowed = len(member_ids) >= UNICORN_MIN_MEMBERS

    for (g, idx), outcome in outcomes.items():
        if g != gw:
            continue
        fixture_picks = picks.get((g, idx), {})
        correct = [uid for uid in member_ids if fixture_picks.get(uid) == outcome]
        for uid in correct:
            rows[uid]["score"] += 1
        if unicorns_allowed and len(correct) == 1:
            rows[correct[0]]["unicorns"] += 1

    return sorted(rows.values(), key=lambda r: (-r["score"], -r["unicorns"], r["name"]))


def gw_winners(rows: List[Dict[str, Any]]) -> List[str]:
    """Every member matching the top (score, unicorns) pair."""
    if not rows:
        return []
    top = max((r["score"], r["unicorns"]) for r in rows)
    return [r["user_id"] for r in rows if (r["score"], r["unicorns"]) == top]


def league_points_for_gw(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    winners = gw_winners(rows)
    pts = OUTRIGHT_WIN_POINTS if len(winners) == 1 else SHARED_WIN_POINTS
    return {uid: pts for uid in winners}


def compute_league_table(members: List[Dict[str, Any]], relevant_gws: Iterable[int],
                         outcomes: Dict[Tuple[int, int], str],
                         picks: Dict[Tuple[int, int], Dict[str, str]]) -> List[Dict[str, Any]]:
    """
    Mini-league season table accumulated over relevant_gws.
    Sort order is league points, unicorns, OCP (all desc), then name asc.
    """
    table = {
        m["id"]: {
            "user_id": m["id"],
            "name": _member_name(m),
            "league_points": 0,
            "unicorns": 0,
            "ocp": 0,
            "wins": 0,
            "draws": 0,
            "form": [],
        }
        for m in members
    }

    gws_with_outcomes = {g for (g, _) in outcomes}
    for gw in sorted(set(relevant_gws)):
        if gw not in gws_with_outcomes:
            continue
        rows = compute_gw_table(gw, members, outcomes, picks)
        if not rows:
            continue

        for r in rows:
            table[r["user_id"]]["ocp"] += r["score"]
            table[r["user_id"]]["unicorns"] += r["unicorns"]

        awarded = league_points_for_gw(rows)
        outright = len(awarded) == 1
        for r in rows:
            entry = table[r["user_id"]]
            pts = awarded.get(r["user_id"])
            if pts is None:
                entry["form"].append("L")
                continue
            entry["league_points"] += pts
            if outright:
                entry["wins"] += 1
                entry["form"].append("W")
            else:
                entry["draws"] += 1
                entry["form"].append("D")

    return sorted(
        table.values(),
        key=lambda r: (-r["league_points"], -r["unicorns"], -r["ocp"], r["name"]),
    )


# --------------------------------------------------------
# -------------------- Joint ranking ---------------------
# --------------------------------------------------------

def assign_joint_ranks(rows: List[Dict[str, Any]], score_key: str = "points") -> List[Dict[str, Any]]:
    """
    Standard competition ranking: [10, 10, 8] -> ranks [1, 1, 3].
    Rows are sorted by score desc then name asc; each gets rank and is_tied.
    """
    ordered = sorted(rows, key=lambda r: (-(r.get(score_key) or 0), r.get("name") or ""))
    ranked = []
    rank = 0
    prev = None
    for i, r in enumerate(ordered):
        score = r.get(score_key) or 0
        if score != prev:
            rank = i + 1
            prev = score
        ranked.append({**r, "rank": rank})

    counts = defaultdict(int)
    for r in ranked:
        counts[r["rank"]] += 1
    for r in ranked:
        r["is_tied"] = counts[r["rank"]] > 1
    return ranked


def rank_for_user(rows: List[Dict[str, Any]], user_id: str) -> Optional[Tuple[int, int]]:
    for r in rows:
        if r["user_id"] == user_id:
            return r["rank"], len(rows)
    return None


# --------------------------------------------------------
# --------------------- Leaderboards ---------------------
# --------------------------------------------------------

def points_by_user_gw(gw_points: Iterable[Dict[str, Any]]) -> Dict[str, Dict[int, int]]:
    out = defaultdict(dict)
    for r in gw_points:
        out[r["user_id"]][int(r["gw"])] = int(r.get("points") or 0)
    return out


def latest_gw(gw_points: Iterable[Dict[str, Any]]) -> Optional[int]:
    gws = [int(r["gw"]) for r in gw_points]
    return max(gws) if gws else None


def last_gw_leaderboard(gw_points, names: Dict[str, str], gw: int) -> List[Dict[str, Any]]:
    rows = [
        {"user_id": uid, "name": names.get(uid) or "User", "points": by_gw[gw]}
        for uid, by_gw in points_by_user_gw(gw_points).items()
        if gw in by_gw
    ]
    return assign_joint_ranks(rows)


def form_leaderboard(gw_points, names: Dict[str, str], gw: int, weeks: int) -> List[Dict[str, Any]]:
    """
    Points over the last `weeks` gameweeks ending at gw. A user missing any
    gameweek in the window is left out entirely. Empty until gw >= weeks.
    """
    if gw is None or gw < weeks:
        return []
    window = range(gw - weeks + 1, gw + 1)
    rows = []
    for uid, by_gw in points_by_user_gw(gw_points).items():
        if not all(g in by_gw for g in window):
            continue
        rows.append({
            "user_id": uid,
            "name": names.get(uid) or "User",
            "points": sum(by_gw[g] for g in window),
            "weeks_played": weeks,
        })
    return assign_joint_ranks(rows)


def _movement(curr: Optional[int], prev: Optional[int]) -> str:
    if prev is None:
        return "new"
    if curr < prev:
        return "up"
    if curr > prev:
        return "down"
    return "same"


def season_leaderboard(gw_points, names: Dict[str, str], gw: Optional[int] = None) -> List[Dict[str, Any]]:
    """Season OCP up to gw, with rank movement against the board as it stood after gw - 1."""
    by_user = points_by_user_gw(gw_points)
    if gw is None:
        gw = max((g for by_gw in by_user.values() for g in by_gw), default=0)

    def board(upto):
        rows = []
        for uid, by_gw in by_user.items():
            played = [g for g in by_gw if g <= upto]
            if not played:
                continue
            rows.append({
                "user_id": uid,
                "name": names.get(uid) or "User",
                "points": sum(by_gw[g] for g in played),
            })
        return assign_joint_ranks(rows)

    prev_ranks = {r["user_id"]: r["rank"] for r in board(gw - 1)}
    current = board(gw)
    for r in current:
        r["prev_rank"] = prev_ranks.get(r["user_id"])
        r["movement"] = _movement(r["rank"], r["prev_rank"])
    return current


def leaderboard_for_period(period: str, gw_points, names: Dict[str, str]) -> Dict[str, Any]:
    gw_points = list(gw_points)
    gw = latest_gw(gw_points)
    if period == "lastgw":
        rows = last_gw_leaderboard(gw_points, names, gw) if gw else []
    elif period in FORM_WINDOWS:
        rows = form_leaderboard(gw_points, names, gw, FORM_WINDOWS[period])
    elif period == "overall":
        rows = season_leaderboard(gw_points, names, gw) if gw else []
    else:
        raise ValueError(f"Unknown leaderboard period: {period}")
    return {"period": period, "latest_gw": gw, "rows": rows}


# --------------------------------------------------------
# ------------------ League start gameweek ---------------
# --------------------------------------------------------

def gameweek_deadlines(first_kickoffs: Dict[int, Any]) -> Dict[int, Any]:
    """gw -> deadline, where the deadline is the GW's first kickoff minus the buffer."""
    out = {}
    for gw, kickoff in first_kickoffs.items():
        ko = parse_iso8601_utc(kickoff)
        if ko is not None:
            out[int(gw)] = ko - timedelta(minutes=DEADLINE_BUFFER_MINUTES)
    return out


def resolve_league_start_gw(league: Dict[str, Any], deadlines: Dict[int, Any], completed_gws: Iterable[int],
                            current_gw: int, overrides: Optional[Dict[str, int]] = None) -> int:
    """
    First gameweek that counts for a league:
      1. name in the override table
      2. stored start_gw
      3. earliest completed GW whose deadline is at or after created_at
      4. one past the latest completed GW, or current_gw when nothing is completed
    """
    overrides = LEAGUE_START_OVERRIDES if overrides is None else overrides
    name = league.get("name")
    if name and name in overrides:
        return overrides[name]

    if league.get("start_gw") is not None:
        return int(league["start_gw"])

    completed = sorted({int(g) for g in completed_gws})
    created_at = parse_iso8601_utc(league.get("created_at"))
    if created_at is not None:
        for gw in completed:
            deadline = deadlines.get(gw)
            if deadline is not None and deadline >= created_at:
                return gw
        if completed:
            return completed[-1] + 1

    return current_gw


def relevant_gameweeks(start_gw: int, gws_with_results: Iterable[int]) -> List[int]:
    return sorted(g for g in set(gws_with_results) if g >= start_gw)


# --------------------------------------------------------
# ---------------- Gameweek results summary --------------
# --------------------------------------------------------

def _rank_change(before, after):
    if before is None or after is None:
        return None
    return before - after


def gw_results_summary(user_id: str, gw: int, gw_points, names: Dict[str, str], total_fixtures: int,
                       league_gw_tables: Iterable[Tuple[Dict[str, Any], List[Dict[str, Any]]]]) -> Dict[str, Any]:
    """
    What one user got out of one gameweek: score, GW rank, trophies (rank 1 on the
    GW / form / season boards after this GW), outright mini-league wins and how
    their season and form ranks moved.
    """
    gw_points = [r for r in gw_points if int(r["gw"]) <= gw]
    by_user = points_by_user_gw(gw_points)
    score = by_user.get(user_id, {}).get(gw, 0)

    gw_board = last_gw_leaderboard(gw_points, names, gw)
    gw_rank = rank_for_user(gw_board, user_id)

    boards_after = {
        "overall": season_leaderboard(gw_points, names, gw),
        "form5": form_leaderboard(gw_points, names, gw, 5),
        "form10": form_leaderboard(gw_points, names, gw, 10),
    }
    earlier = [r for r in gw_points if int(r["gw"]) < gw]
    boards_before = {
        "overall": season_leaderboard(earlier, names, gw - 1) if earlier else [],
        "form5": form_leaderboard(earlier, names, gw - 1, 5),
        "form10": form_leaderboard(earlier, names, gw - 1, 10),
    }

    changes = {}
    for key, after_rows in boards_after.items():
        after = rank_for_user(after_rows, user_id)
        before = rank_for_user(boards_before[key], user_id)
        after_rank = after[0] if after else None
        before_rank = before[0] if before else None
        changes[key] = {"before": before_rank, "after": after_rank, "change": _rank_change(before_rank, after_rank)}

    trophies = {
        "gw": bool(gw_rank) and gw_rank[0] == 1,
        "form5": changes["form5"]["after"] == 1,
        "form10": changes["form10"]["after"] == 1,
        "overall": changes["overall"]["after"] == 1,
    }

    victories = []
    for league, rows in league_gw_tables:
        if len(rows) < 2:
            continue
        winners = gw_winners(rows)
        if winners == [user_id]:
            victories.append({"id": league.get("id"), "name": league.get("name") or "Unknown League"})

    return {
        "gw": gw,
        "score": score,
        "total_fixtures": total_fixtures,
        "gw_rank": gw_rank[0] if gw_rank else None,
        "gw_rank_total": gw_rank[1] if gw_rank else None,
        "trophies": trophies,
        "ml_victories": len(victories),
        "ml_victory_leagues": victories,
        "leaderboard_changes": changes,
    }

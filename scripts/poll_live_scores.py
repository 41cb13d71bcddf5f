import os
import re
import time
import requests
from datetime import datetime, timezone
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
FOOTBALL_DATA_API_KEY = os.getenv("FOOTBALL_DATA_API_KEY")
FOOTBALL_DATA_BASE_URL = "https://api.football-data.org/v4"

# Seconds between match requests (free tier allows ~10 requests/minute)
POLL_DELAY_SECONDS = float(os.getenv("POLL_DELAY_SECONDS", "2"))

# How many gameweeks ahead of the current one to look for started fixtures
LOOKAHEAD_GWS = 5

DEBUG_POLL = os.getenv("ENABLE_DEBUG_LOGS", "0") == "1"

# Feed team names -> the short names used in our fixtures tables
TEAM_NAME_MAP = {
    "manchester city": "Man City",
    "manchester united": "Man United",
    "newcastle united": "Newcastle",
    "west ham united": "West Ham",
    "tottenham hotspur": "Spurs",
    "wolverhampton wanderers": "Wolves",
    "brighton and hove albion": "Brighton",
    "brighton hove albion": "Brighton",
    "leeds united": "Leeds",
    "nottingham forest": "Forest",
    "crystal palace": "Palace",
    "aston villa": "Villa",
}

RED_CARDS = ("RED_CARD", "RED")


def get_supabase() -> Client:
    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError(
            "SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is not set. "
            "Make sure they are in your .env or environment before running poll_live_scores.py."
        )
    return create_client(SUPABASE_URL, SUPABASE_KEY)


def normalize_team_name(name):
    """'Nottingham Forest FC' -> 'Forest', 'Brighton & Hove Albion FC' -> 'Brighton'."""
    if not name:
        return None

    key = name.lower().replace("&amp;", " ")
    key = re.sub(r"\s+fc\s*$", "", key)
    key = re.sub(r"\s*&\s*", " ", key)
    key = re.sub(r"\s+", " ", key).strip()
    if key in TEAM_NAME_MAP:
        return TEAM_NAME_MAP[key]

    titled = " ".join(w[:1].upper() + w[1:].lower() for w in name.split(" "))
    return re.sub(r"\s+FC\s*$", "", titled, flags=re.IGNORECASE).strip()


def _score_side(score, side):
    for period in ("fullTime", "halfTime", "current"):
        val = (score.get(period) or {}).get(side)
        if val is not None:
            return val
    return 0


def build_live_score_row(fixture, match, current_gw):
    """Map one football-data.org /matches/{id} response onto a live_scores row."""
    score = match.get("score") or {}
    status = match.get("status") or "SCHEDULED"
    minute = match.get("minute") or match.get("currentMinute") or score.get("minute")

    goals = []
    for g in match.get("goals") or []:
        team = g.get("team") or {}
        goals.append({
            "minute": g.get("minute"),
            "scorer": (g.get("scorer") or {}).get("name"),
            "scorerId": (g.get("scorer") or {}).get("id"),
            "team": normalize_team_name(team.get("name")),
            "teamId": team.get("id"),
            "isOwnGoal": g.get("type") == "OWN",
        })

    red_cards = []
    for b in match.get("bookings") or []:
        if b.get("card") not in RED_CARDS:
            continue
        team = b.get("team") or {}
        red_cards.append({
            "minute": b.get("minute"),
            "player": (b.get("player") or {}).get("name"),
            "playerId": (b.get("player") or {}).get("id"),
            "team": normalize_team_name(team.get("name")),
            "teamId": team.get("id"),
        })

    home = match.get("homeTeam") or {}
    away = match.get("awayTeam") or {}

    return {
        "api_match_id": fixture["api_match_id"],
        "gw": fixture.get("gw") or current_gw,
        "fixture_index": fixture.get("fixture_index"),
        "home_score": _score_side(score, "home"),
        "away_score": _score_side(score, "away"),
        "status": status,
        # FT doesn't need a minute
        "minute": None if status == "FINISHED" else minute,
        "home_team": fixture.get("home_team") or home.get("name"),
        "away_team": fixture.get("away_team") or away.get("name"),
        "home_team_id": home.get("id"),
        "away_team_id": away.get("id"),
        "kickoff_time": fixture.get("kickoff_time") or match.get("utcDate"),
        "goals": goals or None,
        "red_cards": red_cards or None,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


def fetch_match(api_match_id):
    """Returns the match JSON, or None when rate limited / errored (retried next run)."""
    url = f"{FOOTBALL_DATA_BASE_URL}/matches/{api_match_id}"
    headers = {
        "X-Auth-Token": FOOTBALL_DATA_API_KEY or "",
        "Cache-Control": "no-cache",
    }
    try:
        response = requests.get(url, headers=headers, timeout=15)
    except requests.RequestException as e:
        print(f"[pollLiveScores] 🚨 Request failed for match {api_match_id}: {type(e).__name__}")
        return None

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        print(f"[pollLiveScores] ⚠️ Rate limited for match {api_match_id}, retry after {retry_after}s")
        return None
    if not response.ok:
        print(f"[pollLiveScores] 🚨 API error for match {api_match_id}: {response.status_code}")
        return None

    return response.json()


def should_poll(fixture, existing_status, now=None):
    """Started (by kickoff time) and not already FINISHED in live_scores."""
    if existing_status == "FINISHED":
        return False
    kickoff = fixture.get("kickoff_time")
    if not kickoff:
        return True
    try:
        ko = datetime.fromisoformat(str(kickoff).replace("Z", "+00:00"))
    except ValueError:
        return True
    if ko.tzinfo is None:
        ko = ko.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) >= ko


def fixtures_to_poll(supabase, current_gw):
    cols = "api_match_id, fixture_index, home_team, away_team, kickoff_time, gw"
    regular = (
        supabase.table("fixtures").select(cols)
        .eq("gw", current_gw)
        .not_.is_("api_match_id", "null")
        .execute()
    ).data or []
    app_fixtures = (
        supabase.table("app_fixtures").select(cols)
        .gte("gw", current_gw)
        .lte("gw", current_gw + LOOKAHEAD_GWS)
        .not_.is_("api_match_id", "null")
        .order("gw")
        .order("fixture_index")
        .execute()
    ).data or []

    # Same match can sit in both tables; poll it once
    fixtures = list({f["api_match_id"]: f for f in regular + app_fixtures}.values())
    if not fixtures:
        return []

    existing = (
        supabase.table("live_scores")
        .select("api_match_id, status")
        .in_("api_match_id", [f["api_match_id"] for f in fixtures])
        .execute()
    ).data or []
    status_by_id = {r["api_match_id"]: r.get("status") for r in existing}

    return [f for f in fixtures if should_poll(f, status_by_id.get(f["api_match_id"]))]


def poll_live_scores(supabase=None, fetch=fetch_match, sleep=time.sleep):
    supabase = supabase or get_supabase()

    meta = supabase.table("app_meta").select("current_gw").eq("id", 1).limit(1).execute().data
    current_gw = (meta[0].get("current_gw") if meta else None) or 1
    print(f"[pollLiveScores] [{datetime.now(timezone.utc)}] ⚽ Current GW {current_gw}")

    to_poll = fixtures_to_poll(supabase, current_gw)
    if not to_poll:
        print("[pollLiveScores] Nothing started or everything finished, skipping")
        return []

    print(f"[pollLiveScores] Polling {len(to_poll)} fixtures")

    updates = []
    for i, fixture in enumerate(to_poll):
        if i > 0 and POLL_DELAY_SECONDS:
            sleep(POLL_DELAY_SECONDS)

        match = fetch(fixture["api_match_id"])
        if not match:
            continue

        row = build_live_score_row(fixture, match, current_gw)
        if DEBUG_POLL:
            print(
                f"[pollLiveScores] {row['api_match_id']}: {row['status']} "
                f"{row['home_score']}-{row['away_score']} ({len(row['goals'] or [])} goals)"
            )
        updates.append(row)

    if updates:
        # Each changed row fires the live_scores database webhook
        supabase.table("live_scores").upsert(updates, on_conflict="api_match_id").execute()
        print(f"[pollLiveScores] ✅ Upserted {len(updates)} live score rows")

    return updates


if __name__ == "__main__":
    poll_live_scores()

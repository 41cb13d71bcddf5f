# data_store.py
import asyncio
import os
from typing import Any, Dict, Iterable, List, Optional

from supabase import AsyncClient, acreate_client

from live_events import FINISHED_STATUSES, FixtureContext
from utils import debug_print


PAGE_SIZE = 1000

# Fixture table -> where its picks / results live. Lookup order matters:
# a match id present in more than one table resolves to the first.
FIXTURE_SOURCES = {
    "fixtures": {
        "gw_column": "gw",
        "picks_table": "picks",
        "picks_gw_column": "gw",
        "results_table": "gw_results",
    },
    "test_api_fixtures": {
        "gw_column": "test_gw",
        "picks_table": "test_api_picks",
        "picks_gw_column": "matchday",
        "results_table": None,
    },
    "app_fixtures": {
        "gw_column": "gw",
        "picks_table": "app_picks",
        "picks_gw_column": "gw",
        "results_table": "app_gw_results",
    },
}

APP_FIXTURES_TABLE = "app_fixtures"
APP_PICKS_TABLE = "app_picks"
APP_RESULTS_TABLE = "app_gw_results"
GW_POINTS_VIEW = "app_v_gw_points"
LIVE_SCORES_TABLE = "live_scores"
META_TABLE = "app_meta"


class SupabaseStore:
    """Async reads against the Supabase tables the webhook and standings views need."""

    def __init__(self, client: AsyncClient):
        self.client = client

    @classmethod
    async def connect(cls, url: Optional[str] = None, key: Optional[str] = None) -> "SupabaseStore":
        url = url or os.getenv("SUPABASE_URL")
        key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
        return cls(await acreate_client(url, key))

    async def close(self) -> None:
        # All reads go through PostgREST; its httpx session is bound to the request's loop
        await self.client.postgrest.aclose()

    async def _select_all(self, build_query) -> List[Dict[str, Any]]:
        # PostgREST caps responses, so page until a short page comes back
        rows = []
        start = 0
        while True:
            page = (await build_query().range(start, start + PAGE_SIZE - 1).execute()).data or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    # -------------------- Webhook reads ---------------------

    async def _fixture_from(self, table: str, api_match_id: int) -> Optional[FixtureContext]:
        source = FIXTURE_SOURCES[table]
        gw_col = source["gw_column"]
        data = (
            await self.client.table(table)
            .select(f"fixture_index, {gw_col}, home_team, away_team")
            .eq("api_match_id", api_match_id)
            .limit(1)
            .execute()
        ).data
        if not data:
            return None

        row = data[0]
        gw = row.get(gw_col) or 1
        return FixtureContext(
            api_match_id=api_match_id,
            gw=gw,
            fixture_index=row["fixture_index"],
            home_team=row.get("home_team") or "Home",
            away_team=row.get("away_team") or "Away",
            source=table,
            picks_gw=gw,
        )

    async def find_fixture(self, api_match_id: int) -> Optional[FixtureContext]:
        found = await asyncio.gather(*(self._fixture_from(t, api_match_id) for t in FIXTURE_SOURCES))
        for fixture in found:
            if fixture is not None:
                debug_print(f"[scoreWebhook] api_match_id {api_match_id} -> {fixture.source} gw {fixture.gw}")
                return fixture
        return None

    async def fetch_fixture_picks(self, fixture: FixtureContext) -> Dict[str, str]:
        source = FIXTURE_SOURCES[fixture.source]
        data = (
            await self.client.table(source["picks_table"])
            .select("user_id, pick")
            .eq(source["picks_gw_column"], fixture.picks_gw or fixture.gw)
            .eq("fixture_index", fixture.fixture_index)
            .execute()
        ).data or []
        return {row["user_id"]: row.get("pick") for row in data}

    async def fetch_declared_outcome(self, fixture: FixtureContext) -> Optional[str]:
        results_table = FIXTURE_SOURCES[fixture.source]["results_table"]
        if not results_table:
            return None
        data = (
            await self.client.table(results_table)
            .select("result")
            .eq("gw", fixture.gw)
            .eq("fixture_index", fixture.fixture_index)
            .limit(1)
            .execute()
        ).data
        return data[0].get("result") if data else None

    async def gameweek_all_finished(self, fixture: FixtureContext) -> bool:
        source = FIXTURE_SOURCES[fixture.source]
        fixtures = (
            await self.client.table(fixture.source)
            .select("api_match_id")
            .eq(source["gw_column"], fixture.gw)
            .not_.is_("api_match_id", "null")
            .execute()
        ).data or []
        match_ids = [f["api_match_id"] for f in fixtures]
        if not match_ids:
            return False

        live = (
            await self.client.table(LIVE_SCORES_TABLE)
            .select("api_match_id, status")
            .in_("api_match_id", match_ids)
            .execute()
        ).data or []
        finished = {r["api_match_id"] for r in live if r.get("status") in FINISHED_STATUSES}
        return finished >= set(match_ids)

    async def fetch_gameweek_user_ids(self, fixture: FixtureContext) -> List[str]:
        source = FIXTURE_SOURCES[fixture.source]
        rows = await self._select_all(
            lambda: self.client.table(source["picks_table"])
            .select("user_id")
            .eq(source["picks_gw_column"], fixture.picks_gw or fixture.gw)
        )
        return list(dict.fromkeys(r["user_id"] for r in rows))

    async def load_preferences(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        if not user_ids:
            return {}
        data = (
            await self.client.table("user_notification_preferences")
            .select("user_id, preferences")
            .in_("user_id", user_ids)
            .execute()
        ).data or []
        return {r["user_id"]: r.get("preferences") or {} for r in data}

    # ------------------- Standings reads --------------------

    async def current_gw(self) -> int:
        data = (await self.client.table(META_TABLE).select("current_gw").eq("id", 1).limit(1).execute()).data
        return (data[0].get("current_gw") if data else None) or 1

    async def fetch_results(self, gws: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
        def query():
            q = self.client.table(APP_RESULTS_TABLE).select("gw, fixture_index, result")
            return q.in_("gw", list(gws)) if gws is not None else q
        return await self._select_all(query)

    async def fetch_picks(self, gws: Iterable[int], user_ids: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        gws = list(gws)
        if not gws:
            return []

        def query():
            q = self.client.table(APP_PICKS_TABLE).select("user_id, gw, fixture_index, pick").in_("gw", gws)
            return q.in_("user_id", list(user_ids)) if user_ids is not None else q
        return await self._select_all(query)

    async def fetch_fixtures(self, gw: int) -> List[Dict[str, Any]]:
        return (
            await self.client.table(APP_FIXTURES_TABLE)
            .select("gw, fixture_index, home_team, away_team, kickoff_time, api_match_id")
            .eq("gw", gw)
            .order("fixture_index")
            .execute()
        ).data or []

    async def fetch_live_scores(self, api_match_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = [i for i in api_match_ids if i is not None]
        if not ids:
            return []
        return (
            await self.client.table(LIVE_SCORES_TABLE)
            .select("api_match_id, home_score, away_score, status, minute")
            .in_("api_match_id", ids)
            .execute()
        ).data or []

    async def fetch_first_kickoffs(self) -> Dict[int, str]:
        rows = await self._select_all(
            lambda: self.client.table(APP_FIXTURES_TABLE).select("gw, kickoff_time").not_.is_("kickoff_time", "null")
        )
        first = {}
        for r in rows:
            gw = int(r["gw"])
            if gw not in first or r["kickoff_time"] < first[gw]:
                first[gw] = r["kickoff_time"]
        return first

    async def fetch_league(self, league_id: str) -> Optional[Dict[str, Any]]:
        data = (
            await self.client.table("leagues")
            .select("id, name, created_at")
            .eq("id", league_id)
            .limit(1)
            .execute()
        ).data
        return data[0] if data else None

    async def fetch_league_members(self, league_id: str) -> List[Dict[str, Any]]:
        data = (
            await self.client.table("league_members")
            .select("user_id, users(name)")
            .eq("league_id", league_id)
            .execute()
        ).data or []
        members = []
        for r in data:
            user = r.get("users") or {}
            members.append({"id": r["user_id"], "name": user.get("name") or "User"})
        return sorted(members, key=lambda m: m["name"])

    async def fetch_user_league_ids(self, user_id: str) -> List[str]:
        data = (
            await self.client.table("league_members")
            .select("league_id")
            .eq("user_id", user_id)
            .execute()
        ).data or []
        return [r["league_id"] for r in data]

    async def fetch_gw_points(self) -> List[Dict[str, Any]]:
        return await self._select_all(
            lambda: self.client.table(GW_POINTS_VIEW).select("user_id, gw, points").order("gw")
        )

    async def fetch_user_names(self, user_ids: Optional[Iterable[str]] = None) -> Dict[str, str]:
        def query():
            q = self.client.table("users").select("id, name")
            return q.in_("id", list(user_ids)) if user_ids is not None else q
        rows = await self._select_all(query)
        return {r["id"]: r.get("name") or "User" for r in rows}

    async def fixture_count(self, gw: int) -> int:
        return len(await self.fetch_fixtures(gw))

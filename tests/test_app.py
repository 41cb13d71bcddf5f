# test_app.py
import asyncio

import jwt
import pytest

import app as app_module
from data_store import SupabaseStore
from live_events import FixtureContext


JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"

FIXTURE = FixtureContext(api_match_id=555, gw=12, fixture_index=3, home_team="Arsenal", away_team="Forest")

GOAL_WEBHOOK = {
    "type": "UPDATE",
    "table": "live_scores",
    "old_record": {"api_match_id": 555, "home_score": 0, "away_score": 0, "status": "IN_PLAY", "goals": []},
    "record": {
        "api_match_id": 555, "home_score": 1, "away_score": 0, "status": "IN_PLAY",
        "goals": [{"scorer": "J. Smith", "minute": 23, "team": "home"}],
    },
}


class LeagueStore:
    """Enough of SupabaseStore for the league and leaderboard routes."""

    def __init__(self):
        self.members = [{"id": "ann", "name": "Ann"}, {"id": "bob", "name": "Bob"}, {"id": "cat", "name": "Cat"}]
        self.results = [
            {"gw": 1, "fixture_index": 0, "result": "H"},
            {"gw": 1, "fixture_index": 1, "result": "A"},
        ]
        self.picks = [
            {"user_id": "ann", "gw": 1, "fixture_index": 0, "pick": "H"},
            {"user_id": "ann", "gw": 1, "fixture_index": 1, "pick": "A"},
            {"user_id": "bob", "gw": 1, "fixture_index": 0, "pick": "H"},
            {"user_id": "bob", "gw": 1, "fixture_index": 1, "pick": "D"},
            {"user_id": "cat", "gw": 1, "fixture_index": 0, "pick": "D"},
        ]
        self.gw_points = [
            {"user_id": "ann", "gw": 1, "points": 2},
            {"user_id": "bob", "gw": 1, "points": 1},
        ]
        self.closed = False

    async def fetch_league(self, league_id):
        return {"id": league_id, "name": "Office", "start_gw": 1} if league_id == "l1" else None

    async def fetch_league_members(self, league_id):
        return self.members if league_id == "l1" else []

    async def current_gw(self):
        return 2

    async def fetch_results(self, gws=None):
        return [r for r in self.results if gws is None or r["gw"] in gws]

    async def fetch_first_kickoffs(self):
        return {1: "2025-08-16T11:30:00Z"}

    async def fetch_picks(self, gws, user_ids=None):
        return [p for p in self.picks if p["gw"] in gws]

    async def fetch_gw_points(self):
        return list(self.gw_points)

    async def fetch_user_names(self, user_ids=None):
        return {m["id"]: m["name"] for m in self.members}

    async def close(self):
        self.closed = True


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(app_module, "DISABLE_RATE_LIMITS", True)
    monkeypatch.setattr(app_module, "HEALTHCHECK_TOKEN", None)
    monkeypatch.setattr(app_module, "WEBHOOK_SECRET", None)
    monkeypatch.setattr(app_module, "SUPABASE_JWT_SECRET", JWT_SECRET)
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


def use_store(monkeypatch, store, dispatcher=None):
    async def get_store():
        return store

    monkeypatch.setattr(app_module, "get_store", get_store)
    if dispatcher is not None:
        monkeypatch.setattr(app_module, "get_dispatcher", lambda s: dispatcher)


def bearer(sub="ann"):
    token = jwt.encode({"sub": sub, "aud": "authenticated"}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


# ------------------------ Health ------------------------

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"].startswith("no-store")


def test_health_hidden_without_token(client, monkeypatch):
    monkeypatch.setattr(app_module, "HEALTHCHECK_TOKEN", "s3cret")
    assert client.get("/health").status_code == 404
    assert client.get("/health", headers={"X-Health-Token": "s3cret"}).status_code == 200


# ----------------------- Webhook ------------------------

def test_webhook_without_match_id_is_acknowledged(client):
    resp = client.post("/webhooks/live-scores", json={"hello": "world"})

    assert resp.status_code == 200
    assert resp.get_json()["message"] == "No match ID"


def test_webhook_secret_mismatch(client, monkeypatch):
    monkeypatch.setattr(app_module, "WEBHOOK_SECRET", "hook-secret")

    resp = client.post("/webhooks/live-scores", json=GOAL_WEBHOOK, headers={"X-Webhook-Secret": "nope"})

    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Unauthorized"}


def test_webhook_goal(client, monkeypatch, fake_store, fake_dispatcher):
    dispatcher = fake_dispatcher()
    use_store(monkeypatch, fake_store(fixture=FIXTURE, picks={"u1": "H", "u2": "A", "u3": "D"}), dispatcher)
    monkeypatch.setattr(app_module, "WEBHOOK_SECRET", "hook-secret")

    resp = client.post("/webhooks/live-scores", json=GOAL_WEBHOOK, headers={"X-Webhook-Secret": "hook-secret"})
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["event"] == "goal"
    assert body["event_id"] == "goal:555:j_smith:23"
    assert body["sentTo"] == 3
    assert {i["event_id"] for i in dispatcher.intents} == {
        "goal:555:j_smith:23:ontrack",
        "goal:555:j_smith:23:offtrack",
    }


def test_webhook_unknown_fixture(client, monkeypatch, fake_store, fake_dispatcher):
    use_store(monkeypatch, fake_store(fixture=None), fake_dispatcher())

    resp = client.post("/webhooks/live-scores", json=GOAL_WEBHOOK)

    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Fixture not found"


def test_webhook_store_failure_is_500(client, monkeypatch, fake_store, fake_dispatcher):
    use_store(monkeypatch, fake_store(error=ConnectionError("supabase down")), fake_dispatcher())

    resp = client.post("/webhooks/live-scores", json=GOAL_WEBHOOK)

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}


# --------------------- Leaderboards ---------------------

def test_unknown_leaderboard_period(client):
    resp = client.get("/leaderboards/yesterday")
    assert resp.status_code == 400


def test_lastgw_leaderboard(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())

    body = client.get("/leaderboards/lastgw").get_json()

    assert body["latest_gw"] == 1
    assert [(r["name"], r["rank"]) for r in body["rows"]] == [("Ann", 1), ("Bob", 2)]


def test_form_leaderboard_empty_early_in_season(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())

    body = client.get("/leaderboards/form5").get_json()

    assert body["rows"] == []


# -------------------- League tables ---------------------

def test_league_table_requires_auth(client):
    assert client.get("/leagues/l1/table").status_code == 401


def test_league_table_rejects_bad_token(client):
    resp = client.get("/leagues/l1/table", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_league_table(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())

    resp = client.get("/leagues/l1/table", headers=bearer("bob"))
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["relevant_gws"] == [1]
    assert body["rows"][0]["name"] == "Ann"
    assert body["rows"][0]["league_points"] == 3
    assert body["rows"][0]["unicorns"] == 1


def test_league_table_for_non_member(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())
    assert client.get("/leagues/l1/table", headers=bearer("zed")).status_code == 403


def test_missing_league(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())
    assert client.get("/leagues/nope/table", headers=bearer("ann")).status_code == 404


def test_league_gw_table(client, monkeypatch):
    use_store(monkeypatch, LeagueStore())

    body = client.get("/leagues/l1/gw/1", headers=bearer("ann")).get_json()

    assert body["winners"] == ["ann"]
    assert body["league_points"] == {"ann": 3}
    assert body["fixtures_counted"] == 2


# -------------------- Store lifetime --------------------

def test_store_closed_after_request(client, monkeypatch):
    store = LeagueStore()
    use_store(monkeypatch, store)

    client.get("/leaderboards/overall")

    assert store.closed, "store connections left open after the request"


def test_store_closed_when_request_fails(client, monkeypatch, fake_store, fake_dispatcher):
    store = fake_store(error=ConnectionError("supabase down"))
    use_store(monkeypatch, store, fake_dispatcher())

    assert client.post("/webhooks/live-scores", json=GOAL_WEBHOOK).status_code == 500
    assert store.closed


def test_store_closed_on_forbidden_league(client, monkeypatch):
    store = LeagueStore()
    use_store(monkeypatch, store)

    assert client.get("/leagues/l1/gw/1", headers=bearer("zed")).status_code == 403
    assert store.closed


def test_supabase_store_close_releases_postgrest_session():
    class Postgrest:
        closed = False

        async def aclose(self):
            self.closed = True

    class Client:
        postgrest = Postgrest()

    client = Client()
    asyncio.run(SupabaseStore(client).close())

    assert client.postgrest.closed

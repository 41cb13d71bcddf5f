# conftest.py
import pytest


class FakeStore:
    """Stands in for data_store.SupabaseStore on the webhook path."""

    def __init__(self, fixture=None, picks=None, declared=None, all_finished=False, gw_users=None, error=None):
        self.fixture = fixture
        self.picks = picks or {}
        self.declared = declared
        self.all_finished = all_finished
        self.gw_users = gw_users or []
        self.error = error
        self.client = None
        self.closed = False

    async def find_fixture(self, api_match_id):
        if self.error:
            raise self.error
        return self.fixture

    async def fetch_fixture_picks(self, fixture):
        return dict(self.picks)

    async def fetch_declared_outcome(self, fixture):
        return self.declared

    async def gameweek_all_finished(self, fixture):
        return self.all_finished

    async def fetch_gameweek_user_ids(self, fixture):
        return list(self.gw_users)

    async def load_preferences(self, user_ids):
        return {}

    async def close(self):
        self.closed = True


class FakeDispatcher:
    """Accepts everything, records intents, optionally raises for given event ids."""

    def __init__(self, raise_on=()):
        self.intents = []
        self.raise_on = set(raise_on)

    async def dispatch(self, intent):
        self.intents.append(intent)
        if intent["event_id"] in self.raise_on:
            raise RuntimeError("dispatch failed")
        return {"results": {"accepted": len(intent["user_ids"]), "failed": 0}}


@pytest.fixture
def fake_store():
    return FakeStore


@pytest.fixture
def fake_dispatcher():
    return FakeDispatcher

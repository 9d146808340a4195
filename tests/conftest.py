"""
Shared fixtures: a controllable clock, in-memory stores (including one that
can be told to fail), and scripted stand-ins for outbound HTTP.
"""
import json

import pytest

from mission_control.exceptions import StoreUnavailableError
from mission_control.factory import create_app
from mission_control.kv_store import InMemoryStore

START_MS = 1_700_000_000_000

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret",
    "API_KEY_SECRET": "test-api-key",
    "GHOST_SIGNATURE": "test-signing-key",
    "GHOST_KEY_ID": "k1",
    "DEPLOYMENT_ID": "deploy-123",
    "REGION_ID": "eu-west-1",
    "CANARY_PERCENT": 25,
    "MONITOR_ENABLED": False,
    "MONITOR_TARGETS": [],
    "PAGERDUTY_INTEGRATION_KEY": None,
}


class FakeClock:
    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FlakyStore(InMemoryStore):
    """In-memory store whose reads and writes can be switched off."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.fail_reads = False
        self.fail_writes = False

    def get(self, key):
        if self.fail_reads:
            raise StoreUnavailableError("store down")
        return super().get(key)

    def put(self, key, value, ttl_seconds=None):
        if self.fail_writes:
            raise StoreUnavailableError("store down")
        super().put(key, value, ttl_seconds)

    def list(self, prefix=""):
        if self.fail_reads:
            raise StoreUnavailableError("store down")
        return super().list(prefix)

    def ping(self):
        return not (self.fail_reads or self.fail_writes)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self._text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._text is not None:
            return json.loads(self._text)
        return self._payload


class FakeSession:
    """Scripted replacement for requests.Session: returns or raises queued outcomes."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def _next(self):
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._next()

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._next()


class RecordingPager:
    def __init__(self):
        self.triggers = []
        self.resolves = []

    def trigger(self, dedup_key, summary, details=None):
        self.triggers.append((dedup_key, summary, details))
        return True

    def resolve(self, dedup_key):
        self.resolves.append(dedup_key)
        return True


def signed_payload(integrity, status="healthy"):
    record = integrity.heartbeat(status=status)
    signature = integrity.sign(record)
    return {
        "heartbeat": record.model_dump(exclude_none=True),
        "signature": signature,
        "verified": True,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FlakyStore(clock)


@pytest.fixture
def pager():
    return RecordingPager()


@pytest.fixture
def http_session():
    return FakeSession([FakeResponse(200, {})])


@pytest.fixture
def app(store, clock, pager, http_session):
    return create_app(
        config_overrides=dict(TEST_CONFIG),
        store=store,
        pager=pager,
        http_session=http_session,
        clock=clock,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def api_headers():
    return {"X-API-Key": "test-api-key"}

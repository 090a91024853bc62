"""Shared pytest fixtures for the Tonkotsu chat engine and its Flask app."""

import itertools

import pytest

from chat_service import ChatService
from interactive_setup import get_default_settings
from policy import ChatPolicy
from security import reset_rate_limits
from server_init import create_app
from storage import MemoryStore

START = 1_700_000_000.0


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start=START):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class RecordingEvents:
    """Event sink that keeps everything ChatService sends out."""

    def __init__(self):
        self.delivered = []
        self.broadcasts = []
        self.disconnected = []

    def deliver(self, identity_id, event, payload):
        self.delivered.append((identity_id, event, payload))

    def broadcast(self, event, payload):
        self.broadcasts.append((event, payload))

    def disconnect_identity(self, identity_id, payload):
        self.disconnected.append(("identity", identity_id, payload))

    def disconnect_connection(self, connection_id, payload):
        self.disconnected.append(("connection", connection_id, payload))

    def to(self, identity_id, event=None):
        return [p for i, e, p in self.delivered if i == identity_id and (event is None or e == event)]

    def clear(self):
        self.delivered.clear()
        self.broadcasts.clear()
        self.disconnected.clear()


@pytest.fixture(autouse=True)
def _fresh_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def policy():
    return ChatPolicy()


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def service(store, policy, events, clock):
    return ChatService(store, policy, events=events, clock=clock)


@pytest.fixture
def make_account(service):
    """Register (and by default connect) an account. Returns the Identity."""
    counter = itertools.count(1)

    def _make(username=None, password="hunter22", connect=True, ip="10.0.0.1"):
        username = username or f"user{next(counter)}"
        ident, _token = service.login(username, password, ip)
        if connect:
            service.connect(f"sid-{ident.username}", ident, ip)
        return ident

    return _make


@pytest.fixture
def make_guest(service):
    counter = itertools.count(1)

    def _make(name=None, connect=True, ip="10.0.0.2"):
        ident, _token = service.guest_join(name, ip)
        if connect:
            service.connect(f"sid-guest-{next(counter)}", ident, ip)
        return ident

    return _make


@pytest.fixture
def settings():
    s = get_default_settings()
    s.update({
        "secret_key": "test-secret-key",
        "jwt_secret": "test-jwt-secret-0123456789abcdef0123456789abcdef",
        "bot_shared_secret": "bot-secret",
        "http_rate_limits_enabled": False,
        "storage_backend": "memory",
    })
    return s


@pytest.fixture
def app_bundle(settings, clock):
    app, socketio = create_app(settings, store=MemoryStore(), clock=clock)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def app(app_bundle):
    return app_bundle[0]


@pytest.fixture
def socketio(app_bundle):
    return app_bundle[1]


@pytest.fixture
def chat(app):
    """The ChatService behind the test app."""
    return app.config["TONKOTSU_SERVICE"]


@pytest.fixture
def client(app):
    return app.test_client()

"""Shared fixtures: fake clock, recording event sink, a fully wired app."""

import pytest

from security.events import EventSink, MultiEventSink
from security.fingerprint import FingerprintSigner

SECRET_KEY = "0123456789abcdef0123456789abcdef-test-key"


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, name, data):
        self.events.append((name, data))

    def names(self):
        return [name for name, _ in self.events]

    def find(self, name):
        return [data for n, data in self.events if n == name]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def events():
    return RecordingSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signer(events):
    return FingerprintSigner(SECRET_KEY, events=events)


@pytest.fixture
def app(tmp_path, events, clock):
    from app import create_app
    from utils.audit import AuditEventSink

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "flask-test-secret",
            "FPID_SECRET_KEY": SECRET_KEY,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SESSION_STORAGE_PATH": str(tmp_path / "sessions"),
            "SESSION_COOKIE_NAME": "test_session",
            "SESSION_GC_PROBABILITY": 0,
            "LOG_LEVEL": "WARNING",
        },
        events=MultiEventSink([events, AuditEventSink()]),
        clock=clock,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    from models import db
    from models.user import Role, User
    from security.password import hash_password

    with app.app_context():
        admin = Role(name="admin")
        alice = User(username="alice", password_hash=hash_password("correct horse", rounds=4))
        alice.roles.append(admin)
        bob = User(username="bob", password_hash=hash_password("battery staple", rounds=4))
        db.session.add_all([admin, alice, bob])
        db.session.commit()
    return {"alice": "correct horse", "bob": "battery staple"}

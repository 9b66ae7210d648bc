"""Shared fixtures: an app on a throwaway SQLite file, a controllable clock,
and in-memory stand-ins for flask-sock sockets."""

import json
from datetime import timedelta

import gevent
import pytest
from flask_sock import ConnectionClosed

from drilunia import create_app
from drilunia.auth import IdentitySnapshot, hash_password
from drilunia.models import db, utcnow
from drilunia.registry import Session


class FakeClock:

    def __init__(self, start=None):
        # whole seconds so millisecond timestamps on the wire round-trip exactly
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeSocket:
    """Scripted socket. ``frames`` are returned by ``receive`` in order; a
    ``None`` frame simulates a receive timeout. Once exhausted the peer is
    gone and ``receive`` raises ``ConnectionClosed``."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = None
        self.fail_sends = False

    def send(self, data):
        if self.closed is not None or self.fail_sends:
            raise ConnectionClosed()
        self.sent.append(json.loads(data))

    def receive(self, timeout=None):
        if self.closed is not None or not self.frames:
            raise ConnectionClosed()
        frame = self.frames.pop(0)
        if frame is None or isinstance(frame, str):
            return frame
        return json.dumps(frame)

    def close(self, reason=None, message=None):
        if self.closed is None:
            self.closed = (reason, message)

    def of_type(self, envelope_type):
        return [e for e in self.sent if e.get('type') == envelope_type]


class StalledSocket(FakeSocket):
    """A peer that stopped reading: every write blocks."""

    def send(self, data):
        gevent.sleep(3)
        super().send(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(tmp_path, clock):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'HEARTBEAT_AUTOSTART': False,
        'REDIS_URL': '',
        'PUSH_BRIDGE_URL': '',
        'JWT_SECRET': 'test-access-secret',
        'JWT_REFRESH_SECRET': 'test-refresh-secret',
        'PRESENCE_SCOPE': 'all',
    }, clock=clock)
    with app.app_context():
        yield app
        app.extensions['drilunia'].heartbeat.stop()
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def server(app):
    return app.extensions['drilunia']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(server):
    """Create a user with a cheap bcrypt hash; extra fields are set afterwards."""

    def _make(username, password='correct horse battery', **fields):
        user = server.users.create(
            f'{username}@example.com', username, username.title(),
            hash_password(password, rounds=4),
        )
        for key, value in fields.items():
            setattr(user, key, value)
        if fields:
            db.session.commit()
        return user

    return _make


@pytest.fixture
def open_session(server, clock):
    """Register a live session for ``user`` the way the connection handler does."""

    def _open(user):
        session = Session(FakeSocket(), clock)
        session.open(IdentitySnapshot.of(user))
        if server.registry.register(session):
            server.presence.connected(session.identity)
        return session

    return _open


@pytest.fixture
def send(server):
    """Dispatch an envelope from ``session`` through the router."""

    def _send(session, envelope):
        server.router.dispatch(session, json.dumps(envelope))

    return _send


@pytest.fixture
def bearer(server):

    def _bearer(user):
        return {'Authorization': f'Bearer {server.tokens.issue(user.userId)}'}

    return _bearer

import json
import logging
import threading
import uuid

import gevent
from flask_sock import ConnectionClosed
from gevent.exceptions import ConcurrentObjectUseError

from .models import isoformat, utcnow


logger = logging.getLogger(__name__)


PENDING = 'pending'
OPEN = 'open'
CLOSED = 'closed'

CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

SEND_TIMEOUT = 5.0


class SendTimeout(Exception):
    """A write did not finish within the session's send timeout."""


SEND_ERRORS = (ConnectionClosed, OSError, SendTimeout)


class Session:
    """One live socket bound to one identity.

    Writes are serialized and bounded by ``send_timeout``; a peer that
    stops reading makes ``send`` raise ``SendTimeout`` instead of stalling
    the caller.
    """

    def __init__(self, ws, clock=utcnow, send_timeout=SEND_TIMEOUT):
        self.id = uuid.uuid4().hex
        self.ws = ws
        self.clock = clock
        self.send_timeout = send_timeout
        self.identity = None
        self.userId = None
        self.state = PENDING
        self.alive = True
        self.lastHeartbeatAt = clock()
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()

    def __repr__(self):
        return f'<Session {self.id[:8]} user={self.userId} state={self.state}>'

    def open(self, identity):
        self.identity = identity
        self.userId = identity.userId
        self.state = OPEN
        self.mark_alive()

    def mark_alive(self):
        self.alive = True
        self.lastHeartbeatAt = self.clock()

    @property
    def is_open(self):
        return self.state == OPEN

    def send(self, envelope):
        data = json.dumps(envelope)
        # covers waiting behind another writer as well as the write itself
        with gevent.Timeout(self.send_timeout, SendTimeout):
            with self._send_lock:
                if self.state == CLOSED:
                    raise ConnectionClosed()
                self.ws.send(data)

    def close(self, code=CLOSE_GOING_AWAY, reason=None):
        # never waits on _send_lock; a writer may be stuck holding it
        with self._state_lock:
            if self.state == CLOSED:
                return
            self.state = CLOSED
        try:
            with gevent.Timeout(self.send_timeout, SendTimeout):
                self.ws.close(reason=code, message=reason)
        except SEND_ERRORS + (ConcurrentObjectUseError,) as e:
            logger.info('close failed session=%s userId=%s: %r', self.id[:8], self.userId, e)


class ConnectionRegistry:
    """Process-wide map of identity to live sessions.

    Mutations of an identity's set happen under one lock; readers get
    frozen snapshots. Sends happen outside the lock. A session whose send
    fails is dropped and handed to ``on_session_lost`` so presence can be
    re-evaluated.
    """

    def __init__(self, on_session_lost=None, relay=None):
        self._sessions = {}
        self._lock = threading.Lock()
        self.on_session_lost = on_session_lost
        self.relay = relay

    def register(self, session):
        with self._lock:
            self._sessions.setdefault(session.userId, set()).add(session)
            first = len(self._sessions[session.userId]) == 1
        if first and self.relay is not None:
            self.relay.mark_online(session.userId)
        return first

    def unregister(self, session):
        """Remove ``session``; True if it was registered."""
        with self._lock:
            sessions = self._sessions.get(session.userId)
            if not sessions or session not in sessions:
                return False
            sessions.discard(session)
            last = not sessions
            if last:
                del self._sessions[session.userId]
        if last and self.relay is not None:
            self.relay.mark_offline(session.userId)
        return True

    def sessions_of(self, user_id):
        with self._lock:
            return frozenset(self._sessions.get(user_id, ()))

    def all_sessions(self):
        with self._lock:
            return [s for sessions in self._sessions.values() for s in sessions]

    def identities(self):
        with self._lock:
            return set(self._sessions)

    def has_local(self, user_id):
        with self._lock:
            return bool(self._sessions.get(user_id))

    def is_connected(self, user_id):
        if self.has_local(user_id):
            return True
        return self.relay is not None and self.relay.is_online(user_id)

    def count(self):
        with self._lock:
            return sum(len(s) for s in self._sessions.values())

    def _deliver(self, sessions, envelope):
        delivered = 0
        failed = []
        for session in sessions:
            try:
                session.send(envelope)
                delivered += 1
            except SEND_ERRORS as e:
                logger.info('send failed session=%s userId=%s: %s', session.id[:8], session.userId, e)
                failed.append(session)
        for session in failed:
            self.drop(session)
        return delivered

    def send(self, session, envelope):
        """Send to one session; a failure drops it like any other send."""
        return self._deliver((session,), envelope) == 1

    def deliver_local(self, user_id, envelope):
        return self._deliver(self.sessions_of(user_id), envelope)

    def broadcast_to(self, user_id, envelope):
        """Send to every session of ``user_id``; returns local deliveries.

        With no local session the envelope goes through the cluster relay
        when one is configured.
        """
        sessions = self.sessions_of(user_id)
        if not sessions:
            if self.relay is not None:
                self.relay.publish(user_id, envelope)
            return 0
        return self._deliver(sessions, envelope)

    def broadcast_all(self, envelope, exclude=None, local_only=False):
        sessions = [s for s in self.all_sessions() if s.userId != exclude]
        delivered = self._deliver(sessions, envelope)
        if self.relay is not None and not local_only:
            self.relay.publish_all(envelope, exclude)
        return delivered

    def drop(self, session, code=CLOSE_GOING_AWAY, reason=None):
        """Unregister and close ``session``, then report it as lost."""
        removed = self.unregister(session)
        session.close(code, reason)
        if removed and self.on_session_lost is not None:
            self.on_session_lost(session)
        return removed

    def probe(self):
        """One heartbeat round. Returns the sessions evicted."""
        evicted = []
        probe = {'type': 'heartbeat', 'timestamp': isoformat(utcnow())}
        for session in self.all_sessions():
            if not session.alive:
                logger.info('ws_evict userId=%s session=%s', session.userId, session.id[:8])
                self.drop(session, CLOSE_GOING_AWAY, 'heartbeat timeout')
                evicted.append(session)
                continue
            session.alive = False
            try:
                session.send(probe)
            except SEND_ERRORS:
                self.drop(session)
                evicted.append(session)
        return evicted


class Heartbeat:
    """Background probe loop; ``run_in_context`` wraps each round (app context)."""

    def __init__(self, registry, interval, run_in_context=None):
        self.registry = registry
        self.interval = interval
        self.run_in_context = run_in_context
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name='drilunia-heartbeat', daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                if self.run_in_context is not None:
                    self.run_in_context(self.registry.probe)
                else:
                    self.registry.probe()
            except Exception:
                logger.exception('heartbeat round failed')

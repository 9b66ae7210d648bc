import logging
import threading
from datetime import timedelta

from .errors import StoreError
from .models import isoformat, utcnow


logger = logging.getLogger(__name__)

SCOPE_ALL = 'all'
SCOPE_PARTNERS = 'partners'


class PresenceBroadcaster:
    """In-memory presence plus the ``presence`` envelopes peers receive.

    A user is online when they declared themselves online, hold at least
    one live session, and were seen within the freshness window.
    """

    def __init__(self, registry, users, messages, window_seconds=300, debounce_seconds=30,
                 scope=SCOPE_ALL, clock=utcnow):
        if scope not in (SCOPE_ALL, SCOPE_PARTNERS):
            raise ValueError(f'Unknown presence scope: {scope}')
        self.registry = registry
        self.users = users
        self.messages = messages
        self.window = timedelta(seconds=window_seconds)
        self.debounce = timedelta(seconds=debounce_seconds)
        self.scope = scope
        self.clock = clock
        self._state = {}
        self._persisted = {}
        self._lock = threading.Lock()

    def _set(self, user_id, online, now):
        with self._lock:
            previous = self._state.get(user_id)
            self._state[user_id] = {'online': online, 'lastSeen': now}
        return previous

    def last_seen(self, user_id):
        with self._lock:
            entry = self._state.get(user_id)
        return entry['lastSeen'] if entry else None

    def is_online(self, user_id):
        with self._lock:
            entry = self._state.get(user_id)
        if entry is not None:
            if not entry['online']:
                return False
            fresh = self.clock() - entry['lastSeen'] < self.window
            return fresh and self.registry.is_connected(user_id)
        # another worker may hold the session; fall back to the durable mirror
        if not self.registry.is_connected(user_id):
            return False
        user = self.users.find_by_id(user_id)
        return bool(user and self.clock() - user.lastSeen < self.window)

    def connected(self, identity):
        """First-session bookkeeping after the registry accepted a session."""
        now = self.clock()
        self._set(identity.userId, True, now)
        self._persist_last_seen(identity.userId, now, force=True)
        self.broadcast(identity.userId, True, show_online=identity.showOnline)

    def disconnected(self, identity):
        """Called once a session is gone; only the last one flips presence."""
        user_id = identity.userId
        if self.registry.has_local(user_id):
            return False
        now = self.clock()
        self._set(user_id, False, now)
        self._persist_last_seen(user_id, now, force=True)
        self.broadcast(user_id, False, show_online=identity.showOnline)
        with self._lock:
            self._persisted.pop(user_id, None)
        return True

    def declare(self, identity, is_online):
        """Explicit ``presence`` envelope from the client."""
        now = self.clock()
        previous = self._set(identity.userId, bool(is_online), now)
        self._persist_last_seen(identity.userId, now)
        if previous is None or previous['online'] != bool(is_online):
            self.broadcast(identity.userId, bool(is_online), show_online=identity.showOnline)

    def seen(self, user_id):
        """Activity from ``user_id``; refreshes the window, writes through at most every debounce."""
        now = self.clock()
        with self._lock:
            entry = self._state.get(user_id)
            if entry is not None:
                entry['lastSeen'] = now
        self._persist_last_seen(user_id, now)

    def _persist_last_seen(self, user_id, now, force=False):
        with self._lock:
            last = self._persisted.get(user_id)
            if not force and last is not None and now - last < self.debounce:
                return False
            self._persisted[user_id] = now
        try:
            self.users.touch_last_seen(user_id, now)
        except StoreError:
            logger.warning('last-seen write failed userId=%s', user_id)
            return False
        return True

    def audience(self, user_id):
        connected = self.registry.identities()
        if self.scope == SCOPE_PARTNERS:
            connected &= self.messages.partners_of(user_id)
        connected.discard(user_id)
        return connected

    def envelope(self, user_id, is_online):
        return {
            'type': 'presence',
            'userId': user_id,
            'isOnline': is_online,
            'timestamp': isoformat(self.clock()),
        }

    def broadcast(self, user_id, is_online, show_online=True):
        if not show_online:
            return 0
        envelope = self.envelope(user_id, is_online)
        if self.scope == SCOPE_ALL:
            return self.registry.broadcast_all(envelope, exclude=user_id)
        delivered = 0
        for peer in self.audience(user_id):
            delivered += self.registry.broadcast_to(peer, envelope)
        return delivered

    def snapshot(self, user):
        """Presence of ``user`` as shown to other users, honoring privacy flags."""
        online = self.is_online(user.userId) if user.showOnline else False
        last_seen = self.last_seen(user.userId) or user.lastSeen
        return {
            'userId': user.userId,
            'isOnline': online,
            'lastSeen': isoformat(last_seen) if user.showLastSeen else None,
        }

    def online_users(self):
        return sorted(uid for uid in self.registry.identities() if self.is_online(uid))

import logging

from flask import has_app_context

from .auth import IdentityVerifier, TokenService
from .cluster import ClusterRelay
from .connection import ConnectionHandler
from .message_store import MessageStore
from .models import db, isoformat, utcnow
from .presence import PresenceBroadcaster
from .push import create_push_bridge
from .registry import CLOSE_GOING_AWAY, CLOSE_POLICY_VIOLATION, ConnectionRegistry, Heartbeat
from .router import EnvelopeRouter
from .user_store import UserStore


logger = logging.getLogger(__name__)


class ChatServer:
    """Wires the stores, registry, presence and router for one Flask app.

    Stored on ``app.extensions['drilunia']``. Background threads (heartbeat,
    redis subscriber) call back through ``in_context`` so store access has
    an app context.
    """

    def __init__(self, app, clock=utcnow, log_buffer=None):
        cfg = app.config
        self.app = app
        self.clock = clock
        self.log_buffer = log_buffer

        self.users = UserStore(clock, cfg['LOGIN_ATTEMPT_LIMIT'], cfg['LOCKOUT_DURATION'])
        self.messages = MessageStore(clock, cfg['EDIT_WINDOW'])
        self.tokens = TokenService(
            cfg['JWT_SECRET'], cfg['JWT_REFRESH_SECRET'],
            cfg['JWT_ACCESS_TTL'], cfg['JWT_REFRESH_TTL'], cfg['JWT_ALGORITHM'],
        )
        self.verifier = IdentityVerifier(self.tokens, self.users, clock)

        self.relay = ClusterRelay(cfg['REDIS_URL']) if cfg.get('REDIS_URL') else None
        self.registry = ConnectionRegistry(on_session_lost=self._session_lost, relay=self.relay)
        self.presence = PresenceBroadcaster(
            self.registry, self.users, self.messages,
            window_seconds=cfg['PRESENCE_WINDOW'],
            debounce_seconds=cfg['LAST_SEEN_DEBOUNCE'],
            scope=cfg['PRESENCE_SCOPE'],
            clock=clock,
        )
        self.push = create_push_bridge(cfg)
        self.router = EnvelopeRouter(
            self.registry, self.messages, self.users, self.presence, self.push, clock,
            max_content=cfg['MAX_CONTENT_LENGTH_CHARS'],
        )
        self.connections = ConnectionHandler(
            self.verifier, self.registry, self.presence, self.router, cfg['AUTH_WINDOW'], clock,
            send_timeout=cfg['SEND_TIMEOUT'],
        )
        self.heartbeat = Heartbeat(self.registry, cfg['HEARTBEAT_INTERVAL'], run_in_context=self.in_context)
        self._closed = False

    def in_context(self, fn, *args, **kwargs):
        if has_app_context():
            return fn(*args, **kwargs)
        with self.app.app_context():
            return fn(*args, **kwargs)

    def _session_lost(self, session):
        if session.identity is not None:
            self.in_context(self.presence.disconnected, session.identity)

    def start(self):
        if self.app.config.get('HEARTBEAT_AUTOSTART', True):
            self.heartbeat.start()
        if self.relay is not None:
            self.relay.start(
                deliver=lambda user_id, envelope: self.in_context(
                    self.registry.deliver_local, user_id, envelope),
                deliver_all=lambda envelope, exclude: self.in_context(
                    self.registry.broadcast_all, envelope, exclude, True),
                kick=lambda user_id, reason: self.in_context(
                    self.kick, user_id, reason or 'Account blocked', True),
            )

    def now(self):
        return isoformat(self.clock())

    def notify_peers(self, message, envelope):
        """Send an envelope about ``message`` to every session of both peers."""
        self.registry.broadcast_to(message.senderId, envelope)
        self.registry.broadcast_to(message.receiverId, envelope)

    def kick(self, user_id, reason='Account blocked', local_only=False):
        """Close every session of ``user_id`` with 1008; returns local sessions closed.

        With a cluster relay the kick is also published so other workers
        close the sessions they hold.
        """
        sessions = self.registry.sessions_of(user_id)
        for session in sessions:
            self.registry.send(session, {
                'type': 'error',
                'code': 'forbidden',
                'message': reason,
                'timestamp': self.now(),
            })
            self.registry.drop(session, CLOSE_POLICY_VIOLATION, reason)
        if sessions:
            logger.info('kicked userId=%s sessions=%d reason=%s', user_id, len(sessions), reason)
        if self.relay is not None and not local_only:
            self.relay.publish_kick(user_id, reason)
        return len(sessions)

    def debug_info(self):
        out = {
            'connections_in_this_process': self.registry.count(),
            'identities_in_this_process': len(self.registry.identities()),
            'redis_enabled': self.relay is not None,
            'redis_online_count': None,
        }
        if self.relay is not None:
            out['redis_online_count'] = self.relay.online_count()
        return out

    def _drain(self, sessions):
        for session in sessions:
            self.registry.drop(session, CLOSE_GOING_AWAY, 'server shutting down')

    def shutdown(self):
        """Drain sessions (offline presence, last-seen, close 1001) and stop background work."""
        if self._closed:
            return
        self._closed = True
        self.heartbeat.stop()

        sessions = self.registry.all_sessions()
        self.in_context(self._drain, sessions)
        if self.relay is not None:
            self.relay.stop()
        self.in_context(lambda: db.engine.dispose())
        logger.info('shutdown complete drained=%d', len(sessions))

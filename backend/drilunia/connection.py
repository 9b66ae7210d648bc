import json
import logging

from flask import current_app, request
from flask_sock import ConnectionClosed, Sock

from .errors import AuthError, StoreError
from .models import isoformat, utcnow
from .registry import CLOSE_INTERNAL_ERROR, CLOSE_POLICY_VIOLATION, SEND_TIMEOUT, Session
from .router import FatalError


logger = logging.getLogger(__name__)

sock = Sock()


class ConnectionHandler:
    """Drives one socket from handshake to close.

    The token comes from ``?token=`` or, failing that, from a first frame
    ``{"type": "auth", "token": ...}`` that must arrive within the auth
    window. Every authentication failure closes with 1008 before any other
    envelope is processed.
    """

    def __init__(self, verifier, registry, presence, router, auth_window=10.0, clock=utcnow,
                 send_timeout=SEND_TIMEOUT):
        self.verifier = verifier
        self.registry = registry
        self.presence = presence
        self.router = router
        self.auth_window = auth_window
        self.clock = clock
        self.send_timeout = send_timeout

    def _await_token(self, ws):
        raw = ws.receive(timeout=self.auth_window)
        if raw is None:
            raise AuthError(AuthError.MISSING, 'No auth frame received')
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError):
            raise AuthError(AuthError.MALFORMED, 'Auth frame is not JSON')
        if not isinstance(data, dict) or data.get('type') != 'auth' or not isinstance(data.get('token'), str):
            raise AuthError(AuthError.MALFORMED, 'Expected an auth frame')
        return data['token']

    def authenticate(self, session, token=None):
        """Returns the identity, or None after closing the session."""
        try:
            if not token:
                token = self._await_token(session.ws)
            return self.verifier.verify(token)
        except AuthError as e:
            logger.info('ws auth rejected reason=%s', e.reason)
            session.close(CLOSE_POLICY_VIOLATION, e.reason)
        except StoreError as e:
            logger.error('ws auth store failure: %s', e)
            session.close(CLOSE_INTERNAL_ERROR, 'store unavailable')
        except ConnectionClosed:
            session.close()
        return None

    def _fail(self, session):
        self.router.error(session, 'Internal server error', 'internal')
        session.close(CLOSE_INTERNAL_ERROR, 'internal error')

    def serve(self, ws, token=None):
        session = Session(ws, self.clock, self.send_timeout)
        identity = self.authenticate(session, token)
        if identity is None:
            return None

        session.open(identity)
        first = self.registry.register(session)
        if first:
            self.presence.connected(identity)
        else:
            self.presence.seen(identity.userId)
        logger.info(
            'ws_connect userId=%s session=%s connections_in_process=%d',
            identity.userId, session.id[:8], self.registry.count(),
        )
        self.registry.send(session, {
            'type': 'connection_established',
            'userId': identity.userId,
            'timestamp': isoformat(self.clock()),
        })

        try:
            while session.is_open:
                raw = ws.receive()
                if raw is None:
                    break
                session.mark_alive()
                self.presence.seen(identity.userId)
                self.router.dispatch(session, raw)
        except ConnectionClosed:
            pass
        except FatalError:
            self._fail(session)
        except Exception:
            logger.exception('ws session failed userId=%s session=%s', identity.userId, session.id[:8])
            self._fail(session)
        finally:
            # a session dropped by the registry already went through presence
            if self.registry.unregister(session):
                self.presence.disconnected(identity)
            session.close()
            logger.info(
                'ws_disconnect userId=%s session=%s connections_in_process=%d',
                identity.userId, session.id[:8], self.registry.count(),
            )
        return session


@sock.route('/ws')
def ws_endpoint(ws):
    server = current_app.extensions['drilunia']
    server.connections.serve(ws, request.args.get('token'))

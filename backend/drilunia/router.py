import json
import logging

from . import validation
from .errors import ChatError, Conflict, Forbidden, NotFound, ValidationError
from .models import STATUS_DELIVERED, STATUS_READ, isoformat, utcnow


logger = logging.getLogger(__name__)


SIGNALING_TYPES = (
    'webrtc_offer',
    'webrtc_answer',
    'ice_candidate',
    'call_request',
    'call_accept',
    'call_reject',
    'call_end',
)


class FatalError(Exception):
    """Unexpected failure while handling an envelope; the socket closes with 1011."""


class EnvelopeRouter:
    """Parses inbound frames and dispatches them by ``type``.

    Every handler runs with the session's authenticated identity. Errors
    are answered with an ``error`` envelope on the originating session and
    never close it; only unexpected exceptions escape as ``FatalError``.
    """

    def __init__(self, registry, messages, users, presence, push, clock=utcnow,
                 max_content=validation.MAX_CONTENT):
        self.registry = registry
        self.messages = messages
        self.users = users
        self.presence = presence
        self.push = push
        self.clock = clock
        self.max_content = max_content
        self.handlers = {
            'chat': self.handle_chat,
            'typing': self.handle_typing,
            'read_receipt': self.handle_read_receipt,
            'delivery_receipt': self.handle_delivery_receipt,
            'presence': self.handle_presence,
            'ping': self.handle_ping,
            'pong': self.handle_pong,
        }
        for signal_type in SIGNALING_TYPES:
            self.handlers[signal_type] = self.handle_signal

    def now(self):
        return isoformat(self.clock())

    def error(self, session, message, code='validation', ref=None):
        envelope = {'type': 'error', 'code': code, 'message': message, 'timestamp': self.now()}
        if ref:
            envelope['ref'] = ref
        self.registry.send(session, envelope)

    def dispatch(self, session, raw):
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError):
            # RecursionError: nesting deeper than the decoder can follow
            self.error(session, 'Invalid JSON')
            return
        if not isinstance(data, dict) or not isinstance(data.get('type'), str):
            self.error(session, 'Envelope must be an object with a type')
            return

        message_type = data['type']
        handler = self.handlers.get(message_type)
        if handler is None:
            logger.warning('unknown envelope type=%s userId=%s', message_type[:64], session.userId)
            return

        ref = data.get('messageId') if isinstance(data.get('messageId'), str) else None
        try:
            handler(session, data)
        except ChatError as e:
            self.error(session, e.message, e.code, ref)
        except Exception as e:
            logger.exception('envelope handling failed type=%s userId=%s', message_type, session.userId)
            raise FatalError(str(e)) from e

    def _peer(self, user_id, self_id):
        if user_id == self_id:
            raise ValidationError('Cannot send to yourself')
        user = self.users.find_by_id(user_id)
        if user is None or not user.isActive:
            raise NotFound('User not found')
        return user

    def submit_chat(self, sender, data):
        """Validate, store and fan out one chat draft from ``sender``.

        A replayed id from the same sender raises ``Conflict`` carrying the
        stored record; nothing is fanned out a second time.
        """
        draft = validation.chat_draft(data, self.max_content)

        author = self.users.find_by_id(sender)
        if author is None or author.isBlocked:
            raise Forbidden('Your account cannot send messages')

        receiver = self._peer(draft['receiver'], sender)
        if receiver.isBlocked:
            raise Forbidden('You cannot send messages to this user')

        if draft['replyTo']:
            original = self.messages.get(draft['replyTo'])
            if original is None or original.isDeleted or not (
                original.involves(sender) and original.involves(receiver.userId)
            ):
                raise NotFound('Reply target not found')

        try:
            message = self.messages.persist(sender, draft)
        except Conflict as e:
            if e.existing.senderId != sender:
                raise ValidationError('Duplicate messageId')
            logger.info('chat replay suppressed id=%s', e.existing.messageId)
            raise

        envelope = {'type': 'chat', 'message': message.to_client(), 'timestamp': self.now()}
        self.fan_out(sender, receiver.userId, envelope)
        logger.info('chat %s -> %s id=%s', sender, receiver.userId, message.messageId)
        return message

    def handle_chat(self, session, data):
        try:
            self.submit_chat(session.userId, data)
        except Conflict as e:
            # already stored and fanned out once; acknowledge only the retrying session
            self.registry.send(session, {
                'type': 'chat',
                'message': e.existing.to_client(),
                'duplicate': True,
                'timestamp': self.now(),
            })

    def fan_out(self, sender_id, receiver_id, envelope):
        """Deliver a persisted message to both peers; push when the receiver is offline."""
        self.registry.broadcast_to(sender_id, envelope)
        delivered = self.registry.broadcast_to(receiver_id, envelope)
        if not delivered and not self.registry.is_connected(receiver_id):
            tokens = [t.to_dict() for t in self.users.push_tokens(receiver_id)]
            self.push.notify(receiver_id, envelope, tokens)
        return delivered

    def handle_typing(self, session, data):
        receiver = validation.require_str(data, 'receiver', 36)
        if receiver == session.userId:
            raise ValidationError('Cannot send to yourself')
        self.registry.broadcast_to(receiver, {
            'type': 'typing',
            'sender': session.userId,
            'isTyping': bool(data.get('isTyping')),
            'timestamp': self.now(),
        })

    def _receipt(self, session, data, target):
        sender = validation.require_str(data, 'sender', 36)
        ids = validation.message_ids(data.get('messageIds'))
        matched = self.messages.pair_ids(ids, sender, session.userId)
        if not matched:
            raise NotFound('No matching messages')

        at = self.clock()
        changed = self.messages.advance_status(
            matched, target, sender_id=sender, receiver_id=session.userId, at=at,
        )
        at_field = 'readAt' if target == STATUS_READ else 'deliveredAt'
        self.registry.broadcast_to(sender, {
            'type': 'read_receipt' if target == STATUS_READ else 'delivery_receipt',
            'receiver': session.userId,
            'messageIds': matched,
            at_field: isoformat(at),
            'timestamp': isoformat(at),
        })
        logger.info('%s receipt %s -> %s matched=%d changed=%d', target, session.userId, sender, len(matched), changed)
        return changed

    def handle_read_receipt(self, session, data):
        return self._receipt(session, data, STATUS_READ)

    def handle_delivery_receipt(self, session, data):
        return self._receipt(session, data, STATUS_DELIVERED)

    def handle_presence(self, session, data):
        self.presence.declare(session.identity, validation.boolean(data, 'isOnline'))

    def handle_ping(self, session, data):
        self.registry.send(session, {'type': 'pong', 'timestamp': self.now()})

    def handle_pong(self, session, data):
        session.mark_alive()

    def handle_signal(self, session, data):
        to = validation.require_str(data, 'to', 36)
        peer = self._peer(to, session.userId)
        if data['type'] == 'call_request' and not peer.allowCalls:
            raise Forbidden('User does not accept calls')

        # body is relayed untouched; only the sender identity is asserted
        envelope = dict(data)
        envelope['to'] = to
        envelope['from'] = session.userId
        envelope['timestamp'] = self.now()

        delivered = self.registry.broadcast_to(to, envelope)
        if delivered or self.registry.is_connected(to):
            return
        if data['type'] == 'call_request':
            tokens = [t.to_dict() for t in self.users.push_tokens(to)]
            self.push.notify(to, envelope, tokens)
        raise NotFound('Recipient not connected')

import logging
import secrets
import string
import time
from datetime import timedelta

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import validation
from .errors import Conflict, NotFound, StoreError, TooOld, ValidationError
from .models import (
    MESSAGE_TYPES,
    STATUS_DELIVERED,
    STATUS_READ,
    STATUS_SENT,
    Message,
    Reaction,
    User,
    db,
    earlier_statuses,
    utcnow,
)


logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

MAX_PAGE = 200
DEFAULT_PAGE = 50


def new_message_id(sender_id):
    """``<sender>_<epoch millis>_<9 random base36 chars>``."""
    suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f'{sender_id}_{int(time.time() * 1000)}_{suffix}'


def _pair(a, b):
    return or_(
        and_(Message.senderId == a, Message.receiverId == b),
        and_(Message.senderId == b, Message.receiverId == a),
    )


class MessageStore:
    """Durable messages and their lifecycle.

    Status changes are conditional UPDATEs filtered on the statuses that
    precede the target, so concurrent or replayed acks can never move a
    message backwards.
    """

    def __init__(self, clock=utcnow, edit_window_seconds=60 * 60):
        self.clock = clock
        self.edit_window = timedelta(seconds=edit_window_seconds)

    @property
    def session(self):
        return db.session

    def _fail(self, exc, action):
        self.session.rollback()
        logger.error('message store %s failed: %s', action, exc)
        raise StoreError() from exc

    def get(self, message_id):
        if not message_id:
            return None
        try:
            return self.session.get(Message, message_id)
        except SQLAlchemyError as e:
            self._fail(e, 'get')

    def persist(self, sender_id, draft):
        """Insert the message described by ``draft`` (see ``validation.chat_draft``).

        Raises ``Conflict`` carrying the stored record when the envelope id
        already exists; callers treat that as a successful replay.
        """
        message_id = draft.get('messageId') or new_message_id(sender_id)
        if draft.get('type', 'text') not in MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type: {draft.get('type')}")

        existing = self.get(message_id)
        if existing is not None:
            raise Conflict(existing)

        message = Message(
            messageId=message_id,
            senderId=sender_id,
            receiverId=draft['receiver'],
            type=draft.get('type', 'text'),
            content=draft['content'],
            attachments=draft.get('attachments') or [],
            replyTo=draft.get('replyTo'),
            status=STATUS_SENT,
            sentAt=self.clock(),
        )
        try:
            self.session.add(message)
            User.query.filter(User.userId == sender_id).update(
                {'totalMessages': User.totalMessages + 1}, synchronize_session=False
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get(message_id)
            if existing is None:
                raise StoreError()
            raise Conflict(existing)
        except SQLAlchemyError as e:
            self._fail(e, 'persist')
        return message

    def advance_status(self, message_ids, target, sender_id=None, receiver_id=None, at=None):
        """Move ``message_ids`` forward to ``target`` as of ``at``; returns rows changed."""
        if target not in (STATUS_DELIVERED, STATUS_READ):
            raise ValidationError(f'Invalid target status: {target}')
        if not message_ids:
            return 0

        now = at or self.clock()
        values = {'status': target}
        if target == STATUS_DELIVERED:
            values['deliveredAt'] = now
        else:
            values['readAt'] = now
            values['deliveredAt'] = func.coalesce(Message.deliveredAt, now)

        query = Message.query.filter(
            Message.messageId.in_(list(message_ids)),
            Message.status.in_(earlier_statuses(target)),
        )
        if sender_id is not None:
            query = query.filter(Message.senderId == sender_id)
        if receiver_id is not None:
            query = query.filter(Message.receiverId == receiver_id)

        try:
            count = query.update(values, synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'advance_status')
        return count

    def pair_ids(self, message_ids, sender_id, receiver_id):
        """The subset of ``message_ids`` sent by ``sender_id`` to ``receiver_id``."""
        if not message_ids:
            return []
        try:
            rows = self.session.query(Message.messageId).filter(
                Message.messageId.in_(list(message_ids)),
                Message.senderId == sender_id,
                Message.receiverId == receiver_id,
            ).all()
        except SQLAlchemyError as e:
            self._fail(e, 'pair_ids')
        found = {row[0] for row in rows}
        return [mid for mid in message_ids if mid in found]

    def mark_conversation_read(self, sender_id, receiver_id, at=None):
        """Mark everything ``sender_id`` sent to ``receiver_id`` as read."""
        now = at or self.clock()
        query = Message.query.filter(
            Message.senderId == sender_id,
            Message.receiverId == receiver_id,
            Message.isDeleted.is_(False),
            Message.status.in_(earlier_statuses(STATUS_READ)),
        )
        try:
            ids = [row.messageId for row in query.with_entities(Message.messageId).all()]
            if not ids:
                return []
            query.filter(Message.messageId.in_(ids)).update({
                'status': STATUS_READ,
                'readAt': now,
                'deliveredAt': func.coalesce(Message.deliveredAt, now),
            }, synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'mark_conversation_read')
        return ids

    def _owned(self, message_id, actor_id):
        message = self.get(message_id)
        # absent, deleted and foreign messages look the same to the caller
        if message is None or message.isDeleted or message.senderId != actor_id:
            raise NotFound('Message not found')
        return message

    def edit(self, message_id, content, editor_id):
        content = validation.content(content)
        message = self._owned(message_id, editor_id)
        now = self.clock()
        if now - message.sentAt > self.edit_window:
            raise TooOld()

        message.content = content
        message.isEdited = True
        message.editedAt = max(now, message.sentAt)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'edit')
        return message

    def soft_delete(self, message_id, actor_id):
        message = self._owned(message_id, actor_id)
        message.isDeleted = True
        message.deletedAt = self.clock()
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'soft_delete')
        return message

    def fetch_conversation(self, user_a, user_b, before=None, limit=DEFAULT_PAGE):
        """Newest first; callers reverse for display."""
        limit = max(1, min(DEFAULT_PAGE if limit is None else int(limit), MAX_PAGE))
        query = Message.query.filter(_pair(user_a, user_b), Message.isDeleted.is_(False))
        if before is not None:
            query = query.filter(Message.sentAt < before)
        try:
            return query.order_by(Message.sentAt.desc(), Message.messageId.desc()).limit(limit).all()
        except SQLAlchemyError as e:
            self._fail(e, 'fetch_conversation')

    def list_unread(self, receiver_id):
        try:
            return Message.query.filter(
                Message.receiverId == receiver_id,
                Message.status != STATUS_READ,
                Message.isDeleted.is_(False),
            ).order_by(Message.sentAt.asc(), Message.messageId.asc()).all()
        except SQLAlchemyError as e:
            self._fail(e, 'list_unread')

    def _participating(self, message_id, user_id):
        message = self.get(message_id)
        if message is None or message.isDeleted or not message.involves(user_id):
            raise NotFound('Message not found')
        return message

    def react(self, message_id, user_id, emoji):
        if not emoji or len(emoji) > 32:
            raise ValidationError('Invalid emoji')
        message = self._participating(message_id, user_id)
        try:
            Reaction.query.filter_by(messageId=message_id, userId=user_id).delete(synchronize_session=False)
            self.session.add(Reaction(
                messageId=message_id, userId=user_id, emoji=emoji, createdAt=self.clock(),
            ))
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'react')
        self.session.refresh(message)
        return message

    def unreact(self, message_id, user_id):
        message = self._participating(message_id, user_id)
        try:
            Reaction.query.filter_by(messageId=message_id, userId=user_id).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'unreact')
        self.session.refresh(message)
        return message

    def partners_of(self, user_id):
        try:
            sent = self.session.query(Message.receiverId).filter(Message.senderId == user_id)
            received = self.session.query(Message.senderId).filter(Message.receiverId == user_id)
            rows = sent.union(received).all()
        except SQLAlchemyError as e:
            self._fail(e, 'partners_of')
        return {row[0] for row in rows} - {user_id}

    def conversations_of(self, user_id):
        """One entry per partner: last visible message and unread count, newest first."""
        try:
            messages = Message.query.filter(
                or_(Message.senderId == user_id, Message.receiverId == user_id),
                Message.isDeleted.is_(False),
            ).order_by(Message.sentAt.desc()).all()
        except SQLAlchemyError as e:
            self._fail(e, 'conversations_of')

        conversations = {}
        for message in messages:
            partner = message.partner_of(user_id)
            entry = conversations.get(partner)
            if entry is None:
                entry = conversations[partner] = {'partner': partner, 'lastMessage': message, 'unreadCount': 0}
            if message.receiverId == user_id and message.status != STATUS_READ:
                entry['unreadCount'] += 1
        return list(conversations.values())


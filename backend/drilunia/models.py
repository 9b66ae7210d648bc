import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


ROLES = ('user', 'moderator', 'admin')
PLATFORMS = ('android', 'ios', 'web')
MESSAGE_TYPES = ('text', 'image', 'video', 'audio', 'file', 'location', 'sticker')

STATUS_SENT = 'sent'
STATUS_DELIVERED = 'delivered'
STATUS_READ = 'read'
STATUSES = (STATUS_SENT, STATUS_DELIVERED, STATUS_READ)

ATTACHMENT_FIELDS = (
    'filename', 'originalName', 'mimeType', 'size', 'url',
    'thumbnail', 'duration', 'width', 'height',
)


def utcnow():
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    if value is None:
        return None
    return value.isoformat(timespec='milliseconds') + 'Z'


def earlier_statuses(target):
    """Statuses a message may advance from to reach ``target``."""
    return STATUSES[:STATUSES.index(target)]


class User(db.Model):

    __tablename__ = 'users'

    userId = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(255), unique=True, nullable=False)
    username = db.Column(db.String(30), unique=True, nullable=False)
    displayName = db.Column(db.String(50), nullable=False)
    avatar = db.Column(db.String(512), nullable=True)

    role = db.Column(db.String(20), nullable=False, default='user')
    isActive = db.Column(db.Boolean, nullable=False, default=True)
    isBlocked = db.Column(db.Boolean, nullable=False, default=False)
    blockedReason = db.Column(db.String(255), nullable=True)

    emailVerified = db.Column(db.Boolean, nullable=False, default=False)
    verificationCode = db.Column(db.String(12), nullable=True)
    verificationExpires = db.Column(db.DateTime, nullable=True)

    passwordHash = db.Column(db.String(255), nullable=False)
    passwordChangedAt = db.Column(db.DateTime, nullable=False, default=utcnow)
    loginAttempts = db.Column(db.Integer, nullable=False, default=0)
    lockUntil = db.Column(db.DateTime, nullable=True)

    showOnline = db.Column(db.Boolean, nullable=False, default=True)
    showLastSeen = db.Column(db.Boolean, nullable=False, default=True)
    allowCalls = db.Column(db.Boolean, nullable=False, default=True)

    lastSeen = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    totalMessages = db.Column(db.Integer, nullable=False, default=0)
    totalCalls = db.Column(db.Integer, nullable=False, default=0)
    totalCallDuration = db.Column(db.Integer, nullable=False, default=0)

    createdAt = db.Column(db.DateTime, nullable=False, default=utcnow)
    updatedAt = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    pushTokens = db.relationship(
        'PushToken', backref='user', lazy='selectin', cascade='all, delete-orphan'
    )

    __table_args__ = (
        db.Index('ix_users_active_blocked', 'isActive', 'isBlocked'),
    )

    def to_public(self):
        return {
            'id': self.userId,
            'username': self.username,
            'displayName': self.displayName,
            'avatar': self.avatar,
            'lastSeen': isoformat(self.lastSeen) if self.showLastSeen else None,
        }

    def to_private(self):
        data = self.to_public()
        data.update({
            'email': self.email,
            'role': self.role,
            'emailVerified': self.emailVerified,
            'lastSeen': isoformat(self.lastSeen),
            'settings': {
                'privacy': {
                    'showOnline': self.showOnline,
                    'showLastSeen': self.showLastSeen,
                    'allowCalls': self.allowCalls,
                },
            },
            'stats': {
                'totalMessages': self.totalMessages,
                'totalCalls': self.totalCalls,
                'totalCallDuration': self.totalCallDuration,
            },
        })
        return data


class PushToken(db.Model):

    __tablename__ = 'push_tokens'

    id = db.Column(db.Integer, primary_key=True)
    userId = db.Column(db.String(36), db.ForeignKey('users.userId', ondelete='CASCADE'), nullable=False, index=True)
    token = db.Column(db.Text, nullable=False)
    platform = db.Column(db.String(10), nullable=False)
    deviceId = db.Column(db.String(255), nullable=False)
    createdAt = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('userId', 'deviceId', name='uq_push_tokens_user_device'),
    )

    def to_dict(self):
        return {
            'token': self.token,
            'platform': self.platform,
            'deviceId': self.deviceId,
            'createdAt': isoformat(self.createdAt),
        }


class Message(db.Model):

    __tablename__ = 'messages'

    messageId = db.Column(db.String(128), primary_key=True)
    senderId = db.Column(db.String(36), db.ForeignKey('users.userId'), nullable=False)
    receiverId = db.Column(db.String(36), db.ForeignKey('users.userId'), nullable=False)
    type = db.Column(db.String(10), nullable=False, default='text')
    content = db.Column(db.Text, nullable=False)
    attachments = db.Column(db.JSON, nullable=False, default=list)

    status = db.Column(db.String(10), nullable=False, default=STATUS_SENT)
    sentAt = db.Column(db.DateTime, nullable=False, default=utcnow)
    deliveredAt = db.Column(db.DateTime, nullable=True)
    readAt = db.Column(db.DateTime, nullable=True)

    isEdited = db.Column(db.Boolean, nullable=False, default=False)
    editedAt = db.Column(db.DateTime, nullable=True)
    isDeleted = db.Column(db.Boolean, nullable=False, default=False)
    deletedAt = db.Column(db.DateTime, nullable=True)

    replyTo = db.Column(db.String(128), nullable=True)

    reactions = db.relationship(
        'Reaction', lazy='selectin', cascade='all, delete-orphan',
        order_by='Reaction.createdAt',
    )

    __table_args__ = (
        db.Index('ix_messages_pair', 'senderId', 'receiverId', 'sentAt'),
        db.Index('ix_messages_pair_reverse', 'receiverId', 'senderId', 'sentAt'),
        db.Index('ix_messages_sent_at', 'sentAt'),
    )

    def partner_of(self, user_id):
        return self.receiverId if self.senderId == user_id else self.senderId

    def involves(self, user_id):
        return user_id in (self.senderId, self.receiverId)

    def to_client(self):
        return {
            'messageId': self.messageId,
            'sender': self.senderId,
            'receiver': self.receiverId,
            'type': self.type,
            'content': self.content,
            'attachments': self.attachments or [],
            'status': self.status,
            'sentAt': isoformat(self.sentAt),
            'deliveredAt': isoformat(self.deliveredAt),
            'readAt': isoformat(self.readAt),
            'isEdited': self.isEdited,
            'editedAt': isoformat(self.editedAt),
            'isDeleted': self.isDeleted,
            'replyTo': self.replyTo,
            'reactions': [r.to_dict() for r in self.reactions],
        }


class Reaction(db.Model):

    __tablename__ = 'reactions'

    id = db.Column(db.Integer, primary_key=True)
    messageId = db.Column(db.String(128), db.ForeignKey('messages.messageId', ondelete='CASCADE'), nullable=False)
    userId = db.Column(db.String(36), db.ForeignKey('users.userId', ondelete='CASCADE'), nullable=False, index=True)
    emoji = db.Column(db.String(32), nullable=False)
    createdAt = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('messageId', 'userId', name='uq_reactions_message_user'),
    )

    def to_dict(self):
        return {
            'user': self.userId,
            'emoji': self.emoji,
            'createdAt': isoformat(self.createdAt),
        }

import logging
from datetime import timedelta

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import NotFound, StoreError, ValidationError
from .models import PLATFORMS, PushToken, User, db, utcnow


logger = logging.getLogger(__name__)


class UserStore:
    """Durable user state: profile, presence mirror, login attempts, push tokens."""

    def __init__(self, clock=utcnow, attempt_limit=5, lockout_seconds=2 * 60 * 60):
        self.clock = clock
        self.attempt_limit = attempt_limit
        self.lockout = timedelta(seconds=lockout_seconds)

    @property
    def session(self):
        return db.session

    def _fail(self, exc, action):
        self.session.rollback()
        logger.error('user store %s failed: %s', action, exc)
        raise StoreError() from exc

    def find_by_id(self, user_id):
        if not user_id:
            return None
        try:
            return self.session.get(User, user_id)
        except SQLAlchemyError as e:
            self._fail(e, 'find_by_id')

    def find_by_email(self, email):
        if not email:
            return None
        try:
            return User.query.filter_by(email=email.strip().casefold()).first()
        except SQLAlchemyError as e:
            self._fail(e, 'find_by_email')

    def find_by_handle(self, username):
        if not username:
            return None
        try:
            return User.query.filter_by(username=username.strip().casefold()).first()
        except SQLAlchemyError as e:
            self._fail(e, 'find_by_handle')

    def create(self, email, username, display_name, password_hash, role='user'):
        email = email.strip().casefold()
        username = username.strip().casefold()
        now = self.clock()

        if self.find_by_email(email):
            raise ValidationError('Email already registered')
        if self.find_by_handle(username):
            raise ValidationError('Username already taken')

        user = User(
            email=email,
            username=username,
            displayName=display_name.strip(),
            passwordHash=password_hash,
            # one second back so tokens issued right away are not "rotated"
            passwordChangedAt=now - timedelta(seconds=1),
            role=role,
            lastSeen=now,
            createdAt=now,
            updatedAt=now,
        )
        try:
            self.session.add(user)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ValidationError('Email or username already in use') from e
        except SQLAlchemyError as e:
            self._fail(e, 'create')
        return user

    def is_locked(self, user):
        return bool(user.lockUntil and user.lockUntil > self.clock())

    def increment_login_attempts(self, user_id):
        """Record one failed password check, locking at the attempt limit.

        Both branches are single conditional UPDATEs, so concurrent failures
        cannot lock twice or lose an increment.
        """
        now = self.clock()
        try:
            expired = User.query.filter(
                User.userId == user_id,
                User.lockUntil.isnot(None),
                User.lockUntil <= now,
            ).update({'lockUntil': None, 'loginAttempts': 1}, synchronize_session=False)

            if not expired:
                User.query.filter(User.userId == user_id).update({
                    'loginAttempts': User.loginAttempts + 1,
                    'lockUntil': case(
                        (
                            (User.loginAttempts + 1 >= self.attempt_limit) & User.lockUntil.is_(None),
                            now + self.lockout,
                        ),
                        else_=User.lockUntil,
                    ),
                }, synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'increment_login_attempts')

        user = self.find_by_id(user_id)
        if user is not None:
            self.session.refresh(user)
            if self.is_locked(user):
                logger.warning('account locked userId=%s until=%s', user_id, user.lockUntil)
        return user

    def reset_login_attempts(self, user_id):
        try:
            User.query.filter(User.userId == user_id).update(
                {'loginAttempts': 0, 'lockUntil': None}, synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'reset_login_attempts')

    def touch_last_seen(self, user_id, at=None):
        try:
            User.query.filter(User.userId == user_id).update(
                {'lastSeen': at or self.clock()}, synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'touch_last_seen')

    def set_blocked(self, user_id, blocked, reason=None):
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFound('User not found')
        user.isBlocked = bool(blocked)
        user.blockedReason = reason if blocked else None
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'set_blocked')
        return user

    def push_tokens(self, user_id):
        try:
            return PushToken.query.filter_by(userId=user_id).order_by(PushToken.createdAt).all()
        except SQLAlchemyError as e:
            self._fail(e, 'push_tokens')

    def add_push_token(self, user_id, token, platform, device_id):
        """Register ``token`` for ``device_id``, replacing that device's previous token."""
        if platform not in PLATFORMS:
            raise ValidationError(f'Invalid platform: {platform}')
        if not token or not device_id:
            raise ValidationError('Missing token or deviceId')
        if self.find_by_id(user_id) is None:
            raise NotFound('User not found')

        try:
            PushToken.query.filter_by(userId=user_id, deviceId=device_id).delete(synchronize_session=False)
            entry = PushToken(
                userId=user_id,
                token=token,
                platform=platform,
                deviceId=device_id,
                createdAt=self.clock(),
            )
            self.session.add(entry)
            self.session.commit()
        except IntegrityError as e:
            # a concurrent registration for the same device won
            self.session.rollback()
            raise StoreError('Push token registration raced, retry') from e
        except SQLAlchemyError as e:
            self._fail(e, 'add_push_token')
        return entry

    def remove_push_token(self, user_id, device_id):
        try:
            removed = PushToken.query.filter_by(userId=user_id, deviceId=device_id).delete(
                synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail(e, 'remove_push_token')
        return removed

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps

import bcrypt
import jwt
from flask import current_app, request

from .errors import AuthError, Forbidden
from .models import utcnow


ACCESS = 'access'
REFRESH = 'refresh'

BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def hash_password(password, rounds=BCRYPT_ROUNDS):
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def check_password(password, encoded):
    """True when ``password`` matches; a corrupt or foreign hash is a mismatch."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), encoded.encode('utf-8'))
    except (AttributeError, TypeError, ValueError):
        return False


def _epoch(value):
    return calendar.timegm(value.utctimetuple())


@dataclass(frozen=True)
class IdentitySnapshot:
    """What the core needs from a user record to authorize an action."""

    userId: str
    role: str
    isActive: bool
    isBlocked: bool
    lockUntil: datetime = None
    passwordChangedAt: datetime = None
    allowCalls: bool = True
    showOnline: bool = True

    @classmethod
    def of(cls, user):
        return cls(
            userId=user.userId,
            role=user.role,
            isActive=user.isActive,
            isBlocked=user.isBlocked,
            lockUntil=user.lockUntil,
            passwordChangedAt=user.passwordChangedAt,
            allowCalls=user.allowCalls,
            showOnline=user.showOnline,
        )


class TokenService:

    def __init__(self, secret, refresh_secret, access_ttl, refresh_ttl,
                 algorithm='HS256', clock=utcnow):
        self.secret = secret
        self.refresh_secret = refresh_secret
        self.access_ttl = timedelta(seconds=access_ttl)
        self.refresh_ttl = timedelta(seconds=refresh_ttl)
        self.algorithm = algorithm
        self.clock = clock

    def _secret_for(self, kind):
        return self.refresh_secret if kind == REFRESH else self.secret

    def issue(self, user_id, kind=ACCESS):
        now = self.clock()
        ttl = self.refresh_ttl if kind == REFRESH else self.access_ttl
        payload = {
            'userId': user_id,
            'typ': kind,
            'iat': _epoch(now),
            'exp': _epoch(now + ttl),
        }
        return jwt.encode(payload, self._secret_for(kind), algorithm=self.algorithm)

    def issue_pair(self, user_id):
        return {
            'accessToken': self.issue(user_id, ACCESS),
            'refreshToken': self.issue(user_id, REFRESH),
        }

    def decode(self, token, kind=ACCESS):
        try:
            payload = jwt.decode(
                token,
                self._secret_for(kind),
                algorithms=[self.algorithm],
                options={'require': ['exp', 'iat']},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError(AuthError.EXPIRED)
        except jwt.InvalidSignatureError:
            raise AuthError(AuthError.SIGNATURE_INVALID)
        except jwt.InvalidTokenError:
            raise AuthError(AuthError.MALFORMED)

        if payload.get('typ') != kind or not payload.get('userId'):
            raise AuthError(AuthError.MALFORMED)
        return payload


class IdentityVerifier:
    """Resolves a bearer credential to an ``IdentitySnapshot``.

    Rejections are ``AuthError`` with one of the reason constants. Nothing
    here writes to the store.
    """

    def __init__(self, tokens, users, clock=utcnow):
        self.tokens = tokens
        self.users = users
        self.clock = clock

    @staticmethod
    def extract(bearer):
        if bearer is None:
            return None
        bearer = bearer.strip()
        scheme, _, rest = bearer.partition(' ')
        if scheme.lower() == 'bearer':
            bearer = rest.strip()
        return bearer or None

    def verify(self, bearer, kind=ACCESS):
        token = self.extract(bearer)
        if not token:
            raise AuthError(AuthError.MISSING)

        payload = self.tokens.decode(token, kind)
        user = self.users.find_by_id(payload['userId'])
        if user is None:
            raise AuthError(AuthError.USER_NOT_FOUND)

        if user.passwordChangedAt and _epoch(user.passwordChangedAt) > payload['iat']:
            raise AuthError(AuthError.PASSWORD_ROTATED)

        self.check_account(user)
        return IdentitySnapshot.of(user)

    def check_account(self, user):
        if not user.isActive:
            raise AuthError(AuthError.USER_INACTIVE)
        if user.isBlocked:
            raise AuthError(AuthError.USER_BLOCKED)
        if user.lockUntil and user.lockUntil > self.clock():
            raise AuthError(AuthError.USER_LOCKED)

    def renew(self, refresh_token):
        """Exchange a refresh token for a fresh access/refresh pair."""
        identity = self.verify(refresh_token, kind=REFRESH)
        return self.tokens.issue_pair(identity.userId)


def require_auth(f):

    @wraps(f)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            raise AuthError(AuthError.MISSING, 'Missing or invalid authorization header')

        server = current_app.extensions['drilunia']
        identity = server.verifier.verify(auth_header)
        request.user_id = identity.userId
        request.identity = identity
        return f(*args, **kwargs)
    return wrapper


def require_role(*roles):

    def decorator(f):
        @wraps(f)
        @require_auth
        def wrapper(*args, **kwargs):
            if request.identity.role not in roles:
                raise Forbidden('Insufficient role')
            return f(*args, **kwargs)
        return wrapper
    return decorator

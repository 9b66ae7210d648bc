"""Error kinds shared by the socket router and the HTTP API.

Each error carries a short machine-readable ``code`` and the HTTP status
used when it surfaces on the control path. On the socket every one of
these becomes an ``error`` envelope except ``AuthError``, which closes the
connection with 1008.
"""


class ChatError(Exception):

    code = 'internal'
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class AuthError(ChatError):

    code = 'auth'
    status_code = 401
    default_message = 'Authentication required'

    MISSING = 'missing'
    MALFORMED = 'malformed'
    SIGNATURE_INVALID = 'signature-invalid'
    EXPIRED = 'expired'
    PASSWORD_ROTATED = 'password-rotated'
    USER_NOT_FOUND = 'user-not-found'
    USER_INACTIVE = 'user-inactive'
    USER_BLOCKED = 'user-blocked'
    USER_LOCKED = 'user-locked'
    BAD_CREDENTIALS = 'bad-credentials'

    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message or f'Authentication failed: {reason}')

    def to_dict(self):
        data = super().to_dict()
        data['reason'] = self.reason
        return data


class ValidationError(ChatError):

    code = 'validation'
    status_code = 400
    default_message = 'Invalid request'


class Forbidden(ChatError):

    code = 'forbidden'
    status_code = 403
    default_message = 'Not allowed'


class TooOld(Forbidden):

    code = 'too-old'
    default_message = 'Message can no longer be edited'


class NotFound(ChatError):

    code = 'not-found'
    status_code = 404
    default_message = 'Not found'


class Conflict(ChatError):
    """Duplicate envelope id. Carries the record that already exists."""

    code = 'conflict'
    status_code = 409
    default_message = 'Duplicate message id'

    def __init__(self, existing, message=None):
        self.existing = existing
        super().__init__(message)


class StoreError(ChatError):
    """Transient backend failure; the client may retry with the same id."""

    code = 'store'
    status_code = 503
    default_message = 'Storage temporarily unavailable'

import re

from .errors import ValidationError
from .models import ATTACHMENT_FIELDS, MESSAGE_TYPES


MAX_CONTENT = 5000
MAX_ATTACHMENTS = 10
MAX_IDS_PER_RECEIPT = 500

_MESSAGE_ID_RE = re.compile(r'^[A-Za-z0-9_\-:.]{1,128}$')
_NUMERIC_FIELDS = ('size', 'duration', 'width', 'height')


def require_str(data, field, max_len=255):
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'Missing {field}')
    if len(value) > max_len:
        raise ValidationError(f'{field} too long')
    return value.strip()


def content(value, max_len=MAX_CONTENT):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('Message content is required')
    if len(value) > max_len:
        raise ValidationError(f'Message content exceeds {max_len} characters')
    return value


def message_id(value):
    if value is None:
        return None
    if not isinstance(value, str) or not _MESSAGE_ID_RE.match(value):
        raise ValidationError('Invalid messageId')
    return value


def message_ids(value):
    if not isinstance(value, list) or not value:
        raise ValidationError('messageIds must be a non-empty list')
    if len(value) > MAX_IDS_PER_RECEIPT:
        raise ValidationError('Too many messageIds')
    ids = []
    for item in value:
        ids.append(message_id(item))
    # keep first occurrence order
    return list(dict.fromkeys(ids))


def attachments(value):
    if value is None:
        return []
    if not isinstance(value, list) or len(value) > MAX_ATTACHMENTS:
        raise ValidationError('Malformed attachments')

    cleaned = []
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError('Malformed attachments')
        entry = {}
        for key in ATTACHMENT_FIELDS:
            if key not in item or item[key] is None:
                continue
            field = item[key]
            if key in _NUMERIC_FIELDS:
                if isinstance(field, bool) or not isinstance(field, (int, float)) or field < 0:
                    raise ValidationError(f'Attachment {key} must be a non-negative number')
            elif not isinstance(field, str):
                raise ValidationError(f'Attachment {key} must be a string')
            entry[key] = field
        if not entry.get('url') and not entry.get('filename'):
            raise ValidationError('Attachment needs a url or filename')
        cleaned.append(entry)
    return cleaned


def chat_draft(envelope, max_len=MAX_CONTENT):
    """Normalize an inbound ``chat`` envelope into what the message store persists."""
    message_type = envelope.get('messageType') or 'text'
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f'Invalid messageType: {message_type}')

    reply_to = envelope.get('replyTo')
    if reply_to is not None:
        reply_to = message_id(reply_to)

    return {
        'receiver': require_str(envelope, 'receiver', 36),
        'content': content(envelope.get('content'), max_len),
        'type': message_type,
        'replyTo': reply_to,
        'attachments': attachments(envelope.get('attachments')),
        'messageId': message_id(envelope.get('messageId')),
    }


def boolean(data, field):
    value = data.get(field)
    if not isinstance(value, bool):
        raise ValidationError(f'{field} must be a boolean')
    return value

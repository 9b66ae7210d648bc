import logging
import re
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from . import validation
from .auth import MAX_PASSWORD_BYTES, check_password, hash_password, require_auth, require_role
from .errors import AuthError, ChatError, Conflict, NotFound, ValidationError
from .message_store import MAX_PAGE
from .models import isoformat


logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
USERNAME_RE = re.compile(r'^[A-Za-z0-9_.]{3,30}$')
MIN_PASSWORD = 8


def _server():
    return current_app.extensions['drilunia']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


def _auth_response(user, status=200):
    tokens = _server().tokens.issue_pair(user.userId)
    return jsonify({'user': user.to_private(), **tokens}), status


@api.app_errorhandler(ChatError)
def handle_chat_error(e):
    if e.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.path, e.message)
    return jsonify(e.to_dict()), e.status_code


@api.route('/health', methods=['GET'])
def health():
    server = _server()
    return jsonify({
        'status': 'ok',
        'timestamp': server.now(),
        'connections': server.registry.count(),
    })


@api.route('/api/auth/register', methods=['POST'])
def register():
    data = _json_body()
    email = validation.require_str(data, 'email', 254)
    username = validation.require_str(data, 'username', 30)
    password = data.get('password')

    if not EMAIL_RE.match(email):
        raise ValidationError('Invalid email')
    if not USERNAME_RE.match(username):
        raise ValidationError('Username must be 3-30 letters, digits, dots or underscores')
    if not isinstance(password, str) or len(password) < MIN_PASSWORD:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD} characters')
    if len(password.encode('utf-8')) > MAX_PASSWORD_BYTES:
        raise ValidationError(f'Password must be at most {MAX_PASSWORD_BYTES} bytes')

    display_name = data.get('displayName') or username
    if not isinstance(display_name, str) or len(display_name) > 50:
        raise ValidationError('Invalid displayName')

    user = _server().users.create(email, username, display_name, hash_password(password))
    logger.info('registered userId=%s', user.userId)
    return _auth_response(user, 201)


@api.route('/api/auth/login', methods=['POST'])
def login():
    server = _server()
    data = _json_body()
    login_name = validation.require_str(data, 'login' if 'login' in data else 'email', 254)
    password = data.get('password')
    if not isinstance(password, str) or not password:
        raise ValidationError('Missing password')

    users = server.users
    user = users.find_by_email(login_name) if '@' in login_name else users.find_by_handle(login_name)
    if user is None:
        raise AuthError(AuthError.BAD_CREDENTIALS, 'Invalid credentials')
    if users.is_locked(user):
        raise AuthError(AuthError.USER_LOCKED, 'Account temporarily locked')

    if not check_password(password, user.passwordHash):
        user = users.increment_login_attempts(user.userId)
        logger.info('login failed userId=%s attempts=%s', user.userId, user.loginAttempts)
        raise AuthError(AuthError.BAD_CREDENTIALS, 'Invalid credentials')

    server.verifier.check_account(user)
    users.reset_login_attempts(user.userId)
    logger.info('login userId=%s', user.userId)
    return _auth_response(user)


@api.route('/api/auth/refresh', methods=['POST'])
def refresh():
    data = _json_body()
    token = data.get('refreshToken')
    if not isinstance(token, str) or not token:
        raise AuthError(AuthError.MISSING, 'Missing refresh token')
    return jsonify(_server().verifier.renew(token))


@api.route('/api/auth/profile', methods=['GET'])
@require_auth
def profile():
    user = _server().users.find_by_id(request.user_id)
    if user is None:
        raise NotFound('User not found')
    return jsonify({'user': user.to_private()})


@api.route('/api/auth/logout', methods=['POST'])
@require_auth
def logout():
    """Tokens are stateless and stay valid until they expire; a ``deviceId``
    in the body unregisters that device's push token."""
    data = request.get_json(silent=True) or {}
    device_id = data.get('deviceId') if isinstance(data, dict) else None
    removed = False
    if isinstance(device_id, str) and device_id:
        removed = _server().users.remove_push_token(request.user_id, device_id)
    logger.info('logout userId=%s pushTokenRemoved=%s', request.user_id, removed)
    return jsonify({'success': True})


@api.route('/api/chat/conversations', methods=['GET'])
@require_auth
def conversations():
    server = _server()
    out = []
    for entry in server.messages.conversations_of(request.user_id):
        partner = server.users.find_by_id(entry['partner'])
        if partner is None:
            continue
        out.append({
            'user': partner.to_public(),
            'presence': server.presence.snapshot(partner),
            'lastMessage': entry['lastMessage'].to_client(),
            'unreadCount': entry['unreadCount'],
        })
    return jsonify({'conversations': out})


def _parse_before(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError('Invalid before timestamp')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _mark_read(server, partner_id, reader_id):
    at = server.clock()
    ids = server.messages.mark_conversation_read(partner_id, reader_id, at=at)
    if ids:
        server.registry.broadcast_to(partner_id, {
            'type': 'read_receipt',
            'receiver': reader_id,
            'messageIds': ids,
            'readAt': isoformat(at),
            'timestamp': isoformat(at),
        })
    return ids


@api.route('/api/chat/send', methods=['POST'])
@require_auth
def send_message():
    """Same path as a socket ``chat`` envelope: stored, fanned out, pushed."""
    try:
        message = _server().router.submit_chat(request.user_id, _json_body())
    except Conflict as e:
        return jsonify({'message': e.existing.to_client(), 'duplicate': True})
    return jsonify({'message': message.to_client()}), 201


@api.route('/api/chat/messages/<user_id>', methods=['GET'])
@require_auth
def conversation(user_id):
    server = _server()
    if server.users.find_by_id(user_id) is None:
        raise NotFound('User not found')

    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        raise ValidationError('Invalid limit')
    limit = max(1, min(limit, MAX_PAGE))
    before = _parse_before(request.args.get('before'))

    _mark_read(server, user_id, request.user_id)
    page = server.messages.fetch_conversation(request.user_id, user_id, before, limit)
    # fetched newest first; clients render oldest first
    messages = [m.to_client() for m in reversed(page)]
    return jsonify({'messages': messages, 'hasMore': len(page) == limit})


@api.route('/api/chat/messages/<message_id>', methods=['PUT'])
@require_auth
def edit_message(message_id):
    server = _server()
    data = _json_body()
    message = server.messages.edit(message_id, data.get('content'), request.user_id)
    server.notify_peers(message, {
        'type': 'message_edited',
        'message': message.to_client(),
        'timestamp': server.now(),
    })
    return jsonify({'message': message.to_client()})


@api.route('/api/chat/messages/<message_id>', methods=['DELETE'])
@require_auth
def delete_message(message_id):
    server = _server()
    message = server.messages.soft_delete(message_id, request.user_id)
    server.notify_peers(message, {
        'type': 'message_deleted',
        'messageId': message.messageId,
        'deletedAt': isoformat(message.deletedAt),
        'timestamp': server.now(),
    })
    return jsonify({'success': True})


@api.route('/api/chat/messages/<message_id>/reactions', methods=['POST'])
@require_auth
def add_reaction(message_id):
    server = _server()
    data = _json_body()
    emoji = data.get('emoji')
    if not isinstance(emoji, str):
        raise ValidationError('Invalid emoji')
    message = server.messages.react(message_id, request.user_id, emoji.strip())
    _notify_reaction(server, message)
    return jsonify({'message': message.to_client()})


@api.route('/api/chat/messages/<message_id>/reactions', methods=['DELETE'])
@require_auth
def remove_reaction(message_id):
    server = _server()
    message = server.messages.unreact(message_id, request.user_id)
    _notify_reaction(server, message)
    return jsonify({'message': message.to_client()})


def _notify_reaction(server, message):
    server.notify_peers(message, {
        'type': 'reaction',
        'messageId': message.messageId,
        'userId': request.user_id,
        'reactions': [r.to_dict() for r in message.reactions],
        'timestamp': server.now(),
    })


@api.route('/api/chat/read/<user_id>', methods=['POST'])
@require_auth
def mark_read(user_id):
    ids = _mark_read(_server(), user_id, request.user_id)
    return jsonify({'messageIds': ids, 'count': len(ids)})


@api.route('/api/chat/unread', methods=['GET'])
@require_auth
def unread():
    messages = _server().messages.list_unread(request.user_id)
    counts = {}
    for message in messages:
        counts[message.senderId] = counts.get(message.senderId, 0) + 1
    return jsonify({'total': len(messages), 'bySender': counts})


@api.route('/api/users/push-tokens', methods=['POST'])
@require_auth
def add_push_token():
    data = _json_body()
    token = _server().users.add_push_token(
        request.user_id, data.get('token'), data.get('platform'), data.get('deviceId'),
    )
    return jsonify({'pushToken': token.to_dict()}), 201


@api.route('/api/users/push-tokens/<device_id>', methods=['DELETE'])
@require_auth
def remove_push_token(device_id):
    removed = _server().users.remove_push_token(request.user_id, device_id)
    if not removed:
        raise NotFound('Push token not found')
    return jsonify({'success': True})


@api.route('/api/users/<user_id>/presence', methods=['GET'])
@require_auth
def user_presence(user_id):
    server = _server()
    user = server.users.find_by_id(user_id)
    if user is None or not user.isActive:
        raise NotFound('User not found')
    return jsonify(server.presence.snapshot(user))


@api.route('/api/admin/users/<user_id>/block', methods=['POST'])
@require_role('admin', 'moderator')
def block_user(user_id):
    server = _server()
    data = request.get_json(silent=True) or {}
    blocked = data.get('blocked', True)
    if not isinstance(blocked, bool):
        raise ValidationError('blocked must be a boolean')
    reason = data.get('reason')
    if reason is not None and not isinstance(reason, str):
        raise ValidationError('Invalid reason')
    if user_id == request.user_id:
        raise ValidationError('Cannot block yourself')

    user = server.users.set_blocked(user_id, blocked, reason)
    kicked = server.kick(user_id, reason or 'Account blocked') if blocked else 0
    logger.warning('userId=%s blocked=%s by=%s kicked=%d', user_id, blocked, request.user_id, kicked)
    return jsonify({'user': user.to_private(), 'kicked': kicked})


@api.route('/api/ice', methods=['GET'])
@require_auth
def ice_servers():
    cfg = current_app.config
    servers = []
    if cfg['STUN_URLS']:
        servers.append({'urls': cfg['STUN_URLS']})
    if cfg['TURN_URLS']:
        servers.append({
            'urls': cfg['TURN_URLS'],
            'username': cfg['TURN_USER'],
            'credential': cfg['TURN_PASS'],
        })
    return jsonify({'iceServers': servers})


@api.route('/api/logs', methods=['GET'])
def get_logs():
    """Return recent app log lines."""
    buffer = _server().log_buffer
    return jsonify({'lines': buffer.snapshot() if buffer is not None else []})


@api.route('/api/debug', methods=['GET'])
def get_debug():
    """Return connection counts for this process and Redis."""
    return jsonify(_server().debug_info())

"""Tests for the HTTP control surface."""

from unittest.mock import MagicMock

import pytest

from drilunia.auth import REFRESH
from drilunia.models import STATUS_READ, Message, db


def _chat(server, sender, receiver, content='hello', message_id=None):
    draft = {'receiver': receiver.userId, 'content': content, 'messageId': message_id}
    return server.messages.persist(sender.userId, draft)


class TestRegisterAndLogin:

    def test_register_returns_tokens(self, client, server):
        response = client.post('/api/auth/register', json={
            'email': 'dana@example.com',
            'username': 'dana',
            'password': 'long enough',
        })
        assert response.status_code == 201
        body = response.get_json()
        assert body['user']['username'] == 'dana'
        assert server.verifier.verify(body['accessToken']).userId == body['user']['id']

    @pytest.mark.parametrize('payload', [
        {'email': 'bad', 'username': 'dana', 'password': 'long enough'},
        {'email': 'dana@example.com', 'username': 'x', 'password': 'long enough'},
        {'email': 'dana@example.com', 'username': 'dana', 'password': 'short'},
        {'email': 'dana@example.com', 'username': 'dana', 'password': 'x' * 73},
    ])
    def test_register_validation(self, client, payload):
        response = client.post('/api/auth/register', json=payload)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'validation'

    def test_register_duplicate(self, client, make_user):
        make_user('dana')
        response = client.post('/api/auth/register', json={
            'email': 'dana@example.com', 'username': 'other', 'password': 'long enough',
        })
        assert response.status_code == 400

    def test_login_by_email_or_handle(self, client, make_user):
        make_user('alice', password='correct horse battery')
        for login in ('alice@example.com', 'Alice'):
            response = client.post('/api/auth/login', json={'login': login, 'password': 'correct horse battery'})
            assert response.status_code == 200
            assert 'refreshToken' in response.get_json()

    def test_lockout_after_repeated_failures(self, client, make_user):
        make_user('alice', password='correct horse battery')
        for _ in range(5):
            response = client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'nope'})
            assert response.status_code == 401
            assert response.get_json()['reason'] == 'bad-credentials'

        response = client.post('/api/auth/login', json={
            'email': 'alice@example.com', 'password': 'correct horse battery',
        })
        assert response.status_code == 401
        assert response.get_json()['reason'] == 'user-locked'

    def test_success_resets_attempts(self, client, make_user):
        alice = make_user('alice', password='correct horse battery')
        client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'nope'})
        client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'correct horse battery'})
        db.session.refresh(alice)
        assert alice.loginAttempts == 0

    def test_blocked_user_cannot_login(self, client, make_user):
        make_user('mallory', password='correct horse battery', isBlocked=True)
        response = client.post('/api/auth/login', json={
            'email': 'mallory@example.com', 'password': 'correct horse battery',
        })
        assert response.status_code == 401
        assert response.get_json()['reason'] == 'user-blocked'

    def test_refresh(self, client, server, make_user):
        alice = make_user('alice')
        response = client.post('/api/auth/refresh', json={
            'refreshToken': server.tokens.issue(alice.userId, REFRESH),
        })
        assert response.status_code == 200
        assert set(response.get_json()) == {'accessToken', 'refreshToken'}

        response = client.post('/api/auth/refresh', json={'refreshToken': 'garbage'})
        assert response.status_code == 401

    def test_profile(self, client, make_user, bearer):
        alice = make_user('alice')
        response = client.get('/api/auth/profile', headers=bearer(alice))
        assert response.status_code == 200
        user = response.get_json()['user']
        assert user['id'] == alice.userId
        assert user['email'] == 'alice@example.com'
        assert 'passwordHash' not in user

        assert client.get('/api/auth/profile').status_code == 401

    def test_logout_unregisters_device(self, client, server, make_user, bearer):
        alice = make_user('alice')
        server.users.add_push_token(alice.userId, 'fcm', 'android', 'pixel')

        response = client.post('/api/auth/logout', headers=bearer(alice), json={'deviceId': 'pixel'})
        assert response.status_code == 200
        assert response.get_json() == {'success': True}
        assert server.users.push_tokens(alice.userId) == []

        assert client.post('/api/auth/logout', headers=bearer(alice)).status_code == 200
        assert client.post('/api/auth/logout').status_code == 401


class TestAuthRequired:

    def test_missing_header(self, client):
        response = client.get('/api/chat/conversations')
        assert response.status_code == 401
        assert response.get_json()['reason'] == 'missing'

    def test_role_required(self, client, make_user, bearer):
        alice, bob = make_user('alice'), make_user('bob')
        response = client.post(f'/api/admin/users/{bob.userId}/block', headers=bearer(alice))
        assert response.status_code == 403


class TestConversations:

    def test_listing(self, client, server, make_user, bearer, clock):
        alice, bob = make_user('alice'), make_user('bob')
        _chat(server, bob, alice, 'hi')
        clock.advance(1)
        _chat(server, bob, alice, 'there')

        response = client.get('/api/chat/conversations', headers=bearer(alice))
        conversations = response.get_json()['conversations']
        assert len(conversations) == 1
        assert conversations[0]['user']['id'] == bob.userId
        assert conversations[0]['lastMessage']['content'] == 'there'
        assert conversations[0]['unreadCount'] == 2

    def test_fetch_marks_read_and_notifies_sender(self, client, server, make_user, bearer, open_session, clock):
        alice, bob = make_user('alice'), make_user('bob')
        bob_session = open_session(bob)
        m1 = _chat(server, bob, alice, 'one')
        clock.advance(1)
        _chat(server, alice, bob, 'two')

        response = client.get(f'/api/chat/messages/{bob.userId}', headers=bearer(alice))
        body = response.get_json()
        assert [m['content'] for m in body['messages']] == ['one', 'two']
        assert body['messages'][0]['status'] == STATUS_READ
        assert body['hasMore'] is False

        receipts = bob_session.ws.of_type('read_receipt')
        assert receipts[0]['messageIds'] == [m1.messageId]

    def test_paging(self, client, server, make_user, bearer, clock):
        alice, bob = make_user('alice'), make_user('bob')
        for i in range(3):
            clock.advance(1)
            _chat(server, alice, bob, f'm{i}')

        body = client.get(f'/api/chat/messages/{bob.userId}?limit=2', headers=bearer(alice)).get_json()
        assert [m['content'] for m in body['messages']] == ['m1', 'm2']
        assert body['hasMore'] is True

        before = body['messages'][0]['sentAt']
        body = client.get(
            f'/api/chat/messages/{bob.userId}', query_string={'before': before}, headers=bearer(alice),
        ).get_json()
        assert [m['content'] for m in body['messages']] == ['m0']

    def test_unread_and_mark_read(self, client, server, make_user, bearer):
        alice, bob = make_user('alice'), make_user('bob')
        _chat(server, bob, alice)
        _chat(server, bob, alice)

        body = client.get('/api/chat/unread', headers=bearer(alice)).get_json()
        assert body == {'total': 2, 'bySender': {bob.userId: 2}}

        body = client.post(f'/api/chat/read/{bob.userId}', headers=bearer(alice)).get_json()
        assert body['count'] == 2
        assert client.get('/api/chat/unread', headers=bearer(alice)).get_json()['total'] == 0


class TestSend:

    def test_http_send_reaches_live_sessions(self, client, server, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob')
        a1, b1 = open_session(alice), open_session(bob)

        response = client.post('/api/chat/send', headers=bearer(alice), json={
            'receiver': bob.userId, 'content': 'over http', 'messageId': 'm-http',
        })

        assert response.status_code == 201
        assert response.get_json()['message']['messageId'] == 'm-http'
        for session in (a1, b1):
            assert session.ws.of_type('chat')[0]['message']['content'] == 'over http'
        assert db.session.get(Message, 'm-http').senderId == alice.userId

    def test_offline_receiver_is_pushed(self, client, server, make_user, bearer):
        alice, bob = make_user('alice'), make_user('bob')
        server.users.add_push_token(bob.userId, 'fcm', 'android', 'pixel')
        server.router.push = MagicMock()

        response = client.post('/api/chat/send', headers=bearer(alice), json={
            'receiver': bob.userId, 'content': 'wake up',
        })

        assert response.status_code == 201
        user_id, envelope, tokens = server.router.push.notify.call_args.args
        assert user_id == bob.userId
        assert envelope['message']['content'] == 'wake up'
        assert tokens[0]['deviceId'] == 'pixel'

    def test_retried_send_is_not_delivered_twice(self, client, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob')
        b1 = open_session(bob)
        payload = {'receiver': bob.userId, 'content': 'once', 'messageId': 'm-retry'}

        assert client.post('/api/chat/send', headers=bearer(alice), json=payload).status_code == 201
        response = client.post('/api/chat/send', headers=bearer(alice), json=payload)

        assert response.status_code == 200
        assert response.get_json()['duplicate'] is True
        assert len(b1.ws.of_type('chat')) == 1
        assert Message.query.count() == 1

    @pytest.mark.parametrize('payload, status', [
        ({'content': 'hi'}, 400),
        ({'receiver': 'ghost', 'content': 'hi'}, 404),
        ({'receiver': 'SELF', 'content': 'hi'}, 400),
        ({'receiver': 'BOB', 'content': ''}, 400),
    ])
    def test_invalid_send(self, client, make_user, bearer, payload, status):
        alice, bob = make_user('alice'), make_user('bob')
        ids = {'SELF': alice.userId, 'BOB': bob.userId}
        payload = {k: ids.get(v, v) for k, v in payload.items()}

        response = client.post('/api/chat/send', headers=bearer(alice), json=payload)
        assert response.status_code == status
        assert Message.query.count() == 0


class TestEditDeleteReact:

    def test_edit_notifies_both_peers(self, client, server, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob')
        bob_session = open_session(bob)
        message = _chat(server, alice, bob, message_id='m-1')

        response = client.put('/api/chat/messages/m-1', json={'content': 'edited'}, headers=bearer(alice))
        assert response.status_code == 200
        assert response.get_json()['message']['isEdited'] is True
        assert bob_session.ws.of_type('message_edited')[0]['message']['content'] == 'edited'
        assert message.messageId == 'm-1'

    def test_edit_policy(self, client, server, make_user, bearer, clock):
        alice, bob = make_user('alice'), make_user('bob')
        _chat(server, alice, bob, message_id='m-1')

        response = client.put('/api/chat/messages/m-1', json={'content': 'x'}, headers=bearer(bob))
        assert response.status_code == 404

        clock.advance(60 * 60 + 1)
        response = client.put('/api/chat/messages/m-1', json={'content': 'x'}, headers=bearer(alice))
        assert response.status_code == 403
        assert response.get_json()['code'] == 'too-old'

    def test_delete(self, client, server, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob')
        bob_session = open_session(bob)
        _chat(server, alice, bob, message_id='m-1')

        assert client.delete('/api/chat/messages/m-1', headers=bearer(alice)).status_code == 200
        assert bob_session.ws.of_type('message_deleted')[0]['messageId'] == 'm-1'
        assert db.session.get(Message, 'm-1').isDeleted
        assert client.delete('/api/chat/messages/m-1', headers=bearer(alice)).status_code == 404

    def test_reactions(self, client, server, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob')
        alice_session = open_session(alice)
        _chat(server, alice, bob, message_id='m-1')

        response = client.post('/api/chat/messages/m-1/reactions', json={'emoji': '👍'}, headers=bearer(bob))
        assert response.get_json()['message']['reactions'][0]['emoji'] == '👍'
        assert alice_session.ws.of_type('reaction')[0]['userId'] == bob.userId

        response = client.delete('/api/chat/messages/m-1/reactions', headers=bearer(bob))
        assert response.get_json()['message']['reactions'] == []


class TestUsers:

    def test_push_tokens(self, client, server, make_user, bearer):
        alice = make_user('alice')
        response = client.post('/api/users/push-tokens', headers=bearer(alice), json={
            'token': 'fcm', 'platform': 'android', 'deviceId': 'pixel',
        })
        assert response.status_code == 201
        assert [t.token for t in server.users.push_tokens(alice.userId)] == ['fcm']

        assert client.delete('/api/users/push-tokens/pixel', headers=bearer(alice)).status_code == 200
        assert client.delete('/api/users/push-tokens/pixel', headers=bearer(alice)).status_code == 404

    def test_presence_lookup(self, client, make_user, bearer, open_session):
        alice, bob = make_user('alice'), make_user('bob', showLastSeen=False)
        open_session(bob)
        body = client.get(f'/api/users/{bob.userId}/presence', headers=bearer(alice)).get_json()
        assert body == {'userId': bob.userId, 'isOnline': True, 'lastSeen': None}

        assert client.get('/api/users/nobody/presence', headers=bearer(alice)).status_code == 404

    def test_admin_block_kicks_sessions(self, client, server, make_user, bearer, open_session):
        admin = make_user('root', role='admin')
        mallory = make_user('mallory')
        session = open_session(mallory)

        response = client.post(
            f'/api/admin/users/{mallory.userId}/block', json={'reason': 'spam'}, headers=bearer(admin),
        )
        assert response.status_code == 200
        assert response.get_json()['kicked'] == 1
        assert session.ws.closed == (1008, 'spam')

        token = server.tokens.issue(mallory.userId)
        response = client.get('/api/chat/conversations', headers={'Authorization': f'Bearer {token}'})
        assert response.get_json()['reason'] == 'user-blocked'


class TestOperational:

    def test_health(self, client):
        body = client.get('/health').get_json()
        assert body['status'] == 'ok'
        assert body['connections'] == 0

    def test_ice_servers(self, app, client, make_user, bearer):
        app.config['STUN_URLS'] = ['stun:stun.example.com:3478']
        app.config['TURN_URLS'] = ['turn:turn.example.com:3478']
        app.config['TURN_USER'] = 'u'
        app.config['TURN_PASS'] = 'p'
        body = client.get('/api/ice', headers=bearer(make_user('alice'))).get_json()
        assert body['iceServers'] == [
            {'urls': ['stun:stun.example.com:3478']},
            {'urls': ['turn:turn.example.com:3478'], 'username': 'u', 'credential': 'p'},
        ]

    def test_logs_and_debug(self, client, make_user, open_session):
        open_session(make_user('alice'))
        lines = client.get('/api/logs').get_json()['lines']
        assert isinstance(lines, list)

        body = client.get('/api/debug').get_json()
        assert body['connections_in_this_process'] == 1
        assert body['redis_enabled'] is False

"""Tests for the redis relay with a mocked client."""

import json
from unittest.mock import MagicMock

import redis

from drilunia.cluster import ALL_CHAN, KICK_CHAN, ONLINE_KEY, SESSION_COUNT_KEY, USER_CHAN_PREFIX, ClusterRelay
from drilunia.registry import CLOSE_POLICY_VIOLATION


def _relay():
    client = MagicMock()
    return ClusterRelay('redis://localhost:6379/0', client=client), client


class TestOnlineSet:

    def test_first_session_joins_set(self):
        relay, client = _relay()
        client.hincrby.return_value = 1
        relay.mark_online('alice')
        client.hincrby.assert_called_once_with(SESSION_COUNT_KEY, 'alice', 1)
        client.sadd.assert_called_once_with(ONLINE_KEY, 'alice')

    def test_last_session_leaves_set(self):
        relay, client = _relay()
        client.hincrby.return_value = 0
        relay.mark_offline('alice')
        client.hdel.assert_called_once_with(SESSION_COUNT_KEY, 'alice')
        client.srem.assert_called_once_with(ONLINE_KEY, 'alice')

    def test_other_workers_keep_user_online(self):
        relay, client = _relay()
        client.hincrby.return_value = 1
        relay.mark_offline('alice')
        client.srem.assert_not_called()

    def test_redis_errors_mean_offline(self):
        relay, client = _relay()
        client.sismember.side_effect = redis.ConnectionError('down')
        assert relay.is_online('alice') is False
        client.scard.side_effect = redis.ConnectionError('down')
        assert relay.online_count() is None


class TestPublish:

    def test_publish_to_online_user(self):
        relay, client = _relay()
        client.sismember.return_value = True
        assert relay.publish('bob', {'type': 'chat'})

        channel, payload = client.publish.call_args.args
        assert channel == USER_CHAN_PREFIX + 'bob'
        assert json.loads(payload) == {
            'userId': 'bob', 'envelope': {'type': 'chat'}, 'origin': relay.instance_id,
        }

    def test_offline_user_not_published(self):
        relay, client = _relay()
        client.sismember.return_value = False
        assert not relay.publish('bob', {'type': 'chat'})
        client.publish.assert_not_called()

    def test_publish_all(self):
        relay, client = _relay()
        relay.publish_all({'type': 'presence'}, exclude='alice')
        channel, payload = client.publish.call_args.args
        assert channel == ALL_CHAN
        assert json.loads(payload)['exclude'] == 'alice'

    def test_publish_kick(self):
        relay, client = _relay()
        relay.publish_kick('mallory', 'blocked')
        channel, payload = client.publish.call_args.args
        assert channel == KICK_CHAN
        assert json.loads(payload) == {'kick': 'mallory', 'reason': 'blocked', 'origin': relay.instance_id}


class TestHandle:

    def test_routes_remote_payloads(self):
        relay, _ = _relay()
        deliver, deliver_all = MagicMock(), MagicMock()
        relay._deliver, relay._deliver_all = deliver, deliver_all

        relay.handle(json.dumps({'origin': 'other', 'userId': 'bob', 'envelope': {'type': 'chat'}}))
        deliver.assert_called_once_with('bob', {'type': 'chat'})

        relay.handle(json.dumps({'origin': 'other', 'exclude': 'alice', 'envelope': {'type': 'presence'}}).encode())
        deliver_all.assert_called_once_with({'type': 'presence'}, 'alice')

    def test_routes_remote_kicks(self):
        relay, _ = _relay()
        relay._kick = MagicMock()
        relay._deliver_all = MagicMock()

        assert relay.handle(json.dumps({'origin': 'other', 'kick': 'mallory', 'reason': 'blocked'}))
        relay._kick.assert_called_once_with('mallory', 'blocked')
        relay._deliver_all.assert_not_called()

    def test_skips_own_and_malformed_payloads(self):
        relay, _ = _relay()
        relay._deliver = MagicMock()
        own = json.dumps({'origin': relay.instance_id, 'userId': 'bob', 'envelope': {}})
        assert relay.handle(own) is False
        assert relay.handle('{nope') is False
        relay._deliver.assert_not_called()


class TestServerIntegration:

    def test_remote_delivery_reaches_local_sessions(self, server, make_user, open_session):
        alice = make_user('alice')
        session = open_session(alice)
        relay, _ = _relay()
        relay._deliver = lambda user_id, envelope: server.in_context(
            server.registry.deliver_local, user_id, envelope)
        relay._deliver_all = MagicMock()

        relay.handle(json.dumps({'origin': 'other', 'userId': alice.userId, 'envelope': {'type': 'typing'}}))
        assert session.ws.of_type('typing') == [{'type': 'typing'}]

    def test_kick_is_published_to_other_workers(self, server, make_user, open_session):
        mallory = make_user('mallory')
        session = open_session(mallory)
        server.relay = MagicMock()

        assert server.kick(mallory.userId, 'blocked') == 1
        assert session.ws.closed == (CLOSE_POLICY_VIOLATION, 'blocked')
        server.relay.publish_kick.assert_called_once_with(mallory.userId, 'blocked')

    def test_remote_kick_closes_local_sessions_without_republishing(self, server, make_user, open_session):
        mallory = make_user('mallory')
        session = open_session(mallory)
        server.relay = MagicMock()

        assert server.kick(mallory.userId, 'blocked', local_only=True) == 1
        assert session.ws.closed == (CLOSE_POLICY_VIOLATION, 'blocked')
        server.relay.publish_kick.assert_not_called()

# Optional Redis relay for multi-worker deployments (e.g. gunicorn with several
# gevent workers). Each worker keeps its own sockets; Redis carries the set of
# online users and forwards envelopes to whichever worker holds the session.
import json
import logging
import threading
import uuid

import redis


logger = logging.getLogger(__name__)


ONLINE_KEY = 'drilunia:online_users'
SESSION_COUNT_KEY = 'drilunia:session_counts'
USER_CHAN_PREFIX = 'drilunia:ws:user:'
ALL_CHAN = 'drilunia:ws:all'
KICK_CHAN = 'drilunia:ws:kick'


class ClusterRelay:

    def __init__(self, url, client=None):
        self.url = url
        self.instance_id = uuid.uuid4().hex
        self._client = client
        self._deliver = None
        self._deliver_all = None
        self._kick = None
        self._pubsub = None
        self._thread = None
        self._stop = threading.Event()

    @property
    def client(self):
        """Redis client, created lazily so each forked worker gets its own connection."""
        if self._client is None:
            try:
                self._client = redis.from_url(self.url)
                self._client.ping()
            except redis.RedisError as e:
                logger.error('redis connect failed: %s', e)
                self._client = None
        return self._client

    def mark_online(self, user_id):
        r = self.client
        if r is None:
            return
        try:
            if r.hincrby(SESSION_COUNT_KEY, user_id, 1) > 0:
                r.sadd(ONLINE_KEY, user_id)
        except redis.RedisError as e:
            logger.warning('redis mark_online failed userId=%s: %s', user_id, e)

    def mark_offline(self, user_id):
        r = self.client
        if r is None:
            return
        try:
            if r.hincrby(SESSION_COUNT_KEY, user_id, -1) <= 0:
                r.hdel(SESSION_COUNT_KEY, user_id)
                r.srem(ONLINE_KEY, user_id)
        except redis.RedisError as e:
            logger.warning('redis mark_offline failed userId=%s: %s', user_id, e)

    def is_online(self, user_id):
        r = self.client
        if r is None:
            return False
        try:
            return bool(r.sismember(ONLINE_KEY, user_id))
        except redis.RedisError as e:
            logger.warning('redis is_online failed userId=%s: %s', user_id, e)
            return False

    def online_count(self):
        r = self.client
        if r is None:
            return None
        try:
            return r.scard(ONLINE_KEY)
        except redis.RedisError as e:
            logger.warning('redis online_count failed: %s', e)
            return None

    def _publish(self, channel, message):
        r = self.client
        if r is None:
            return False
        message['origin'] = self.instance_id
        try:
            r.publish(channel, json.dumps(message))
        except redis.RedisError as e:
            logger.warning('redis publish failed channel=%s: %s', channel, e)
            return False
        return True

    def publish(self, user_id, envelope):
        if not self.is_online(user_id):
            return False
        return self._publish(USER_CHAN_PREFIX + user_id, {'userId': user_id, 'envelope': envelope})

    def publish_all(self, envelope, exclude=None):
        return self._publish(ALL_CHAN, {'exclude': exclude, 'envelope': envelope})

    def publish_kick(self, user_id, reason):
        """Ask every other worker to close the sessions it holds for ``user_id``."""
        return self._publish(KICK_CHAN, {'kick': user_id, 'reason': reason})

    def start(self, deliver, deliver_all, kick=None):
        """Subscribe and hand remote envelopes to ``deliver(user_id, envelope)``
        and ``deliver_all(envelope, exclude)``, and remote kicks to
        ``kick(user_id, reason)``, on a background thread."""
        self._deliver = deliver
        self._deliver_all = deliver_all
        self._kick = kick
        if self.client is None or self._thread is not None:
            return
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(USER_CHAN_PREFIX + '*')
        self._pubsub.subscribe(ALL_CHAN, KICK_CHAN)
        self._thread = threading.Thread(target=self._listen, name='drilunia-redis', daemon=True)
        self._thread.start()

    def handle(self, raw):
        """Route one pub/sub payload to local sessions; ignores our own publishes."""
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning('redis relay dropped malformed payload')
            return False
        if message.get('origin') == self.instance_id:
            return False
        if 'kick' in message:
            if self._kick is None:
                return False
            self._kick(message['kick'], message.get('reason'))
            return True
        envelope = message.get('envelope')
        if not isinstance(envelope, dict):
            return False
        if 'userId' in message:
            self._deliver(message['userId'], envelope)
        else:
            self._deliver_all(envelope, message.get('exclude'))
        return True

    def _listen(self):
        try:
            for msg in self._pubsub.listen():
                if self._stop.is_set():
                    break
                if msg.get('type') not in ('message', 'pmessage'):
                    continue
                try:
                    self.handle(msg['data'])
                except Exception:
                    logger.exception('redis relay delivery failed')
        except redis.RedisError as e:
            if not self._stop.is_set():
                logger.error('redis subscriber stopped: %s', e)

    def stop(self):
        self._stop.set()
        if self._pubsub is not None:
            try:
                self._pubsub.punsubscribe()
                self._pubsub.unsubscribe()
                self._pubsub.close()
            except redis.RedisError:
                pass
        self._thread = None

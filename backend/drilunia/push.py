import logging
import threading

import requests


logger = logging.getLogger(__name__)


class PushBridge:
    """Best-effort notification egress for recipients with no live session.

    The base bridge only logs; deployments point ``PUSH_BRIDGE_URL`` at a
    push gateway to get ``HttpPushBridge``.
    """

    def notify(self, user_id, envelope, tokens=()):
        logger.info(
            'push skipped (no bridge) userId=%s type=%s devices=%d',
            user_id, envelope.get('type'), len(tokens),
        )
        return False


class HttpPushBridge(PushBridge):

    def __init__(self, url, timeout=5.0, session=None, background=True):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.background = background

    def notify(self, user_id, envelope, tokens=()):
        if not tokens:
            logger.info('push skipped (no devices) userId=%s', user_id)
            return False

        payload = {
            'userId': user_id,
            'tokens': [dict(t) for t in tokens],
            'envelope': envelope,
        }
        if self.background:
            threading.Thread(target=self._post, args=(payload,), daemon=True).start()
        else:
            self._post(payload)
        return True

    def _post(self, payload):
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning('push bridge post failed userId=%s: %s', payload['userId'], e)
            return False
        return True


def create_push_bridge(config):
    url = config.get('PUSH_BRIDGE_URL')
    if url:
        return HttpPushBridge(url, timeout=config.get('PUSH_TIMEOUT', 5.0))
    return PushBridge()

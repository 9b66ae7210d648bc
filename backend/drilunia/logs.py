# In-app log buffer (last N lines), also printed to stderr
import logging
import sys
import time
from collections import deque


LOGGER_NAME = 'drilunia'


class RingBufferHandler(logging.Handler):

    def __init__(self, capacity=500):
        super().__init__()
        self.lines = deque(maxlen=capacity)

    def emit(self, record):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def snapshot(self):
        return list(self.lines)


def _formatter():
    formatter = logging.Formatter('[%(asctime)s] %(message)s', datefmt='%H:%M:%S')
    formatter.converter = time.gmtime
    return formatter


def setup_logging(app):
    """Attach the stderr and ring-buffer handlers to the ``drilunia`` logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    for handler in list(logger.handlers):
        if getattr(handler, '_drilunia', False):
            logger.removeHandler(handler)

    stream = logging.StreamHandler(sys.stderr)
    buffer = RingBufferHandler(app.config.get('LOG_BUFFER_SIZE', 500))
    for handler in (stream, buffer):
        handler._drilunia = True
        handler.setFormatter(_formatter())
        logger.addHandler(handler)
    return buffer

# Gevent must be patched first so one worker can handle WebSockets + HTTP concurrently
from gevent import monkey
monkey.patch_all()

import logging
import os
import signal
import sys

from gevent.pywsgi import WSGIServer

from drilunia import create_app


logger = logging.getLogger('drilunia')

app = create_app()


def main():
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', os.environ.get('FLASK_PORT', '3000')))
    http_server = WSGIServer((host, port), app, log=None)
    server = app.extensions['drilunia']

    def stop(signum, frame):
        logger.info('signal %s received, shutting down', signum)
        http_server.stop(timeout=5)
        server.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, stop)
    signal.signal(signal.SIGINT, stop)

    logger.info('listening on %s:%d', host, port)
    http_server.serve_forever()


if __name__ == '__main__':
    main()

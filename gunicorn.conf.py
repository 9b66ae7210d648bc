# gunicorn.conf.py
import os

# Worker configuration; sockets need the gevent worker
workers = int(os.getenv("GUNICORN_WORKERS", 1))
worker_class = "gevent"
worker_connections = 1000
timeout = int(os.getenv("GUNICORN_TIMEOUT", 120))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 10))
keepalive = 2

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")

# Process naming
proc_name = "drilunia"

# Bind address
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:" + os.getenv("PORT", "3000"))

chdir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend")
wsgi_app = "app:app"

forwarded_allow_ips = "*"


def worker_exit(server, worker):
    # drain sockets: offline presence, last-seen write, close 1001
    from app import app
    app.extensions["drilunia"].shutdown()

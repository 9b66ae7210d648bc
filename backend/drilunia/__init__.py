from flask import Flask
from flask_cors import CORS

from .api import api
from .config import load_config
from .connection import sock
from .logs import setup_logging
from .models import db, utcnow
from .server import ChatServer


def create_app(overrides=None, clock=utcnow):
    app = Flask(__name__)
    load_config(app, overrides)
    log_buffer = setup_logging(app)

    CORS(app, resources={r"/api/*": {
        "origins": app.config['CORS_ORIGIN'],
        "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
    }})
    db.init_app(app)
    sock.init_app(app)
    app.register_blueprint(api)

    server = ChatServer(app, clock=clock, log_buffer=log_buffer)
    app.extensions['drilunia'] = server

    with app.app_context():
        db.create_all()

    server.start()
    return app

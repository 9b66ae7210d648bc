import os
import secrets


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_list(name):
    value = os.environ.get(name) or ''
    return [item.strip() for item in value.split(',') if item.strip()]


def _database_url():
    url = (os.environ.get('DATABASE_URL') or '').strip()
    if url:
        # Heroku/Render style URLs
        if url.startswith('postgres://'):
            url = 'postgresql://' + url[len('postgres://'):]
        return url

    data_dir = os.environ.get('DATA_DIR', os.path.join(os.path.dirname(__file__), '..', 'dbs'))
    os.makedirs(data_dir, exist_ok=True)
    db_path = os.path.abspath(os.path.join(data_dir, 'main.db')).replace('\\', '/')
    return f'sqlite:///{db_path}'


def load_config(app, overrides=None):
    """Populate app.config from the environment, then apply overrides."""
    cfg = app.config

    cfg['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_urlsafe(32))

    cfg['JWT_SECRET'] = os.environ.get('JWT_SECRET') or cfg['SECRET_KEY']
    cfg['JWT_REFRESH_SECRET'] = os.environ.get('JWT_REFRESH_SECRET') or secrets.token_urlsafe(32)
    cfg['JWT_ALGORITHM'] = 'HS256'
    cfg['JWT_ACCESS_TTL'] = _env_int('JWT_ACCESS_TTL', 15 * 60)
    cfg['JWT_REFRESH_TTL'] = _env_int('JWT_REFRESH_TTL', 30 * 24 * 60 * 60)

    cfg['STORE_TIMEOUT'] = _env_float('STORE_TIMEOUT', 5.0)
    cfg['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    cfg['CORS_ORIGIN'] = os.environ.get('CORS_ORIGIN', '*')

    cfg['HEARTBEAT_INTERVAL'] = _env_float('HEARTBEAT_INTERVAL', 30.0)
    cfg['HEARTBEAT_AUTOSTART'] = True
    cfg['PRESENCE_WINDOW'] = _env_int('PRESENCE_WINDOW', 5 * 60)
    cfg['PRESENCE_SCOPE'] = os.environ.get('PRESENCE_SCOPE', 'all')
    cfg['LAST_SEEN_DEBOUNCE'] = _env_int('LAST_SEEN_DEBOUNCE', 30)
    cfg['AUTH_WINDOW'] = _env_float('AUTH_WINDOW', 10.0)
    cfg['SEND_TIMEOUT'] = _env_float('SEND_TIMEOUT', 5.0)

    cfg['EDIT_WINDOW'] = _env_int('EDIT_WINDOW', 60 * 60)
    cfg['MAX_CONTENT_LENGTH_CHARS'] = 5000
    cfg['LOGIN_ATTEMPT_LIMIT'] = _env_int('LOGIN_ATTEMPT_LIMIT', 5)
    cfg['LOCKOUT_DURATION'] = _env_int('LOCKOUT_DURATION', 2 * 60 * 60)

    cfg['PUSH_BRIDGE_URL'] = os.environ.get('PUSH_BRIDGE_URL', '')
    cfg['PUSH_TIMEOUT'] = _env_float('PUSH_TIMEOUT', 5.0)

    cfg['REDIS_URL'] = os.environ.get('REDIS_URL') or ''

    cfg['STUN_URLS'] = _env_list('STUN_URLS')
    cfg['TURN_URLS'] = _env_list('TURN_URLS')
    cfg['TURN_USER'] = os.environ.get('TURN_USER', '')
    cfg['TURN_PASS'] = os.environ.get('TURN_PASS', '')

    cfg['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    cfg['LOG_BUFFER_SIZE'] = _env_int('LOG_BUFFER_SIZE', 500)

    if overrides:
        cfg.update(overrides)

    if 'SQLALCHEMY_DATABASE_URI' not in cfg or not cfg['SQLALCHEMY_DATABASE_URI']:
        cfg['SQLALCHEMY_DATABASE_URI'] = _database_url()

    cfg.setdefault('SQLALCHEMY_ENGINE_OPTIONS', _engine_options(cfg))
    return cfg


def _engine_options(cfg):
    uri = cfg['SQLALCHEMY_DATABASE_URI']
    timeout = cfg['STORE_TIMEOUT']
    if uri.startswith('sqlite'):
        return {'connect_args': {'timeout': timeout, 'check_same_thread': False}}
    return {'pool_pre_ping': True, 'pool_timeout': timeout}

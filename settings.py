# settings.py
# Environment-driven configuration, loaded with app.config.from_object()

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY") or os.urandom(24)

    # MongoDB setup
    MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017/")
    MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", "eco_rewards")
    DATASTORE = os.environ.get("RECYCLE_DATASTORE", "mongo")

    # Session timing (seconds)
    SESSION_TIMEOUT_SECONDS = int(os.environ.get("SESSION_TIMEOUT_SECONDS", 180))
    STALE_LEASE_SECONDS = int(os.environ.get("STALE_LEASE_SECONDS", 60))
    HEARTBEAT_SECONDS = int(os.environ.get("HEARTBEAT_SECONDS", 10))
    CALL_TIMEOUT_SECONDS = float(os.environ.get("CALL_TIMEOUT_SECONDS", 15))

    AUTO_RESOLVER_ENABLED = _env_bool("AUTO_RESOLVER_ENABLED", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    DATASTORE = "memory"
    AUTO_RESOLVER_ENABLED = False
    LOG_LEVEL = "DEBUG"

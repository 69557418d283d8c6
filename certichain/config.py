import os

from dotenv import load_dotenv

from certichain.errors import ConfigurationError

# ---------------- LOAD SECRETS ----------------
load_dotenv()

BACKENDS = ("database", "local")


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


class Config:
    MASTER_KEY = os.getenv("MASTER_KEY")
    SUPERADMIN_KEY = os.getenv("SUPERADMIN_KEY")

    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///certichain.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "database").lower()
    LOCAL_STORE_DIR = os.getenv("LOCAL_STORE_DIR", "certichain_data")

    BACKEND_TIMEOUT_SECONDS = _int_env("BACKEND_TIMEOUT_SECONDS", 5)
    ANCHOR_WRITE_RETRIES = _int_env("ANCHOR_WRITE_RETRIES", 3)

    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")

    DEFAULT_INSTITUTION_NAME = os.getenv("DEFAULT_INSTITUTION_NAME")
    ISSUER_SECRET = os.getenv("ISSUER_SECRET")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def engine_options(database_uri, timeout):
    """SQLAlchemy engine options that bound how long a query may wait."""
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout}}
    options = {"pool_timeout": timeout, "pool_pre_ping": True}
    if database_uri.startswith("postgresql"):
        options["connect_args"] = {"connect_timeout": timeout}
    return options


def validate(config):
    if not config.get("MASTER_KEY"):
        raise ConfigurationError("MASTER_KEY must be set")
    if config.get("STORAGE_BACKEND") not in BACKENDS:
        raise ConfigurationError(
            f"STORAGE_BACKEND must be one of {', '.join(BACKENDS)}, "
            f"got {config.get('STORAGE_BACKEND')!r}"
        )
    if config.get("BACKEND_TIMEOUT_SECONDS", 0) <= 0:
        raise ConfigurationError("BACKEND_TIMEOUT_SECONDS must be positive")
    if config.get("ANCHOR_WRITE_RETRIES", 0) < 1:
        raise ConfigurationError("ANCHOR_WRITE_RETRIES must be at least 1")

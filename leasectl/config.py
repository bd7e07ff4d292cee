import os

DB_ENV_VAR = "LEASECTL_DB"
DEFAULT_DB_FILE = "queue.db"

DEFAULT_CONFIG = {
    "lease_seconds": "30",
    "max_attempts_default": "3",
    "heartbeat_interval": "10",
    "poll_interval": "1.0",
    "sweep_interval": "5.0",
    "job_timeout_seconds": "20",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Keys whose values must parse as integers >= 1; the rest are positive floats.
INT_CONFIG_KEYS = {"lease_seconds", "max_attempts_default", "heartbeat_interval", "job_timeout_seconds"}


def db_path() -> str:
    return os.environ.get(DB_ENV_VAR) or DEFAULT_DB_FILE

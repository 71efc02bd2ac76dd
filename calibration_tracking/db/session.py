import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


CALIBRATION_TRACKING_DB_URL = _require_env("CALIBRATION_TRACKING_DB_URL")

_connect_args = {"check_same_thread": False} if CALIBRATION_TRACKING_DB_URL.startswith("sqlite") else {}

engine_tracking = create_engine(
    CALIBRATION_TRACKING_DB_URL,
    pool_pre_ping=True,
    future=True,
    connect_args=_connect_args,
)

SessionLocalTracking = sessionmaker(
    bind=engine_tracking,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)

from collections.abc import Generator

from .session import SessionLocalTracking


def get_tracking_db() -> Generator:
    db = SessionLocalTracking()
    try:
        yield db
    finally:
        db.close()

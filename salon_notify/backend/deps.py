"""FastAPI dependencies."""
from typing import Generator

import redis
from sqlalchemy.orm import Session

from salon_notify.backend.config import get_settings
from salon_notify.backend.database import get_session_factory


def get_db() -> Generator[Session, None, None]:
    factory = get_session_factory()
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def get_redis() -> redis.Redis:
    s = get_settings()
    return redis.Redis(host=s.redis_host, port=s.redis_port, socket_timeout=5)

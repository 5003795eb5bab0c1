from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.errors import EsignError
from esign.core.logging_setup import logger
from esign.db import session as db_session_module
from esign.models.lock import EsignLock


class LockUnavailable(EsignError):
    def __init__(self, lock_key: str) -> None:
        super().__init__("LOCK_UNAVAILABLE", f"Resource is busy: {lock_key}", 409)


class LockService:
    """Table-backed mutex with a TTL, usable across processes sharing the database."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        ttl_seconds: int | None = None,
        max_retries: int | None = None,
        retry_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory or db_session_module.open_session
        self.ttl_seconds = ttl_seconds or settings.lock_ttl_seconds
        self.max_retries = max_retries if max_retries is not None else settings.lock_max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    def _try_acquire(self, lock_key: str, lock_id: str, ttl_seconds: int) -> bool:
        now = datetime.utcnow()
        with self.session_factory() as session:
            existing = session.exec(select(EsignLock).where(EsignLock.lock_key == lock_key)).first()
            if existing is not None:
                if existing.expires_at > now:
                    return False
                session.delete(existing)
                session.flush()
            session.add(EsignLock(lock_key=lock_key, lock_id=lock_id, expires_at=now + timedelta(seconds=ttl_seconds)))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def acquire(self, lock_key: str, ttl_seconds: int | None = None) -> str | None:
        lock_id = uuid4().hex
        ttl = ttl_seconds or self.ttl_seconds
        for attempt in range(self.max_retries + 1):
            if self._try_acquire(lock_key, lock_id, ttl):
                return lock_id
            if attempt < self.max_retries:
                self.sleep(self.retry_delay * (attempt + 1))
        logger.warning("Could not acquire lock %s", lock_key)
        return None

    def release(self, lock_key: str, lock_id: str) -> bool:
        with self.session_factory() as session:
            existing = session.exec(
                select(EsignLock).where(EsignLock.lock_key == lock_key, EsignLock.lock_id == lock_id)
            ).first()
            if existing is None:
                return False
            session.delete(existing)
            session.commit()
        return True

    @contextmanager
    def hold(self, lock_key: str, ttl_seconds: int | None = None) -> Iterator[str]:
        lock_id = self.acquire(lock_key, ttl_seconds)
        if lock_id is None:
            raise LockUnavailable(lock_key)
        try:
            yield lock_id
        finally:
            self.release(lock_key, lock_id)

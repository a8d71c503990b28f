"""Run-locks that keep at most one run of each job kind active."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from mediasync.models.operation import RunLock
from mediasync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from mediasync.config import Settings

logger = logging.getLogger(__name__)


@runtime_checkable
class LockProvider(Protocol):
    async def acquire(self, name: str) -> bool:
        """Take the lock without waiting. Returns False when it is held."""
        ...

    async def release(self, name: str) -> None: ...

    async def is_held(self, name: str) -> bool: ...


class InProcessLockProvider:
    """asyncio locks; enough for a single-process deployment."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def acquire(self, name: str) -> bool:
        lock = self._lock(name)
        if lock.locked():
            return False
        await lock.acquire()
        return True

    async def release(self, name: str) -> None:
        lock = self._lock(name)
        if lock.locked():
            lock.release()

    async def is_held(self, name: str) -> bool:
        return self._lock(name).locked()


class DatabaseLockProvider:
    """Lease rows in ``sync_run_locks`` shared by every instance on the same database.

    A lease expires after ``ttl_seconds`` so a crashed holder cannot block
    the job forever.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 3600,
        holder_id: str | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self.holder_id = holder_id or uuid.uuid4().hex
        self._clock = clock

    async def _ensure_row(self, session: AsyncSession, name: str) -> None:
        if await session.get(RunLock, name) is not None:
            return
        session.add(RunLock(name=name))
        try:
            await session.commit()
        except IntegrityError:
            # another instance created it first
            await session.rollback()

    async def acquire(self, name: str) -> bool:
        now = self._clock()
        async with self._session_factory() as session:
            await self._ensure_row(session, name)
            result = await session.execute(
                update(RunLock)
                .where(
                    RunLock.name == name,
                    or_(RunLock.holder.is_(None), RunLock.expires_at < now),
                )
                .values(holder=self.holder_id, acquired_at=now, expires_at=now + self._ttl)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        acquired = result.rowcount == 1
        if acquired:
            logger.debug("Run lock %s acquired by %s", name, self.holder_id)
        return acquired

    async def release(self, name: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(RunLock)
                .where(RunLock.name == name, RunLock.holder == self.holder_id)
                .values(holder=None, acquired_at=None, expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def is_held(self, name: str) -> bool:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(RunLock).where(RunLock.name == name))
            ).scalar_one_or_none()
        if row is None or row.holder is None:
            return False
        return row.expires_at is not None and row.expires_at >= self._clock()


def create_lock_provider(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> LockProvider:
    if settings.run_lock_backend == "database":
        return DatabaseLockProvider(session_factory, ttl_seconds=settings.run_lock_ttl_seconds)
    return InProcessLockProvider()

"""Sync operation tracking, change notification and health snapshots."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from mediasync.exceptions import OperationNotFoundError
from mediasync.models.operation import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OperationSource,
    OperationStatus,
    SnapshotType,
    StatusSnapshot,
    SyncOperation,
)
from mediasync.services import mirror_service
from mediasync.services.datetime_service import ensure_utc, now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

HEALTHY_ERROR_RATE = 5.0
WARNING_ERROR_RATE = 20.0


@dataclass(frozen=True)
class OperationEvent:
    """Lightweight change notification for live status observers."""

    operation_id: str
    operation_type: str
    status: str
    progress: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type,
            "status": self.status,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
        }


OperationListener = Callable[[OperationEvent], None]


def estimate_completion(
    start_time: datetime, progress: int, now: datetime
) -> datetime | None:
    """Linear projection of the finish time; only defined while 0 < progress < 100."""
    if not 0 < progress < 100:
        return None
    elapsed = (now - ensure_utc(start_time)).total_seconds()
    remaining = elapsed / progress * (100 - progress)
    return now + timedelta(seconds=remaining)


def classify_health(error_rate: float) -> str:
    if error_rate < HEALTHY_ERROR_RATE:
        return "healthy"
    if error_rate < WARNING_ERROR_RATE:
        return "warning"
    return "critical"


class SyncOperationTracker:
    """Owns SyncOperation and StatusSnapshot rows.

    Every mutation commits in its own session so observers and cancellation
    requests see it immediately, independent of the caller's transaction.
    Subscribed listeners are invoked synchronously after each commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._listeners: list[OperationListener] = []

    # ── Observers ──

    def subscribe(self, listener: OperationListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, operation: SyncOperation) -> None:
        event = OperationEvent(
            operation_id=operation.id,
            operation_type=operation.operation_type,
            status=operation.status,
            progress=operation.progress,
            timestamp=self._clock(),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Operation listener failed for %s", operation.id)

    # ── Lifecycle ──

    async def create_operation(
        self,
        operation_type: str,
        *,
        total_items: int = 0,
        source: str = OperationSource.MANUAL,
        triggered_by: str | None = None,
        operation_data: dict[str, Any] | None = None,
        status: str = OperationStatus.IN_PROGRESS,
    ) -> str:
        now = self._clock()
        operation = SyncOperation(
            id=str(uuid.uuid4()),
            operation_type=operation_type,
            status=status,
            progress=0,
            total_items=max(0, total_items),
            processed_items=0,
            failed_items=0,
            start_time=now,
            triggered_by=triggered_by,
            source=source,
            operation_data=operation_data or {},
            error_details={},
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(operation)
            await session.commit()
        logger.info("Started %s operation %s (source=%s)", operation_type, operation.id, source)
        self._publish(operation)
        return operation.id

    async def update_progress(
        self,
        operation_id: str,
        *,
        progress: int | None = None,
        processed: int | None = None,
        failed: int | None = None,
        total: int | None = None,
    ) -> SyncOperation:
        """Record progress. Regressions are ignored and terminal operations are left as is.

        When ``progress`` is omitted it is derived from the item counts.
        """
        async with self._session_factory() as session:
            operation = await self._load(session, operation_id)
            if operation.is_terminal:
                return operation

            if total is not None:
                operation.total_items = max(0, total)
            if processed is not None:
                operation.processed_items = max(0, processed)
            if failed is not None:
                operation.failed_items = max(0, failed)
            done = operation.processed_items + operation.failed_items
            if done > operation.total_items:
                operation.total_items = done

            if progress is None and operation.total_items:
                progress = done * 100 // operation.total_items
            if progress is not None:
                operation.progress = max(operation.progress, min(100, max(0, progress)))

            now = self._clock()
            if operation.status == OperationStatus.PENDING:
                operation.status = OperationStatus.IN_PROGRESS
            operation.estimated_completion = estimate_completion(
                operation.start_time, operation.progress, now
            )
            operation.updated_at = now
            await session.commit()
        self._publish(operation)
        return operation

    async def complete_operation(
        self,
        operation_id: str,
        status: str = OperationStatus.COMPLETED,
        error_details: dict[str, Any] | None = None,
    ) -> SyncOperation:
        """Move an operation to a terminal status.

        An operation that is already terminal (e.g. cancelled mid-run) keeps its status.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        async with self._session_factory() as session:
            operation = await self._load(session, operation_id)
            if operation.is_terminal:
                logger.info(
                    "Operation %s already %s; ignoring %s", operation_id, operation.status, status
                )
                return operation
            now = self._clock()
            operation.status = status
            operation.end_time = now
            operation.estimated_completion = None
            if status == OperationStatus.COMPLETED:
                operation.progress = 100
            if error_details:
                operation.error_details = {**(operation.error_details or {}), **error_details}
            operation.updated_at = now
            await session.commit()
        log = logger.warning if status == OperationStatus.FAILED else logger.info
        log("Operation %s finished with status %s", operation_id, status)
        self._publish(operation)
        return operation

    async def cancel_operation(self, operation_id: str) -> SyncOperation:
        """Request cancellation; runs observe it between batches."""
        return await self.complete_operation(
            operation_id, OperationStatus.CANCELLED, {"cancelled_at": self._clock().isoformat()}
        )

    async def is_cancelled(self, operation_id: str) -> bool:
        async with self._session_factory() as session:
            status = (
                await session.execute(
                    select(SyncOperation.status).where(SyncOperation.id == operation_id)
                )
            ).scalar_one_or_none()
        return status == OperationStatus.CANCELLED

    # ── Queries ──

    async def _load(self, session: AsyncSession, operation_id: str) -> SyncOperation:
        operation = await session.get(SyncOperation, operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return operation

    async def get_operation(self, operation_id: str) -> SyncOperation:
        async with self._session_factory() as session:
            return await self._load(session, operation_id)

    async def list_operations(
        self, *, limit: int = 20, active_only: bool = False
    ) -> list[SyncOperation]:
        stmt = select(SyncOperation).order_by(SyncOperation.created_at.desc()).limit(limit)
        if active_only:
            stmt = stmt.where(SyncOperation.status.in_(ACTIVE_STATUSES))
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def count_active(self, session: AsyncSession | None = None) -> int:
        stmt = select(func.count()).select_from(SyncOperation).where(
            SyncOperation.status.in_(ACTIVE_STATUSES)
        )
        if session is not None:
            return (await session.execute(stmt)).scalar_one()
        async with self._session_factory() as own_session:
            return (await own_session.execute(stmt)).scalar_one()

    # ── Snapshots ──

    async def create_snapshot(self, snapshot_type: str = SnapshotType.MANUAL) -> StatusSnapshot:
        """Insert a health rollup of the mirror. An empty mirror yields all-zero counts."""
        if snapshot_type not in {t.value for t in SnapshotType}:
            raise ValueError(f"Unknown snapshot type: {snapshot_type}")
        async with self._session_factory() as session:
            counts = await mirror_service.count_by_status(session)
            active = await self.count_active(session)
            last_sync = await mirror_service.latest_sync_time(session)

            total = sum(counts.values())
            error_rate = round(counts["error"] / total * 100, 2) if total else 0.0
            now = self._clock()
            snapshot = StatusSnapshot(
                id=str(uuid.uuid4()),
                snapshot_type=snapshot_type,
                total_assets=total,
                synced_assets=counts["synced"],
                pending_assets=counts["pending"],
                error_assets=counts["error"],
                conflict_assets=counts["conflict"],
                active_operations=active,
                last_sync_time=last_sync,
                system_health=classify_health(error_rate),
                performance_score=max(0, min(100, round(100 - error_rate))),
                error_rate=error_rate,
                details={"counts": counts},
                created_at=now,
            )
            session.add(snapshot)
            await session.commit()
        logger.info(
            "Created %s snapshot: %d assets, health=%s",
            snapshot_type,
            total,
            snapshot.system_health,
        )
        return snapshot

    async def list_snapshots(self, *, limit: int = 24) -> list[StatusSnapshot]:
        stmt = select(StatusSnapshot).order_by(StatusSnapshot.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def prune_snapshots(self, keep: int) -> int:
        """Delete the oldest snapshots beyond the newest ``keep``."""
        async with self._session_factory() as session:
            keep_ids = (
                select(StatusSnapshot.id)
                .order_by(StatusSnapshot.created_at.desc())
                .limit(keep)
                .scalar_subquery()
            )
            result = await session.execute(
                delete(StatusSnapshot).where(StatusSnapshot.id.not_in(keep_ids))
            )
            await session.commit()
        return result.rowcount or 0

    async def prune_operations(self, older_than_days: int) -> int:
        """Delete terminal operations created before the retention window."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncOperation).where(
                    SyncOperation.status.in_(TERMINAL_STATUSES),
                    SyncOperation.created_at < cutoff,
                )
            )
            await session.commit()
        pruned = result.rowcount or 0
        if pruned:
            logger.info("Pruned %d sync operations older than %d days", pruned, older_than_days)
        return pruned

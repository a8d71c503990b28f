"""Cleanup queue processor: store-side deletions with backoff and dead-lettering."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from mediasync.models.cleanup import CleanupQueueItem, CleanupStatus
from mediasync.models.operation import OperationSource, OperationStatus, OperationType
from mediasync.services import mirror_service
from mediasync.services.datetime_service import now_utc
from mediasync.store.base import AssetNotFoundError, AssetStoreError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.config import Settings
    from mediasync.services.operation_service import SyncOperationTracker
    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)

# A claim older than this belongs to a processor that died mid-item.
STALE_CLAIM_AFTER = timedelta(minutes=15)


@dataclass(frozen=True)
class CleanupPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 30.0
    backoff_cap_seconds: float = 1800.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CleanupPolicy:
        return cls(
            max_attempts=settings.cleanup_max_attempts,
            backoff_base_seconds=settings.cleanup_backoff_base_seconds,
            backoff_cap_seconds=settings.cleanup_backoff_cap_seconds,
        )

    def backoff(self, attempts: int) -> timedelta:
        """Delay before retry number ``attempts`` (1-based): base * 2^(n-1), capped."""
        exponent = max(0, attempts - 1)
        # 2**64 seconds overflows timedelta long before the cap applies
        if exponent >= 63:
            return timedelta(seconds=self.backoff_cap_seconds)
        delay = min(self.backoff_cap_seconds, self.backoff_base_seconds * 2**exponent)
        return timedelta(seconds=delay)


@dataclass
class CleanupItemResult:
    id: int
    public_id: str
    status: str
    attempts: int
    error: str | None = None


@dataclass
class CleanupSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    remaining: int = 0
    reset: int = 0
    operation_id: str | None = None
    items: list[CleanupItemResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def claim_item(session: AsyncSession, item_id: int, now: datetime) -> bool:
    """Atomically move one item from pending to processing.

    The claim is committed before the caller talks to the store so that a
    concurrent processor sees it and skips the item.
    """
    result = await session.execute(
        update(CleanupQueueItem)
        .where(CleanupQueueItem.id == item_id, CleanupQueueItem.status == CleanupStatus.PENDING)
        .values(status=CleanupStatus.PROCESSING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def reset_failed(session: AsyncSession, now: datetime) -> int:
    """Give dead-lettered items a fresh set of attempts."""
    result = await session.execute(
        update(CleanupQueueItem)
        .where(CleanupQueueItem.status == CleanupStatus.FAILED)
        .values(
            status=CleanupStatus.PENDING,
            attempts=0,
            last_error=None,
            next_attempt_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0


async def release_stale_claims(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(
        update(CleanupQueueItem)
        .where(
            CleanupQueueItem.status == CleanupStatus.PROCESSING,
            CleanupQueueItem.updated_at < now - STALE_CLAIM_AFTER,
        )
        .values(status=CleanupStatus.PENDING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = result.rowcount or 0
    if released:
        logger.warning("Released %d stale cleanup claims", released)
    return released


async def count_remaining(session: AsyncSession) -> int:
    stmt = select(func.count()).select_from(CleanupQueueItem).where(
        CleanupQueueItem.status == CleanupStatus.PENDING
    )
    return (await session.execute(stmt)).scalar_one()


async def _select_candidates(
    session: AsyncSession, now: datetime, limit: int, specific_id: int | None
) -> list[int]:
    stmt = select(CleanupQueueItem.id).where(CleanupQueueItem.status == CleanupStatus.PENDING)
    if specific_id is not None:
        stmt = stmt.where(CleanupQueueItem.id == specific_id)
    else:
        stmt = (
            stmt.where(CleanupQueueItem.next_attempt_at <= now)
            .order_by(CleanupQueueItem.created_at, CleanupQueueItem.id)
            .limit(limit)
        )
    ids = list((await session.execute(stmt)).scalars())
    # End the read transaction so claims from other sessions are not blocked.
    await session.commit()
    return ids


async def _process_item(
    session: AsyncSession,
    store: AssetStore,
    item_id: int,
    policy: CleanupPolicy,
    clock: Callable[[], datetime],
) -> CleanupItemResult:
    item = await session.get(CleanupQueueItem, item_id, populate_existing=True)
    if item is None:
        raise LookupError(f"Cleanup item {item_id} vanished after claim")
    public_id = item.cloudinary_public_id
    resource_type = item.resource_type
    # no transaction may stay open across the store call
    await session.commit()

    error: str | None = None
    retryable = False
    try:
        outcome = await store.delete_asset(public_id, resource_type)
        confirmed = outcome.ok
        if not confirmed:
            error = f"Deletion of {public_id} was not confirmed"
    except AssetNotFoundError:
        confirmed = True
    except AssetStoreError as exc:
        confirmed = False
        error = str(exc) or exc.__class__.__name__
        retryable = exc.retryable
    except Exception as exc:
        logger.exception("Cleanup %s: unexpected error deleting %s", item_id, public_id)
        confirmed = False
        error = f"{exc.__class__.__name__}: {exc}"
        retryable = True

    now = clock()
    item.updated_at = now
    if confirmed:
        item.status = CleanupStatus.DONE
        item.completed_at = now
        item.last_error = None
        removed = await mirror_service.hard_delete(session, public_id)
        logger.info("Cleanup %s: deleted %s (mirror row removed=%s)", item_id, public_id, removed)
    else:
        item.attempts += 1
        item.last_error = error
        if retryable and item.attempts < policy.max_attempts:
            item.status = CleanupStatus.PENDING
            item.next_attempt_at = now + policy.backoff(item.attempts)
            logger.warning(
                "Cleanup %s: deleting %s failed (attempt %d/%d), retry at %s: %s",
                item_id,
                public_id,
                item.attempts,
                policy.max_attempts,
                item.next_attempt_at.isoformat(),
                error,
            )
        else:
            item.status = CleanupStatus.FAILED
            logger.error(
                "Cleanup %s: giving up on %s after %d attempts: %s",
                item_id,
                public_id,
                item.attempts,
                error,
            )
    await session.commit()
    return CleanupItemResult(
        id=item.id,
        public_id=public_id,
        status=item.status,
        attempts=item.attempts,
        error=item.last_error,
    )


async def process_cleanup_queue(
    session: AsyncSession,
    store: AssetStore,
    *,
    limit: int = 10,
    specific_id: int | None = None,
    force_retry: bool = False,
    policy: CleanupPolicy | None = None,
    tracker: SyncOperationTracker | None = None,
    source: str = OperationSource.MANUAL,
    clock: Callable[[], datetime] = now_utc,
) -> CleanupSummary:
    """Drain up to ``limit`` due items, oldest first.

    Safe to run concurrently with itself: each item is claimed with a
    conditional update and skipped when another processor got there first.
    A ``specific_id`` is processed even if its retry time has not come yet.
    """
    policy = policy or CleanupPolicy()
    summary = CleanupSummary()
    now = clock()

    if force_retry:
        summary.reset = await reset_failed(session, now)
        if summary.reset:
            logger.info("Reset %d failed cleanup items for retry", summary.reset)
    await release_stale_claims(session, now)

    candidates = await _select_candidates(session, now, limit, specific_id)
    if tracker is not None and candidates:
        summary.operation_id = await tracker.create_operation(
            OperationType.DELETE,
            total_items=len(candidates),
            source=source,
            operation_data={"limit": limit, "specific_id": specific_id},
        )

    try:
        for item_id in candidates:
            if not await claim_item(session, item_id, clock()):
                logger.debug("Cleanup item %s already claimed elsewhere", item_id)
                continue
            item_result = await _process_item(session, store, item_id, policy, clock)
            summary.processed += 1
            summary.items.append(item_result)
            if item_result.status == CleanupStatus.DONE:
                summary.succeeded += 1
            elif item_result.status == CleanupStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1
            if tracker is not None and summary.operation_id is not None:
                await tracker.update_progress(
                    summary.operation_id,
                    processed=summary.succeeded,
                    failed=summary.processed - summary.succeeded,
                )
    except Exception as exc:
        if tracker is not None and summary.operation_id is not None:
            await tracker.complete_operation(
                summary.operation_id,
                OperationStatus.FAILED,
                {"errors": [f"{exc.__class__.__name__}: {exc}"]},
            )
        raise

    summary.remaining = await count_remaining(session)
    if tracker is not None and summary.operation_id is not None:
        failures = [
            {"public_id": r.public_id, "error": r.error}
            for r in summary.items
            if r.status != CleanupStatus.DONE
        ]
        await tracker.complete_operation(
            summary.operation_id,
            OperationStatus.COMPLETED,
            {"failures": failures} if failures else None,
        )
    logger.info(
        "Cleanup pass: processed=%d succeeded=%d retried=%d failed=%d remaining=%d",
        summary.processed,
        summary.succeeded,
        summary.retried,
        summary.failed,
        summary.remaining,
    )
    return summary

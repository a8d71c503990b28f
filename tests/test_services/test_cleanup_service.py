"""Tests for the cleanup queue processor."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import select

from mediasync.models.cleanup import CleanupQueueItem, CleanupStatus
from mediasync.models.operation import OperationStatus, OperationType
from mediasync.services import mirror_service
from mediasync.services.cleanup_service import (
    STALE_CLAIM_AFTER,
    CleanupPolicy,
    claim_item,
    process_cleanup_queue,
)
from mediasync.store.base import PermanentStoreError, TransientStoreError
from tests._fakes import FakeAssetStore, FakeClock, make_descriptor

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from mediasync.services.operation_service import SyncOperationTracker

POLICY = CleanupPolicy(max_attempts=3, backoff_base_seconds=30, backoff_cap_seconds=600)


async def _soft_delete(
    session: AsyncSession, store: FakeAssetStore, public_id: str, clock: FakeClock
) -> None:
    descriptor = make_descriptor(public_id)
    store.add(descriptor)
    await mirror_service.upsert_from_descriptor(session, descriptor, now=clock())
    await mirror_service.soft_delete(
        session, public_id, deleted_by="ui", reason="Deleted in admin UI", now=clock()
    )
    await session.commit()


async def _items(session: AsyncSession) -> list[CleanupQueueItem]:
    stmt = select(CleanupQueueItem).order_by(CleanupQueueItem.id)
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return list(result.scalars())


class TestDeletionPropagation:
    async def test_soft_delete_then_cleanup_hard_deletes(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        items = await _items(db_session)
        assert len(items) == 1
        assert items[0].cloudinary_public_id == "A"

        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)

        assert summary.processed == 1
        assert summary.succeeded == 1
        assert summary.remaining == 0
        assert fake_store.delete_calls == ["A"]
        assert "A" not in fake_store.assets
        items = await _items(db_session)
        assert items[0].status == CleanupStatus.DONE
        assert items[0].completed_at == clock.now
        assert await mirror_service.get_asset(db_session, "A", include_deleted=True) is None

    async def test_not_found_counts_as_success(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        del fake_store.assets["A"]

        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert summary.succeeded == 1
        assert await mirror_service.get_asset(db_session, "A", include_deleted=True) is None

    async def test_revived_row_is_not_hard_deleted(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("A"))
        await mirror_service.enqueue_cleanup(db_session, "A", reason="manual", now=clock())
        await db_session.commit()

        await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert await mirror_service.get_asset(db_session, "A") is not None

    async def test_oldest_first_and_limit(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        for name in ("first", "second", "third"):
            await _soft_delete(db_session, fake_store, name, clock)
            clock.advance(1)

        summary = await process_cleanup_queue(
            db_session, fake_store, limit=2, policy=POLICY, clock=clock
        )
        assert fake_store.delete_calls == ["first", "second"]
        assert summary.remaining == 1


class TestRetries:
    async def test_dead_letter_after_exactly_max_attempts(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        fake_store.delete_error = TransientStoreError("503 from store", code=503)

        statuses = []
        for _ in range(POLICY.max_attempts + 2):
            await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
            item = (await _items(db_session))[0]
            statuses.append((item.status, item.attempts))
            clock.advance(POLICY.backoff_cap_seconds)

        assert statuses == [
            (CleanupStatus.PENDING, 1),
            (CleanupStatus.PENDING, 2),
            (CleanupStatus.FAILED, 3),
            (CleanupStatus.FAILED, 3),
            (CleanupStatus.FAILED, 3),
        ]
        assert len(fake_store.delete_calls) == POLICY.max_attempts
        item = (await _items(db_session))[0]
        assert item.last_error == "503 from store"
        # the mirror row stays soft-deleted for an operator to inspect
        assert await mirror_service.get_asset(db_session, "A", include_deleted=True) is not None

    async def test_backoff_delays_next_attempt(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        fake_store.delete_error = TransientStoreError("timeout")
        start = clock.now

        await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        item = (await _items(db_session))[0]
        assert item.next_attempt_at == start + timedelta(seconds=30)

        clock.advance(29)
        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert summary.processed == 0

        clock.advance(1)
        await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        item = (await _items(db_session))[0]
        assert item.attempts == 2
        assert item.next_attempt_at == clock.now + timedelta(seconds=60)

    async def test_permanent_error_fails_immediately(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        fake_store.delete_error = PermanentStoreError("Invalid api_key", code=401)

        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert summary.failed == 1
        item = (await _items(db_session))[0]
        assert item.status == CleanupStatus.FAILED
        assert item.attempts == 1

    async def test_specific_id_ignores_retry_time(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        await _soft_delete(db_session, fake_store, "B", clock)
        fake_store.delete_errors["A"] = TransientStoreError("busy")
        await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        del fake_store.delete_errors["A"]

        item_a = (await _items(db_session))[0]
        summary = await process_cleanup_queue(
            db_session, fake_store, specific_id=item_a.id, policy=POLICY, clock=clock
        )
        assert summary.succeeded == 1
        assert (await _items(db_session))[0].status == CleanupStatus.DONE

    async def test_force_retry_resets_failed(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        fake_store.delete_error = PermanentStoreError("denied")
        await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        fake_store.delete_error = None

        summary = await process_cleanup_queue(
            db_session, fake_store, force_retry=True, policy=POLICY, clock=clock
        )
        assert summary.reset == 1
        assert summary.succeeded == 1
        item = (await _items(db_session))[0]
        assert item.status == CleanupStatus.DONE
        assert item.attempts == 0


class TestClaims:
    async def test_claim_is_exclusive(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
    ) -> None:
        item = await mirror_service.enqueue_cleanup(db_session, "A", reason="r", now=clock())
        await db_session.commit()

        async with session_factory() as other:
            assert await claim_item(db_session, item.id, clock())
            assert not await claim_item(other, item.id, clock())

    async def test_concurrent_processors_never_share_items(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_store: FakeAssetStore,
        clock: FakeClock,
    ) -> None:
        async with session_factory() as setup:
            for i in range(6):
                await _soft_delete(setup, fake_store, f"img-{i}", clock)
        fake_store.delete_delay = 0.02

        async def run() -> list[str]:
            async with session_factory() as session:
                summary = await process_cleanup_queue(
                    session, fake_store, policy=POLICY, clock=clock
                )
            return [item.public_id for item in summary.items]

        first, second = await asyncio.gather(run(), run())

        assert set(first).isdisjoint(second)
        assert sorted(first + second) == sorted(f"img-{i}" for i in range(6))
        assert sorted(fake_store.delete_calls) == sorted(f"img-{i}" for i in range(6))

    async def test_stale_claim_is_released(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, clock: FakeClock
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        item = (await _items(db_session))[0]
        assert await claim_item(db_session, item.id, clock())

        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert summary.processed == 0

        clock.advance(STALE_CLAIM_AFTER.total_seconds() + 1)
        summary = await process_cleanup_queue(db_session, fake_store, policy=POLICY, clock=clock)
        assert summary.succeeded == 1


class TestTracking:
    async def test_run_is_tracked_as_delete_operation(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
        clock: FakeClock,
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        await _soft_delete(db_session, fake_store, "B", clock)
        fake_store.delete_errors["B"] = TransientStoreError("busy")

        summary = await process_cleanup_queue(
            db_session, fake_store, policy=POLICY, tracker=tracker, clock=clock
        )
        assert summary.operation_id is not None
        operation = await tracker.get_operation(summary.operation_id)
        assert operation.operation_type == OperationType.DELETE
        assert operation.status == OperationStatus.COMPLETED
        assert operation.total_items == 2
        assert operation.processed_items == 1
        assert operation.failed_items == 1
        assert operation.error_details["failures"] == [{"public_id": "B", "error": "busy"}]

    async def test_unexpected_error_is_retried_and_pass_continues(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
        clock: FakeClock,
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)
        await _soft_delete(db_session, fake_store, "B", clock)
        fake_store.delete_errors["A"] = RuntimeError("driver bug")

        summary = await process_cleanup_queue(
            db_session, fake_store, policy=POLICY, tracker=tracker, clock=clock
        )

        assert summary.processed == 2
        assert summary.retried == 1
        assert summary.succeeded == 1
        first, second = await _items(db_session)
        assert first.status == CleanupStatus.PENDING
        assert first.attempts == 1
        assert first.last_error == "RuntimeError: driver bug"
        assert first.next_attempt_at == clock() + timedelta(seconds=30)
        assert second.status == CleanupStatus.DONE
        assert summary.operation_id is not None
        operation = await tracker.get_operation(summary.operation_id)
        assert operation.status == OperationStatus.COMPLETED
        assert await tracker.count_active() == 0

    async def test_pass_failure_closes_operation(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _soft_delete(db_session, fake_store, "A", clock)

        async def broken_hard_delete(*_args: object, **_kwargs: object) -> bool:
            raise RuntimeError("mirror unavailable")

        monkeypatch.setattr(mirror_service, "hard_delete", broken_hard_delete)

        with pytest.raises(RuntimeError, match="mirror unavailable"):
            await process_cleanup_queue(
                db_session, fake_store, policy=POLICY, tracker=tracker, clock=clock
            )

        (operation,) = await tracker.list_operations()
        assert operation.status == OperationStatus.FAILED
        assert operation.error_details["errors"] == ["RuntimeError: mirror unavailable"]
        assert await tracker.count_active() == 0

    async def test_empty_queue_creates_no_operation(
        self, db_session: AsyncSession, fake_store: FakeAssetStore, tracker: SyncOperationTracker
    ) -> None:
        summary = await process_cleanup_queue(db_session, fake_store, tracker=tracker)
        assert summary.operation_id is None
        assert summary.processed == 0
        assert await tracker.list_operations() == []


class TestPolicy:
    def test_backoff_doubles_until_cap(self) -> None:
        policy = CleanupPolicy(backoff_base_seconds=30, backoff_cap_seconds=1800)
        delays = [policy.backoff(n).total_seconds() for n in range(1, 9)]
        assert delays == [30, 60, 120, 240, 480, 960, 1800, 1800]

    def test_backoff_huge_attempt_count(self) -> None:
        assert CleanupPolicy().backoff(10_000) == timedelta(seconds=1800)

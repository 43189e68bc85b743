from datetime import datetime, timedelta, timezone

import pytest

import services.reconciliation as reconciliation
from config import settings
from models.ledger_reconciliation import LedgerReconciliation
from services.credits import KIND_ITERATION, KIND_NEW_GAME, debit_credits, get_credit_balance
from services.reconciliation import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RESOLVED,
    reconcile_pending_debit,
    record_unreconciled_debit,
    recover_pending_reconciliations,
)

from conftest import make_account


async def _record(session_maker, user_id, external_ref, amount=50, kind=KIND_NEW_GAME):
    return await record_unreconciled_debit(
        session_maker,
        user_id=user_id,
        amount=amount,
        kind=kind,
        description="New game: Pong",
        external_ref=external_ref,
        session_id="s-1",
        version_number=1,
        reason="connection reset",
    )


@pytest.mark.asyncio
async def test_pending_debit_is_resolved(session_maker):
    await make_account(session_maker, "owes")
    reconciliation_id = await _record(session_maker, "owes", "generation:g1")
    assert reconciliation_id

    assert await reconcile_pending_debit(reconciliation_id, session_maker=session_maker) == STATUS_RESOLVED
    async with session_maker() as db:
        row = await db.get(LedgerReconciliation, reconciliation_id)
        assert row.attempts == 1
        assert row.transaction_id
        assert row.resolved_at is not None
        assert await get_credit_balance("owes", db) == 0

    # Already resolved rows are left alone.
    assert await reconcile_pending_debit(reconciliation_id, session_maker=session_maker) == STATUS_RESOLVED


@pytest.mark.asyncio
async def test_debit_that_already_landed_is_not_taken_twice(session_maker):
    await make_account(session_maker, "landed", tier="gamedev", extra_credits=100)
    async with session_maker() as db:
        await debit_credits(
            "landed", db, amount=10, kind=KIND_ITERATION, description="edit", external_ref="generation:g2"
        )
    reconciliation_id = await _record(session_maker, "landed", "generation:g2", amount=10, kind=KIND_ITERATION)

    assert await reconcile_pending_debit(reconciliation_id, session_maker=session_maker) == STATUS_RESOLVED
    async with session_maker() as db:
        assert await get_credit_balance("landed", db) == 140


@pytest.mark.asyncio
async def test_insufficient_funds_gives_up_after_max_attempts(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILIATION_MAX_ATTEMPTS", 2)
    await make_account(session_maker, "spent")
    reconciliation_id = await _record(session_maker, "spent", "generation:g3", amount=80)

    assert await reconcile_pending_debit(reconciliation_id, session_maker=session_maker) == STATUS_PENDING
    assert await reconcile_pending_debit(reconciliation_id, session_maker=session_maker) == STATUS_FAILED
    async with session_maker() as db:
        row = await db.get(LedgerReconciliation, reconciliation_id)
        assert row.reason == "insufficient_funds"
        assert await get_credit_balance("spent", db) == 50


@pytest.mark.asyncio
async def test_recording_queues_a_job_when_enabled(session_maker, monkeypatch):
    queued = []
    monkeypatch.setattr(settings, "RECONCILIATION_QUEUE_ENABLED", True)
    monkeypatch.setattr(reconciliation, "enqueue_reconciliation_job", lambda reconciliation_id: queued.append(reconciliation_id))
    await make_account(session_maker, "queued")

    reconciliation_id = await _record(session_maker, "queued", "generation:g4")
    assert queued == [reconciliation_id]


@pytest.mark.asyncio
async def test_queue_outage_does_not_lose_the_record(session_maker, monkeypatch):
    def broken_enqueue(reconciliation_id):
        raise ConnectionError("redis down")

    monkeypatch.setattr(settings, "RECONCILIATION_QUEUE_ENABLED", True)
    monkeypatch.setattr(reconciliation, "enqueue_reconciliation_job", broken_enqueue)
    await make_account(session_maker, "offline")

    reconciliation_id = await _record(session_maker, "offline", "generation:g5")
    async with session_maker() as db:
        row = await db.get(LedgerReconciliation, reconciliation_id)
        assert row.status == STATUS_PENDING


@pytest.mark.asyncio
async def test_recovery_requeues_stale_rows_and_fails_exhausted_ones(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILIATION_MAX_ATTEMPTS", 3)
    await make_account(session_maker, "stale")
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    async with session_maker() as db:
        db.add(
            LedgerReconciliation(
                id="rec-retry", user_id="stale", amount=50, kind=KIND_NEW_GAME,
                external_ref="generation:old-1", status=STATUS_PENDING, attempts=1, created_at=old,
            )
        )
        db.add(
            LedgerReconciliation(
                id="rec-exhausted", user_id="stale", amount=50, kind=KIND_NEW_GAME,
                external_ref="generation:old-2", status=STATUS_PENDING, attempts=3, created_at=old,
            )
        )
        await db.commit()

    queued = []
    monkeypatch.setattr(settings, "RECONCILIATION_QUEUE_ENABLED", True)
    monkeypatch.setattr(reconciliation, "enqueue_reconciliation_job", lambda reconciliation_id: queued.append(reconciliation_id))

    assert await recover_pending_reconciliations(session_maker=session_maker) == 1
    assert queued == ["rec-retry"]
    async with session_maker() as db:
        exhausted = await db.get(LedgerReconciliation, "rec-exhausted")
        assert exhausted.status == STATUS_FAILED

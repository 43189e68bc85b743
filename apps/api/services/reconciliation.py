"""Durable follow-up for generation debits that could not be confirmed (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, engine
from models.ledger_reconciliation import LedgerReconciliation
from services.credits import DEBIT_INSUFFICIENT, debit_credits

logger = logging.getLogger(__name__)

RECONCILIATION_QUEUE_NAME = "ledger_reconciliation"

STATUS_PENDING = "pending"
STATUS_RESOLVED = "resolved"
STATUS_FAILED = "failed"


class ReconciliationPending(Exception):
    """Raised from the worker entrypoint so RQ schedules another attempt."""


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconciliation_queue() -> Queue:
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_reconciliation_job(reconciliation_id: str) -> Job:
    """Enqueue a debit retry with backoff; the job id keeps one job per reconciliation."""
    queue = get_reconciliation_queue()
    return queue.enqueue(
        "services.reconciliation.process_reconciliation_job",
        reconciliation_id,
        job_id=f"reconcile:{reconciliation_id}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


async def _enqueue_best_effort(reconciliation_id: str) -> bool:
    if not settings.RECONCILIATION_QUEUE_ENABLED:
        return False
    try:
        await asyncio.to_thread(enqueue_reconciliation_job, reconciliation_id)
    except Exception as exc:
        logger.warning("Could not enqueue reconciliation %s, startup sweep will retry: %s", reconciliation_id, exc)
        return False
    return True


async def record_unreconciled_debit(
    session_maker: async_sessionmaker,
    *,
    user_id: str,
    amount: int,
    kind: str,
    description: str,
    external_ref: str,
    session_id: Optional[str] = None,
    version_number: Optional[int] = None,
    reason: Optional[str] = None,
) -> Optional[str]:
    """Persist a pending debit and queue its retry. Never raises."""
    try:
        async with session_maker() as db:
            row = LedgerReconciliation(
                user_id=user_id,
                amount=int(amount),
                kind=kind,
                description=(description or "")[:255],
                external_ref=external_ref,
                session_id=session_id,
                version_number=version_number,
                reason=(reason or "")[:1000],
                status=STATUS_PENDING,
                attempts=0,
            )
            db.add(row)
            await db.commit()
            reconciliation_id = row.id
    except SQLAlchemyError as exc:
        logger.error("Unreconciled debit %s for user %s could not be recorded: %s", external_ref, user_id, exc)
        return None

    await _enqueue_best_effort(reconciliation_id)
    return reconciliation_id


async def _load(db, reconciliation_id: str) -> Optional[LedgerReconciliation]:
    result = await db.execute(
        select(LedgerReconciliation)
        .where(LedgerReconciliation.id == reconciliation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reconcile_pending_debit(
    reconciliation_id: str,
    session_maker: Optional[async_sessionmaker] = None,
) -> str:
    """
    Retry the debit behind a reconciliation row and return the resulting status.

    The debit reuses the generation's external_ref, so a charge that actually
    landed during the original attempt is recognised instead of taken twice.
    """
    maker = session_maker or async_session_maker
    async with maker() as db:
        row = await _load(db, reconciliation_id)
        if row is None:
            logger.warning("Reconciliation %s not found", reconciliation_id)
            return STATUS_FAILED
        if row.status != STATUS_PENDING:
            return row.status

        user_id = row.user_id
        result = await debit_credits(
            user_id,
            db,
            amount=row.amount,
            kind=row.kind,
            description=row.description or "",
            external_ref=row.external_ref,
        )

        row = await _load(db, reconciliation_id)
        row.attempts = int(row.attempts or 0) + 1
        if result.ok:
            row.status = STATUS_RESOLVED
            row.transaction_id = result.transaction_id
            row.resolved_at = datetime.now(timezone.utc)
        elif result.status == DEBIT_INSUFFICIENT and row.attempts >= int(settings.RECONCILIATION_MAX_ATTEMPTS):
            row.status = STATUS_FAILED
            row.reason = "insufficient_funds"
            row.resolved_at = datetime.now(timezone.utc)
        else:
            row.reason = result.error or result.status
        await db.commit()
        status = row.status

    if status == STATUS_RESOLVED:
        logger.info("Reconciled debit %s for user %s", reconciliation_id, user_id)
    elif status == STATUS_FAILED:
        logger.error("Giving up on debit %s for user %s", reconciliation_id, user_id)
    return status


async def _process_and_dispose(reconciliation_id: str) -> str:
    try:
        return await reconcile_pending_debit(reconciliation_id)
    finally:
        # Each RQ job runs in a fresh event loop; pooled connections must not outlive it.
        await engine.dispose()


def process_reconciliation_job(reconciliation_id: str) -> str:
    """RQ worker entrypoint for reconciliation jobs."""
    status = asyncio.run(_process_and_dispose(reconciliation_id))
    if status == STATUS_PENDING:
        raise ReconciliationPending(f"reconciliation {reconciliation_id} still pending")
    return status


async def recover_pending_reconciliations(
    max_age_minutes: int = 10,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """Re-queue pending reconciliations whose jobs were lost across restarts."""
    maker = session_maker or async_session_maker
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with maker() as db:
        result = await db.execute(
            select(LedgerReconciliation).where(
                LedgerReconciliation.status == STATUS_PENDING,
                LedgerReconciliation.created_at < cutoff,
            )
        )
        rows = result.scalars().all()
        exhausted = [row for row in rows if int(row.attempts or 0) >= int(settings.RECONCILIATION_MAX_ATTEMPTS)]
        for row in exhausted:
            row.status = STATUS_FAILED
            row.resolved_at = datetime.now(timezone.utc)
        if exhausted:
            await db.commit()
        retry_ids = [row.id for row in rows if row.status == STATUS_PENDING]

    requeued = 0
    for reconciliation_id in retry_ids:
        if await _enqueue_best_effort(reconciliation_id):
            requeued += 1
    return requeued

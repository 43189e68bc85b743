"""Credit ledger: atomic debits, idempotent credits and account bootstrap."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.user import User
from services.entitlements import KIND_ITERATION, KIND_NEW_GAME, generation_cost, get_tier_policy

logger = logging.getLogger(__name__)

KIND_SUBSCRIPTION_REFILL = "subscription_refill"
KIND_PURCHASE = "purchase"
KIND_REFUND = "refund"
KIND_SIGNUP_GRANT = "signup_grant"

DEBIT_KINDS = {KIND_NEW_GAME, KIND_ITERATION}
CREDIT_KINDS = {KIND_SUBSCRIPTION_REFILL, KIND_PURCHASE, KIND_REFUND, KIND_SIGNUP_GRANT}

DEBIT_SUCCESS = "success"
DEBIT_INSUFFICIENT = "insufficient_funds"
DEBIT_ERROR = "error"


@dataclass
class DebitResult:
    status: str
    charged: int = 0
    balance_after: Optional[int] = None
    transaction_id: Optional[str] = None
    replayed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DEBIT_SUCCESS


@dataclass
class CreditResult:
    applied: bool
    balance_after: int
    transaction_id: Optional[str] = None


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    return int(result.scalar() or 0)


async def get_ledger_sum(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def _find_by_external_ref(db: AsyncSession, external_ref: str) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.external_ref == external_ref))
    return result.scalar_one_or_none()


async def ensure_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> User:
    """Return the account for an identity, creating it with signup credits on first sight."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    signup_credits = max(int(settings.SIGNUP_CREDITS), 0)
    resolved_email = email or f"{user_id}@local.invalid"
    user = User(
        id=user_id,
        email=resolved_email,
        name=name or resolved_email.split("@")[0],
        tier="free",
        credits=signup_credits,
        games_created=0,
    )
    db.add(user)
    if signup_credits > 0:
        db.add(
            CreditTransaction(
                user_id=user_id,
                amount=signup_credits,
                kind=KIND_SIGNUP_GRANT,
                description="Signup credits",
                external_ref=f"signup:{user_id}",
                balance_after=signup_credits,
            )
        )
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the account first.
        await db.rollback()
        result = await db.execute(select(User).where(User.id == user_id))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise
        return existing
    await db.refresh(user)
    return user


async def debit_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: str,
    external_ref: Optional[str] = None,
) -> DebitResult:
    """
    Atomically take credits from an account.

    The balance check and the decrement are one conditional UPDATE, committed
    together with the ledger entry, so concurrent debits can never drive the
    balance negative. Insufficient funds is a typed refusal; database failures
    roll back and report ``error`` so callers can retry. A debit carrying an
    ``external_ref`` that is already recorded is acknowledged without charging
    again.
    """
    debit_amount = int(amount)
    if debit_amount <= 0:
        raise ValueError("debit amount must be positive")
    if kind not in DEBIT_KINDS:
        raise ValueError(f"unsupported debit kind: {kind}")

    try:
        if external_ref:
            existing = await _find_by_external_ref(db, external_ref)
            if existing is not None:
                return DebitResult(
                    status=DEBIT_SUCCESS,
                    charged=-int(existing.amount),
                    balance_after=await get_credit_balance(user_id, db),
                    transaction_id=existing.id,
                    replayed=True,
                )

        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.credits >= debit_amount)
            .values(credits=User.credits - debit_amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            return DebitResult(
                status=DEBIT_INSUFFICIENT,
                balance_after=await get_credit_balance(user_id, db),
            )

        balance_after = await get_credit_balance(user_id, db)
        entry = CreditTransaction(
            user_id=user_id,
            amount=-debit_amount,
            kind=kind,
            description=(description or "")[:255],
            external_ref=external_ref,
            balance_after=balance_after,
        )
        db.add(entry)
        await db.commit()
        return DebitResult(
            status=DEBIT_SUCCESS,
            charged=debit_amount,
            balance_after=balance_after,
            transaction_id=entry.id,
        )
    except IntegrityError:
        await db.rollback()
        if external_ref:
            existing = await _find_by_external_ref(db, external_ref)
            if existing is not None:
                return DebitResult(
                    status=DEBIT_SUCCESS,
                    charged=-int(existing.amount),
                    balance_after=await get_credit_balance(user_id, db),
                    transaction_id=existing.id,
                    replayed=True,
                )
        logger.warning("Credit debit integrity failure for user %s", user_id)
        return DebitResult(status=DEBIT_ERROR, error="integrity_error")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Credit debit failed for user %s: %s", user_id, exc)
        return DebitResult(status=DEBIT_ERROR, error=str(exc))


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: str,
    external_ref: Optional[str] = None,
) -> CreditResult:
    """Add credits once per external_ref; replays leave the balance untouched."""
    grant = int(amount)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    if kind not in CREDIT_KINDS:
        raise HTTPException(status_code=422, detail=f"unsupported credit kind: {kind}")

    if external_ref:
        existing = await _find_by_external_ref(db, external_ref)
        if existing is not None:
            logger.info("Ignoring replayed credit %s for user %s", external_ref, user_id)
            return CreditResult(
                applied=False,
                balance_after=await get_credit_balance(user_id, db),
                transaction_id=existing.id,
            )

    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + grant)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise HTTPException(status_code=404, detail="Account not found")

        balance_after = await get_credit_balance(user_id, db)
        entry = CreditTransaction(
            user_id=user_id,
            amount=grant,
            kind=kind,
            description=(description or "")[:255],
            external_ref=external_ref,
            balance_after=balance_after,
        )
        db.add(entry)
        await db.commit()
        return CreditResult(applied=True, balance_after=balance_after, transaction_id=entry.id)
    except IntegrityError:
        await db.rollback()
        existing = await _find_by_external_ref(db, external_ref) if external_ref else None
        if existing is None:
            raise
        return CreditResult(
            applied=False,
            balance_after=await get_credit_balance(user_id, db),
            transaction_id=existing.id,
        )


async def increment_games_created(user_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(games_created=User.games_created + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def verify_ledger(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the stored balance with the sum of the account's transactions."""
    balance = await get_credit_balance(user_id, db)
    ledger_sum = await get_ledger_sum(user_id, db)
    return {
        "balance": balance,
        "ledger_sum": ledger_sum,
        "consistent": balance == ledger_sum,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    user = await ensure_account(user_id, db)
    policy = get_tier_policy(user.tier)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": await get_credit_balance(user_id, db),
        "tier": policy.name,
        "games_created": int(user.games_created or 0),
        "costs": {
            "new_game": generation_cost(False),
            "iteration": generation_cost(True),
        },
        "tier_policy": {
            "max_new_games": policy.max_new_games,
            "allows_iteration": policy.allows_iteration,
            "monthly_credits": policy.monthly_credits,
        },
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "description": entry.description,
                "external_ref": entry.external_ref,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }

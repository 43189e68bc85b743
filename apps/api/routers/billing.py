"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.billing import (
    PLANS,
    construct_event,
    create_checkout_session,
    create_portal_session,
    handle_stripe_event,
)
from services.credits import ensure_account, get_credit_summary, verify_ledger

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    plan: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


def _require_billing() -> None:
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_account(scoped_user_id, db, email=auth.email, name=auth.name)
    summary = await get_credit_summary(scoped_user_id, db)
    summary["ledger"] = await verify_ledger(scoped_user_id, db)
    return summary


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    _require_billing()
    if request.plan not in PLANS:
        raise HTTPException(status_code=422, detail=f"plan must be one of: {', '.join(PLANS)}")

    user = await ensure_account(scoped_user_id, db, email=auth.email, name=auth.name)
    return await create_checkout_session(
        user,
        db,
        plan=request.plan,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )


@router.post("/portal")
async def create_portal(
    request: PortalRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    _require_billing()
    user = await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    return await create_portal_session(user, db, return_url=request.return_url)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Stripe calls this directly; the signature header is the only authentication."""
    payload = await request.body()
    event = construct_event(payload, request.headers.get("stripe-signature"))
    logger.info("Processing Stripe event %s", event.get("type"))
    return await handle_stripe_event(event, db)

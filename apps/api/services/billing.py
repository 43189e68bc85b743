"""Stripe checkout, billing portal and webhook handling for tiers and credits."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import require_stripe_secret_key, settings
from models.user import User
from services.credits import KIND_PURCHASE, KIND_SUBSCRIPTION_REFILL, add_credits
from services.entitlements import TIER_FREE, TIER_GAMEDEV, TIER_PRO, get_tier_policy

logger = logging.getLogger(__name__)

PLAN_GAMEDEV = "gamedev"
PLAN_PRO = "pro"
PLAN_FUEL_PACK = "fuel_pack"
PLANS = (PLAN_GAMEDEV, PLAN_PRO, PLAN_FUEL_PACK)

METADATA_USER_KEY = "user_id"

STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"


def configure_stripe() -> None:
    try:
        stripe.api_key = require_stripe_secret_key()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail="Stripe is not configured.") from exc


def price_for_plan(plan: str) -> Tuple[str, str]:
    """Return (price id, checkout mode) for a plan."""
    prices = {
        PLAN_GAMEDEV: (settings.STRIPE_PRICE_GAMEDEV, "subscription"),
        PLAN_PRO: (settings.STRIPE_PRICE_PRO, "subscription"),
        PLAN_FUEL_PACK: (settings.STRIPE_PRICE_FUEL_PACK, "payment"),
    }
    if plan not in prices:
        raise HTTPException(status_code=422, detail=f"Unknown plan: {plan}")
    price_id, mode = prices[plan]
    if not price_id:
        raise HTTPException(status_code=503, detail=f"No Stripe price configured for {plan}.")
    return price_id, mode


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def ensure_stripe_customer(user: User, db: AsyncSession) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer = await asyncio.to_thread(
        stripe.Customer.create,
        email=user.email,
        metadata={METADATA_USER_KEY: user.id},
    )
    user.stripe_customer_id = customer["id"]
    await db.commit()
    return user.stripe_customer_id


async def create_checkout_session(
    user: User,
    db: AsyncSession,
    *,
    plan: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    configure_stripe()
    price_id, mode = price_for_plan(plan)
    customer_id = await ensure_stripe_customer(user, db)
    params: Dict[str, Any] = {
        "customer": customer_id,
        "payment_method_types": ["card"],
        "mode": mode,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url or settings.STRIPE_SUCCESS_URL,
        "cancel_url": cancel_url or settings.STRIPE_CANCEL_URL,
        "metadata": {METADATA_USER_KEY: user.id, "plan": plan},
    }
    if mode == "subscription":
        params["subscription_data"] = {"metadata": {METADATA_USER_KEY: user.id, "plan": plan}}
    session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
    return {"session_id": session["id"], "url": session["url"], "plan": plan, "mode": mode}


async def create_portal_session(user: User, db: AsyncSession, return_url: Optional[str] = None) -> Dict[str, Any]:
    configure_stripe()
    if not user.stripe_customer_id:
        raise HTTPException(status_code=409, detail="No billing account yet. Purchase a plan first.")
    session = await asyncio.to_thread(
        stripe.billing_portal.Session.create,
        customer=user.stripe_customer_id,
        return_url=return_url or settings.STRIPE_PORTAL_RETURN_URL,
    )
    return {"url": session["url"]}


def construct_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify a webhook payload against the endpoint secret."""
    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Stripe webhook secret is not configured.")
    try:
        event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid webhook payload") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Webhook signature verification failed") from exc
    return _as_dict(event)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


def _metadata_user_id(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    user_id = metadata.get(METADATA_USER_KEY)
    return str(user_id) if user_id else None


async def _tier_for_subscription(subscription: Dict[str, Any]) -> str:
    """Map the subscription's price to a tier; unknown prices fall back to the product name."""
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return TIER_GAMEDEV
    price = items[0].get("price") or {}
    price_id = price.get("id")
    if price_id and price_id == settings.STRIPE_PRICE_PRO:
        return TIER_PRO
    if price_id and price_id == settings.STRIPE_PRICE_GAMEDEV:
        return TIER_GAMEDEV
    product_id = price.get("product")
    if product_id:
        product = _as_dict(await asyncio.to_thread(stripe.Product.retrieve, product_id))
        if "pro" in str(product.get("name", "")).lower():
            return TIER_PRO
    return TIER_GAMEDEV


async def _retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
    return _as_dict(subscription)


async def _update_account(db: AsyncSession, user_id: str, **fields: Any) -> bool:
    user = await _get_user(db, user_id)
    if user is None:
        logger.error("Stripe event for unknown account %s", user_id)
        return False
    for key, value in fields.items():
        setattr(user, key, value)
    await db.commit()
    return True


async def _refill(db: AsyncSession, user_id: str, tier: str, reference: str, reason: str) -> Dict[str, Any]:
    amount = get_tier_policy(tier).monthly_credits
    result = await add_credits(
        user_id,
        db,
        amount=amount,
        kind=KIND_SUBSCRIPTION_REFILL,
        description=f"{tier} subscription {reason} - monthly credit refill",
        external_ref=reference,
    )
    return {"credits": amount, "applied": result.applied, "balance_after": result.balance_after}


async def _handle_checkout_completed(session: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    user_id = _metadata_user_id(session)
    if not user_id:
        logger.error("No %s in checkout session metadata", METADATA_USER_KEY)
        return {"ignored": "missing_user"}
    reference = session.get("payment_intent") or f"checkout:{session.get('id')}"

    if session.get("mode") == "subscription":
        subscription = await _retrieve_subscription(session["subscription"])
        tier = await _tier_for_subscription(subscription)
        await _update_account(
            db,
            user_id,
            tier=tier,
            stripe_subscription_id=subscription["id"],
            subscription_status=STATUS_ACTIVE,
        )
        outcome = await _refill(db, user_id, tier, reference, "activated")
        logger.info("Subscription activated for user %s: %s tier", user_id, tier)
        return {"tier": tier, **outcome}

    if session.get("mode") == "payment":
        amount = max(int(settings.FUEL_PACK_CREDITS), 1)
        result = await add_credits(
            user_id,
            db,
            amount=amount,
            kind=KIND_PURCHASE,
            description=f"Fuel Pack purchase - {amount} credits",
            external_ref=reference,
        )
        logger.info("Fuel pack purchase for user %s (applied=%s)", user_id, result.applied)
        return {"credits": amount, "applied": result.applied, "balance_after": result.balance_after}

    return {"ignored": f"mode:{session.get('mode')}"}


async def _handle_subscription_updated(subscription: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    user_id = _metadata_user_id(subscription)
    if not user_id:
        return {"ignored": "missing_user"}
    tier = await _tier_for_subscription(subscription)
    stripe_status = subscription.get("status")
    if stripe_status in ("canceled", "incomplete_expired"):
        status = STATUS_CANCELED
    elif stripe_status == "past_due":
        status = STATUS_PAST_DUE
    else:
        status = STATUS_ACTIVE
    effective_tier = tier if status == STATUS_ACTIVE else TIER_FREE
    await _update_account(db, user_id, tier=effective_tier, subscription_status=status)
    return {"tier": effective_tier, "subscription_status": status}


async def _handle_subscription_deleted(subscription: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    user_id = _metadata_user_id(subscription)
    if not user_id:
        return {"ignored": "missing_user"}
    await _update_account(
        db,
        user_id,
        tier=TIER_FREE,
        subscription_status=STATUS_CANCELED,
        stripe_subscription_id=None,
    )
    logger.info("Subscription canceled for user %s, downgraded to free", user_id)
    return {"tier": TIER_FREE, "subscription_status": STATUS_CANCELED}


async def _handle_invoice_paid(invoice: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    # The first invoice is covered by checkout.session.completed.
    if invoice.get("billing_reason") == "subscription_create":
        return {"ignored": "subscription_create"}
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        return {"ignored": "no_subscription"}
    subscription = await _retrieve_subscription(subscription_id)
    user_id = _metadata_user_id(subscription)
    if not user_id:
        return {"ignored": "missing_user"}
    tier = await _tier_for_subscription(subscription)
    reference = invoice.get("payment_intent") or f"invoice:{invoice.get('id')}"
    return await _refill(db, user_id, tier, reference, "renewal")


async def _handle_invoice_failed(invoice: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        return {"ignored": "no_subscription"}
    subscription = await _retrieve_subscription(subscription_id)
    user_id = _metadata_user_id(subscription)
    if not user_id:
        return {"ignored": "missing_user"}
    await _update_account(db, user_id, subscription_status=STATUS_PAST_DUE)
    logger.info("Payment failed for user %s, marked past_due", user_id)
    return {"subscription_status": STATUS_PAST_DUE}


_EVENT_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_failed,
}


async def handle_stripe_event(event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Apply a verified Stripe event. Replays are harmless: credits dedupe on the payment reference."""
    event_type = event.get("type", "")
    handler = _EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return {"received": True, "handled": False, "type": event_type}
    obj = (event.get("data") or {}).get("object") or {}
    outcome = await handler(obj, db)
    return {"received": True, "handled": True, "type": event_type, **outcome}

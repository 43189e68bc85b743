"""Tier policies, generation pricing and the shared pre-flight gate."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from config import settings

TIER_FREE = "free"
TIER_GAMEDEV = "gamedev"
TIER_PRO = "pro"
ALLOWED_TIERS = (TIER_FREE, TIER_GAMEDEV, TIER_PRO)

KIND_NEW_GAME = "game_generation"
KIND_ITERATION = "game_iteration"


@dataclass(frozen=True)
class TierPolicy:
    name: str
    max_new_games: Optional[int]
    allows_iteration: bool
    monthly_credits: int


def get_tier_policy(tier: Optional[str]) -> TierPolicy:
    """Resolve a tier name to its policy; unknown tiers get the free policy."""
    normalized = str(tier or TIER_FREE).strip().lower()
    if normalized == TIER_PRO:
        return TierPolicy(TIER_PRO, None, True, max(int(settings.PRO_MONTHLY_CREDITS), 0))
    if normalized == TIER_GAMEDEV:
        return TierPolicy(TIER_GAMEDEV, None, True, max(int(settings.GAMEDEV_MONTHLY_CREDITS), 0))
    return TierPolicy(TIER_FREE, max(int(settings.FREE_TIER_GAME_LIMIT), 0), False, 0)


def is_iteration(existing_html: Optional[str]) -> bool:
    # An empty artifact prices and gates like a new game.
    return bool(existing_html)


def generation_cost(iteration: bool) -> int:
    if iteration:
        return max(int(settings.COST_ITERATION), 1)
    return max(int(settings.COST_NEW_GAME), 1)


def generation_kind(iteration: bool) -> str:
    return KIND_ITERATION if iteration else KIND_NEW_GAME


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    is_iteration: bool
    cost: int
    balance: int
    tier: str
    reason: Optional[str] = None
    message: Optional[str] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def evaluate_gate(
    *,
    tier: Optional[str],
    credits: int,
    games_created: int,
    existing_html: Optional[str],
) -> GateDecision:
    """
    Apply tier and balance rules in the order the orchestrator validates them.

    The same rules back the pre-flight endpoint the UI calls before submitting,
    so a refused prompt never reaches the generator.
    """
    policy = get_tier_policy(tier)
    iteration = is_iteration(existing_html)
    cost = generation_cost(iteration)
    balance = max(int(credits or 0), 0)

    if not iteration and policy.max_new_games is not None and int(games_created or 0) >= policy.max_new_games:
        return GateDecision(
            allowed=False,
            is_iteration=False,
            cost=cost,
            balance=balance,
            tier=policy.name,
            reason="tier_limit_exceeded",
            message="Free tier limit reached. Upgrade to create more games.",
            limit=policy.max_new_games,
        )

    if iteration and not policy.allows_iteration:
        return GateDecision(
            allowed=False,
            is_iteration=True,
            cost=cost,
            balance=balance,
            tier=policy.name,
            reason="tier_limit_exceeded",
            message="Game iteration is not available on the free tier. Upgrade to edit your games.",
        )

    if balance < cost:
        return GateDecision(
            allowed=False,
            is_iteration=iteration,
            cost=cost,
            balance=balance,
            tier=policy.name,
            reason="insufficient_credits",
            message=f"Insufficient credits. Required: {cost}, available: {balance}.",
        )

    return GateDecision(
        allowed=True,
        is_iteration=iteration,
        cost=cost,
        balance=balance,
        tier=policy.name,
    )

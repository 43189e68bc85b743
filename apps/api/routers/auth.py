"""
Authentication router for the signed-in account profile.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import ensure_account
from services.entitlements import get_tier_policy

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    tier: str
    credits: int
    games_created: int
    subscription_status: Optional[str] = None
    allows_iteration: bool
    max_new_games: Optional[int] = None


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=80)
    avatar: Optional[str] = Field(default=None, max_length=2048)


def _to_response(user: User) -> CurrentUserResponse:
    policy = get_tier_policy(user.tier)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        avatar=user.avatar,
        tier=policy.name,
        credits=int(user.credits or 0),
        games_created=int(user.games_created or 0),
        subscription_status=user.subscription_status,
        allows_iteration=policy.allows_iteration,
        max_new_games=policy.max_new_games,
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the current account, creating it with signup credits on first sight."""
    user = await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    return _to_response(user)


@router.patch("/me", response_model=CurrentUserResponse)
async def update_current_user(
    request: UpdateProfileRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    if request.name is not None:
        user.name = request.name.strip() or user.name
    if request.avatar is not None:
        user.avatar = request.avatar or None
    await db.commit()
    await db.refresh(user)
    return _to_response(user)

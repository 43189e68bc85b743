"""Published games feed, plays, leaderboards and the player's library."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import ensure_account
from services.games import (
    get_game,
    get_leaderboard,
    get_play_history,
    list_games,
    list_saved_games,
    publish_game,
    record_play,
    serialize_game,
    submit_score,
    toggle_saved_game,
)

router = APIRouter()


class PublishGameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=2000)
    html: str = Field(min_length=1)
    thumbnail: Optional[str] = None
    category: str = "Arcade"


class ScoreRequest(BaseModel):
    player_name: str = Field(min_length=1, max_length=40)
    score: int = Field(ge=0)


@router.get("")
async def games_feed(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    include_html: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
):
    games = await list_games(db, limit=limit, offset=offset)
    return {"games": [serialize_game(game, include_html=include_html) for game in games]}


@router.post("")
async def publish(
    request: PublishGameRequest,
    _rate_limit: None = Depends(rate_limit("games_publish", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    game = await publish_game(
        user,
        db,
        title=request.title,
        description=request.description,
        html=request.html,
        thumbnail=request.thumbnail,
        category=request.category,
    )
    return serialize_game(game)


@router.get("/saved")
async def saved_games(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    games = await list_saved_games(auth.user_id, db)
    return {"games": [serialize_game(game, include_html=False) for game in games]}


@router.get("/history")
async def play_history(
    limit: int = Query(default=6, ge=1, le=50),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    games = await get_play_history(auth.user_id, db, limit=limit)
    return {"games": [serialize_game(game, include_html=False) for game in games]}


@router.get("/{game_id}")
async def game_detail(game_id: str, db: AsyncSession = Depends(get_db)):
    return serialize_game(await get_game(game_id, db))


@router.post("/{game_id}/plays")
async def register_play(
    game_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    plays = await record_play(auth.user_id, game_id, db)
    return {"game_id": game_id, "plays": plays}


@router.get("/{game_id}/leaderboard")
async def leaderboard(game_id: str, db: AsyncSession = Depends(get_db)):
    return {"game_id": game_id, "entries": await get_leaderboard(game_id, db)}


@router.post("/{game_id}/leaderboard")
async def post_score(
    game_id: str,
    request: ScoreRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    await submit_score(game_id, db, player_name=request.player_name, score=request.score, user_id=auth.user_id)
    return {"game_id": game_id, "entries": await get_leaderboard(game_id, db)}


@router.post("/{game_id}/save")
async def save_game(
    game_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    saved = await toggle_saved_game(auth.user_id, game_id, db)
    return {"game_id": game_id, "saved": saved}

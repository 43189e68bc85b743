"""Published games feed, leaderboards, saved games and play history."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.game import Game
from models.leaderboard_entry import LeaderboardEntry
from models.saved_game import PlayHistory, SavedGame
from models.user import User

logger = logging.getLogger(__name__)

LEADERBOARD_SIZE = 10
PLAY_HISTORY_LIMIT = 6
CATEGORIES = ("Arcade", "Puzzle", "Action", "Strategy", "Casual")


def serialize_game(game: Game, include_html: bool = True) -> Dict[str, Any]:
    payload = {
        "id": game.id,
        "title": game.title,
        "description": game.description,
        "author": game.author_name,
        "author_id": game.author_id,
        "thumbnail": game.thumbnail,
        "category": game.category,
        "plays": int(game.plays or 0),
        "is_official": bool(game.is_official),
        "created_at": game.created_at.isoformat() if game.created_at else None,
    }
    if include_html:
        payload["html"] = game.html
    return payload


async def get_game(game_id: str, db: AsyncSession) -> Game:
    result = await db.execute(select(Game).where(Game.id == game_id))
    game = result.scalar_one_or_none()
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


async def list_games(db: AsyncSession, limit: int = 50, offset: int = 0) -> List[Game]:
    result = await db.execute(
        select(Game).order_by(Game.created_at.desc()).offset(max(offset, 0)).limit(max(min(limit, 100), 1))
    )
    return list(result.scalars().all())


async def publish_game(
    user: User,
    db: AsyncSession,
    *,
    title: str,
    description: str,
    html: str,
    thumbnail: Optional[str] = None,
    category: str = "Arcade",
) -> Game:
    if not html.strip():
        raise HTTPException(status_code=422, detail="html must not be empty")
    game = Game(
        title=title.strip() or "Untitled Game",
        description=description or "",
        author_id=user.id,
        author_name=user.name or user.email.split("@")[0],
        html=html,
        thumbnail=thumbnail,
        category=category if category in CATEGORIES else "Arcade",
        is_official=False,
    )
    db.add(game)
    await db.commit()
    await db.refresh(game)
    logger.info("User %s published game %s", user.id, game.id)
    return game


async def record_play(user_id: str, game_id: str, db: AsyncSession, retry: bool = True) -> int:
    """Count a play on the game and in the player's history; returns the new play count."""
    await get_game(game_id, db)
    now = datetime.now(timezone.utc)
    await db.execute(
        update(Game)
        .where(Game.id == game_id)
        .values(plays=Game.plays + 1)
        .execution_options(synchronize_session=False)
    )
    history_update = await db.execute(
        update(PlayHistory)
        .where(PlayHistory.user_id == user_id, PlayHistory.game_id == game_id)
        .values(play_count=PlayHistory.play_count + 1, last_played_at=now)
        .execution_options(synchronize_session=False)
    )
    if not history_update.rowcount:
        db.add(PlayHistory(user_id=user_id, game_id=game_id, play_count=1, last_played_at=now))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if not retry:
            raise
        # Concurrent first play by the same player; the history row now exists.
        return await record_play(user_id, game_id, db, retry=False)

    result = await db.execute(select(Game.plays).where(Game.id == game_id))
    return int(result.scalar() or 0)


async def get_leaderboard(game_id: str, db: AsyncSession, limit: int = LEADERBOARD_SIZE) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(LeaderboardEntry)
        .where(LeaderboardEntry.game_id == game_id)
        .order_by(LeaderboardEntry.score.desc(), LeaderboardEntry.created_at.asc())
        .limit(limit)
    )
    return [
        {
            "player_name": entry.player_name,
            "score": entry.score,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


async def submit_score(
    game_id: str,
    db: AsyncSession,
    *,
    player_name: str,
    score: int,
    user_id: Optional[str] = None,
) -> LeaderboardEntry:
    await get_game(game_id, db)
    entry = LeaderboardEntry(
        game_id=game_id,
        user_id=user_id,
        player_name=player_name.strip()[:40] or "Player",
        score=int(score),
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    return entry


async def toggle_saved_game(user_id: str, game_id: str, db: AsyncSession) -> bool:
    """Save or unsave a game; returns whether it is saved afterwards."""
    await get_game(game_id, db)
    result = await db.execute(
        select(SavedGame).where(SavedGame.user_id == user_id, SavedGame.game_id == game_id)
    )
    if result.scalar_one_or_none():
        await db.execute(delete(SavedGame).where(SavedGame.user_id == user_id, SavedGame.game_id == game_id))
        await db.commit()
        return False
    db.add(SavedGame(user_id=user_id, game_id=game_id))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
    return True


async def list_saved_games(user_id: str, db: AsyncSession) -> List[Game]:
    result = await db.execute(
        select(Game)
        .join(SavedGame, SavedGame.game_id == Game.id)
        .where(SavedGame.user_id == user_id)
        .order_by(SavedGame.saved_at.desc())
    )
    return list(result.scalars().all())


async def get_play_history(user_id: str, db: AsyncSession, limit: int = PLAY_HISTORY_LIMIT) -> List[Game]:
    result = await db.execute(
        select(Game)
        .join(PlayHistory, PlayHistory.game_id == Game.id)
        .where(PlayHistory.user_id == user_id)
        .order_by(PlayHistory.last_played_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())

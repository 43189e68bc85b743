"""Per-session version history with bounded retention."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.game_version import GameVersion
from services.errors import VersionConflictError

logger = logging.getLogger(__name__)


def _retention() -> int:
    return max(int(settings.VERSION_RETENTION), 1)


def serialize_version(version: GameVersion, include_html: bool = True) -> Dict[str, Any]:
    payload = {
        "id": version.id,
        "session_id": version.session_id,
        "version_number": version.version_number,
        "prompt": version.prompt,
        "created_at": version.created_at.isoformat() if version.created_at else None,
    }
    if include_html:
        payload["html"] = version.html
    return payload


async def get_version(
    user_id: str,
    session_id: str,
    version_number: int,
    db: AsyncSession,
) -> Optional[GameVersion]:
    result = await db.execute(
        select(GameVersion).where(
            GameVersion.user_id == user_id,
            GameVersion.session_id == session_id,
            GameVersion.version_number == int(version_number),
        )
    )
    return result.scalar_one_or_none()


async def get_latest_version_number(user_id: str, session_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.max(GameVersion.version_number)).where(
            GameVersion.user_id == user_id,
            GameVersion.session_id == session_id,
        )
    )
    return int(result.scalar() or 0)


async def list_versions(
    user_id: str,
    session_id: str,
    db: AsyncSession,
    limit: Optional[int] = None,
) -> List[GameVersion]:
    """Newest first, capped at the retention window."""
    cap = min(int(limit or _retention()), _retention())
    result = await db.execute(
        select(GameVersion)
        .where(GameVersion.user_id == user_id, GameVersion.session_id == session_id)
        .order_by(GameVersion.version_number.desc())
        .limit(cap)
    )
    return list(result.scalars().all())


async def prune_versions(user_id: str, session_id: str, db: AsyncSession, keep: Optional[int] = None) -> int:
    """Delete everything older than the newest ``keep`` versions. Caller commits."""
    keep_count = max(int(keep or _retention()), 1)
    result = await db.execute(
        select(GameVersion.id)
        .where(GameVersion.user_id == user_id, GameVersion.session_id == session_id)
        .order_by(GameVersion.version_number.desc())
        .offset(keep_count)
    )
    stale_ids = [row[0] for row in result.all()]
    if not stale_ids:
        return 0
    await db.execute(delete(GameVersion).where(GameVersion.id.in_(stale_ids)))
    return len(stale_ids)


async def truncate_versions_after(user_id: str, session_id: str, version_number: int, db: AsyncSession) -> int:
    """Drop versions above ``version_number`` so a restored thread can continue from it."""
    result = await db.execute(
        delete(GameVersion).where(
            GameVersion.user_id == user_id,
            GameVersion.session_id == session_id,
            GameVersion.version_number > int(version_number),
        )
    )
    await db.commit()
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("Truncated %s versions after v%s in session %s", removed, version_number, session_id)
    return removed


def _same_content(version: GameVersion, html: str, prompt: str) -> bool:
    return version.html == html and version.prompt == prompt


async def append_version(
    user_id: str,
    session_id: str,
    db: AsyncSession,
    *,
    version_number: int,
    html: str,
    prompt: str,
) -> GameVersion:
    """
    Record one immutable artifact for a session and prune past the retention window.

    Re-appending a number with identical content returns the stored row, so
    clients can safely retry a write that may already have landed. Reusing a
    number with different content, or going backwards, raises
    ``VersionConflictError``.
    """
    number = int(version_number)
    prompt = prompt or ""
    if number < 1:
        raise VersionConflictError("version numbers start at 1")
    if not html:
        raise ValueError("version html must not be empty")

    existing = await get_version(user_id, session_id, number, db)
    if existing is not None:
        if _same_content(existing, html, prompt):
            return existing
        raise VersionConflictError(f"version {number} already exists for session {session_id}")

    latest = await get_latest_version_number(user_id, session_id, db)
    if number <= latest:
        raise VersionConflictError(
            f"version {number} is not newer than latest version {latest} for session {session_id}"
        )
    if number > latest + 1 and latest > 0:
        logger.warning("Version gap in session %s: latest v%s, appending v%s", session_id, latest, number)

    version = GameVersion(
        user_id=user_id,
        session_id=session_id,
        version_number=number,
        html=html,
        prompt=prompt,
    )
    db.add(version)
    try:
        await db.commit()
        await db.refresh(version)
    except IntegrityError:
        await db.rollback()
        raced = await get_version(user_id, session_id, number, db)
        if raced is not None and _same_content(raced, html, prompt):
            return raced
        raise VersionConflictError(f"version {number} already exists for session {session_id}")

    try:
        pruned = await prune_versions(user_id, session_id, db)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Version pruning failed for session %s: %s", session_id, exc)
    else:
        if pruned:
            logger.debug("Pruned %s old versions from session %s", pruned, session_id)
    return version

"""Resumable studio session state: conversation, artifact pointer and liveness."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.studio_session import StudioSession
from services.versions import list_versions, serialize_version

logger = logging.getLogger(__name__)

ALLOWED_ROLES = ("user", "model")


def new_session_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_messages(messages: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Keep well-formed turns only; text is the one required field."""
    normalized: List[Dict[str, Any]] = []
    for item in messages or []:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").strip().lower()
        if role == "assistant":
            role = "model"
        if role not in ALLOWED_ROLES:
            continue
        text = item.get("text")
        if text is None:
            text = item.get("content", "")
        turn = {"role": role, "text": str(text)}
        for key in ("id", "timestamp", "is_error", "version_number"):
            if item.get(key) is not None:
                turn[key] = item[key]
        normalized.append(turn)
    return normalized


def serialize_session(session: StudioSession) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "messages": list(session.messages_json or []),
        "current_game_html": session.current_game_html,
        "current_version": int(session.current_version or 0),
        "restored_version": session.restored_version,
        "suggested_title": session.suggested_title,
        "suggested_description": session.suggested_description,
        "is_active": bool(session.is_active),
        "last_updated_at": session.last_updated_at.isoformat() if session.last_updated_at else None,
    }


async def get_session(user_id: str, session_id: str, db: AsyncSession) -> Optional[StudioSession]:
    result = await db.execute(
        select(StudioSession).where(
            StudioSession.user_id == user_id,
            StudioSession.session_id == session_id,
        )
    )
    return result.scalar_one_or_none()


async def get_live_session(user_id: str, db: AsyncSession) -> Optional[StudioSession]:
    """Most recently updated active session, if any."""
    result = await db.execute(
        select(StudioSession)
        .where(StudioSession.user_id == user_id, StudioSession.is_active.is_(True))
        .order_by(StudioSession.last_updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _deactivate_others(user_id: str, session_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(StudioSession)
        .where(
            StudioSession.user_id == user_id,
            StudioSession.session_id != session_id,
            StudioSession.is_active.is_(True),
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )


async def save_session(
    user_id: str,
    session_id: str,
    db: AsyncSession,
    *,
    messages: Optional[List[Dict[str, Any]]] = None,
    current_game_html: Optional[str] = None,
    current_version: Optional[int] = None,
    suggested_title: Optional[str] = None,
    suggested_description: Optional[str] = None,
    is_active: bool = True,
    restored: bool = False,
) -> StudioSession:
    """
    Upsert a session keyed on (user, session id). Last write wins.

    Fields passed as ``None`` keep their stored value. ``restored`` marks the
    new pointer as an explicit restore; moving the pointer elsewhere clears it. Saving a session as
    active retires the user's other live sessions in the same commit.
    """
    session = await get_session(user_id, session_id, db)
    if session is None:
        session = StudioSession(
            user_id=user_id,
            session_id=session_id,
            messages_json=[],
            current_version=0,
        )
        db.add(session)

    if messages is not None:
        session.messages_json = normalize_messages(messages)
    if current_game_html is not None:
        session.current_game_html = current_game_html
    if current_version is not None:
        pointer = max(int(current_version), 0)
        if restored:
            session.restored_version = pointer
        elif pointer != int(session.current_version or 0):
            session.restored_version = None
        session.current_version = pointer
    if suggested_title is not None:
        session.suggested_title = suggested_title
    if suggested_description is not None:
        session.suggested_description = suggested_description
    session.is_active = bool(is_active)
    session.last_updated_at = _now()
    if session.is_active:
        await _deactivate_others(user_id, session_id, db)

    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first save of the same session; apply ours on top.
        await db.rollback()
        existing = await get_session(user_id, session_id, db)
        if existing is None:
            raise
        return await save_session(
            user_id,
            session_id,
            db,
            messages=messages,
            current_game_html=current_game_html,
            current_version=current_version,
            suggested_title=suggested_title,
            suggested_description=suggested_description,
            is_active=is_active,
            restored=restored,
        )
    return session


async def set_current_version(
    user_id: str,
    session_id: str,
    db: AsyncSession,
    *,
    version_number: int,
    html: str,
) -> StudioSession:
    """Move the session pointer to a stored version without touching history."""
    return await save_session(
        user_id,
        session_id,
        db,
        current_game_html=html,
        current_version=version_number,
        restored=True,
    )


async def deactivate_session(user_id: str, session_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        update(StudioSession)
        .where(StudioSession.user_id == user_id, StudioSession.session_id == session_id)
        .values(is_active=False, last_updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return bool(result.rowcount)


async def start_new_session(user_id: str, db: AsyncSession) -> StudioSession:
    """Retire every live session of the user and open an empty one."""
    await db.execute(
        update(StudioSession)
        .where(StudioSession.user_id == user_id, StudioSession.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    session = StudioSession(
        user_id=user_id,
        session_id=new_session_id(),
        messages_json=[],
        current_version=0,
        is_active=True,
        last_updated_at=_now(),
    )
    db.add(session)
    await db.commit()
    logger.info("Started studio session %s for user %s", session.session_id, user_id)
    return session


async def cleanup_stale_sessions(db: AsyncSession, retention_days: Optional[int] = None) -> int:
    """Delete inactive sessions untouched for longer than the retention window."""
    days = max(int(retention_days or settings.SESSION_RETENTION_DAYS), 1)
    cutoff = _now() - timedelta(days=days)
    result = await db.execute(
        delete(StudioSession).where(
            StudioSession.is_active.is_(False),
            StudioSession.last_updated_at < cutoff,
        )
    )
    await db.commit()
    return int(result.rowcount or 0)


async def record_generation(
    user_id: str,
    session_id: str,
    db: AsyncSession,
    *,
    prompt: str,
    message: str,
    html: str,
    version_number: int,
    history: Optional[List[Dict[str, Any]]] = None,
    suggested_title: Optional[str] = None,
    suggested_description: Optional[str] = None,
) -> StudioSession:
    """Commit step of a generation: append both turns and move the artifact pointer."""
    session = await get_session(user_id, session_id, db)
    if history is not None:
        base_messages = normalize_messages(history)
    else:
        base_messages = list(session.messages_json or []) if session else []
    stamp = int(_now().timestamp() * 1000)
    base_messages.append({"id": f"u-{stamp}", "role": "user", "text": prompt, "timestamp": stamp})
    base_messages.append(
        {
            "id": f"m-{stamp}",
            "role": "model",
            "text": message,
            "timestamp": stamp,
            "version_number": int(version_number),
        }
    )
    return await save_session(
        user_id,
        session_id,
        db,
        messages=base_messages,
        current_game_html=html,
        current_version=version_number,
        suggested_title=suggested_title,
        suggested_description=suggested_description,
        is_active=True,
    )


async def restore_session(
    user_id: str,
    db: AsyncSession,
    session_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Messages, current artifact and persisted versions of a session, or of the live one."""
    if session_id:
        session = await get_session(user_id, session_id, db)
    else:
        session = await get_live_session(user_id, db)
    if session is None:
        return None
    versions = await list_versions(user_id, session.session_id, db)
    payload = serialize_session(session)
    payload["versions"] = [serialize_version(version, include_html=False) for version in versions]
    return payload

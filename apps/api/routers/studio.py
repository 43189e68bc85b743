"""Studio router: pre-flight gate, generation (atomic and streamed), sessions and versions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_db, get_session_maker
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import ensure_account
from services.entitlements import evaluate_gate
from services.errors import GenerationFailure, VersionConflictError
from services.generation import GenerationEvent, GenerationOrchestrator, GenerationRequest
from services.generator import GameGenerator, get_game_generator
from services.studio_sessions import (
    deactivate_session,
    restore_session,
    save_session,
    serialize_session,
    set_current_version,
    start_new_session,
)
from services.versions import append_version, get_version, list_versions, serialize_version

router = APIRouter()
logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
SSE_KEEPALIVE_SECONDS = 15.0


class SessionSaveRequest(BaseModel):
    messages: Optional[List[Dict[str, Any]]] = None
    current_game_html: Optional[str] = None
    current_version: Optional[int] = Field(default=None, ge=0)
    suggested_title: Optional[str] = None
    suggested_description: Optional[str] = None
    is_active: bool = True


class VersionAppendRequest(BaseModel):
    version_number: int = Field(ge=1)
    html: str = Field(min_length=1)
    prompt: str = ""


async def _ignore_event(event: GenerationEvent) -> None:
    return None


@router.get("/gate")
async def generation_gate(
    has_existing_artifact: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Same tier and balance rules the orchestrator applies, for the UI to check before submitting."""
    user = await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    decision = evaluate_gate(
        tier=user.tier,
        credits=user.credits,
        games_created=user.games_created,
        existing_html="existing" if has_existing_artifact else None,
    )
    return decision.to_dict()


@router.post("/generate")
async def generate_game(
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("studio_generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    generator: GameGenerator = Depends(get_game_generator),
):
    orchestrator = GenerationOrchestrator(session_maker, generator)
    task = orchestrator.launch(auth.user_id, request, _ignore_event)
    try:
        return await asyncio.shield(task)
    except GenerationFailure as failure:
        raise HTTPException(status_code=failure.status_code, detail=failure.to_dict()) from failure


@router.post("/generate/stream")
async def generate_game_stream(
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("studio_generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    generator: GameGenerator = Depends(get_game_generator),
):
    queue: asyncio.Queue = asyncio.Queue()

    async def _sink(event: GenerationEvent) -> None:
        queue.put_nowait(event)

    orchestrator = GenerationOrchestrator(session_maker, generator)
    task = orchestrator.launch(auth.user_id, request, _sink)
    task.add_done_callback(lambda _task: queue.put_nowait(None))

    async def event_generator():
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            if event is None:
                break
            yield event.to_sse()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/sessions/new")
async def new_session(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    session = await start_new_session(auth.user_id, db)
    return serialize_session(session)


@router.get("/sessions/live")
async def live_session(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"session": await restore_session(auth.user_id, db)}


@router.get("/sessions/{session_id}")
async def get_studio_session(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"session": await restore_session(auth.user_id, db, session_id=session_id)}


@router.put("/sessions/{session_id}")
async def save_studio_session(
    session_id: str,
    request: SessionSaveRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    session = await save_session(
        auth.user_id,
        session_id,
        db,
        messages=request.messages,
        current_game_html=request.current_game_html,
        current_version=request.current_version,
        suggested_title=request.suggested_title,
        suggested_description=request.suggested_description,
        is_active=request.is_active,
    )
    return serialize_session(session)


@router.post("/sessions/{session_id}/deactivate")
async def deactivate_studio_session(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not await deactivate_session(auth.user_id, session_id, db):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session_id": session_id, "is_active": False}


@router.get("/sessions/{session_id}/versions")
async def get_session_versions(
    session_id: str,
    include_html: bool = Query(default=True),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    versions = await list_versions(auth.user_id, session_id, db)
    return {
        "session_id": session_id,
        "versions": [serialize_version(version, include_html=include_html) for version in versions],
    }


@router.post("/sessions/{session_id}/versions")
async def save_session_version(
    session_id: str,
    request: VersionAppendRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Idempotent: re-posting an already stored version returns it unchanged."""
    await ensure_account(auth.user_id, db, email=auth.email, name=auth.name)
    try:
        version = await append_version(
            auth.user_id,
            session_id,
            db,
            version_number=request.version_number,
            html=request.html,
            prompt=request.prompt,
        )
    except VersionConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return serialize_version(version, include_html=False)


@router.post("/sessions/{session_id}/versions/{version_number}/restore")
async def restore_session_version(
    session_id: str,
    version_number: int,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Point the session at a stored version; the next iteration builds on it as version n + 1."""
    version = await get_version(auth.user_id, session_id, version_number, db)
    if not version:
        raise HTTPException(status_code=404, detail="Version not found")
    await set_current_version(
        auth.user_id,
        session_id,
        db,
        version_number=version.version_number,
        html=version.html,
    )
    return {
        "session_id": session_id,
        "current_version": version.version_number,
        "html": version.html,
        "prompt": version.prompt,
    }

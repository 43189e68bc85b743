"""Generation orchestrator: validate, generate, parse, charge and persist one game."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from services.credits import DEBIT_ERROR, DebitResult, debit_credits, ensure_account, increment_games_created
from services.entitlements import evaluate_gate, generation_kind
from services.errors import (
    ConditionKind,
    FailureKind,
    GenerationFailure,
    GeneratorError,
    MalformedOutputError,
    VersionConflictError,
)
from services.generator import GameGenerator
from services.output_parser import inject_screenshot_script, parse_generator_output
from services.prompts import build_messages, describe_charge
from services.reconciliation import record_unreconciled_debit
from services.studio_sessions import get_session, new_session_id, record_generation
from services.versions import append_version, get_latest_version_number, truncate_versions_after

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_VALIDATING = "validating"
STATE_GENERATING = "generating"
STATE_PARSING = "parsing"
STATE_COMMITTING = "committing"
STATE_DONE = "done"
STATE_ERROR = "error"
STATE_INSUFFICIENT_CREDITS = "insufficient_credits"

TERMINAL_STATES = {STATE_DONE, STATE_ERROR, STATE_INSUFFICIENT_CREDITS}

_ALLOWED_TRANSITIONS = {
    STATE_IDLE: {STATE_VALIDATING, STATE_ERROR},
    STATE_VALIDATING: {STATE_GENERATING, STATE_INSUFFICIENT_CREDITS, STATE_ERROR},
    STATE_GENERATING: {STATE_PARSING, STATE_ERROR},
    STATE_PARSING: {STATE_COMMITTING, STATE_ERROR},
    STATE_COMMITTING: {STATE_DONE, STATE_ERROR},
}


class HistoryTurn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    text: str = ""
    is_error: bool = False
    version_number: Optional[int] = None


class GenerationRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=8000)
    history: List[HistoryTurn] = Field(default_factory=list)
    existing_html: Optional[str] = None
    session_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value.strip()


@dataclass
class GenerationEvent:
    type: str
    data: Dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data)}\n\n"


EventSink = Callable[[GenerationEvent], Awaitable[None]]


async def _discard_event(event: GenerationEvent) -> None:
    return None


@dataclass
class PendingWrite:
    versions: Dict[int, Tuple[str, str]] = field(default_factory=dict)
    session: Optional[Dict[str, Any]] = None

    def is_empty(self) -> bool:
        return not self.versions and self.session is None


class PendingWriteBuffer:
    """Version and session writes that failed, replayed before the next commit of the same session."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str], PendingWrite] = {}

    def get(self, user_id: str, session_id: str) -> Optional[PendingWrite]:
        return self._entries.get((user_id, session_id))

    def entry(self, user_id: str, session_id: str) -> PendingWrite:
        return self._entries.setdefault((user_id, session_id), PendingWrite())

    def max_version(self, user_id: str, session_id: str) -> int:
        pending = self.get(user_id, session_id)
        if not pending or not pending.versions:
            return 0
        return max(pending.versions)

    def prune(self, user_id: str, session_id: str) -> None:
        pending = self.get(user_id, session_id)
        if pending is not None and pending.is_empty():
            self._entries.pop((user_id, session_id), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


pending_writes = PendingWriteBuffer()
_background_tasks: Set[asyncio.Task] = set()


def _forget_task(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled():
        # Failures were already emitted as error events.
        task.exception()


@dataclass
class GenerationRun:
    user_id: str
    request: GenerationRequest
    emit: EventSink
    generation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: str = STATE_IDLE

    async def transition(self, state: str, message: str) -> None:
        if state not in _ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"invalid generation transition {self.state} -> {state}")
        self.state = state
        await self.emit(GenerationEvent("status", {"state": state, "message": message}))

    async def fail(self, failure: GenerationFailure) -> GenerationFailure:
        if self.state not in TERMINAL_STATES:
            terminal = STATE_INSUFFICIENT_CREDITS if failure.kind == FailureKind.INSUFFICIENT_CREDITS else STATE_ERROR
            await self.transition(terminal, failure.message)
        return failure


class GenerationOrchestrator:
    """
    Runs one generation request through validation, the external generator,
    output parsing and the commit step.

    Every database step opens its own short-lived session from
    ``session_maker`` so a slow generator call never holds a connection.
    Credits are only taken after a parseable artifact exists; once charged,
    the artifact is always delivered, with result flags for a debit that
    could not be confirmed or for history writes that did not land.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        generator: GameGenerator,
        pending: Optional[PendingWriteBuffer] = None,
    ):
        self.session_maker = session_maker
        self.generator = generator
        self.pending = pending if pending is not None else pending_writes

    async def run(self, user_id: Optional[str], request: GenerationRequest, emit: Optional[EventSink] = None) -> Dict[str, Any]:
        run = GenerationRun(user_id=user_id or "", request=request, emit=emit or _discard_event)
        try:
            return await self._run(run)
        except GenerationFailure as failure:
            raise await run.fail(failure)

    def launch(self, user_id: Optional[str], request: GenerationRequest, emit: EventSink) -> asyncio.Task:
        """
        Run detached from the caller. A disconnected client only stops
        receiving events; the run itself still finishes or fails cleanly.
        """

        async def _runner() -> Dict[str, Any]:
            try:
                result = await self.run(user_id, request, emit)
            except GenerationFailure as failure:
                await emit(GenerationEvent("error", failure.to_dict()))
                raise
            except Exception:
                logger.exception("Unexpected failure in generation for user %s", user_id)
                failure = GenerationFailure(
                    FailureKind.GENERATOR_UNAVAILABLE,
                    "Internal error during generation. Please try again.",
                )
                await emit(GenerationEvent("error", failure.to_dict()))
                raise failure
            await emit(GenerationEvent("result", result))
            return result

        task = asyncio.create_task(_runner())
        _background_tasks.add(task)
        task.add_done_callback(_forget_task)
        return task

    async def _run(self, run: GenerationRun) -> Dict[str, Any]:
        request = run.request
        await run.transition(STATE_VALIDATING, "Checking credits...")
        if not run.user_id:
            raise GenerationFailure(FailureKind.UNAUTHENTICATED, "Please sign in to create games.")

        async with self.session_maker() as db:
            account = await ensure_account(run.user_id, db)
            decision = evaluate_gate(
                tier=account.tier,
                credits=account.credits,
                games_created=account.games_created,
                existing_html=request.existing_html,
            )
        if not decision.allowed:
            if decision.reason == FailureKind.INSUFFICIENT_CREDITS.value:
                raise GenerationFailure(
                    FailureKind.INSUFFICIENT_CREDITS,
                    decision.message,
                    {"required": decision.cost, "available": decision.balance},
                )
            detail = {"limit": decision.limit} if decision.limit is not None else {}
            raise GenerationFailure(FailureKind.TIER_LIMIT_EXCEEDED, decision.message, detail)

        iteration = decision.is_iteration
        session_id = request.session_id or new_session_id()

        await run.transition(STATE_GENERATING, "Connecting to AI...")
        raw = await self._generate(run, iteration)

        await run.transition(STATE_PARSING, "Processing response...")
        try:
            parsed = parse_generator_output(raw)
        except MalformedOutputError as exc:
            raise GenerationFailure(FailureKind.MALFORMED_GENERATOR_OUTPUT, str(exc)) from exc
        html = inject_screenshot_script(parsed.html)

        await run.transition(STATE_COMMITTING, "Processing payment...")
        flags: List[Dict[str, Any]] = []
        kind = generation_kind(iteration)
        external_ref = f"generation:{run.generation_id}"
        debit = await self._debit_with_retries(
            run.user_id,
            amount=decision.cost,
            kind=kind,
            description=describe_charge(request.prompt, iteration, parsed.suggested_title),
            external_ref=external_ref,
        )
        if debit.ok:
            credits_charged = debit.charged
            credits_remaining = debit.balance_after
        else:
            logger.error(
                "Debit for generation %s unconfirmed (%s); delivering artifact",
                run.generation_id,
                debit.status,
            )
            credits_charged = 0
            credits_remaining = decision.balance

        await run.emit(GenerationEvent("status", {"state": STATE_COMMITTING, "message": "Finalizing..."}))
        version_number, degraded = await self._persist(
            run,
            session_id=session_id,
            iteration=iteration,
            html=html,
            parsed_message=parsed.message,
            suggested_title=parsed.suggested_title,
            suggested_description=parsed.suggested_description,
        )

        if not debit.ok:
            reconciliation_id = await record_unreconciled_debit(
                self.session_maker,
                user_id=run.user_id,
                amount=decision.cost,
                kind=kind,
                description=describe_charge(request.prompt, iteration, parsed.suggested_title),
                external_ref=external_ref,
                session_id=session_id,
                version_number=version_number,
                reason=debit.error or debit.status,
            )
            flags.append(
                {
                    "kind": ConditionKind.LEDGER_UNRECONCILED.value,
                    "detail": {
                        "amount": decision.cost,
                        "debit_status": debit.status,
                        "reconciliation_id": reconciliation_id,
                    },
                }
            )
        if degraded:
            flags.append({"kind": ConditionKind.PERSISTENCE_DEGRADED.value, "detail": {"failed_writes": degraded}})

        if not iteration:
            try:
                async with self.session_maker() as db:
                    await increment_games_created(run.user_id, db)
            except SQLAlchemyError as exc:
                logger.warning("Failed to increment games_created for %s: %s", run.user_id, exc)

        await run.transition(STATE_DONE, "Game ready.")
        return {
            "status": STATE_DONE,
            "generation_id": run.generation_id,
            "session_id": session_id,
            "version": version_number,
            "html": html,
            "message": parsed.message,
            "suggested_title": parsed.suggested_title,
            "suggested_description": parsed.suggested_description,
            "is_iteration": iteration,
            "credits_charged": credits_charged,
            "credits_remaining": credits_remaining,
            "flags": flags,
            "ledger_unreconciled": not debit.ok,
            "persistence_degraded": bool(degraded),
        }

    async def _generate(self, run: GenerationRun, iteration: bool) -> str:
        request = run.request
        messages = build_messages(
            request.prompt,
            history=[turn.model_dump() for turn in request.history],
            existing_html=request.existing_html if iteration else None,
        )
        progress_chars = max(int(settings.GENERATOR_PROGRESS_CHARS), 1)
        received = 0
        last_progress = -1

        async def _on_chunk(delta: str) -> None:
            nonlocal received, last_progress
            if received == 0:
                await run.emit(GenerationEvent("status", {"state": STATE_GENERATING, "message": "Generating game..."}))
            received += len(delta)
            progress = min(100, int(received / progress_chars * 100))
            if progress != last_progress:
                last_progress = progress
                await run.emit(GenerationEvent("progress", {"progress": progress, "chars": received}))

        try:
            return await asyncio.wait_for(
                self.generator.generate(messages, on_chunk=_on_chunk),
                timeout=float(settings.GENERATOR_TIMEOUT_SECONDS),
            )
        except asyncio.TimeoutError as exc:
            raise GenerationFailure(
                FailureKind.GENERATOR_UNAVAILABLE,
                "The AI took too long to respond. Please try again.",
            ) from exc
        except GeneratorError as exc:
            raise GenerationFailure(FailureKind.GENERATOR_UNAVAILABLE, str(exc)) from exc

    async def _debit_with_retries(
        self,
        user_id: str,
        *,
        amount: int,
        kind: str,
        description: str,
        external_ref: str,
    ) -> DebitResult:
        max_retries = max(int(settings.LEDGER_DEBIT_MAX_RETRIES), 0)
        delay = max(float(settings.LEDGER_RETRY_DELAY_SECONDS), 0.0)
        result = DebitResult(status=DEBIT_ERROR)
        for attempt in range(max_retries + 1):
            if attempt:
                await asyncio.sleep(delay * attempt)
            try:
                async with self.session_maker() as db:
                    result = await debit_credits(
                        user_id,
                        db,
                        amount=amount,
                        kind=kind,
                        description=description,
                        external_ref=external_ref,
                    )
            except SQLAlchemyError as exc:
                result = DebitResult(status=DEBIT_ERROR, error=str(exc))
            if result.status != DEBIT_ERROR:
                return result
            logger.warning("Debit attempt %s for %s failed: %s", attempt + 1, external_ref, result.error)
        return result

    async def _flush_pending(self, user_id: str, session_id: str) -> None:
        pending = self.pending.get(user_id, session_id)
        if pending is None:
            return
        try:
            async with self.session_maker() as db:
                for number in sorted(pending.versions):
                    html, prompt = pending.versions[number]
                    try:
                        await append_version(user_id, session_id, db, version_number=number, html=html, prompt=prompt)
                    except VersionConflictError as exc:
                        logger.warning("Dropping buffered version %s for session %s: %s", number, session_id, exc)
                    pending.versions.pop(number, None)
                if pending.session is not None:
                    await record_generation(user_id, session_id, db, **pending.session)
                    pending.session = None
        except SQLAlchemyError as exc:
            logger.warning("Buffered writes for session %s still failing: %s", session_id, exc)
        self.pending.prune(user_id, session_id)

    async def _next_version_number(self, user_id: str, session_id: str, iteration: bool, db: AsyncSession) -> int:
        latest = await get_latest_version_number(user_id, session_id, db)
        base = latest
        if iteration:
            session = await get_session(user_id, session_id, db)
            if session is not None:
                restored = session.restored_version
                if restored is not None and 0 < restored < latest:
                    # Branching from a restored version drops the abandoned tail.
                    await truncate_versions_after(user_id, session_id, restored, db)
                    base = restored
                else:
                    # A pointer that merely lags the store never rewinds history.
                    base = max(latest, int(session.current_version or 0))
        return max(base, self.pending.max_version(user_id, session_id)) + 1

    async def _persist(
        self,
        run: GenerationRun,
        *,
        session_id: str,
        iteration: bool,
        html: str,
        parsed_message: str,
        suggested_title: Optional[str],
        suggested_description: Optional[str],
    ) -> Tuple[int, List[str]]:
        """Append the version and update the session; failed writes go to the pending buffer."""
        user_id = run.user_id
        request = run.request
        degraded: List[str] = []
        await self._flush_pending(user_id, session_id)

        try:
            async with self.session_maker() as db:
                version_number = await self._next_version_number(user_id, session_id, iteration, db)
        except SQLAlchemyError as exc:
            logger.warning("Could not read version state for session %s: %s", session_id, exc)
            version_number = max(
                self.pending.max_version(user_id, session_id),
                int(self._history_version(request)),
            ) + 1

        try:
            async with self.session_maker() as db:
                await append_version(
                    user_id,
                    session_id,
                    db,
                    version_number=version_number,
                    html=html,
                    prompt=request.prompt,
                )
        except SQLAlchemyError as exc:
            logger.warning("Version v%s for session %s buffered after write failure: %s", version_number, session_id, exc)
            self.pending.entry(user_id, session_id).versions[version_number] = (html, request.prompt)
            degraded.append("version")

        session_write = {
            "prompt": request.prompt,
            "message": parsed_message,
            "html": html,
            "version_number": version_number,
            "history": [turn.model_dump() for turn in request.history] or None,
            "suggested_title": suggested_title,
            "suggested_description": suggested_description,
        }
        try:
            async with self.session_maker() as db:
                await record_generation(user_id, session_id, db, **session_write)
        except SQLAlchemyError as exc:
            logger.warning("Session %s update buffered after write failure: %s", session_id, exc)
            self.pending.entry(user_id, session_id).session = session_write
            degraded.append("session")

        return version_number, degraded

    @staticmethod
    def _history_version(request: GenerationRequest) -> int:
        # Last resort when the store is unreachable: the newest version the client has seen.
        numbers = [0]
        for turn in request.history:
            if turn.version_number is not None:
                numbers.append(int(turn.version_number))
        return max(numbers)

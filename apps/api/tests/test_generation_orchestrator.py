import asyncio

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

import services.generation as generation_module
from config import settings
from models.credit_transaction import CreditTransaction
from models.ledger_reconciliation import LedgerReconciliation
from models.user import User
from services.credits import DEBIT_ERROR, DebitResult, get_credit_balance, verify_ledger
from services.errors import FailureKind, GenerationFailure, GeneratorError
from services.generation import GenerationOrchestrator, GenerationRequest, PendingWriteBuffer
from services.output_parser import SCREENSHOT_MARKER
from services.reconciliation import STATUS_PENDING, STATUS_RESOLVED, reconcile_pending_debit
from services.studio_sessions import get_session, save_session, set_current_version
from services.versions import append_version, list_versions

from conftest import GAME_HTML, ScriptedGenerator, game_payload, make_account


def _orchestrator(session_maker, generator=None, pending=None):
    if pending is None:
        pending = PendingWriteBuffer()
    return GenerationOrchestrator(session_maker, generator or ScriptedGenerator(), pending)


async def _collect(orchestrator, user_id, request):
    events = []

    async def sink(event):
        events.append(event)

    result = await orchestrator.run(user_id, request, sink)
    return result, events


@pytest.mark.asyncio
async def test_new_game_charges_and_records_first_version(session_maker):
    await make_account(session_maker, "maker")
    generator = ScriptedGenerator()
    result, events = await _collect(
        _orchestrator(session_maker, generator), "maker", GenerationRequest(prompt="make a snake game", session_id="s-1")
    )

    assert result["status"] == "done"
    assert result["version"] == 1
    assert result["credits_charged"] == 50
    assert result["credits_remaining"] == 0
    assert result["is_iteration"] is False
    assert result["suggested_title"] == "Neon Snake"
    assert result["flags"] == []
    assert SCREENSHOT_MARKER in result["html"]

    states = [event.data["state"] for event in events if event.type == "status"]
    assert states[0] == "validating"
    assert states[-1] == "done"
    assert "generating" in states and "parsing" in states and "committing" in states
    assert any(event.type == "progress" for event in events)

    async with session_maker() as db:
        assert (await verify_ledger("maker", db)) == {"balance": 0, "ledger_sum": 0, "consistent": True}
        versions = await list_versions("maker", "s-1", db)
        assert [version.version_number for version in versions] == [1]
        assert versions[0].prompt == "make a snake game"
        session = await get_session("maker", "s-1", db)
        assert session.current_version == 1
        assert [turn["role"] for turn in session.messages_json] == ["user", "model"]
        user = await db.get(User, "maker")
        assert user.games_created == 1

        debit = (
            await db.execute(select(CreditTransaction).where(CreditTransaction.kind == "game_generation"))
        ).scalar_one()
        assert debit.amount == -50
        assert debit.external_ref == f"generation:{result['generation_id']}"


@pytest.mark.asyncio
async def test_session_id_is_assigned_when_missing(session_maker):
    await make_account(session_maker, "fresh")
    result, _ = await _collect(_orchestrator(session_maker), "fresh", GenerationRequest(prompt="pong"))
    assert result["session_id"]
    async with session_maker() as db:
        assert await get_session("fresh", result["session_id"], db) is not None


@pytest.mark.asyncio
async def test_iteration_at_zero_balance_is_refused_before_generating(session_maker):
    await make_account(session_maker, "broke", tier="gamedev")
    async with session_maker() as db:
        await db.execute(update(User).where(User.id == "broke").values(credits=0))
        await db.commit()

    generator = ScriptedGenerator()
    orchestrator = _orchestrator(session_maker, generator)
    with pytest.raises(GenerationFailure) as exc_info:
        await orchestrator.run("broke", GenerationRequest(prompt="add lasers", existing_html=GAME_HTML))

    failure = exc_info.value
    assert failure.kind == FailureKind.INSUFFICIENT_CREDITS
    assert failure.status_code == 402
    assert failure.to_dict()["required"] == 10
    assert failure.to_dict()["available"] == 0
    assert failure.retryable is False
    assert generator.calls == []


@pytest.mark.asyncio
async def test_free_tier_limits(session_maker):
    await make_account(session_maker, "free-user", extra_credits=500)
    orchestrator = _orchestrator(session_maker)
    await orchestrator.run("free-user", GenerationRequest(prompt="first game"))

    with pytest.raises(GenerationFailure) as exc_info:
        await orchestrator.run("free-user", GenerationRequest(prompt="second game"))
    assert exc_info.value.kind == FailureKind.TIER_LIMIT_EXCEEDED
    assert exc_info.value.to_dict()["limit"] == 1

    with pytest.raises(GenerationFailure) as exc_info:
        await orchestrator.run("free-user", GenerationRequest(prompt="edit it", existing_html=GAME_HTML))
    assert exc_info.value.kind == FailureKind.TIER_LIMIT_EXCEEDED
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_iteration_costs_ten_and_continues_the_session(session_maker):
    await make_account(session_maker, "dev", tier="gamedev", extra_credits=100)
    orchestrator = _orchestrator(session_maker)
    first = await orchestrator.run("dev", GenerationRequest(prompt="breakout", session_id="s-dev"))
    second = await orchestrator.run(
        "dev",
        GenerationRequest(prompt="make the paddle wider", existing_html=first["html"], session_id="s-dev"),
    )

    assert first["credits_charged"] == 50
    assert second["credits_charged"] == 10
    assert second["is_iteration"] is True
    assert second["version"] == 2
    assert second["credits_remaining"] == 90
    assert second["html"].count(SCREENSHOT_MARKER) == 1


@pytest.mark.asyncio
async def test_unauthenticated_request_fails(session_maker):
    with pytest.raises(GenerationFailure) as exc_info:
        await _orchestrator(session_maker).run(None, GenerationRequest(prompt="pong"))
    assert exc_info.value.kind == FailureKind.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_malformed_output_is_not_charged(session_maker):
    await make_account(session_maker, "unlucky")
    generator = ScriptedGenerator(outputs=["I'm sorry, I can't help with that."])
    events = []

    async def sink(event):
        events.append(event)

    with pytest.raises(GenerationFailure) as exc_info:
        await _orchestrator(session_maker, generator).run("unlucky", GenerationRequest(prompt="pong", session_id="s-x"), sink)

    assert exc_info.value.kind == FailureKind.MALFORMED_GENERATOR_OUTPUT
    assert exc_info.value.retryable is True
    assert events[-1].data["state"] == "error"
    async with session_maker() as db:
        assert await get_credit_balance("unlucky", db) == 50
        assert await list_versions("unlucky", "s-x", db) == []


@pytest.mark.asyncio
async def test_generator_failure_and_timeout_are_unavailable(session_maker, monkeypatch):
    await make_account(session_maker, "waiting")
    failing = ScriptedGenerator(error=GeneratorError("No response from AI"))
    with pytest.raises(GenerationFailure) as exc_info:
        await _orchestrator(session_maker, failing).run("waiting", GenerationRequest(prompt="pong"))
    assert exc_info.value.kind == FailureKind.GENERATOR_UNAVAILABLE

    monkeypatch.setattr(settings, "GENERATOR_TIMEOUT_SECONDS", 0.05)
    slow = ScriptedGenerator(delay=1.0)
    with pytest.raises(GenerationFailure) as exc_info:
        await _orchestrator(session_maker, slow).run("waiting", GenerationRequest(prompt="pong"))
    assert exc_info.value.kind == FailureKind.GENERATOR_UNAVAILABLE

    async with session_maker() as db:
        assert await get_credit_balance("waiting", db) == 50


@pytest.mark.asyncio
async def test_version_store_outage_degrades_then_recovers(session_maker, monkeypatch):
    await make_account(session_maker, "outage", tier="gamedev", extra_credits=100)
    real_append = generation_module.append_version
    failures = {"left": 1}

    async def flaky_append(*args, **kwargs):
        if failures["left"]:
            failures["left"] -= 1
            raise OperationalError("INSERT INTO game_versions", {}, Exception("database is unavailable"))
        return await real_append(*args, **kwargs)

    monkeypatch.setattr(generation_module, "append_version", flaky_append)
    pending = PendingWriteBuffer()
    orchestrator = _orchestrator(session_maker, pending=pending)

    first = await orchestrator.run("outage", GenerationRequest(prompt="tetris", session_id="s-out"))
    assert first["persistence_degraded"] is True
    assert first["version"] == 1
    assert first["credits_charged"] == 50
    assert {"kind": "persistence_degraded", "detail": {"failed_writes": ["version"]}} in first["flags"]
    assert pending.max_version("outage", "s-out") == 1

    second = await orchestrator.run(
        "outage",
        GenerationRequest(prompt="add ghost piece", existing_html=first["html"], session_id="s-out"),
    )
    assert second["persistence_degraded"] is False
    assert second["version"] == 2
    assert len(pending) == 0
    async with session_maker() as db:
        versions = await list_versions("outage", "s-out", db)
        assert [version.version_number for version in versions] == [2, 1]


@pytest.mark.asyncio
async def test_exhausted_debit_retries_deliver_unreconciled_result(session_maker, monkeypatch):
    await make_account(session_maker, "flaky-ledger")
    attempts = []

    async def failing_debit(*args, **kwargs):
        attempts.append(kwargs["external_ref"])
        return DebitResult(status=DEBIT_ERROR, error="connection reset")

    monkeypatch.setattr(generation_module, "debit_credits", failing_debit)
    result = await _orchestrator(session_maker).run("flaky-ledger", GenerationRequest(prompt="asteroids", session_id="s-led"))

    assert len(attempts) == settings.LEDGER_DEBIT_MAX_RETRIES + 1
    assert result["status"] == "done"
    assert result["ledger_unreconciled"] is True
    assert result["credits_charged"] == 0
    assert result["credits_remaining"] == 50
    assert result["html"]
    flag = next(flag for flag in result["flags"] if flag["kind"] == "ledger_unreconciled")
    reconciliation_id = flag["detail"]["reconciliation_id"]

    async with session_maker() as db:
        row = await db.get(LedgerReconciliation, reconciliation_id)
        assert row.status == STATUS_PENDING
        assert row.amount == 50
        assert row.external_ref == f"generation:{result['generation_id']}"
        assert row.version_number == 1
        assert await get_credit_balance("flaky-ledger", db) == 50

    status = await reconcile_pending_debit(reconciliation_id, session_maker=session_maker)
    assert status == STATUS_RESOLVED
    async with session_maker() as db:
        assert await get_credit_balance("flaky-ledger", db) == 0
        assert (await verify_ledger("flaky-ledger", db))["consistent"] is True


@pytest.mark.asyncio
async def test_transient_debit_error_is_retried(session_maker, monkeypatch):
    await make_account(session_maker, "retry-user")
    real_debit = generation_module.debit_credits
    calls = {"count": 0}

    async def debit_once_failing(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            return DebitResult(status=DEBIT_ERROR, error="timeout")
        return await real_debit(*args, **kwargs)

    monkeypatch.setattr(generation_module, "debit_credits", debit_once_failing)
    result = await _orchestrator(session_maker).run("retry-user", GenerationRequest(prompt="frogger"))
    assert calls["count"] == 2
    assert result["ledger_unreconciled"] is False
    assert result["credits_remaining"] == 0


@pytest.mark.asyncio
async def test_restore_then_iterate_continues_from_restored_version(session_maker):
    await make_account(session_maker, "restorer", tier="pro", extra_credits=200)
    orchestrator = _orchestrator(
        session_maker,
        ScriptedGenerator(
            outputs=[
                game_payload(html="<html><body>v1</body></html>"),
                game_payload(html="<html><body>v2</body></html>"),
                game_payload(html="<html><body>v3</body></html>"),
                game_payload(html="<html><body>v1b</body></html>"),
            ]
        ),
    )
    v1 = await orchestrator.run("restorer", GenerationRequest(prompt="racer", session_id="s-r"))
    v2 = await orchestrator.run("restorer", GenerationRequest(prompt="nitro", existing_html=v1["html"], session_id="s-r"))
    await orchestrator.run("restorer", GenerationRequest(prompt="rain", existing_html=v2["html"], session_id="s-r"))

    async with session_maker() as db:
        await set_current_version("restorer", "s-r", db, version_number=1, html=v1["html"])

    branched = await orchestrator.run(
        "restorer", GenerationRequest(prompt="night mode", existing_html=v1["html"], session_id="s-r")
    )
    assert branched["version"] == 2
    async with session_maker() as db:
        versions = await list_versions("restorer", "s-r", db)
        assert [version.version_number for version in versions] == [2, 1]
        assert "v1b" in versions[0].html
        session = await get_session("restorer", "s-r", db)
        assert session.current_version == 2
        assert session.restored_version is None


@pytest.mark.asyncio
async def test_launch_emits_result_event_after_caller_stops_listening(session_maker):
    await make_account(session_maker, "leaver")
    generator = ScriptedGenerator()
    generator.release = asyncio.Event()
    received = []

    async def sink(event):
        received.append(event.type)

    task = _orchestrator(session_maker, generator).launch("leaver", GenerationRequest(prompt="pong"), sink)
    await asyncio.sleep(0)
    generator.release.set()
    result = await task

    assert received[-1] == "result"
    assert result["credits_charged"] == 50


@pytest.mark.asyncio
async def test_empty_existing_artifact_is_priced_as_new_game(session_maker):
    await make_account(session_maker, "blank")
    generator = ScriptedGenerator()
    result = await _orchestrator(session_maker, generator).run(
        "blank", GenerationRequest(prompt="pong", existing_html="", session_id="s-blank")
    )

    assert result["is_iteration"] is False
    assert result["credits_charged"] == 50
    assert result["credits_remaining"] == 0
    async with session_maker() as db:
        user = await db.get(User, "blank")
        assert user.games_created == 1


@pytest.mark.asyncio
async def test_iteration_on_lagging_pointer_keeps_stored_history(session_maker):
    await make_account(session_maker, "lagging", tier="gamedev", extra_credits=100)
    async with session_maker() as db:
        await save_session(
            "lagging",
            "s-lag",
            db,
            messages=[{"role": "user", "text": "space shooter"}],
            current_game_html="<html><body>v2</body></html>",
        )
        await append_version("lagging", "s-lag", db, version_number=1, html="<html><body>v1</body></html>", prompt="a")
        await append_version("lagging", "s-lag", db, version_number=2, html="<html><body>v2</body></html>", prompt="b")

    result = await _orchestrator(session_maker).run(
        "lagging",
        GenerationRequest(prompt="add bosses", existing_html="<html><body>v2</body></html>", session_id="s-lag"),
    )

    assert result["version"] == 3
    async with session_maker() as db:
        versions = await list_versions("lagging", "s-lag", db)
        assert [version.version_number for version in versions] == [3, 2, 1]


@pytest.mark.asyncio
async def test_lost_session_write_never_reuses_a_version_number(session_maker, monkeypatch):
    await make_account(session_maker, "restart", tier="gamedev", extra_credits=100)
    first = await _orchestrator(session_maker).run("restart", GenerationRequest(prompt="maze", session_id="s-re"))

    real_record = generation_module.record_generation
    failures = {"left": 1}

    async def flaky_record(*args, **kwargs):
        if failures["left"]:
            failures["left"] -= 1
            raise OperationalError("UPDATE studio_sessions", {}, Exception("database is unavailable"))
        return await real_record(*args, **kwargs)

    monkeypatch.setattr(generation_module, "record_generation", flaky_record)
    second = await _orchestrator(session_maker).run(
        "restart", GenerationRequest(prompt="add keys", existing_html=first["html"], session_id="s-re")
    )
    assert second["version"] == 2
    assert {"kind": "persistence_degraded", "detail": {"failed_writes": ["session"]}} in second["flags"]

    # A fresh buffer stands in for a restarted process.
    third = await _orchestrator(session_maker, pending=PendingWriteBuffer()).run(
        "restart", GenerationRequest(prompt="add doors", existing_html=second["html"], session_id="s-re")
    )
    assert third["version"] == 3
    async with session_maker() as db:
        versions = await list_versions("restart", "s-re", db)
        assert [version.version_number for version in versions] == [3, 2, 1]

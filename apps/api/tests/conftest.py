import asyncio
import json
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db, get_session_maker
from main import app
from models.user import User
from routers import rate_limit
from services.credits import KIND_PURCHASE, add_credits, ensure_account
from services.generation import pending_writes
from services.generator import GameGenerator, get_game_generator
from services.session_token import create_session_token

GAME_HTML = "<!DOCTYPE html><html><body><canvas></canvas><script>let score = 0;</script></body></html>"


def auth_header(user_id: str, email: Optional[str] = None) -> dict:
    token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


def game_payload(html: str = GAME_HTML, title: str = "Neon Snake", message: str = "Initializing physics engine...") -> str:
    return json.dumps(
        {
            "message": message,
            "html": html,
            "suggestedTitle": title,
            "suggestedDescription": "Eat, grow, survive.",
        }
    )


class ScriptedGenerator(GameGenerator):
    """Replays canned outputs and records the messages it was called with."""

    name = "scripted"

    def __init__(self, outputs: Optional[List[str]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.outputs = list(outputs or [])
        self.error = error
        self.delay = delay
        self.calls: List[list] = []
        self.release: Optional[asyncio.Event] = None

    async def generate(self, messages, on_chunk=None) -> str:
        self.calls.append(messages)
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        text = self.outputs.pop(0) if len(self.outputs) > 1 else (self.outputs[0] if self.outputs else game_payload())
        if on_chunk is not None:
            for start in range(0, len(text), 64):
                await on_chunk(text[start:start + 64])
        return text


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters(monkeypatch):
    """Keep in-memory rate-limit state and buffered writes isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    pending_writes.clear()
    monkeypatch.setattr(settings, "RECONCILIATION_QUEUE_ENABLED", False)
    monkeypatch.setattr(settings, "LEDGER_RETRY_DELAY_SECONDS", 0.0)
    yield
    rate_limit._local_counters.clear()
    pending_writes.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "playable.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest_asyncio.fixture
async def api_client(session_maker, generator):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_game_generator] = lambda: generator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_maker, None)
    app.dependency_overrides.pop(get_game_generator, None)


async def make_account(session_maker, user_id: str, tier: str = "free", extra_credits: int = 0) -> User:
    """Create an account with signup credits, an optional purchase and a tier."""
    async with session_maker() as db:
        await ensure_account(user_id, db, email=f"{user_id}@example.com")
        if extra_credits:
            await add_credits(
                user_id,
                db,
                amount=extra_credits,
                kind=KIND_PURCHASE,
                description="Test purchase",
                external_ref=f"test-purchase:{user_id}:{extra_credits}",
            )
        if tier != "free":
            await db.execute(update(User).where(User.id == user_id).values(tier=tier))
            await db.commit()
        return await db.get(User, user_id, populate_existing=True)

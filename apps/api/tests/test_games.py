import pytest
from sqlalchemy.exc import IntegrityError

from services.credits import ensure_account
from services.games import publish_game, record_play

from conftest import GAME_HTML, auth_header

AUTHOR = auth_header("author")
PLAYER = auth_header("player")


async def _publish(api_client, title="Neon Snake"):
    response = await api_client.post(
        "/games",
        json={"title": title, "description": "Eat and grow", "html": GAME_HTML, "category": "Arcade"},
        headers=AUTHOR,
    )
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_publish_and_browse_feed(api_client):
    game = await _publish(api_client)
    assert game["author"] == "author"
    assert game["plays"] == 0

    feed = await api_client.get("/games")
    assert [item["id"] for item in feed.json()["games"]] == [game["id"]]
    assert "html" not in feed.json()["games"][0]

    detail = await api_client.get(f"/games/{game['id']}")
    assert detail.json()["html"] == GAME_HTML

    missing = await api_client.get("/games/does-not-exist")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_publishing_requires_identity(api_client):
    response = await api_client.post("/games", json={"title": "x", "html": GAME_HTML})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_plays_are_counted_and_appear_in_history(api_client):
    game = await _publish(api_client)
    for _ in range(2):
        response = await api_client.post(f"/games/{game['id']}/plays", headers=PLAYER)
    assert response.json()["plays"] == 2

    history = await api_client.get("/games/history", headers=PLAYER)
    assert [item["id"] for item in history.json()["games"]] == [game["id"]]


@pytest.mark.asyncio
async def test_leaderboard_orders_by_score(api_client):
    game = await _publish(api_client)
    for name, score in (("ada", 120), ("bob", 300), ("cy", 50)):
        await api_client.post(
            f"/games/{game['id']}/leaderboard",
            json={"player_name": name, "score": score},
            headers=PLAYER,
        )
    board = await api_client.get(f"/games/{game['id']}/leaderboard")
    assert [(entry["player_name"], entry["score"]) for entry in board.json()["entries"]] == [
        ("bob", 300),
        ("ada", 120),
        ("cy", 50),
    ]


@pytest.mark.asyncio
async def test_save_toggles(api_client):
    game = await _publish(api_client)
    saved = await api_client.post(f"/games/{game['id']}/save", headers=PLAYER)
    assert saved.json()["saved"] is True
    library = await api_client.get("/games/saved", headers=PLAYER)
    assert [item["id"] for item in library.json()["games"]] == [game["id"]]

    unsaved = await api_client.post(f"/games/{game['id']}/save", headers=PLAYER)
    assert unsaved.json()["saved"] is False
    library = await api_client.get("/games/saved", headers=PLAYER)
    assert library.json()["games"] == []


@pytest.mark.asyncio
async def test_record_play_retries_a_conflict_once(session_maker, monkeypatch):
    async with session_maker() as db:
        author = await ensure_account("author", db)
        game = await publish_game(author, db, title="Maze", description="", html=GAME_HTML)
        game_id = game.id
        await ensure_account("player", db)

        real_commit = db.commit
        attempts = {"count": 0}

        async def commit_conflicting_once():
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise IntegrityError("INSERT INTO play_history", {}, Exception("duplicate key"))
            await real_commit()

        monkeypatch.setattr(db, "commit", commit_conflicting_once)
        assert await record_play("player", game_id, db) == 1
        assert attempts["count"] == 2

        async def always_conflicting():
            attempts["count"] += 1
            raise IntegrityError("INSERT INTO play_history", {}, Exception("duplicate key"))

        attempts["count"] = 0
        monkeypatch.setattr(db, "commit", always_conflicting)
        with pytest.raises(IntegrityError):
            await record_play("player", game_id, db)
        assert attempts["count"] == 2

import asyncio

import pytest
from sqlalchemy import text

from bookflow.api import routes_health


async def _set_alembic_version(async_session_maker, version: str | None) -> None:
    async with async_session_maker() as session:
        await session.execute(
            text("CREATE TABLE IF NOT EXISTS alembic_version (version_num VARCHAR(32) NOT NULL)")
        )
        await session.execute(text("DELETE FROM alembic_version"))
        if version is not None:
            await session.execute(
                text("INSERT INTO alembic_version (version_num) VALUES (:version)"),
                {"version": version},
            )
        await session.commit()


@pytest.fixture(autouse=True)
def reset_heads_cache():
    routes_health._heads_cache.update({"loaded_at": 0.0, "heads": None})
    yield
    routes_health._heads_cache.update({"loaded_at": 0.0, "heads": None})


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_current(monkeypatch, client, async_session_maker):
    asyncio.run(_set_alembic_version(async_session_maker, "0001_booking_lifecycle"))
    monkeypatch.setattr(routes_health, "expected_heads", lambda: ["0001_booking_lifecycle"])

    response = client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()["database"]
    assert payload["migrations_current"] is True
    assert payload["migrations_check"] == "ok"


def test_readyz_behind(monkeypatch, client, async_session_maker):
    asyncio.run(_set_alembic_version(async_session_maker, "base"))
    monkeypatch.setattr(routes_health, "expected_heads", lambda: ["0002_next"])

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["database"]["migrations_current"] is False


def test_readyz_without_packaged_migrations(monkeypatch, client, async_session_maker):
    asyncio.run(_set_alembic_version(async_session_maker, None))
    monkeypatch.setattr(routes_health, "expected_heads", lambda: None)

    response = client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["database"]["migrations_check"] == "skipped_no_alembic_files"


def test_readyz_alembic_error(monkeypatch, client, async_session_maker):
    asyncio.run(_set_alembic_version(async_session_maker, "any"))
    monkeypatch.setattr(routes_health, "expected_heads", lambda: [])

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["database"]["migrations_check"] == "error_loading_alembic"


def test_shipped_migrations_have_single_head():
    assert routes_health.expected_heads() == ["0001_booking_lifecycle"]

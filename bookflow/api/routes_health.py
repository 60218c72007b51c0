import logging
import time
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()
logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
HEADS_TTL_SECONDS = 60
_heads_cache: dict[str, Any] = {"loaded_at": 0.0, "heads": None}


def expected_heads() -> list[str] | None:
    """Alembic heads shipped with this build, or None when migrations are not packaged."""
    now = time.monotonic()
    if now - _heads_cache["loaded_at"] < HEADS_TTL_SECONDS:
        return _heads_cache["heads"]

    alembic_ini = REPO_ROOT / "alembic.ini"
    script_location = REPO_ROOT / "alembic"
    heads: list[str] | None
    if not alembic_ini.exists() or not script_location.exists():
        heads = None
    else:
        try:
            cfg = Config(str(alembic_ini))
            cfg.set_main_option("script_location", str(script_location))
            heads = list(ScriptDirectory.from_config(cfg).get_heads())
        except Exception as exc:  # noqa: BLE001
            logger.warning("migrations_heads_unavailable", extra={"extra": {"reason": type(exc).__name__}})
            heads = []
    _heads_cache.update({"loaded_at": now, "heads": heads})
    return heads


async def _current_revision(session) -> str | None:
    try:
        result = await session.execute(text("SELECT version_num FROM alembic_version"))
    except SQLAlchemyError:
        return None
    row = result.first()
    return row[0] if row else None


async def database_status(request: Request) -> dict[str, Any]:
    heads = expected_heads()
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return {"ok": False, "message": "database session factory unavailable", "migrations_current": False}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            current = await _current_revision(session)
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return {
            "ok": False,
            "message": "database check failed",
            "migrations_current": False,
            "error": exc.__class__.__name__,
        }

    if heads is None:
        migrations_current, check = True, "skipped_no_alembic_files"
    else:
        migrations_current, check = current in heads, "ok" if heads else "error_loading_alembic"
    return {
        "ok": True,
        "message": "database reachable",
        "migrations_current": migrations_current,
        "migrations_check": check,
        "current_version": current,
        "expected_heads": heads or [],
    }


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    database = await database_status(request)
    ready = bool(database["ok"]) and bool(database["migrations_current"])
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "unhealthy", "database": database},
    )

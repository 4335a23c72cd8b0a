"""Schema bootstrap: bring the database to the Alembic head at startup."""

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

import app.core.database as db_module
from app.core.database import Base

logger = structlog.get_logger()

_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent

# Any of these existing means the schema was created before Alembic tracked it
_SENTINEL_TABLES = ("users", "data_export_requests")


@dataclass
class SchemaState:
    tracked: bool
    has_tables: bool
    revision: str | None = None


def alembic_config(db_url: str | None = None) -> Config:
    """Config with absolute paths, so migrations run from any working directory."""
    cfg = Config(str(_BACKEND_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_BACKEND_ROOT / "alembic"))
    if db_url:
        # configparser interpolates '%'
        cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return cfg


def head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def _read_state(connection) -> SchemaState:
    tables = set(inspect(connection).get_table_names())
    state = SchemaState(
        tracked="alembic_version" in tables,
        has_tables=any(t in tables for t in _SENTINEL_TABLES),
    )
    if state.tracked:
        row = connection.execute(text("SELECT version_num FROM alembic_version")).first()
        state.revision = row[0] if row else None
    return state


async def ensure_db_migrated(engine: AsyncEngine | None = None) -> str:
    """Create, stamp or upgrade the schema. Returns the action taken.

    - empty database: ``create_all`` then stamp head ("created")
    - tables but no version table: stamp head ("stamped")
    - tracked and behind head: upgrade ("upgraded")
    - tracked and at head: nothing ("current")
    """
    engine = engine or db_module.engine
    async with engine.connect() as conn:
        state = await conn.run_sync(_read_state)

    cfg = alembic_config(engine.url.render_as_string(hide_password=False))
    head = head_revision()

    if not state.tracked and not state.has_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await asyncio.to_thread(command.stamp, cfg, "head")
        action = "created"
    elif not state.tracked:
        await asyncio.to_thread(command.stamp, cfg, "head")
        action = "stamped"
    elif state.revision != head:
        await asyncio.to_thread(command.upgrade, cfg, "head")
        action = "upgraded"
    else:
        action = "current"

    logger.info("schema_ready", action=action, revision=head, previous_revision=state.revision)
    return action

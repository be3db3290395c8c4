from __future__ import annotations

import logging
import re
import threading
from pathlib import Path

from sqlalchemy import MetaData, Table, create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from prioritizer.models import Base, Requirement

log = logging.getLogger(__name__)

REQUIREMENTS_TABLE = Requirement.__tablename__

COLUMN_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,62}$")

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def init_db(database_url: str | None = None) -> None:
    global _engine, _SessionLocal
    if database_url is None:
        from prioritizer.config import settings
        database_url = settings.database_url
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = _create_engine(database_url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        seed_default_criteria(_engine)


def _create_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args={"check_same_thread": False})


def _migrate_existing_db(engine: Engine) -> None:
    """Add fixed columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    existing = {col["name"] for col in inspector.get_columns(REQUIREMENTS_TABLE)}
    missing = [c for c in Requirement.__table__.columns if c.name not in existing]
    if not missing:
        return
    with engine.begin() as conn:
        for column in missing:
            col_type = column.type.compile(dialect=engine.dialect)
            log.info("Migrating %s: adding column %s %s", REQUIREMENTS_TABLE, column.name, col_type)
            conn.execute(text(
                f"ALTER TABLE {quote_identifier(conn, REQUIREMENTS_TABLE)} "
                f"ADD COLUMN {quote_identifier(conn, column.name)} {col_type}"
            ))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


# ---------------------------------------------------------------------------
# Dynamic requirement columns
# ---------------------------------------------------------------------------


def quote_identifier(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def requirement_columns(session: Session) -> set[str]:
    """Column names currently present on the requirements table."""
    inspector = sa_inspect(session.connection())
    return {col["name"] for col in inspector.get_columns(REQUIREMENTS_TABLE)}


def requirements_table(session: Session) -> Table:
    """Reflect the requirements table, including columns added at import time."""
    return Table(REQUIREMENTS_TABLE, MetaData(), autoload_with=session.connection())


def add_text_columns(session: Session, names: list[str]) -> list[str]:
    """Add nullable TEXT columns that do not exist yet. Returns the names created.

    Additive only: existing columns are never altered or dropped.
    """
    existing = requirement_columns(session)
    created: list[str] = []
    conn = session.connection()
    for name in names:
        if name in existing or name in created:
            continue
        if not COLUMN_NAME_RE.match(name):
            raise ValueError(f"Invalid column name: {name!r}")
        log.info("Schema extension: adding column %s to %s", name, REQUIREMENTS_TABLE)
        conn.execute(text(
            f"ALTER TABLE {quote_identifier(conn, REQUIREMENTS_TABLE)} "
            f"ADD COLUMN {quote_identifier(conn, name)} TEXT"
        ))
        created.append(name)
    if created:
        session.commit()
    return created


def seed_default_criteria(engine: Engine) -> None:
    """Seed default scoring criteria if the table is empty."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM criteria")).scalar()
        if count > 0:
            return
    from prioritizer.scorer import DEFAULT_CRITERIA
    with engine.begin() as conn:
        for crit in DEFAULT_CRITERIA:
            conn.execute(text(
                "INSERT INTO criteria (id, name, weight, scale_min, scale_max) "
                "VALUES (:id, :name, :weight, :scale_min, :scale_max)"
            ), crit)

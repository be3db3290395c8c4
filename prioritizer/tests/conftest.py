"""Shared fixtures: in-memory database, API client and XLSX builders."""
from __future__ import annotations

import os
from io import BytesIO

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from prioritizer.db import seed_default_criteria
from prioritizer.models import Base


@pytest.fixture()
def engine():
    """Temporary SQLite in-memory database with default criteria.

    Uses StaticPool so all connections share the same in-memory database.
    """
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    seed_default_criteria(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def client(session_factory):
    """FastAPI TestClient using the in-memory database."""
    from prioritizer.app import app, db_session

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def make_xlsx():
    """Build XLSX bytes from a header row and data rows (first sheet)."""

    def build(headers: list, rows: list[list] = ()) -> bytes:
        wb = Workbook()
        ws = wb.active
        ws.append(headers)
        for row in rows:
            ws.append(row)
        buf = BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return build

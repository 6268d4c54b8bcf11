"""Shared fixtures: in-memory SQLite store and the components built on it."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from contentaudit.cache import ScoreCache
from contentaudit.db import make_session_factory
from contentaudit.models import Base, ContentEntity, ScoreRecord
from contentaudit.registry import FactorRegistry


@pytest.fixture()
def engine():
    """In-memory SQLite shared by every connection (components open their own sessions)."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def registry(session_factory) -> FactorRegistry:
    """Registry with node:article enabled for auditing."""
    reg = FactorRegistry(session_factory)
    reg.set_bundle_enabled("node", "article")
    return reg


@pytest.fixture()
def cache(session_factory) -> ScoreCache:
    return ScoreCache(session_factory)


@pytest.fixture()
def article() -> ContentEntity:
    return ContentEntity(
        entity_type="node", entity_id="1", langcode="en", bundle="article",
        revision_id="10", title="Spring launch",
        body="<p>Our new planner helps teams <strong>ship faster</strong>. Start a free trial today.</p>",
    )


@pytest.fixture()
def count_scores(session_factory):
    """Count stored score rows matching column filters."""
    def count(**filters) -> int:
        query = select(func.count(ScoreRecord.id))
        for name, value in filters.items():
            query = query.where(getattr(ScoreRecord, name) == value)
        with session_factory() as session:
            return session.execute(query).scalar()
    return count

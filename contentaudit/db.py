from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from contentaudit.models import Base
from contentaudit.registry import DEFAULT_BUNDLES, DEFAULT_FACTORS, FactorRegistry, parse_bundle_key

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None

DATA_DIR = Path(__file__).parent / "data"


def default_db_path() -> Path:
    override = os.environ.get("AUDIT_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return DATA_DIR / "audit.db"


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else default_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = make_session_factory(_engine)
        seed_default_factors(_SessionLocal)


def get_session_factory() -> sessionmaker[Session]:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def seed_default_factors(session_factory: sessionmaker[Session]) -> int:
    """Insert the default factors and bundles into a fresh store. Returns factors added.

    A store that already holds factors is left alone, so bundles switched
    off later stay off.
    """
    registry = FactorRegistry(session_factory)
    if registry.list_factors():
        return 0
    for key in DEFAULT_BUNDLES:
        registry.set_bundle_enabled(*parse_bundle_key(key))
    for factor in DEFAULT_FACTORS:
        registry.save(factor)
    return len(DEFAULT_FACTORS)

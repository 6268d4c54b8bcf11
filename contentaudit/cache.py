"""Persistent score cache keyed by entity, factor, and fingerprint pair.

The database is the cache: there is no in-process memo layer. Every mutation
runs in its own transaction and is committed before returning. Storage errors
propagate to the caller unchanged.
"""
from __future__ import annotations

import logging
from datetime import datetime, UTC
from typing import Any, Union

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from contentaudit.models import ContentEntity, EntityRef, FactorRecord, ScoreRecord

log = logging.getLogger(__name__)

EntityLike = Union[EntityRef, ContentEntity]

_KEY_COLUMNS = (
    "entity_type", "entity_id", "langcode", "factor_id", "content_hash", "config_hash",
)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _ref(entity: EntityLike) -> EntityRef:
    return entity.ref if isinstance(entity, ContentEntity) else entity


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, float(value)))


class ScoreCache:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # -- reads --------------------------------------------------------------

    def lookup(
        self, entity: EntityLike, factor_id: str, content_hash: str, config_hash: str,
    ) -> float | None:
        """Return the live score for the exact key, or ``None`` on a miss."""
        ref = _ref(entity)
        with self._session_factory() as session:
            score = session.execute(
                select(ScoreRecord.score)
                .where(
                    ScoreRecord.entity_type == ref.entity_type,
                    ScoreRecord.entity_id == str(ref.entity_id),
                    ScoreRecord.langcode == ref.langcode,
                    ScoreRecord.factor_id == factor_id,
                    ScoreRecord.content_hash == content_hash,
                    ScoreRecord.config_hash == config_hash,
                )
                .order_by(ScoreRecord.analyzed_at.desc())
                .limit(1)
            ).scalar()
        return float(score) if score is not None else None

    def records_for(self, entity: EntityLike) -> list[ScoreRecord]:
        """All stored rows for an entity in its language, newest first."""
        ref = _ref(entity)
        with self._session_factory() as session:
            rows = session.execute(
                select(ScoreRecord)
                .where(
                    ScoreRecord.entity_type == ref.entity_type,
                    ScoreRecord.entity_id == str(ref.entity_id),
                    ScoreRecord.langcode == ref.langcode,
                )
                .order_by(ScoreRecord.analyzed_at.desc(), ScoreRecord.factor_id)
            ).scalars().all()
        return list(rows)

    def analyzed_entity_ids(self, entity_type: str, since: datetime) -> set[str]:
        """Ids of entities with any record written after ``since``."""
        with self._session_factory() as session:
            ids = session.execute(
                select(ScoreRecord.entity_id)
                .where(ScoreRecord.entity_type == entity_type, ScoreRecord.analyzed_at > since)
                .distinct()
            ).scalars().all()
        return set(ids)

    def count_by_factor(self) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ScoreRecord.factor_id, func.count(ScoreRecord.id))
                .group_by(ScoreRecord.factor_id)
            ).all()
        return {factor_id: count for factor_id, count in rows}

    # -- writes -------------------------------------------------------------

    def store(
        self,
        entity: EntityLike,
        factor_id: str,
        value: float,
        content_hash: str,
        config_hash: str,
        revision_id: str | None = None,
    ) -> None:
        """Write the score for the key, replacing any existing live row.

        Uses ``INSERT .. ON CONFLICT DO UPDATE`` on the unique key so two
        concurrent writers can never leave two rows; other dialects fall back
        to delete-then-insert inside one transaction.
        """
        ref = _ref(entity)
        if revision_id is None and isinstance(entity, ContentEntity):
            revision_id = entity.revision_id
        values: dict[str, Any] = {
            "entity_type": ref.entity_type,
            "entity_id": str(ref.entity_id),
            "entity_revision_id": revision_id,
            "langcode": ref.langcode,
            "factor_id": factor_id,
            "score": _clamp(value),
            "content_hash": content_hash,
            "config_hash": config_hash,
            "analyzed_at": datetime.now(UTC),
        }
        with self._session_factory.begin() as session:
            insert_fn = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
            if insert_fn is not None:
                stmt = insert_fn(ScoreRecord).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(_KEY_COLUMNS),
                    set_={
                        "score": stmt.excluded.score,
                        "entity_revision_id": stmt.excluded.entity_revision_id,
                        "analyzed_at": stmt.excluded.analyzed_at,
                    },
                )
                session.execute(stmt)
            else:
                session.execute(delete(ScoreRecord).where(
                    *(getattr(ScoreRecord, col) == values[col] for col in _KEY_COLUMNS)
                ))
                session.add(ScoreRecord(**values))

    def clear(self, entity: EntityLike) -> int:
        """Delete every record for the entity, across languages, factors and hashes."""
        ref = _ref(entity)
        with self._session_factory.begin() as session:
            result = session.execute(delete(ScoreRecord).where(
                ScoreRecord.entity_type == ref.entity_type,
                ScoreRecord.entity_id == str(ref.entity_id),
            ))
        log.info("Cleared %d cached scores for %s/%s", result.rowcount, ref.entity_type, ref.entity_id)
        return result.rowcount

    def delete_factor(self, factor_id: str) -> int:
        """Delete a factor definition and every score that references it."""
        with self._session_factory.begin() as session:
            removed = purge_factor_scores(session, factor_id)
            session.execute(delete(FactorRecord).where(FactorRecord.id == factor_id))
        log.info("Deleted factor %s and %d cached scores", factor_id, removed)
        return removed


def purge_factor_scores(session: Session, factor_id: str) -> int:
    """Delete all score rows for ``factor_id`` inside the caller's transaction."""
    result = session.execute(delete(ScoreRecord).where(ScoreRecord.factor_id == factor_id))
    return result.rowcount

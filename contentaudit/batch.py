"""Select content that needs auditing and drive the analyzer over it in chunks."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from contentaudit.analyzer import Analyzer
from contentaudit.cache import ScoreCache
from contentaudit.models import ContentEntity, ContentItem
from contentaudit.registry import parse_bundle_key

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5
DEFAULT_FRESHNESS = timedelta(days=7)


class EntitySource(Protocol):
    def list_entity_ids(
        self, entity_type: str, bundle: str, exclude: set[str], limit: int,
    ) -> list[str]: ...

    def load(self, entity_type: str, entity_id: str) -> ContentEntity | None: ...


class SqlEntitySource:
    """Published ``content_items`` rows as audit entities."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def list_entity_ids(
        self, entity_type: str, bundle: str, exclude: set[str], limit: int = 0,
    ) -> list[str]:
        query = (
            select(ContentItem.entity_id)
            .where(
                ContentItem.entity_type == entity_type,
                ContentItem.bundle == bundle,
                ContentItem.published.is_(True),
            )
            .distinct()
            .order_by(ContentItem.entity_id)
        )
        if exclude:
            query = query.where(ContentItem.entity_id.not_in(exclude))
        if limit > 0:
            query = query.limit(limit)
        with self._session_factory() as session:
            return list(session.execute(query).scalars().all())

    def load(self, entity_type: str, entity_id: str, langcode: str | None = None) -> ContentEntity | None:
        query = select(ContentItem).where(
            ContentItem.entity_type == entity_type, ContentItem.entity_id == str(entity_id),
        )
        if langcode:
            query = query.where(ContentItem.langcode == langcode)
        with self._session_factory() as session:
            item = session.execute(query.order_by(ContentItem.id)).scalars().first()
            return item.to_entity() if item else None


@dataclass(frozen=True)
class BatchItem:
    entity_type: str
    entity_id: str
    bundle: str


@dataclass
class BatchResult:
    processed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: BatchResult) -> None:
        self.processed += other.processed
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def chunked(items: Sequence[BatchItem], size: int) -> Iterable[Sequence[BatchItem]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchDriver:
    def __init__(
        self,
        analyzer: Analyzer,
        cache: ScoreCache,
        source: EntitySource,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        freshness: timedelta = DEFAULT_FRESHNESS,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.analyzer = analyzer
        self.cache = cache
        self.source = source
        self.chunk_size = chunk_size
        self.freshness = freshness

    def select_entities(
        self, bundles: Iterable[str] | None = None, force_refresh: bool = False, limit: int = 0,
    ) -> list[BatchItem]:
        """Entities in ``"entity_type:bundle"`` groups that need analysis.

        ``bundles`` defaults to every enabled bundle; naming one that is not
        enabled raises ValueError. Without ``force_refresh``, entities analyzed
        within the freshness window are skipped. ``limit > 0`` caps the total
        across bundles.
        """
        enabled = self.analyzer.registry.enabled_bundles()
        if bundles is None:
            bundles = enabled
        groups = [parse_bundle_key(key) for key in bundles]
        disabled = [f"{t}:{b}" for t, b in groups if f"{t}:{b}" not in enabled]
        if disabled:
            raise ValueError(f"Audit is not enabled for: {', '.join(disabled)}")

        items: list[BatchItem] = []
        since = datetime.now(UTC) - self.freshness
        for entity_type, bundle in groups:
            remaining = 0
            if limit > 0:
                remaining = limit - len(items)
                if remaining <= 0:
                    break
            exclude = set() if force_refresh else self.cache.analyzed_entity_ids(entity_type, since)
            for entity_id in self.source.list_entity_ids(entity_type, bundle, exclude, remaining):
                items.append(BatchItem(entity_type, str(entity_id), bundle))
        return items

    async def process_chunk(self, items: Sequence[BatchItem], force_refresh: bool = False) -> BatchResult:
        """Evaluate each item; per-entity failures are collected, not raised."""
        result = BatchResult()
        for item in items:
            try:
                entity = self.source.load(item.entity_type, item.entity_id)
                if entity is None:
                    continue
                if force_refresh:
                    self.analyzer.clear_cache(entity)
                evaluation = await self.analyzer.evaluate(entity)
                result.warnings.extend(
                    f"{item.entity_type} {item.entity_id}: {w}" for w in evaluation.warnings
                )
                result.processed += 1
            except Exception as exc:
                log.warning("Batch audit failed for %s %s: %s", item.entity_type, item.entity_id, exc)
                result.errors.append(
                    f"Error processing {item.entity_type} {item.entity_id}: {exc}"
                )
        return result

    async def run(
        self,
        items: Sequence[BatchItem],
        force_refresh: bool = False,
        progress: Callable[[int, int], None] | None = None,
    ) -> BatchResult:
        """Process ``items`` in fixed-size chunks, one chunk after another."""
        total = len(items)
        done = 0
        result = BatchResult()
        for chunk in chunked(items, self.chunk_size):
            result.merge(await self.process_chunk(chunk, force_refresh))
            done += len(chunk)
            if progress is not None:
                progress(done, total)
        log.info(
            "Batch audit finished: %d processed, %d errors of %d",
            result.processed, len(result.errors), total,
        )
        return result

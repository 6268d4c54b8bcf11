"""Factor definitions: validation and CRUD over ``audit_factors``."""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from contentaudit.cache import ScoreCache, purge_factor_scores
from contentaudit.models import (
    AuditBundle, Factor, FactorKind, FactorRecord, QualitativeFactor, QuantitativeFactor,
    factor_sort_key,
)

log = logging.getLogger(__name__)

FACTOR_ID_RE = re.compile(r"^[a-z0-9_]+$")


class FactorValidationError(ValueError):
    """Factor definition is malformed."""


class FactorExistsError(ValueError):
    """A factor with this id already exists."""


# Seeded into an empty database by db.init_db().
DEFAULT_FACTORS: tuple[Factor, ...] = (
    QualitativeFactor(
        id="funnel_stage",
        label="Funnel stage",
        description="Which stage of the customer journey this content primarily serves.",
        options=("Awareness", "Consideration", "Decision", "Retention"),
        weight=0,
    ),
    QuantitativeFactor(
        id="seo_clarity",
        label="SEO clarity",
        description="How clearly the content states its topic for search engines and readers.",
        weight=1,
    ),
    QuantitativeFactor(
        id="call_to_action",
        label="Call to action",
        description="Strength and clarity of the next step the content asks the reader to take.",
        weight=2,
    ),
)

# Bundles audited out of the box.
DEFAULT_BUNDLES: tuple[str, ...] = ("node:article",)


def parse_bundle_key(key: str) -> tuple[str, str]:
    """Split ``"entity_type:bundle"``; raise FactorValidationError if malformed."""
    entity_type, sep, bundle = (key or "").strip().partition(":")
    if not (sep and entity_type and bundle):
        raise FactorValidationError(f"Expected 'entity_type:bundle', got {key!r}")
    return entity_type, bundle


def clean_options(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Normalize an option list: one per line if a string, stripped, blanks removed."""
    if raw is None:
        return ()
    items = raw.splitlines() if isinstance(raw, str) else raw
    return tuple(s for s in (str(i).strip() for i in items) if s)


def validate_factor(factor: Factor) -> Factor:
    """Raise FactorValidationError if the definition cannot be stored."""
    if not FACTOR_ID_RE.match(factor.id or ""):
        raise FactorValidationError(
            "Factor id must contain only lowercase letters, numbers, and underscores"
        )
    if not (factor.label or "").strip():
        raise FactorValidationError("Factor label is required")
    if factor.kind is FactorKind.QUALITATIVE:
        if len(factor.options) < 2:
            raise FactorValidationError("At least 2 discrete options are required for qualitative factors")
        if len(set(factor.options)) != len(factor.options):
            raise FactorValidationError("Discrete options must be unique")
    return factor


def build_factor(
    factor_id: str,
    label: str,
    kind: str | FactorKind,
    description: str = "",
    options: str | Iterable[str] | None = None,
    weight: int = 0,
    enabled: bool = True,
) -> Factor:
    """Construct and validate the right variant from loosely typed input."""
    try:
        kind = FactorKind(kind if isinstance(kind, FactorKind) else str(kind).strip().lower())
    except ValueError as exc:
        raise FactorValidationError(f"Unknown factor type: {kind!r}") from exc
    factor_id = (factor_id or "").strip()
    if kind is FactorKind.QUALITATIVE:
        factor: Factor = QualitativeFactor(
            id=factor_id, label=label, description=description or "",
            options=clean_options(options), weight=int(weight), enabled=bool(enabled),
        )
    else:
        factor = QuantitativeFactor(
            id=factor_id, label=label, description=description or "",
            weight=int(weight), enabled=bool(enabled),
        )
    return validate_factor(factor)


class FactorRegistry:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def list_factors(self, kind: FactorKind | None = None, enabled_only: bool = False) -> list[Factor]:
        """All factors ordered by weight, then label."""
        query = select(FactorRecord)
        if kind is not None:
            query = query.where(FactorRecord.kind == kind.value)
        if enabled_only:
            query = query.where(FactorRecord.enabled.is_(True))
        with self._session_factory() as session:
            records = session.execute(query).scalars().all()
            factors = [r.to_factor() for r in records]
        return sorted(factors, key=factor_sort_key)

    def list_enabled(self, entity_type: str | None = None, bundle: str | None = None) -> list[Factor]:
        """Factors that apply to content of ``entity_type``/``bundle``.

        Empty when that bundle has not been enabled for auditing. Without a
        bundle, every enabled factor.
        """
        if entity_type and bundle and not self.is_bundle_enabled(entity_type, bundle):
            return []
        return self.list_factors(enabled_only=True)

    # -- bundles --------------------------------------------------------------

    def enabled_bundles(self) -> list[str]:
        """Enabled ``"entity_type:bundle"`` keys, sorted."""
        query = select(AuditBundle).order_by(AuditBundle.entity_type, AuditBundle.bundle)
        with self._session_factory() as session:
            return [b.key for b in session.execute(query).scalars().all()]

    def is_bundle_enabled(self, entity_type: str, bundle: str) -> bool:
        query = select(AuditBundle.id).where(
            AuditBundle.entity_type == entity_type, AuditBundle.bundle == bundle,
        )
        with self._session_factory() as session:
            return session.execute(query).first() is not None

    def set_bundle_enabled(self, entity_type: str, bundle: str, enabled: bool = True) -> bool:
        """Switch auditing on or off for a bundle. Returns True if anything changed."""
        entity_type, bundle = parse_bundle_key(f"{entity_type}:{bundle}")
        if self.is_bundle_enabled(entity_type, bundle) == enabled:
            return False
        with self._session_factory.begin() as session:
            if enabled:
                session.add(AuditBundle(entity_type=entity_type, bundle=bundle))
            else:
                session.execute(delete(AuditBundle).where(
                    AuditBundle.entity_type == entity_type, AuditBundle.bundle == bundle,
                ))
        log.info("Audit %s for %s:%s", "enabled" if enabled else "disabled", entity_type, bundle)
        return True

    # -- factors --------------------------------------------------------------

    def get(self, factor_id: str) -> Factor | None:
        with self._session_factory() as session:
            record = session.get(FactorRecord, factor_id)
            return record.to_factor() if record else None

    def exists(self, factor_id: str) -> bool:
        return self.get(factor_id) is not None

    def create(self, factor: Factor) -> Factor:
        if self.exists(factor.id):
            raise FactorExistsError(f"A factor with id '{factor.id}' already exists")
        return self.save(factor)

    def save(self, factor: Factor) -> Factor:
        """Insert or update in place. The id is the key and never changes.

        If a qualitative factor's option list changes, its stored scores are
        purged: the codec spacing depends on the whole list, so old numbers
        would decode to different labels.
        """
        validate_factor(factor)
        options_json = json.dumps(list(factor.options)) if factor.kind is FactorKind.QUALITATIVE else None
        with self._session_factory.begin() as session:
            record = session.get(FactorRecord, factor.id)
            if record is None:
                record = FactorRecord(id=factor.id)
                session.add(record)
            else:
                old = record.to_factor()
                if (
                    old.kind is FactorKind.QUALITATIVE
                    and factor.kind is FactorKind.QUALITATIVE
                    and old.options != factor.options
                ):
                    purged = purge_factor_scores(session, factor.id)
                    log.warning(
                        "Options of factor %s changed; purged %d stored scores",
                        factor.id, purged,
                    )
                elif old.kind is not factor.kind:
                    purged = purge_factor_scores(session, factor.id)
                    log.warning(
                        "Factor %s changed type %s -> %s; purged %d stored scores",
                        factor.id, old.kind.value, factor.kind.value, purged,
                    )
            record.label = factor.label
            record.description = factor.description
            record.kind = factor.kind.value
            record.options_json = options_json
            record.weight = factor.weight
            record.enabled = factor.enabled
        return factor

    def delete(self, factor_id: str) -> bool:
        """Delete a factor and cascade to all its cached scores."""
        if not self.exists(factor_id):
            return False
        ScoreCache(self._session_factory).delete_factor(factor_id)
        return True

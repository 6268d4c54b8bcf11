"""Shared business logic for the audit API and MCP server."""
from __future__ import annotations

import logging
import os
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from contentaudit import codec
from contentaudit.analyzer import Analyzer, Evaluation
from contentaudit.cache import ScoreCache
from contentaudit.fingerprint import Fingerprinter
from contentaudit.llm import LLMClient
from contentaudit.models import ContentEntity, ContentItem, Factor, FactorKind
from contentaudit.registry import FactorRegistry

log = logging.getLogger(__name__)

CONTENT_UPDATABLE_FIELDS = ("bundle", "revision_id", "title", "body", "published")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def llm_timeout() -> float | None:
    raw = os.environ.get("AUDIT_LLM_TIMEOUT", "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring invalid AUDIT_LLM_TIMEOUT=%r", raw)
        return None


def build_analyzer(
    session_factory: sessionmaker[Session], client: LLMClient | None,
) -> Analyzer:
    """Wire an Analyzer over the given store and (optional) chat client."""
    return Analyzer(
        registry=FactorRegistry(session_factory),
        cache=ScoreCache(session_factory),
        fingerprinter=Fingerprinter(),
        chat=client.chat if client is not None else None,
        provider_id=client.provider_id if client is not None else None,
        timeout=llm_timeout(),
    )


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def factor_out(factor: Factor) -> dict[str, Any]:
    return {
        "id": factor.id,
        "label": factor.label,
        "description": factor.description,
        "type": factor.kind.value,
        "options": list(factor.options) if factor.kind is FactorKind.QUALITATIVE else None,
        "weight": factor.weight,
        "enabled": factor.enabled,
    }


def content_summary(item: ContentItem) -> dict[str, Any]:
    return {
        "entity_type": item.entity_type, "entity_id": item.entity_id,
        "bundle": item.bundle, "langcode": item.langcode,
        "revision_id": item.revision_id, "title": item.title, "body": item.body,
        "published": item.published,
    }


def evaluation_report(evaluation: Evaluation, factors: list[Factor]) -> dict[str, Any]:
    """Classifications table first, then one gauge row per quantitative factor."""
    classifications = []
    gauges = []
    for factor in factors:
        if factor.id not in evaluation.scores:
            continue
        score = evaluation.scores[factor.id]
        if factor.kind is FactorKind.QUALITATIVE:
            classifications.append({
                "factor_id": factor.id, "label": factor.label,
                "classification": codec.to_label(factor.options, score),
            })
        else:
            gauges.append({
                "factor_id": factor.id, "label": factor.label,
                "score": score, "display_value": codec.display_value(factor, score),
                "gauge_value": codec.gauge_value(score),
                "status": codec.score_status(score),
            })
    return {
        "scores": evaluation.scores,
        "labels": evaluation.labels(factors),
        "classifications": classifications,
        "gauges": gauges,
        "cached": sorted(evaluation.cached),
        "warnings": evaluation.warnings,
        "status": evaluation.status,
    }


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


def get_content(
    session: Session, entity_type: str, entity_id: str, langcode: str | None = None,
) -> ContentItem | None:
    query = select(ContentItem).where(
        ContentItem.entity_type == entity_type, ContentItem.entity_id == str(entity_id),
    )
    if langcode:
        query = query.where(ContentItem.langcode == langcode)
    return session.execute(query.order_by(ContentItem.id)).scalars().first()


def upsert_content(session: Session, data: dict[str, Any]) -> ContentItem:
    """Create or update a content item keyed by (type, id, langcode) (caller must commit)."""
    item = get_content(session, data["entity_type"], data["entity_id"], data.get("langcode") or "en")
    if item is None:
        item = ContentItem(
            entity_type=data["entity_type"], entity_id=str(data["entity_id"]),
            langcode=data.get("langcode") or "en",
        )
        session.add(item)
    apply_updates(item, data, CONTENT_UPDATABLE_FIELDS)
    return item


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for name in fields:
        val = updates.get(name)
        if val is not None:
            setattr(obj, name, val)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def run_audit(analyzer: Analyzer, entity: ContentEntity, refresh: bool = False) -> dict[str, Any]:
    """Evaluate one entity, optionally clearing its cached scores first."""
    if refresh:
        analyzer.clear_cache(entity)
    evaluation = await analyzer.evaluate(entity)
    factors = analyzer.registry.list_enabled(entity.entity_type, entity.bundle)
    report = evaluation_report(evaluation, factors)
    report.update({
        "entity_type": entity.entity_type, "entity_id": entity.entity_id,
        "langcode": entity.langcode,
    })
    return report


def compute_stats(session_factory: sessionmaker[Session]) -> dict[str, Any]:
    factors = FactorRegistry(session_factory).list_factors()
    scores_by_factor = ScoreCache(session_factory).count_by_factor()
    with session_factory() as session:
        content_total = session.execute(select(func.count(ContentItem.id))).scalar() or 0
    return {
        "factors": len(factors),
        "enabled_factors": sum(1 for f in factors if f.enabled),
        "by_type": {
            kind.value: sum(1 for f in factors if f.kind is kind) for kind in FactorKind
        },
        "content_items": content_total,
        "cached_scores": sum(scores_by_factor.values()),
        "cached_by_factor": scores_by_factor,
    }

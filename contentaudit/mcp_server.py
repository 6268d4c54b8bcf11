from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from contentaudit import services
from contentaudit.cache import ScoreCache
from contentaudit.db import get_session_factory, init_db, session_scope
from contentaudit.llm import configured_client
from contentaudit.models import EntityRef
from contentaudit.registry import FactorRegistry

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def audit_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Content Audit",
    instructions=(
        "Content Audit scores stored content against marketing audit factors with an AI model "
        "and caches the results. Start with get_stats() for an overview, then list_factors() "
        "to see what is measured, then evaluate_content(entity_type, entity_id)."
    ),
    lifespan=audit_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("contentaudit://overview")
def audit_overview() -> str:
    """Overview of Content Audit: data model, workflow, and score scale."""
    return json.dumps({
        "system": "Content Audit: AI scoring and caching for content marketing audits",
        "data_model": {
            "factor": "A scoring dimension. Quantitative factors get a score in [-1, 1]; qualitative factors get one label from an ordered option list.",
            "content_item": "A stored piece of content (entity type, id, bundle, language, title, HTML body).",
            "score": "Cached result per content item and factor, keyed by a content hash and a factor configuration hash.",
        },
        "workflow": [
            "1. get_stats() to see factor counts and cache coverage.",
            "2. list_factors() to see enabled factors and their options.",
            "3. evaluate_content(entity_type, entity_id) to score one item. Unchanged content is served from cache.",
            "4. clear_content_cache(entity_type, entity_id) to force re-analysis next time.",
        ],
        "score_scale": {
            "-1.0": "very poor", "0.0": "neutral", "+1.0": "excellent",
            "status_bands": "Excellent >= 0.7, Good >= 0.3, Average >= -0.3, Needs Improvement >= -0.7, else Poor",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_factors(enabled_only: bool = False) -> list[dict]:
    """List audit factors ordered by weight, then label.

    Args:
        enabled_only: Only return factors that are currently enabled.
    """
    registry = FactorRegistry(get_session_factory())
    return [services.factor_out(f) for f in registry.list_factors(enabled_only=enabled_only)]


@mcp.tool()
async def evaluate_content(
    entity_type: str, entity_id: str, langcode: str | None = None, refresh: bool = False,
) -> dict:
    """Score a stored content item against every enabled factor.

    Cached scores are reused while the content and the factor configuration
    are unchanged. Requires a chat model API key for anything not cached.

    Args:
        entity_type: Content entity type, e.g. "node".
        entity_id: Content id.
        langcode: Language of the translation to score. Defaults to the first stored one.
        refresh: Drop cached scores first and re-analyze.
    """
    with session_scope() as session:
        item = services.get_content(session, entity_type, entity_id, langcode)
        if item is None:
            return {"error": f"Content {entity_type} {entity_id} not found"}
        entity = item.to_entity()
    analyzer = services.build_analyzer(get_session_factory(), configured_client())
    return await services.run_audit(analyzer, entity, refresh=refresh)


@mcp.tool()
def clear_content_cache(entity_type: str, entity_id: str) -> dict:
    """Delete every cached score for a content item, in all languages."""
    removed = ScoreCache(get_session_factory()).clear(EntityRef(entity_type, entity_id))
    return {"entity_type": entity_type, "entity_id": entity_id, "cleared": removed}


@mcp.tool()
def get_stats() -> dict:
    """Get factor counts, stored content count, and cached scores per factor."""
    return services.compute_stats(get_session_factory())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Content Audit MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()

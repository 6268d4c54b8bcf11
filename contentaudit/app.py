from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from contentaudit import services
from contentaudit.batch import BatchDriver, BatchItem, BatchResult, SqlEntitySource, chunked
from contentaudit.cache import ScoreCache
from contentaudit.db import get_session_factory, init_db
from contentaudit.llm import LLMClient, configured_client
from contentaudit.models import ContentItem, EntityRef
from contentaudit.registry import (
    FactorExistsError, FactorRegistry, FactorValidationError, build_factor,
)
from contentaudit.schemas import (
    AuditReport,
    BatchRequest,
    ContentIn,
    ContentOut,
    FactorCreate,
    FactorOut,
    FactorUpdate,
    StatsOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Content Audit",
    version="0.1.0",
    description=(
        "Content marketing audit API. Define scoring factors, store content, "
        "and evaluate it with an AI model. Scores are cached per content and "
        "factor configuration. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Factors", "description": "Manage quantitative and qualitative audit factors."},
        {"name": "Bundles", "description": "Choose which entity_type:bundle pairs are audited."},
        {"name": "Content", "description": "Store and browse content to audit."},
        {"name": "Audit", "description": "AI-powered evaluation with score caching. Requires a chat model API key."},
        {"name": "Stats", "description": "Aggregate statistics and cache breakdowns."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def session_factory() -> sessionmaker[Session]:
    return get_session_factory()


def db_session(factory: sessionmaker[Session] = Depends(session_factory)) -> Generator[Session, None, None]:
    session = factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def llm_client() -> LLMClient | None:
    return configured_client()


def registry(factory: sessionmaker[Session] = Depends(session_factory)) -> FactorRegistry:
    return FactorRegistry(factory)


def _factor_or_404(reg: FactorRegistry, factor_id: str):
    factor = reg.get(factor_id)
    if factor is None:
        raise HTTPException(404, "Factor not found")
    return factor


def _content_or_404(session: Session, entity_type: str, entity_id: str, langcode: str | None = None) -> ContentItem:
    item = services.get_content(session, entity_type, entity_id, langcode)
    if item is None:
        raise HTTPException(404, "Content not found")
    return item


# ---------------------------------------------------------------------------
# Routes: Factors
# ---------------------------------------------------------------------------


@app.get("/api/factors", response_model=list[FactorOut],
         tags=["Factors"], summary="List factors ordered by weight, then label")
async def list_factors(
    enabled_only: bool = Query(False, description="Only return enabled factors"),
    reg: FactorRegistry = Depends(registry),
):
    return [services.factor_out(f) for f in reg.list_factors(enabled_only=enabled_only)]


@app.post("/api/factors", response_model=FactorOut, status_code=201,
          tags=["Factors"], summary="Create a factor")
async def create_factor(body: FactorCreate, reg: FactorRegistry = Depends(registry)):
    try:
        factor = build_factor(
            body.id, body.label, body.type, description=body.description,
            options=body.options, weight=body.weight, enabled=body.enabled,
        )
        reg.create(factor)
    except FactorExistsError as exc:
        raise HTTPException(409, str(exc)) from exc
    except FactorValidationError as exc:
        raise HTTPException(422, str(exc)) from exc
    return services.factor_out(factor)


@app.get("/api/factors/{factor_id}", response_model=FactorOut,
         tags=["Factors"], summary="Get one factor")
async def get_factor(factor_id: str, reg: FactorRegistry = Depends(registry)):
    return services.factor_out(_factor_or_404(reg, factor_id))


@app.put("/api/factors/{factor_id}", response_model=FactorOut,
         tags=["Factors"], summary="Update a factor (partial update, id is immutable)")
async def update_factor(factor_id: str, body: FactorUpdate, reg: FactorRegistry = Depends(registry)):
    current = services.factor_out(_factor_or_404(reg, factor_id))
    merged = {**current, **{k: v for k, v in body.model_dump().items() if v is not None}}
    try:
        factor = build_factor(
            factor_id, merged["label"], merged["type"], description=merged["description"],
            options=merged["options"], weight=merged["weight"], enabled=merged["enabled"],
        )
        reg.save(factor)
    except FactorValidationError as exc:
        raise HTTPException(422, str(exc)) from exc
    return services.factor_out(factor)


@app.delete("/api/factors/{factor_id}", tags=["Factors"],
            summary="Delete a factor and all of its cached scores")
async def delete_factor(factor_id: str, reg: FactorRegistry = Depends(registry)):
    if not reg.delete(factor_id):
        raise HTTPException(404, "Factor not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Bundles
# ---------------------------------------------------------------------------


@app.get("/api/bundles", response_model=list[str],
         tags=["Bundles"], summary="List 'entity_type:bundle' pairs enabled for auditing")
async def list_bundles(reg: FactorRegistry = Depends(registry)):
    return reg.enabled_bundles()


@app.put("/api/bundles/{entity_type}/{bundle}", tags=["Bundles"],
         summary="Enable auditing for a bundle")
async def enable_bundle(entity_type: str, bundle: str, reg: FactorRegistry = Depends(registry)):
    try:
        changed = reg.set_bundle_enabled(entity_type, bundle, True)
    except FactorValidationError as exc:
        raise HTTPException(422, str(exc)) from exc
    return {"bundle": f"{entity_type}:{bundle}", "enabled": True, "changed": changed}


@app.delete("/api/bundles/{entity_type}/{bundle}", tags=["Bundles"],
            summary="Disable auditing for a bundle (cached scores are kept)")
async def disable_bundle(entity_type: str, bundle: str, reg: FactorRegistry = Depends(registry)):
    if not reg.set_bundle_enabled(entity_type, bundle, False):
        raise HTTPException(404, "Bundle is not enabled")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Content
# ---------------------------------------------------------------------------


@app.get("/api/content", response_model=list[ContentOut],
         tags=["Content"], summary="List stored content items")
async def list_content(
    entity_type: str | None = Query(None, description="Filter by entity type"),
    bundle: str | None = Query(None, description="Filter by bundle"),
    session: Session = Depends(db_session),
):
    query = select(ContentItem).order_by(ContentItem.entity_type, ContentItem.entity_id, ContentItem.langcode)
    if entity_type:
        query = query.where(ContentItem.entity_type == entity_type)
    if bundle:
        query = query.where(ContentItem.bundle == bundle)
    return [services.content_summary(i) for i in session.execute(query).scalars().all()]


@app.post("/api/content", response_model=ContentOut, status_code=201,
          tags=["Content"], summary="Create or replace a content item")
async def put_content(body: ContentIn, session: Session = Depends(db_session)):
    item = services.upsert_content(session, body.model_dump())
    session.commit()
    return services.content_summary(item)


@app.get("/api/content/{entity_type}/{entity_id}", response_model=ContentOut,
         tags=["Content"], summary="Get one content item")
async def get_content(
    entity_type: str, entity_id: str,
    langcode: str | None = Query(None),
    session: Session = Depends(db_session),
):
    return services.content_summary(_content_or_404(session, entity_type, entity_id, langcode))


# ---------------------------------------------------------------------------
# Routes: Audit (batch before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


def _batch_stream(driver: BatchDriver, items: list[BatchItem], force_refresh: bool, delay: float = 0.1):
    """SSE streaming wrapper around BatchDriver chunks."""
    async def stream():
        total = len(items)
        done = 0
        totals = BatchResult()
        for chunk in chunked(items, driver.chunk_size):
            result = await driver.process_chunk(chunk, force_refresh)
            done += len(chunk)
            totals.merge(result)
            event = {
                "type": "progress", "current": done, "total": total,
                "errors": result.errors, "warnings": result.warnings,
            }
            yield f"data: {json.dumps(event)}\n\n"
            await asyncio.sleep(delay)

        complete = {
            "type": "complete",
            "stats": {"processed": totals.processed, "failed": len(totals.errors)},
            "errors": totals.errors, "warnings": totals.warnings,
        }
        yield f"data: {json.dumps(complete)}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/audit/batch", tags=["Audit"],
          summary="Audit many content items (SSE progress stream); defaults to every enabled bundle")
async def audit_batch(
    body: BatchRequest | None = None,
    factory: sessionmaker[Session] = Depends(session_factory),
    client: LLMClient | None = Depends(llm_client),
):
    body = body or BatchRequest()
    driver = BatchDriver(
        services.build_analyzer(factory, client), ScoreCache(factory), SqlEntitySource(factory),
    )
    try:
        items = driver.select_entities(body.bundles, body.force_refresh, body.limit)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return _batch_stream(driver, items, body.force_refresh)


@app.post("/api/audit/{entity_type}/{entity_id}", response_model=AuditReport,
          tags=["Audit"], summary="Evaluate one content item against all enabled factors")
async def audit_one(
    entity_type: str, entity_id: str,
    langcode: str | None = Query(None),
    refresh: bool = Query(False, description="Clear cached scores before evaluating"),
    session: Session = Depends(db_session),
    factory: sessionmaker[Session] = Depends(session_factory),
    client: LLMClient | None = Depends(llm_client),
):
    entity = _content_or_404(session, entity_type, entity_id, langcode).to_entity()
    return await services.run_audit(services.build_analyzer(factory, client), entity, refresh=refresh)


@app.delete("/api/audit/{entity_type}/{entity_id}", tags=["Audit"],
            summary="Clear every cached score for a content item")
async def clear_audit(entity_type: str, entity_id: str, factory: sessionmaker[Session] = Depends(session_factory)):
    removed = ScoreCache(factory).clear(EntityRef(entity_type, entity_id))
    return {"cleared": removed}



# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"],
         summary="Factor counts and cached scores per factor")
async def get_stats(factory: sessionmaker[Session] = Depends(session_factory)):
    return services.compute_stats(factory)


def main():
    import uvicorn
    uvicorn.run("contentaudit.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()

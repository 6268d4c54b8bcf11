"""Pydantic request/response schemas for the audit API."""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, field_validator


class FactorOut(BaseModel):
    id: str
    label: str
    description: str
    type: str
    options: list[str] | None = None
    weight: int
    enabled: bool


class FactorCreate(BaseModel):
    id: str
    label: str
    description: str = ""
    type: str = "quantitative"
    options: list[str] | str | None = None
    weight: int = 0
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def id_must_be_machine_name(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9_]+$", v):
            raise ValueError("id must contain only lowercase letters, numbers, and underscores")
        return v


class FactorUpdate(BaseModel):
    label: str | None = None
    description: str | None = None
    type: str | None = None
    options: list[str] | str | None = None
    weight: int | None = None
    enabled: bool | None = None


class ContentIn(BaseModel):
    entity_type: str = "node"
    entity_id: str
    bundle: str = "article"
    langcode: str = "en"
    revision_id: str | None = None
    title: str = ""
    body: str = ""
    published: bool = True


class ContentOut(ContentIn):
    pass


class ClassificationRow(BaseModel):
    factor_id: str
    label: str
    classification: str


class GaugeRow(BaseModel):
    factor_id: str
    label: str
    score: float
    display_value: str
    gauge_value: float
    status: str


class AuditReport(BaseModel):
    entity_type: str
    entity_id: str
    langcode: str
    scores: dict[str, float] = {}
    labels: dict[str, str] = {}
    classifications: list[ClassificationRow] = []
    gauges: list[GaugeRow] = []
    cached: list[str] = []
    warnings: list[str] = []
    status: str | None = None


class BatchRequest(BaseModel):
    bundles: list[str] | None = None
    force_refresh: bool = False
    limit: int = 0

    @field_validator("bundles")
    @classmethod
    def bundles_must_be_typed(cls, v: list[str] | None) -> list[str] | None:
        for entry in v or []:
            entity_type, sep, bundle = entry.partition(":")
            if not (sep and entity_type and bundle):
                raise ValueError(f"Expected 'entity_type:bundle', got {entry!r}")
        return v


class StatsOut(BaseModel):
    factors: int
    enabled_factors: int
    by_type: dict[str, int]
    content_items: int
    cached_scores: int
    cached_by_factor: dict[str, Any]

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import ClassVar, Union

from sqlalchemy import (
    Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from contentaudit.utils import json_parse


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Factor variants
# ---------------------------------------------------------------------------


class FactorKind(str, enum.Enum):
    QUANTITATIVE = "quantitative"
    QUALITATIVE = "qualitative"


@dataclass(frozen=True)
class QuantitativeFactor:
    """Scored by the model on a continuous -1.0 .. +1.0 scale."""
    kind: ClassVar[FactorKind] = FactorKind.QUANTITATIVE

    id: str
    label: str
    description: str = ""
    weight: int = 0
    enabled: bool = True


@dataclass(frozen=True)
class QualitativeFactor:
    """Classified by the model into one of ``options``. Order is significant."""
    kind: ClassVar[FactorKind] = FactorKind.QUALITATIVE

    id: str
    label: str
    options: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""
    weight: int = 0
    enabled: bool = True


Factor = Union[QuantitativeFactor, QualitativeFactor]


def factor_sort_key(factor: Factor) -> tuple[int, str, str]:
    return (factor.weight, factor.label, factor.id)


# ---------------------------------------------------------------------------
# Content entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityRef:
    entity_type: str
    entity_id: str
    langcode: str = "en"


@dataclass(frozen=True)
class ContentEntity:
    entity_type: str
    entity_id: str
    langcode: str = "en"
    bundle: str = ""
    revision_id: str | None = None
    title: str = ""
    body: str = ""

    @property
    def ref(self) -> EntityRef:
        return EntityRef(self.entity_type, self.entity_id, self.langcode)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class FactorRecord(Base):
    __tablename__ = "audit_factors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # "quantitative" | "qualitative"
    options_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[int] = mapped_column(Integer, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_factor(self) -> Factor:
        if self.kind == FactorKind.QUALITATIVE.value:
            options = json_parse(self.options_json, [])
            return QualitativeFactor(
                id=self.id, label=self.label, description=self.description or "",
                options=tuple(str(o) for o in options),
                weight=self.weight or 0, enabled=bool(self.enabled),
            )
        return QuantitativeFactor(
            id=self.id, label=self.label, description=self.description or "",
            weight=self.weight or 0, enabled=bool(self.enabled),
        )


class ScoreRecord(Base):
    __tablename__ = "audit_scores"
    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "langcode", "factor_id", "content_hash", "config_hash",
            name="uq_audit_scores_key",
        ),
        Index("ix_audit_scores_entity", "entity_type", "entity_id"),
        Index("ix_audit_scores_factor", "factor_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_revision_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    langcode: Mapped[str] = mapped_column(String(12), nullable=False)
    factor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    config_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))


class ContentItem(Base):
    __tablename__ = "content_items"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "langcode", name="uq_content_items_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(64), default="node")
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    bundle: Mapped[str] = mapped_column(String(64), default="article")
    langcode: Mapped[str] = mapped_column(String(12), default="en")
    revision_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    published: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    def to_entity(self) -> ContentEntity:
        return ContentEntity(
            entity_type=self.entity_type, entity_id=self.entity_id,
            langcode=self.langcode, bundle=self.bundle,
            revision_id=self.revision_id, title=self.title or "", body=self.body or "",
        )


class AuditBundle(Base):
    """An ``entity_type:bundle`` pair for which audit analysis is switched on."""
    __tablename__ = "audit_bundles"
    __table_args__ = (
        UniqueConstraint("entity_type", "bundle", name="uq_audit_bundles_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    bundle: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.bundle}"

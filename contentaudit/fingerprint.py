"""Content and configuration fingerprints that key cache validity.

Both hashes are pure functions of current state. A freshly computed pair
that matches no stored record means "never analyzed".
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable
from typing import NamedTuple

from contentaudit.models import ContentEntity, Factor, FactorKind, factor_sort_key
from contentaudit.text import analyzable_fields


class Fingerprint(NamedTuple):
    content_hash: str
    config_hash: str


def _factor_payload(factor: Factor) -> dict:
    return {
        "id": factor.id,
        "label": factor.label,
        "description": factor.description,
        "kind": factor.kind.value,
        "options": list(factor.options) if factor.kind is FactorKind.QUALITATIVE else None,
        "weight": factor.weight,
        "enabled": factor.enabled,
    }


class Fingerprinter:
    def __init__(
        self,
        extract_fields: Callable[[ContentEntity], Iterable[str]] = analyzable_fields,
    ):
        self._extract_fields = extract_fields

    def content_hash(self, entity: ContentEntity) -> str:
        """SHA-256 over the analyzable text plus identity and the entity's own language."""
        parts = [*self._extract_fields(entity), entity.entity_type, str(entity.entity_id), entity.langcode]
        material = "\x1f".join(parts)
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def config_hash(self, factors: Iterable[Factor], provider_id: str | None) -> str:
        """MD5 change-detection checksum over every factor field and the provider."""
        ordered = sorted(factors, key=factor_sort_key)
        blob = json.dumps(
            {"factors": [_factor_payload(f) for f in ordered], "ai_provider": provider_id or ""},
            sort_keys=True, ensure_ascii=False, separators=(",", ":"),
        )
        return hashlib.md5(blob.encode("utf-8")).hexdigest()

    def fingerprint(
        self, entity: ContentEntity, factors: Iterable[Factor], provider_id: str | None,
    ) -> Fingerprint:
        return Fingerprint(self.content_hash(entity), self.config_hash(factors, provider_id))

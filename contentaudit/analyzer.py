"""Evaluate content against audit factors with cache-first orchestration.

Per entity:

1. fingerprint the content and the full factor configuration
2. look up every enabled factor in the score cache
3. group the misses by kind (quantitative / qualitative)
4. send one prompt per non-empty group, so at most two model calls
5. parse the reply as a flat ``{factor_id: value}`` object, dropping bad values
6. store the results (qualitative labels through the codec)
7. return cache hits plus fresh results

Model failures never abort an evaluation: each group fails on its own and is
reported as a warning. Storage errors propagate.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import numbers
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from contentaudit import codec
from contentaudit.cache import EntityLike, ScoreCache
from contentaudit.fingerprint import Fingerprint, Fingerprinter
from contentaudit.llm import ChatFn
from contentaudit.models import (
    ContentEntity, Factor, FactorKind, QualitativeFactor, QuantitativeFactor,
)
from contentaudit.registry import FactorRegistry
from contentaudit.text import extract_text as default_extract_text
from contentaudit.utils import decode_json_object

log = logging.getLogger(__name__)

STATUS_NO_FACTORS = "No content marketing audit factors are currently enabled."
STATUS_NO_PROVIDER = "No chat AI provider is configured for content marketing audit analysis."
STATUS_NO_CONTENT = "No content available for analysis."
STATUS_BUNDLE_DISABLED = "Content marketing audit analysis is not enabled for this content type."


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

QUANTITATIVE_PROMPT = """\
<task>Analyze the following content for quantitative marketing audit factors.</task>
<content>
{content}
</content>

<factors>
{factors}
</factors>

<instructions>Provide precise scores between -1.0 and +1.0 for each factor where:
- -1.0 indicates very poor performance on that marketing factor
- 0.0 indicates average/neutral performance
- +1.0 indicates excellent performance on that marketing factor</instructions>
<output_format>Respond with a simple JSON object containing only the required scores:
{template}</output_format>
"""

QUALITATIVE_PROMPT = """\
<task>Classify the following content for qualitative marketing audit factors.</task>
<content>
{content}
</content>

<factors>
{factors}
</factors>

<instructions>For each factor, select the most appropriate classification from the provided \
options. Use the option text exactly as written; do not invent new categories.</instructions>
<output_format>Respond with a simple JSON object containing only the required classifications:
{template}</output_format>
"""


def build_quantitative_prompt(factors: Sequence[QuantitativeFactor], content: str) -> str:
    template = "{" + ", ".join(f"{json.dumps(f.id)}: 0.0" for f in factors) + "}"
    lines = "\n".join(f"{f.id}: {f.description or f.label}" for f in factors)
    return QUANTITATIVE_PROMPT.format(content=content, factors=lines, template=template)


def build_qualitative_prompt(factors: Sequence[QualitativeFactor], content: str) -> str:
    template = "{" + ", ".join(
        f"{json.dumps(f.id)}: {json.dumps(f.options[0], ensure_ascii=False)}" for f in factors
    ) + "}"
    lines = "\n".join(
        f"{f.id}: {f.description or f.label} (Options: {', '.join(f.options)})" for f in factors
    )
    return QUALITATIVE_PROMPT.format(content=content, factors=lines, template=template)


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


def _is_number(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return False
    return isinstance(value, numbers.Real) and math.isfinite(value)


def parse_quantitative(reply: str, factors: Sequence[QuantitativeFactor]) -> dict[str, float]:
    """Numeric values per factor id, clamped to [-1, 1]. Anything else is dropped."""
    decoded = decode_json_object(reply)
    if decoded is None:
        log.debug("Quantitative reply is not a JSON object: %.200s", reply)
        return {}
    scores: dict[str, float] = {}
    for factor in factors:
        value = decoded.get(factor.id)
        if value is None:
            continue
        if not _is_number(value):
            log.debug("Dropping non-numeric value %r for %s", value, factor.id)
            continue
        scores[factor.id] = max(-1.0, min(1.0, float(value)))
    return scores


def parse_qualitative(reply: str, factors: Sequence[QualitativeFactor]) -> dict[str, str]:
    """Labels per factor id that exactly match one of the factor's options."""
    decoded = decode_json_object(reply)
    if decoded is None:
        log.debug("Qualitative reply is not a JSON object: %.200s", reply)
        return {}
    labels: dict[str, str] = {}
    for factor in factors:
        value = decoded.get(factor.id)
        if value is None:
            continue
        if not isinstance(value, str) or value not in factor.options:
            log.debug("Dropping out-of-domain label %r for %s", value, factor.id)
            continue
        labels[factor.id] = value
    return labels


# ---------------------------------------------------------------------------
# Evaluation result
# ---------------------------------------------------------------------------


@dataclass
class Evaluation:
    """Scores keyed by factor id, plus what the caller should show the user."""
    scores: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    status: str | None = None
    cached: set[str] = field(default_factory=set)

    def labels(self, factors: Sequence[Factor]) -> dict[str, str]:
        """Display value per scored factor: label for qualitative, signed decimal otherwise."""
        return {
            f.id: codec.display_value(f, self.scores[f.id])
            for f in factors if f.id in self.scores
        }


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class Analyzer:
    def __init__(
        self,
        registry: FactorRegistry,
        cache: ScoreCache,
        fingerprinter: Fingerprinter,
        chat: ChatFn | None,
        provider_id: str | None,
        extract_text: Callable[[ContentEntity], str] = default_extract_text,
        timeout: float | None = None,
    ):
        self.registry = registry
        self.cache = cache
        self.fingerprinter = fingerprinter
        self._chat = chat
        self.provider_id = provider_id
        self._extract_text = extract_text
        self.timeout = timeout

    async def evaluate(
        self, entity: ContentEntity, factors: Sequence[Factor] | None = None,
    ) -> Evaluation:
        """Return scores for every enabled factor that is cached or could be analyzed.

        ``factors`` overrides the enabled set (the config hash is still taken
        over the full registry).
        """
        if not self.registry.is_bundle_enabled(entity.entity_type, entity.bundle):
            return Evaluation(status=STATUS_BUNDLE_DISABLED)
        all_factors = self.registry.list_factors()
        if factors is None:
            factors = self.registry.list_enabled(entity.entity_type, entity.bundle)
        if not factors:
            return Evaluation(status=STATUS_NO_FACTORS)

        fp = self.fingerprinter.fingerprint(entity, all_factors, self.provider_id)
        result = Evaluation()

        misses: list[Factor] = []
        for factor in factors:
            score = self.cache.lookup(entity.ref, factor.id, fp.content_hash, fp.config_hash)
            if score is None:
                misses.append(factor)
            else:
                result.scores[factor.id] = score
                result.cached.add(factor.id)
        if not misses:
            log.debug("All %d factors cached for %s/%s", len(factors), entity.entity_type, entity.entity_id)
            return result

        if self._chat is None:
            result.status = STATUS_NO_PROVIDER
            return result
        content = self._extract_text(entity)
        if not content:
            result.status = STATUS_NO_CONTENT
            return result

        quantitative = [f for f in misses if f.kind is FactorKind.QUANTITATIVE]
        qualitative = [f for f in misses if f.kind is FactorKind.QUALITATIVE]
        groups = []
        if quantitative:
            groups.append(self._analyze_quantitative(quantitative, content))
        if qualitative:
            groups.append(self._analyze_qualitative(qualitative, content))
        outcomes = await asyncio.gather(*groups)

        by_id = {f.id: f for f in misses}
        for fresh, warning in outcomes:
            if warning:
                result.warnings.append(warning)
            for factor_id, value in fresh.items():
                result.scores[factor_id] = self._store(entity, by_id[factor_id], value, fp)
        return result

    def clear_cache(self, entity: EntityLike) -> int:
        """Drop every cached score for the entity so the next evaluation re-analyzes."""
        return self.cache.clear(entity)

    # -- internals ------------------------------------------------------------

    def _store(self, entity: ContentEntity, factor: Factor, value: float | str, fp: Fingerprint) -> float:
        if isinstance(factor, QualitativeFactor):
            numeric = codec.to_numeric(factor.options, str(value))
        else:
            numeric = float(value)
        self.cache.store(
            entity.ref, factor.id, numeric, fp.content_hash, fp.config_hash,
            revision_id=entity.revision_id,
        )
        return numeric

    async def _call(self, prompt: str) -> str:
        assert self._chat is not None
        if self.timeout:
            return await asyncio.wait_for(self._chat(prompt), timeout=self.timeout)
        return await self._chat(prompt)

    async def _analyze_quantitative(
        self, factors: list[QuantitativeFactor], content: str,
    ) -> tuple[dict[str, float], str | None]:
        try:
            reply = await self._call(build_quantitative_prompt(factors, content))
        except Exception as exc:
            log.warning("Quantitative factor analysis failed: %s", exc)
            return {}, f"Quantitative factor analysis failed: {str(exc) or type(exc).__name__}"
        return parse_quantitative(reply, factors), None

    async def _analyze_qualitative(
        self, factors: list[QualitativeFactor], content: str,
    ) -> tuple[dict[str, str], str | None]:
        try:
            reply = await self._call(build_qualitative_prompt(factors, content))
        except Exception as exc:
            log.warning("Qualitative factor analysis failed: %s", exc)
            return {}, f"Qualitative factor analysis failed: {str(exc) or type(exc).__name__}"
        return parse_qualitative(reply, factors), None

"""Tests for factor validation, CRUD, and default seeding."""
from __future__ import annotations

import pytest

from contentaudit.db import seed_default_factors
from contentaudit.models import EntityRef, FactorKind, QualitativeFactor, QuantitativeFactor
from contentaudit.registry import (
    FactorExistsError, FactorValidationError, build_factor, clean_options, parse_bundle_key,
)

FUNNEL = ("Awareness", "Consideration", "Decision", "Retention")


class TestBuildFactor:
    def test_quantitative(self):
        factor = build_factor("seo_clarity", "SEO clarity", "quantitative", weight="3")
        assert isinstance(factor, QuantitativeFactor)
        assert factor.weight == 3
        assert not hasattr(factor, "options")

    def test_qualitative_options_from_lines(self):
        factor = build_factor("tone", "Tone", "Qualitative", options="Formal\n\n  Casual \n")
        assert isinstance(factor, QualitativeFactor)
        assert factor.options == ("Formal", "Casual")

    def test_qualitative_needs_two_options(self):
        with pytest.raises(FactorValidationError):
            build_factor("tone", "Tone", "qualitative", options=["Formal", "  "])

    def test_duplicate_options_rejected(self):
        with pytest.raises(FactorValidationError):
            build_factor("tone", "Tone", "qualitative", options=["Formal", "Formal"])

    @pytest.mark.parametrize("factor_id", ["SEO", "seo-clarity", "", "seo clarity"])
    def test_machine_name_required(self, factor_id):
        with pytest.raises(FactorValidationError):
            build_factor(factor_id, "SEO", "quantitative")

    def test_label_required(self):
        with pytest.raises(FactorValidationError):
            build_factor("seo", "  ", "quantitative")

    def test_unknown_kind(self):
        with pytest.raises(FactorValidationError):
            build_factor("seo", "SEO", "ordinal")

    def test_clean_options(self):
        assert clean_options(None) == ()
        assert clean_options([" a ", "", "b"]) == ("a", "b")


class TestFactorRegistry:
    def test_save_and_get(self, registry):
        factor = QualitativeFactor(id="funnel_stage", label="Funnel stage", options=FUNNEL)
        registry.save(factor)
        assert registry.get("funnel_stage") == factor
        assert registry.get("missing") is None

    def test_options_order_preserved(self, registry):
        options = ("Zeta", "Alpha", "Mu")
        registry.save(QualitativeFactor(id="f", label="F", options=options))
        assert registry.get("f").options == options

    def test_create_duplicate(self, registry):
        registry.create(QuantitativeFactor(id="seo", label="SEO"))
        with pytest.raises(FactorExistsError):
            registry.create(QuantitativeFactor(id="seo", label="Other"))

    def test_list_ordering(self, registry):
        registry.save(QuantitativeFactor(id="c", label="Zed", weight=0))
        registry.save(QuantitativeFactor(id="a", label="Beta", weight=1))
        registry.save(QuantitativeFactor(id="b", label="Alpha", weight=1))
        assert [f.id for f in registry.list_factors()] == ["c", "b", "a"]

    def test_list_filters(self, registry):
        registry.save(QuantitativeFactor(id="on", label="On"))
        registry.save(QuantitativeFactor(id="off", label="Off", enabled=False))
        registry.save(QualitativeFactor(id="stage", label="Stage", options=FUNNEL))
        assert {f.id for f in registry.list_enabled("node", "article")} == {"on", "stage"}
        assert [f.id for f in registry.list_factors(kind=FactorKind.QUALITATIVE)] == ["stage"]

    def test_update_in_place_keeps_scores(self, registry, cache, count_scores):
        registry.save(QuantitativeFactor(id="seo", label="SEO"))
        cache.store(EntityRef("node", "1"), "seo", 0.5, "c", "f")
        registry.save(QuantitativeFactor(id="seo", label="SEO clarity", weight=4))
        assert registry.get("seo").label == "SEO clarity"
        assert len(registry.list_factors()) == 1
        assert count_scores(factor_id="seo") == 1

    def test_option_change_purges_scores(self, registry, cache, count_scores):
        registry.save(QualitativeFactor(id="stage", label="Stage", options=FUNNEL))
        cache.store(EntityRef("node", "1"), "stage", 1 / 3, "c", "f")
        registry.save(QualitativeFactor(id="stage", label="Stage", options=tuple(reversed(FUNNEL))))
        assert count_scores(factor_id="stage") == 0

    def test_kind_change_purges_scores(self, registry, cache, count_scores):
        registry.save(QuantitativeFactor(id="stage", label="Stage"))
        cache.store(EntityRef("node", "1"), "stage", 0.2, "c", "f")
        registry.save(QualitativeFactor(id="stage", label="Stage", options=FUNNEL))
        assert count_scores(factor_id="stage") == 0

    def test_delete_cascades(self, registry, cache, count_scores):
        registry.save(QuantitativeFactor(id="seo", label="SEO"))
        cache.store(EntityRef("node", "1"), "seo", 0.5, "c", "f")
        assert registry.delete("seo") is True
        assert registry.get("seo") is None
        assert count_scores(factor_id="seo") == 0

    def test_delete_missing(self, registry):
        assert registry.delete("missing") is False


class TestSeeding:
    def test_seeds_empty_store(self, session_factory, registry):
        assert seed_default_factors(session_factory) == 3
        factors = {f.id: f for f in registry.list_factors()}
        assert factors["funnel_stage"].options == FUNNEL
        assert factors["seo_clarity"].kind is FactorKind.QUANTITATIVE

    def test_seeding_is_idempotent(self, session_factory, registry):
        seed_default_factors(session_factory)
        assert seed_default_factors(session_factory) == 0
        assert len(registry.list_factors()) == 3

    def test_existing_factors_not_overwritten(self, session_factory, registry):
        registry.save(QuantitativeFactor(id="tone", label="Tone"))
        assert seed_default_factors(session_factory) == 0
        assert [f.id for f in registry.list_factors()] == ["tone"]


class TestBundles:
    def test_enable_and_list(self, registry):
        assert registry.set_bundle_enabled("node", "page") is True
        assert registry.set_bundle_enabled("node", "page") is False
        assert registry.enabled_bundles() == ["node:article", "node:page"]
        assert registry.is_bundle_enabled("node", "page")

    def test_disable(self, registry):
        assert registry.set_bundle_enabled("node", "article", False) is True
        assert registry.set_bundle_enabled("node", "article", False) is False
        assert registry.enabled_bundles() == []

    def test_list_enabled_respects_bundle(self, registry):
        registry.save(QuantitativeFactor(id="seo", label="SEO"))
        assert [f.id for f in registry.list_enabled("node", "article")] == ["seo"]
        assert registry.list_enabled("node", "page") == []
        assert [f.id for f in registry.list_enabled()] == ["seo"]

    @pytest.mark.parametrize("key", ["article", ":article", "node:", ""])
    def test_parse_bundle_key_rejects(self, key):
        with pytest.raises(FactorValidationError):
            parse_bundle_key(key)

    def test_parse_bundle_key(self):
        assert parse_bundle_key(" node:article ") == ("node", "article")

    def test_seeding_keeps_disabled_bundles_off(self, session_factory, registry):
        registry.set_bundle_enabled("node", "article", False)
        seed_default_factors(session_factory)
        assert registry.enabled_bundles() == ["node:article"]
        registry.set_bundle_enabled("node", "article", False)
        seed_default_factors(session_factory)
        assert registry.enabled_bundles() == []

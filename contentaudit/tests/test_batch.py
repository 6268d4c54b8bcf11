"""Tests for batch entity selection and chunked processing."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from contentaudit.analyzer import Evaluation
from contentaudit.batch import BatchDriver, BatchItem, SqlEntitySource, chunked
from contentaudit.models import ContentItem, EntityRef


@pytest.fixture()
def source(session_factory):
    with session_factory.begin() as session:
        session.add_all([
            ContentItem(entity_id="1", bundle="article", title="One", body="<p>one</p>"),
            ContentItem(entity_id="2", bundle="article", title="Two", body="<p>two</p>"),
            ContentItem(entity_id="3", bundle="article", title="Three", body="<p>three</p>"),
            ContentItem(entity_id="4", bundle="page", title="Page", body="<p>page</p>"),
            ContentItem(entity_id="5", bundle="article", title="Draft", body="<p>draft</p>", published=False),
        ])
    return SqlEntitySource(session_factory)


@pytest.fixture()
def analyzer():
    mock = MagicMock()
    mock.evaluate = AsyncMock(return_value=Evaluation(scores={"seo_clarity": 0.2}))
    mock.registry.enabled_bundles.return_value = ["node:article", "node:page"]
    return mock


class TestSqlEntitySource:
    def test_lists_published_bundle(self, source):
        assert source.list_entity_ids("node", "article", set()) == ["1", "2", "3"]

    def test_exclude_and_limit(self, source):
        assert source.list_entity_ids("node", "article", {"1"}, limit=1) == ["2"]

    def test_load(self, source):
        entity = source.load("node", "2")
        assert entity.title == "Two"
        assert entity.bundle == "article"
        assert source.load("node", "99") is None


class TestSelectEntities:
    def test_all_bundles(self, analyzer, cache, source):
        driver = BatchDriver(analyzer, cache, source)
        items = driver.select_entities(["node:article", "node:page"])
        assert [i.entity_id for i in items] == ["1", "2", "3", "4"]
        assert items[-1] == BatchItem("node", "4", "page")

    def test_recently_analyzed_excluded(self, analyzer, cache, source):
        cache.store(EntityRef("node", "2"), "seo_clarity", 0.1, "c", "f")
        driver = BatchDriver(analyzer, cache, source)
        assert [i.entity_id for i in driver.select_entities(["node:article"])] == ["1", "3"]

    def test_force_refresh_includes_all(self, analyzer, cache, source):
        cache.store(EntityRef("node", "2"), "seo_clarity", 0.1, "c", "f")
        driver = BatchDriver(analyzer, cache, source)
        assert len(driver.select_entities(["node:article"], force_refresh=True)) == 3

    def test_stale_records_do_not_exclude(self, analyzer, cache, source):
        cache.store(EntityRef("node", "2"), "seo_clarity", 0.1, "c", "f")
        driver = BatchDriver(analyzer, cache, source, freshness=timedelta(seconds=-60))
        assert len(driver.select_entities(["node:article"])) == 3

    def test_limit_across_bundles(self, analyzer, cache, source):
        driver = BatchDriver(analyzer, cache, source)
        items = driver.select_entities(["node:page", "node:article"], limit=2)
        assert [i.entity_id for i in items] == ["4", "1"]

    def test_defaults_to_enabled_bundles(self, analyzer, cache, source):
        analyzer.registry.enabled_bundles.return_value = ["node:page"]
        driver = BatchDriver(analyzer, cache, source)
        assert driver.select_entities() == [BatchItem("node", "4", "page")]

    def test_disabled_bundle_rejected(self, analyzer, cache, source):
        analyzer.registry.enabled_bundles.return_value = ["node:article"]
        driver = BatchDriver(analyzer, cache, source)
        with pytest.raises(ValueError, match="node:page"):
            driver.select_entities(["node:article", "node:page"])

    @pytest.mark.parametrize("bad", ["article", ":article", "node:"])
    def test_bundle_format(self, analyzer, cache, source, bad):
        with pytest.raises(ValueError):
            BatchDriver(analyzer, cache, source).select_entities([bad])

    def test_chunk_size_validated(self, analyzer, cache, source):
        with pytest.raises(ValueError):
            BatchDriver(analyzer, cache, source, chunk_size=0)


class TestProcessing:
    @pytest.mark.asyncio
    async def test_errors_collected(self, analyzer, cache, source):
        analyzer.evaluate.side_effect = [RuntimeError("boom"), Evaluation(), Evaluation()]
        driver = BatchDriver(analyzer, cache, source)
        items = driver.select_entities(["node:article"])

        result = await driver.process_chunk(items)
        assert result.processed == 2
        assert result.errors == ["Error processing node 1: boom"]

    @pytest.mark.asyncio
    async def test_warnings_prefixed(self, analyzer, cache, source):
        analyzer.evaluate.return_value = Evaluation(warnings=["Quantitative factor analysis failed: x"])
        driver = BatchDriver(analyzer, cache, source)
        result = await driver.process_chunk([BatchItem("node", "1", "article")])
        assert result.warnings == ["node 1: Quantitative factor analysis failed: x"]

    @pytest.mark.asyncio
    async def test_force_refresh_clears_first(self, analyzer, cache, source):
        driver = BatchDriver(analyzer, cache, source)
        await driver.process_chunk([BatchItem("node", "1", "article")], force_refresh=True)
        analyzer.clear_cache.assert_called_once()
        assert analyzer.clear_cache.call_args.args[0].entity_id == "1"

    @pytest.mark.asyncio
    async def test_missing_entity_skipped(self, analyzer, cache, source):
        driver = BatchDriver(analyzer, cache, source)
        result = await driver.process_chunk([BatchItem("node", "99", "article")])
        assert result.processed == 0
        assert result.errors == []
        analyzer.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_in_chunks(self, analyzer, cache, source):
        driver = BatchDriver(analyzer, cache, source, chunk_size=2)
        items = driver.select_entities(["node:article", "node:page"])
        progress = []

        result = await driver.run(items, progress=lambda done, total: progress.append((done, total)))
        assert result.processed == 4
        assert progress == [(2, 4), (4, 4)]

    def test_chunked(self):
        items = [BatchItem("node", str(i), "article") for i in range(5)]
        assert [len(c) for c in chunked(items, 2)] == [2, 2, 1]

"""
Tests for the ingestion runner.

Run with: pytest tests/test_ingestion.py -v

Connectors are replaced with an in-memory fake; the indexer is mocked.
"""

from unittest.mock import MagicMock, patch

import pytest

from config.settings import Settings
from kbchat.connectors import (
    BaseConnector,
    ContentItem,
    GroupStatus,
    KnowledgeGroup,
    check_budget,
    run_items,
)
from kbchat.errors import EmbeddingError
from kbchat.ingestion import InMemoryKnowledgeStore, IngestionRunner


class FakeConnector(BaseConnector):
    """Emits a fixed set of pages; pages named in `broken` fail to fetch."""

    def __init__(self, pages, broken=(), explode=None):
        super().__init__()
        self.pages = pages
        self.broken = set(broken)
        self.explode = explode

    def process(self, group, listener):
        check_budget(listener, group)
        if self.explode:
            raise self.explode

        def fetch(locator):
            if locator in self.broken:
                raise RuntimeError("HTTP 500")
            return ContentItem(locator=locator, title=locator.upper(), text=self.pages[locator])

        return run_items(listener, list(self.pages), lambda locator: locator, fetch)


@pytest.fixture
def group():
    return KnowledgeGroup(id="kg-1", scrape_id="acme", type="web", url="https://acme.dev")


@pytest.fixture
def indexer():
    indexer = MagicMock()
    indexer.index_item.return_value = 2
    return indexer


@pytest.fixture
def store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def runner(indexer, store):
    return IngestionRunner(indexer, settings=Settings(), store=store)


def run_with(runner, group, connector, **kwargs):
    with patch("kbchat.ingestion.make_connector", return_value=connector):
        return runner.run(group, **kwargs)


PAGES = {"a": "# A\n\nalpha", "b": "# B\n\nbeta", "c": "# C\n\ngamma"}


class TestIngestionRunner:
    """Tests for IngestionRunner.run."""

    def test_completed_run(self, runner, group, indexer, store):
        report = run_with(runner, group, FakeConnector(PAGES))

        assert report.status == GroupStatus.COMPLETED
        assert group.status == GroupStatus.COMPLETED
        assert store.get_status("kg-1") == GroupStatus.COMPLETED
        assert (report.emitted, report.indexed, report.chunks) == (3, 3, 6)
        assert set(store.items["kg-1"]) == {"a", "b", "c"}
        assert store.items["kg-1"]["a"]["chunks"] == 2
        assert report.finished_at is not None

    def test_items_indexed_into_tenant(self, runner, group, indexer):
        run_with(runner, group, FakeConnector({"a": "alpha"}))

        args, kwargs = indexer.index_item.call_args
        assert args[0] == "acme"
        assert args[1] == ContentItem(locator="a", title="A", text="alpha")
        assert kwargs["metadata"] == {"knowledge_group_id": "kg-1"}

    def test_fetch_errors_recorded(self, runner, group, store):
        report = run_with(runner, group, FakeConnector(PAGES, broken=["b"]))

        assert report.status == GroupStatus.COMPLETED
        assert report.indexed == 2
        assert report.errors == [{"locator": "b", "error": "b: HTTP 500"}]
        assert store.errors["kg-1"][0]["locator"] == "b"

    def test_progress_saved(self, runner, group, store):
        run_with(runner, group, FakeConnector(PAGES))

        last = store.progress["kg-1"]
        assert (last.completed, last.remaining) == (2, 1)

    def test_index_failure_does_not_abort(self, runner, group, indexer, store):
        def index_item(tenant, item, metadata=None):
            if item.locator == "a":
                raise EmbeddingError("model unavailable")
            return 1

        indexer.index_item.side_effect = index_item
        report = run_with(runner, group, FakeConnector(PAGES))

        assert report.status == GroupStatus.COMPLETED
        assert report.indexed == 2
        assert report.errors == [{"locator": "a", "error": "Indexing failed: model unavailable"}]
        assert "a" not in store.items["kg-1"]

    def test_no_budget_fails_before_work(self, runner, group, indexer):
        report = run_with(runner, group, FakeConnector(PAGES), has_budget=lambda: False)

        assert report.status == GroupStatus.FAILED
        assert "Not enough credits" in report.failure
        assert report.emitted == 0
        indexer.index_item.assert_not_called()

    def test_budget_exhausted_mid_run(self, runner, group):
        answers = iter([True, True, False])
        report = run_with(runner, group, FakeConnector(PAGES), has_budget=lambda: next(answers))

        # Gate checked before the run and before items 2 and 3
        assert report.emitted == 2
        assert report.status == GroupStatus.COMPLETED

    def test_connector_failure(self, runner, group, store):
        report = run_with(runner, group, FakeConnector(PAGES, explode=ValueError("bad group")))

        assert report.status == GroupStatus.FAILED
        assert report.failure == "bad group"
        assert store.get_status("kg-1") == GroupStatus.FAILED

    def test_unknown_type_fails(self, runner, store):
        group = KnowledgeGroup(id="kg-2", scrape_id="acme", type="gopher")
        report = runner.run(group)

        assert report.status == GroupStatus.FAILED
        assert "Unknown knowledge group type" in report.failure

    def test_explicit_store(self, runner, group):
        other = InMemoryKnowledgeStore()
        run_with(runner, group, FakeConnector({"a": "alpha"}), store=other)
        assert other.get_status("kg-1") == GroupStatus.COMPLETED

    def test_report_dict(self, runner, group):
        report = run_with(runner, group, FakeConnector({"a": "alpha"}))
        data = report.to_dict()
        assert data["status"] == "completed"
        assert data["group_id"] == "kg-1"

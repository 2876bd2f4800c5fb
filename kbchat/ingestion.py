"""
Ingestion Runner Module

Runs one knowledge group through its connector and indexes what it emits:
1. Mark the group processing
2. Stream items from the connector (progress and per-item errors included)
3. Chunk, embed and upsert each item on a bounded thread pool
4. Mark the group completed, or failed on a budget/connector failure

Item indexing failures are recorded and do not abort the run. The
persistence collaborator (KnowledgeStore) only sees plain records; the
vectors live in the Indexer's store.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from config.settings import get_settings, Settings
from kbchat.connectors import (
    ConnectorListener,
    ContentItem,
    GroupStatus,
    KnowledgeGroup,
    ProgressEvent,
    make_connector,
)
from kbchat.errors import BudgetExceededError
from kbchat.indexer import Indexer

logger = logging.getLogger(__name__)


class KnowledgeStore(ABC):
    """Persistence collaborator for ingestion runs."""

    @abstractmethod
    def save_item(self, group: KnowledgeGroup, item: ContentItem, chunk_count: int) -> None:
        pass

    @abstractmethod
    def save_error(self, group: KnowledgeGroup, locator: str, error: str) -> None:
        pass

    @abstractmethod
    def save_progress(self, group: KnowledgeGroup, progress: ProgressEvent) -> None:
        pass

    @abstractmethod
    def set_status(self, group: KnowledgeGroup, status: GroupStatus) -> None:
        pass


class InMemoryKnowledgeStore(KnowledgeStore):
    """Thread-safe KnowledgeStore kept in process memory."""

    def __init__(self):
        self.items: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.errors: Dict[str, List[Dict[str, str]]] = {}
        self.progress: Dict[str, ProgressEvent] = {}
        self.statuses: Dict[str, GroupStatus] = {}
        self._lock = threading.Lock()

    def save_item(self, group: KnowledgeGroup, item: ContentItem, chunk_count: int) -> None:
        with self._lock:
            self.items.setdefault(group.id, {})[item.locator] = {
                "locator": item.locator,
                "title": item.title,
                "chunks": chunk_count,
                "updated_at": datetime.utcnow().isoformat(),
            }

    def save_error(self, group: KnowledgeGroup, locator: str, error: str) -> None:
        with self._lock:
            self.errors.setdefault(group.id, []).append({"locator": locator, "error": error})

    def save_progress(self, group: KnowledgeGroup, progress: ProgressEvent) -> None:
        with self._lock:
            self.progress[group.id] = progress

    def set_status(self, group: KnowledgeGroup, status: GroupStatus) -> None:
        with self._lock:
            self.statuses[group.id] = status

    def get_status(self, group_id: str) -> Optional[GroupStatus]:
        with self._lock:
            return self.statuses.get(group_id)


@dataclass
class IngestionReport:
    """Summary of one ingestion run."""

    group_id: str
    status: GroupStatus = GroupStatus.PROCESSING
    emitted: int = 0
    indexed: int = 0
    chunks: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    failure: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "status": self.status.value,
            "emitted": self.emitted,
            "indexed": self.indexed,
            "chunks": self.chunks,
            "errors": list(self.errors),
            "failure": self.failure,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class _RunListener(ConnectorListener):
    """Connector listener for one run; hands items to the thread pool."""

    def __init__(
        self,
        indexer: Indexer,
        group: KnowledgeGroup,
        store: KnowledgeStore,
        executor: ThreadPoolExecutor,
        report: IngestionReport,
        has_budget: Optional[Callable[[], bool]] = None,
    ):
        self.indexer = indexer
        self.group = group
        self.store = store
        self.executor = executor
        self.report = report
        self.futures: List[Future] = []
        self._has_budget = has_budget
        self._lock = threading.Lock()

    def has_budget(self) -> bool:
        return self._has_budget() if self._has_budget else True

    def emit(self, locator: str, content: str, title: str, progress: Optional[ProgressEvent] = None) -> None:
        item = ContentItem(locator=locator, title=title, text=content)
        with self._lock:
            self.report.emitted += 1
        if progress:
            self.store.save_progress(self.group, progress)
        self.futures.append(self.executor.submit(self._index, item))

    def report_error(self, locator: str, error: Exception, progress: Optional[ProgressEvent] = None) -> None:
        self._record_error(locator, str(error))
        if progress:
            self.store.save_progress(self.group, progress)

    def _record_error(self, locator: str, message: str) -> None:
        with self._lock:
            self.report.errors.append({"locator": locator, "error": message})
        self.store.save_error(self.group, locator, message)

    def _index(self, item: ContentItem) -> None:
        try:
            count = self.indexer.index_item(
                self.group.scrape_id,
                item,
                metadata={"knowledge_group_id": self.group.id},
            )
        except Exception as e:
            logger.warning(f"Failed to index {item.locator}: {e}")
            self._record_error(item.locator, f"Indexing failed: {e}")
            return

        self.store.save_item(self.group, item, count)
        with self._lock:
            self.report.indexed += 1
            self.report.chunks += count


class IngestionRunner:
    """
    Processes knowledge groups into the index.

    Independent groups may run concurrently on the same runner; all run
    state lives in the per-run listener and report.

    Example:
        runner = IngestionRunner(indexer)
        report = runner.run(group, store=store, has_budget=credits.has_budget)
        print(report.status, report.indexed)
    """

    def __init__(
        self,
        indexer: Indexer,
        settings: Optional[Settings] = None,
        client: Optional[httpx.Client] = None,
        store: Optional[KnowledgeStore] = None,
    ):
        """
        Initialize the runner.

        Args:
            indexer: Indexer the content is written to
            settings: Optional settings (default: global settings)
            client: Optional httpx client shared by connectors
            store: Default KnowledgeStore for runs that pass none
        """
        self.indexer = indexer
        self.settings = settings or get_settings()
        self.client = client
        self.store = store or InMemoryKnowledgeStore()
        self.max_workers = self.settings.connectors.max_workers

    def _set_status(self, group: KnowledgeGroup, store: KnowledgeStore, status: GroupStatus) -> None:
        group.status = status
        store.set_status(group, status)

    def run(
        self,
        group: KnowledgeGroup,
        store: Optional[KnowledgeStore] = None,
        has_budget: Optional[Callable[[], bool]] = None,
    ) -> IngestionReport:
        """
        Run one knowledge group end to end.

        Args:
            group: The knowledge group to process
            store: Persistence collaborator (default: the runner's store)
            has_budget: Credit gate; absent means unlimited

        Returns:
            IngestionReport with final status and per-item errors
        """
        store = store or self.store
        report = IngestionReport(group_id=group.id)
        self._set_status(group, store, GroupStatus.PROCESSING)
        logger.info(f"Processing knowledge group {group.id} ({group.type})")

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            listener = _RunListener(self.indexer, group, store, executor, report, has_budget)
            try:
                connector = make_connector(group, self.settings, client=self.client)
                connector.process(group, listener)
            except BudgetExceededError as e:
                logger.warning(f"Knowledge group {group.id} stopped: {e}")
                report.failure = str(e)
            except Exception as e:
                logger.exception(f"Knowledge group {group.id} failed")
                report.failure = str(e)
            # Leaving the block waits for in-flight indexing jobs

        report.status = GroupStatus.FAILED if report.failure else GroupStatus.COMPLETED
        report.finished_at = datetime.utcnow()
        self._set_status(group, store, report.status)

        logger.info(
            f"Knowledge group {group.id} {report.status.value}: "
            f"{report.indexed}/{report.emitted} indexed, {len(report.errors)} errors"
        )
        return report

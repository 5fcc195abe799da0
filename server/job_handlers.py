"""Job handlers for background processing tasks."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from config.settings import CrawlSettings, NotificationSettings
from observability.metrics import record_ingestion_run
from pipelines.crawler import IngestRunResult, RunStatus, WebCrawler
from services.shared.incremental import ChunkEmbedder, IncrementalProcessor, PersistStats
from services.shared.models import Document, Snapshot, Source, SourceSyncRequest
from services.shared.notifications import ChangeNotifier, NotificationError, select_alert_events
from sources.loader import SourceConfig
from .jobs import SourceSyncJob

logger = logging.getLogger(__name__)

PARSER_VERSION = "docwatch-ingestion@0.3.0"
MAX_RAW_REF_URLS = 8
MAX_SNAPSHOT_ERRORS = 10


class IngestionFailedError(Exception):
    """Raised when a source sync run ends with status ``failed``."""


def summarize_raw_ref(run: IngestRunResult, request_id: str) -> str:
    if run.fetched_urls:
        return ",".join(run.fetched_urls[:MAX_RAW_REF_URLS])
    return f"queue://source-sync/{request_id}"


def summarize_errors(run: IngestRunResult) -> Optional[str]:
    if not run.errors:
        return None
    return " | ".join(run.errors[:MAX_SNAPSHOT_ERRORS])


def upsert_source(db: Session, source_id: str, config: Optional[SourceConfig]) -> Source:
    """Create or refresh the Source row from its configuration."""
    source = db.get(Source, source_id)
    if source is None:
        source = Source(id=source_id, status="active")
        db.add(source)

    source.name = config.name if config else source_id
    source.kind = config.kind if config else "docs"
    source.base_url = config.base_url if config else f"https://docs.example.com/{source_id}"
    source.trust_score = config.trust_score if config else 1.0
    source.poll_interval_minutes = config.poll_interval_minutes if config else 60
    source.updated_at = datetime.now(timezone.utc)
    db.commit()
    return source


def load_conditional_headers(db: Session, source_id: str) -> Dict[str, Dict[str, Optional[str]]]:
    """Stored etag/last_modified per canonical URL for conditional fetches."""
    documents = (
        db.query(Document)
        .filter(Document.source_id == source_id)
        .filter((Document.fetch_etag.isnot(None)) | (Document.fetch_last_modified.isnot(None)))
        .all()
    )
    return {document.canonical_url: document.fetch_conditions() for document in documents}


class SourceSyncHandler:
    """Processes one ``SourceSyncJob``: crawl, persist, snapshot, notify.

    Args:
        session_factory: SQLAlchemy sessionmaker; one session per job
        sources: Source configurations keyed by id
        crawl_settings: Crawler tuning
        crawler_factory: Builds the crawler; defaults to ``WebCrawler(crawl_settings)``
        embedder: Optional chunk embedder used while persisting
        notifier: Optional change-alert sink
        notification_settings: Alert selection policy
    """

    def __init__(self,
                 session_factory: sessionmaker,
                 sources: Mapping[str, SourceConfig],
                 crawl_settings: Optional[CrawlSettings] = None,
                 crawler_factory: Optional[Callable[[], WebCrawler]] = None,
                 embedder: Optional[ChunkEmbedder] = None,
                 notifier: Optional[ChangeNotifier] = None,
                 notification_settings: Optional[NotificationSettings] = None):
        self.session_factory = session_factory
        self.sources = dict(sources)
        self.crawl_settings = crawl_settings or CrawlSettings()
        self.crawler_factory = crawler_factory or (lambda: WebCrawler(settings=self.crawl_settings))
        self.embedder = embedder
        self.notifier = notifier
        self.notification_settings = notification_settings or NotificationSettings()

    async def __call__(self, job: SourceSyncJob) -> Dict[str, Any]:
        return await self.process(job)

    async def run_crawl(self, source_id: str, config: Optional[SourceConfig],
                        conditional_headers: Dict[str, Dict[str, Optional[str]]]) -> IngestRunResult:
        if config is None:
            logger.warning(f"No source configuration for {source_id}")
            return IngestRunResult(source=source_id, status=RunStatus.PARTIAL,
                                   errors=["adapter_not_configured"])

        async with self.crawler_factory() as crawler:
            return await crawler.crawl_source(config, conditional_headers)

    def _mark_request(self, db: Session, request_id: str, status: str,
                      processed_at: Optional[datetime] = None, error: Optional[str] = None) -> None:
        request = db.get(SourceSyncRequest, request_id)
        if request is None:
            logger.warning(f"Sync request {request_id} not found")
            return
        request.status = status
        request.processed_at = processed_at
        request.error = error
        db.commit()

    def _notify(self, source_id: str, events) -> None:
        if self.notifier is None:
            return
        selected = select_alert_events(events, self.notification_settings)
        if not selected:
            return
        try:
            self.notifier.notify(source_id, selected)
        except (NotificationError, OSError) as e:
            logger.error(f"Change alert for {source_id} failed: {e}")

    def _prepare(self, db: Session, job: SourceSyncJob,
                 config: Optional[SourceConfig]) -> Dict[str, Dict[str, Optional[str]]]:
        self._mark_request(db, job.request_id, "processing")
        upsert_source(db, job.source, config)
        return load_conditional_headers(db, job.source)

    def _persist(self, db: Session, job: SourceSyncJob, run: IngestRunResult) -> Tuple[PersistStats, Optional[str]]:
        """Persist the run, write its snapshot and settle the request row."""
        ingested_at = datetime.now(timezone.utc)

        processor = IncrementalProcessor(db, embedder=self.embedder)
        stats = processor.persist_run(job.source, run, ingested_at)

        error_message = summarize_errors(run)
        db.add(Snapshot(
            source_id=job.source,
            fetched_at=ingested_at,
            raw_blob_ref=summarize_raw_ref(run, job.request_id),
            parser_version=PARSER_VERSION,
            status=run.status.value,
            error=error_message,
        ))
        db.commit()

        request_status = "failed" if run.status == RunStatus.FAILED else "completed"
        self._mark_request(db, job.request_id, request_status, ingested_at, error_message)
        return stats, error_message

    def _abort(self, db: Session, job: SourceSyncJob, error: Exception) -> None:
        db.rollback()
        self._mark_request(db, job.request_id, "failed", datetime.now(timezone.utc), str(error))

    async def process(self, job: SourceSyncJob) -> Dict[str, Any]:
        """Run one source sync.

        Database work, chunk embedding and change alerts block, so they run
        in the default executor; only the crawl itself runs on the loop.

        Returns:
            Run status plus persist stats

        Raises:
            IngestionFailedError: If the crawl run failed
        """
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        source_id = job.source
        config = self.sources.get(source_id)

        db = self.session_factory()
        try:
            try:
                conditional_headers = await loop.run_in_executor(None, self._prepare, db, job, config)
                run = await self.run_crawl(source_id, config, conditional_headers)
                stats, error_message = await loop.run_in_executor(None, self._persist, db, job, run)
            except Exception as e:
                await loop.run_in_executor(None, self._abort, db, job, e)
                record_ingestion_run(source_id, RunStatus.FAILED.value, time.perf_counter() - started)
                raise

            logger.info(f"source={source_id} docs_inserted={stats.inserted_documents} "
                        f"docs_updated={stats.updated_documents} chunks_inserted={stats.inserted_chunks} "
                        f"change_events={stats.change_events} status={run.status.value}")
            record_ingestion_run(source_id, run.status.value, time.perf_counter() - started)

            await loop.run_in_executor(None, self._notify, source_id, stats.events)

            if run.status == RunStatus.FAILED:
                raise IngestionFailedError(error_message or "ingestion_failed")

            return {"source": source_id, "status": run.status.value, **stats.to_dict()}
        finally:
            await loop.run_in_executor(None, db.close)

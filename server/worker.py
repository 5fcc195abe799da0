"""Source-sync worker process.

Loads enabled sources, starts the job pool and schedules periodic syncs.
Run with ``docwatch-worker`` or ``python -m server.worker``.
"""

import argparse
import asyncio
import logging
import signal
from typing import Dict, Optional

from config.database import DatabaseConfig, DatabaseFactory, close_database, initialize_database
from config.settings import Settings
from indexer.embeddings import EmbeddingProvider
from observability.logging import get_structured_logger, setup_logging, setup_logging_from_env
from observability.metrics import set_app_info
from services.shared.notifications import ChangeNotifier
from sources.loader import SourceConfig, SourceLoader
from .docs_service import DocsService
from .job_handlers import SourceSyncHandler
from .jobs import JobManager

__version__ = "0.3.0"

logger = get_structured_logger(__name__, component="worker")


class SyncWorker:
    """Wires settings, storage, sources and the job pool together."""

    def __init__(self, settings: Settings, db: DatabaseFactory, sources: Dict[str, SourceConfig]):
        self.settings = settings
        self.db = db
        self.sources = sources

        embedder = EmbeddingProvider(settings.embeddings) if settings.embeddings.enabled else None
        self.handler = SourceSyncHandler(
            db.session_factory(),
            sources,
            crawl_settings=settings.crawl,
            embedder=embedder,
            notifier=ChangeNotifier.from_settings(settings.notifications),
            notification_settings=settings.notifications,
        )
        self.jobs = JobManager.from_settings(self.handler, settings.worker)

    def request_sync(self, source_id: str) -> Dict[str, object]:
        """Record a sync request and queue it."""
        with self.db.session() as session:
            return DocsService(session).request_source_sync(source_id, self.jobs.enqueue)

    async def start(self, sync_on_start: bool = False) -> None:
        await self.jobs.start()
        self.jobs.schedule_periodic_syncs(self.sources.values(), self.request_sync)
        logger.info("Worker started", sources=",".join(sorted(self.sources)))

        if sync_on_start:
            for source_id in sorted(self.sources):
                self.request_sync(source_id)

    async def stop(self) -> None:
        await self.jobs.shutdown()
        logger.info("Worker stopped")


async def run_worker(settings: Optional[Settings] = None,
                     db_config: Optional[DatabaseConfig] = None,
                     sources_dir: Optional[str] = None,
                     only: Optional[str] = None,
                     sync_on_start: bool = False) -> None:
    """Run until SIGINT/SIGTERM."""
    settings = settings or Settings.from_env()
    set_app_info(__version__)

    db = initialize_database(db_config)
    loader = SourceLoader(sources_dir or settings.worker.sources_dir)
    sources = loader.get_enabled_sources()
    if only:
        sources = {source_id: config for source_id, config in sources.items() if source_id == only}
    if not sources:
        logger.warning("No enabled sources configured")

    worker = SyncWorker(settings, db, sources)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms (Windows)
            pass

    await worker.start(sync_on_start=sync_on_start)
    try:
        await stop_event.wait()
    finally:
        await worker.stop()
        close_database()


def main():
    parser = argparse.ArgumentParser(description="Run the docwatch source-sync worker")
    parser.add_argument("--database-url", help="SQLAlchemy URL (defaults to DOCWATCH_DATABASE_URL)")
    parser.add_argument("--sources-dir", help="Directory of source YAML files")
    parser.add_argument("--source", help="Only sync this source id")
    parser.add_argument("--sync-now", action="store_true", help="Queue a sync for every source at startup")
    parser.add_argument("--log-level", help="Override DOCWATCH_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs on the console")

    args = parser.parse_args()

    if args.log_level or args.json_logs:
        setup_logging(level=args.log_level or "INFO", use_json=args.json_logs)
    else:
        setup_logging_from_env()

    db_config = DatabaseConfig(url=args.database_url) if args.database_url else None
    try:
        asyncio.run(run_worker(db_config=db_config, sources_dir=args.sources_dir,
                               only=args.source, sync_on_start=args.sync_now))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted")


if __name__ == "__main__":
    main()

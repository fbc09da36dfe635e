"""Standalone access-log ingestion worker.

Runs the log watchers outside the API process, for deployments where the
edge proxy's log directory is only mounted on a dedicated host::

    LOG_WATCHER_SOURCES='["/var/log/nginx/shortlink-clicks.log"]' \\
        python -m shortlink.ingestion.worker
"""

import asyncio
import logging
import os

from prometheus_client import start_http_server

from shortlink.config import get_settings
from shortlink.database import build_engine, build_session_factory, init_db
from shortlink.dependencies import configure_logging
from shortlink.ingestion.ingestor import ClickEventIngestor
from shortlink.ingestion.log_watcher import LogWatcher

__all__ = ["run"]

logger = logging.getLogger(__name__)


async def run() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    if not settings.LOG_WATCHER_SOURCES:
        logger.error("LOG_WATCHER_SOURCES is empty, nothing to watch")
        return

    metrics_port = int(os.getenv("INGESTION_METRICS_PORT", "9200"))
    start_http_server(metrics_port)

    engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    session_factory = build_session_factory(engine)
    await init_db(engine)

    ingestor = ClickEventIngestor.from_settings(session_factory, settings)
    await ingestor.start()

    watchers = [
        LogWatcher.from_settings(path, ingestor, session_factory, settings) for path in settings.LOG_WATCHER_SOURCES
    ]
    tasks = [asyncio.create_task(watcher.run(), name=f"log-watcher:{watcher.path}") for watcher in watchers]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await ingestor.stop(drain=True, timeout=settings.LOG_WATCHER_ENQUEUE_TIMEOUT_SECONDS * 2)
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run())

import logging
from dataclasses import dataclass
from typing import Any

from .config import Settings
from .jobqueue import JobQueue
from .storage import build_publisher
from .store import JobStore, make_engine

logger = logging.getLogger("dynwall-backend")


@dataclass
class AppContext:
    """Handles shared by the API and the worker, built once per process."""

    settings: Settings
    store: JobStore
    queue: JobQueue
    publisher: Any


def log_environment(settings: Settings) -> None:
    logger.info("----------- LOADING ENVIRONMENT -----------")
    logger.info("STORAGE_BACKEND: [%s]", settings.storage_backend)
    logger.info("R2_ACCOUNT_ID: [%s]", settings.r2_account_id or "")
    logger.info("R2_ACCESS_KEY_ID is set: %s", bool(settings.s3_access_key))
    logger.info("R2_SECRET_ACCESS_KEY is set: %s", bool(settings.s3_secret_key))
    logger.info("R2_BUCKET_NAME: [%s]", settings.bucket_name or "")
    logger.info("R2_PUBLIC_URL: [%s]", settings.public_url or "")
    logger.info("QUEUE: [%s] on %s", settings.queue_name, settings.redis_url)
    logger.info("-------------------------------------------")


def build_context(settings: Settings) -> AppContext:
    log_environment(settings)
    store = JobStore(make_engine(settings.database_url))
    store.init_schema()
    return AppContext(
        settings=settings,
        store=store,
        queue=JobQueue.from_url(settings.redis_url, settings.queue_name),
        publisher=build_publisher(settings),
    )

import logging
import os
import shutil
import signal
import threading
import time
from typing import Callable, List, Optional, Sequence

from backend.app.config import Settings
from backend.app.context import AppContext, build_context
from backend.app.errors import (
    ConfigError,
    NotFoundError,
    PersistenceError,
    PublishError,
    QueueUnavailableError,
    StageError,
)
from backend.app.models import Job, JobStatus
from backend.app.storage import PREVIEW, WALLPAPER
from worker.providers.heif import EncodeStage
from worker.providers.metadata import MetadataStage
from worker.providers.preview import PreviewStage
from worker.stages import Stage, Workspace, run_pipeline

logger = logging.getLogger("dynwall-worker")

COMPLETION_RETRY_DELAY = 1.0


def build_stages(settings: Settings) -> List[Stage]:
    timeout = settings.stage_timeout_seconds
    stages: List[Stage] = [
        MetadataStage(settings.exiv2_bin, timeout=timeout),
        EncodeStage(settings.heif_enc_bin, timeout=timeout),
    ]
    if settings.enable_preview:
        stages.append(PreviewStage(settings.convert_bin, settings.preview_max_size, timeout=timeout))
    return stages


def workspace_for(job: Job) -> Workspace:
    return Workspace(
        job_id=job.id,
        root=os.path.dirname(job.light_input_path),
        light_path=job.light_input_path,
        dark_path=job.dark_input_path,
    )


class JobLifecycleController:
    """Moves one job at a time from pending through processing to a terminal status."""

    def __init__(
        self,
        ctx: AppContext,
        stages: Optional[Sequence[Stage]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.settings = ctx.settings
        self.stages = list(stages) if stages is not None else build_stages(ctx.settings)
        self._sleep = sleep
        self.processed_jobs = 0
        self.failed_jobs = 0

    def recover_stuck(self) -> int:
        """Fail jobs left in processing by a previous worker process.

        With a single worker, anything still processing at start-up was
        stranded by a crash or a lost completion write.
        """
        try:
            stuck = self.ctx.store.list_stuck()
        except PersistenceError as e:
            logger.error("Could not look up stuck jobs: %s", e)
            return 0
        recovered = 0
        for job in stuck:
            try:
                self.ctx.store.update_status(job.id, JobStatus.FAILED)
            except (PersistenceError, NotFoundError) as e:
                logger.error("Could not mark stuck job %s as failed: %s", job.id, e)
                continue
            logger.warning("Marked stuck job %s as failed", job.id)
            self._discard_failed_workdir(job.id, workspace_for(job).root)
            recovered += 1
        return recovered

    def process_job(self, job_id: str) -> Optional[JobStatus]:
        """Run one delivery to the end.

        Returns the status the job was left in, or None when the delivery
        was abandoned before the job was touched.
        """
        logger.info("Processing job %s", job_id)
        try:
            job = self.ctx.store.get(job_id)
        except (NotFoundError, PersistenceError) as e:
            logger.error("Error finding job %s in DB: %s", job_id, e)
            return None

        if job.status.is_terminal:
            logger.warning("Job %s is already %s; skipping duplicate delivery", job_id, job.status.value)
            return job.status

        try:
            self.ctx.store.update_status(job_id, JobStatus.PROCESSING)
        except (NotFoundError, PersistenceError) as e:
            logger.error("Could not mark job %s as processing: %s", job_id, e)
            return None

        ws = workspace_for(job)
        outcome = run_pipeline(self.stages, ws)
        try:
            outcome.raise_for_failure()
            final_url, preview_url = self._publish(job_id, outcome.artifacts)
        except StageError as e:
            logger.error("Job %s failed in stage %s: %s", job_id, e.stage, e)
            return self._fail(ws)
        except (PublishError, ConfigError) as e:
            logger.error("Job %s failed to publish: %s", job_id, e)
            return self._fail(ws)

        if not self._write_completion(job_id, final_url, preview_url):
            # Directory stays for inspection; start-up recovery fails the job later.
            return JobStatus.PROCESSING

        self._cleanup(ws.root)
        self.processed_jobs += 1
        logger.info("Finished job %s", job_id)
        return JobStatus.COMPLETED

    def _publish(self, job_id: str, artifacts: dict):
        wallpaper_path = artifacts.get("wallpaper")
        if not wallpaper_path:
            raise StageError("encode", None, message="no wallpaper artifact was produced")
        final_url = self.ctx.publisher.publish(
            wallpaper_path, WALLPAPER.key_for(job_id), WALLPAPER.content_type
        )
        logger.info("Successfully uploaded. URL: %s", final_url)

        preview_url = None
        preview_path = artifacts.get("preview")
        if preview_path:
            preview_url = self.ctx.publisher.publish(
                preview_path, PREVIEW.key_for(job_id), PREVIEW.content_type
            )
            logger.info("Uploaded preview. URL: %s", preview_url)
        return final_url, preview_url

    def _write_completion(self, job_id: str, final_url: str, preview_url: Optional[str]) -> bool:
        attempts = max(self.settings.completion_write_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                self.ctx.store.update_completion(job_id, final_url, preview_url)
                return True
            except (PersistenceError, NotFoundError) as e:
                logger.error(
                    "Failed to update job %s to completed status (attempt %d/%d): %s",
                    job_id,
                    attempt,
                    attempts,
                    e,
                )
                if attempt < attempts:
                    self._sleep(COMPLETION_RETRY_DELAY)
        return False

    def _fail(self, ws: Workspace) -> JobStatus:
        self.failed_jobs += 1
        try:
            self.ctx.store.update_status(ws.job_id, JobStatus.FAILED)
        except (PersistenceError, NotFoundError) as e:
            logger.error("Could not mark job %s as failed: %s", ws.job_id, e)
        self._discard_failed_workdir(ws.job_id, ws.root)
        return JobStatus.FAILED

    def _discard_failed_workdir(self, job_id: str, root: str) -> None:
        if self.settings.keep_failed_workdirs:
            logger.info("Keeping working directory %s of failed job %s", root, job_id)
        else:
            self._cleanup(root)

    def _cleanup(self, path: str) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Warning: failed to cleanup temp dir %s: %s", path, e)

    def _process_safely(self, job_id: str) -> None:
        try:
            self.process_job(job_id)
        except Exception as e:
            logger.exception("Unexpected error while processing job %s: %s", job_id, e)
            self.failed_jobs += 1
            try:
                job = self.ctx.store.get(job_id)
                self.ctx.store.update_status(job_id, JobStatus.FAILED)
            except (PersistenceError, NotFoundError) as e:
                logger.error("Could not mark job %s as failed: %s", job_id, e)
                return
            self._discard_failed_workdir(job_id, workspace_for(job).root)

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Starting worker process...")
        timeout = self.settings.queue_poll_timeout
        while not stop_event.is_set():
            try:
                job_id = self.ctx.queue.dequeue_blocking(timeout=timeout)
            except QueueUnavailableError as e:
                logger.error("Error pulling job from Redis: %s", e)
                stop_event.wait(self.settings.queue_retry_delay)
                continue
            if job_id is None:
                continue
            self._process_safely(job_id)
        logger.info(
            "Worker stopped: %d completed, %d failed",
            self.processed_jobs,
            self.failed_jobs,
        )


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _signal_handler(signum, _frame) -> None:
        logger.info("Signal %s received; stopping after the current job", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _signal_handler)


def run_worker(settings: Optional[Settings] = None) -> int:
    settings = settings or Settings.from_env()
    ctx = build_context(settings)
    controller = JobLifecycleController(ctx)
    if settings.recover_stuck_on_start:
        recovered = controller.recover_stuck()
        if recovered:
            logger.info("Recovered %d stuck job(s)", recovered)
    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    controller.run(stop_event)
    return 0

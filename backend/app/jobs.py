import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .context import AppContext
from .errors import ConflictError, PersistenceError, ValidationError
from .models import Job, JobStatus

logger = logging.getLogger("dynwall-backend")


def _input_name(role: str, filename: Optional[str]) -> str:
    _, ext = os.path.splitext(os.path.basename(filename or ""))
    return f"{role}{ext.lower()}"


def submit_job(
    ctx: AppContext,
    light_filename: Optional[str],
    light_data: Optional[bytes],
    dark_filename: Optional[str],
    dark_data: Optional[bytes],
) -> Job:
    """Store both images in a fresh working directory, record the job and queue it."""
    if not light_filename or not light_data or not dark_filename or not dark_data:
        raise ValidationError("Both light and dark images are required")

    job_id = str(uuid.uuid4())
    workdir = os.path.join(ctx.settings.work_root, job_id)
    os.makedirs(workdir, exist_ok=False)

    light_path = os.path.join(workdir, _input_name("light", light_filename))
    dark_path = os.path.join(workdir, _input_name("dark", dark_filename))
    try:
        with open(light_path, "wb") as f:
            f.write(light_data)
        with open(dark_path, "wb") as f:
            f.write(dark_data)
        job = ctx.store.create(
            Job(
                id=job_id,
                status=JobStatus.PENDING,
                light_input_path=light_path,
                dark_input_path=dark_path,
                created_at=datetime.now(timezone.utc),
            )
        )
    except (OSError, PersistenceError, ConflictError):
        shutil.rmtree(workdir, ignore_errors=True)
        raise
    # The record stays pending if this raises; the caller reports the error.
    ctx.queue.enqueue(job_id)
    logger.info("Created job %s in %s", job_id, workdir)
    return job


def get_job(ctx: AppContext, job_id: str) -> Job:
    return ctx.store.get(job_id)


def list_gallery(ctx: AppContext) -> List[Job]:
    return ctx.store.list_by_status(JobStatus.COMPLETED, newest_first=True)

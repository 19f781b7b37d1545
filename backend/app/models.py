from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    id: str
    status: JobStatus
    light_input_path: str
    dark_input_path: str
    final_url: Optional[str] = None
    preview_url: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class JobOut(BaseModel):
    """Public view of a job; input paths stay server-side."""

    id: str
    status: JobStatus
    final_url: Optional[str] = None
    preview_url: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        return cls(
            id=job.id,
            status=job.status,
            final_url=job.final_url,
            preview_url=job.preview_url,
            created_at=job.created_at,
        )


class CreateJobResponse(BaseModel):
    id: str

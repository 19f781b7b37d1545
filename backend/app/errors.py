"""Error taxonomy for the wallpaper service.

Failures inside a single job are terminal for that job only; the worker
loop records them on the job record and moves on. The only class the
worker retries on its own is QueueUnavailableError.
"""

from typing import Optional


class WallpaperError(Exception):
    """Base exception for the wallpaper service."""


class ValidationError(WallpaperError):
    """A submission is missing one of the two required images."""


class NotFoundError(WallpaperError):
    """No job record exists for the given id."""


class ConflictError(WallpaperError):
    """A job record with the given id already exists."""


class StageError(WallpaperError):
    """An external processing stage failed.

    Carries the tool's exit status (None when it never ran to completion)
    and its combined stdout/stderr for diagnostics.
    """

    def __init__(self, stage: str, returncode: Optional[int], output: str = "", message: str = ""):
        self.stage = stage
        self.returncode = returncode
        self.output = output
        super().__init__(message or f"stage {stage} failed with exit status {returncode}")


class PublishError(WallpaperError):
    """Uploading an artifact to object storage failed."""


class ConfigError(WallpaperError):
    """Required storage configuration is missing."""


class PersistenceError(WallpaperError):
    """A job record write failed."""


class QueueUnavailableError(WallpaperError):
    """The job queue could not be reached."""

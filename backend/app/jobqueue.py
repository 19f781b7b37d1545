import logging
from typing import Optional

import redis

from .errors import QueueUnavailableError

logger = logging.getLogger("dynwall-backend")


class JobQueue:
    """Redis list carrying bare job ids from the API to the worker.

    LPUSH on submit, BRPOP in the worker: the oldest id comes out first.
    A popped id is gone from Redis; nothing puts it back if the worker dies.
    """

    def __init__(self, client: "redis.Redis", name: str = "wallpaper_jobs"):
        self.client = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str = "wallpaper_jobs") -> "JobQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), name)

    def enqueue(self, job_id: str) -> None:
        try:
            self.client.lpush(self.name, job_id)
        except redis.RedisError as e:
            raise QueueUnavailableError(f"could not enqueue {job_id}: {e}") from e
        logger.info("Queued job %s on %s", job_id, self.name)

    def dequeue_blocking(self, timeout: int = 0) -> Optional[str]:
        """Pop one id, waiting up to `timeout` seconds (0 waits forever).

        Returns None when the wait times out.
        """
        try:
            item = self.client.brpop([self.name], timeout=timeout)
        except redis.RedisError as e:
            raise QueueUnavailableError(str(e)) from e
        if item is None:
            return None
        _, job_id = item
        if isinstance(job_id, bytes):
            job_id = job_id.decode("utf-8")
        return job_id

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            raise QueueUnavailableError(str(e)) from e

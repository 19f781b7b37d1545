import os
import subprocess
from collections import deque
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.config import Settings
from backend.app.context import AppContext
from backend.app.errors import PublishError, QueueUnavailableError
from backend.app.models import Job, JobStatus
from backend.app.storage import public_url_for
from backend.app.store import JobStore, make_engine

PUBLIC_BASE = "https://cdn.example.com"


class FakeQueue:
    """In-memory stand-in for JobQueue."""

    def __init__(self):
        self.items = deque()
        self.failures = 0
        self.dequeue_calls = 0

    def enqueue(self, job_id):
        self.items.appendleft(job_id)

    def dequeue_blocking(self, timeout=0):
        self.dequeue_calls += 1
        if self.failures:
            self.failures -= 1
            raise QueueUnavailableError("connection refused")
        if not self.items:
            return None
        return self.items.pop()

    def ping(self):
        return True


class FakePublisher:
    """Records uploads; optionally fails for keys with a given prefix."""

    backend = "fake"

    def __init__(self, public_base=PUBLIC_BASE, fail_prefix=None):
        self.public_base = public_base
        self.fail_prefix = fail_prefix
        self.calls = []

    def publish(self, local_path, key, content_type):
        self.calls.append((local_path, key, content_type))
        if self.fail_prefix and key.startswith(self.fail_prefix):
            raise PublishError(f"upload of {key} failed")
        return public_url_for(self.public_base, key)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.sqlite'}",
        data_dir=str(tmp_path / "data"),
        work_root=str(tmp_path / "work"),
        bucket_name="wallpapers-bucket",
        public_url=PUBLIC_BASE,
        queue_poll_timeout=1,
        queue_retry_delay=0,
    )


@pytest.fixture
def store(settings):
    s = JobStore(make_engine(settings.database_url))
    s.init_schema()
    return s


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def ctx(settings, store, queue, publisher):
    os.makedirs(settings.work_root, exist_ok=True)
    return AppContext(settings=settings, store=store, queue=queue, publisher=publisher)


@pytest.fixture
def make_job(store, settings):
    """Create a pending job with real input files on disk."""
    counter = {"n": 0}

    def _make(job_id=None, light_name="light.png", status=JobStatus.PENDING, created_at=None):
        counter["n"] += 1
        job_id = job_id or f"job-{counter['n']}"
        workdir = os.path.join(settings.work_root, job_id)
        os.makedirs(workdir, exist_ok=True)
        light = os.path.join(workdir, light_name)
        dark = os.path.join(workdir, "dark" + os.path.splitext(light_name)[1])
        for path in (light, dark):
            with open(path, "wb") as f:
                f.write(b"\x89PNG fake")
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        job = Job(
            id=job_id,
            status=status,
            light_input_path=light,
            dark_input_path=dark,
            created_at=created_at or base + timedelta(minutes=counter["n"]),
        )
        return store.create(job)

    return _make


def _touch(path):
    with open(path, "wb") as f:
        f.write(b"artifact")


@pytest.fixture
def fake_tools(monkeypatch):
    """Patch subprocess.run so every external tool succeeds and writes its output.

    Set `fail` to a tool name (e.g. "heif-enc") to make that tool exit 1.
    """
    state = {"fail": None, "calls": []}

    def _run(args, cwd=None, stdout=None, stderr=None, timeout=None, check=False):
        state["calls"].append(list(args))
        tool = os.path.basename(args[0])
        if tool == state["fail"]:
            return subprocess.CompletedProcess(args, 1, stdout=b"boom: bad input\n")
        if "-o" in args:
            _touch(args[args.index("-o") + 1])
        elif tool == "convert":
            _touch(args[-1])
        return subprocess.CompletedProcess(args, 0, stdout=b"ok\n")

    monkeypatch.setattr(subprocess, "run", _run)
    return state

"""Tests for the job lifecycle controller and worker loop."""

import os
import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import redis

from backend.app.errors import PersistenceError
from backend.app.jobqueue import JobQueue
from backend.app.jobs import submit_job
from backend.app.models import JobStatus
from worker.main import JobLifecycleController, build_stages
from worker.providers.preview import PreviewStage
from worker.stages import Stage, StageResult

from conftest import PUBLIC_BASE, FakePublisher


class FailingStage(Stage):
    name = "encode"

    def run(self, ws):
        return StageResult.failure(self.name, 1, output="heif-enc: unsupported")


class StatusRecorder:
    """Wraps a store and records every status written."""

    def __init__(self, store):
        self._store = store
        self.writes = []

    def __getattr__(self, name):
        return getattr(self._store, name)

    def update_status(self, job_id, status):
        self.writes.append(JobStatus(status))
        return self._store.update_status(job_id, status)

    def update_completion(self, job_id, final_url, preview_url):
        self.writes.append(JobStatus.COMPLETED)
        return self._store.update_completion(job_id, final_url, preview_url)


@pytest.fixture
def controller(ctx):
    return JobLifecycleController(ctx, sleep=lambda _: None)


class TestEndToEnd:

    def test_submit_then_process_completes(self, ctx, controller, fake_tools):
        job = submit_job(ctx, "a.png", b"light-bytes", "a_dark.png", b"dark-bytes")
        assert ctx.store.get(job.id).status == JobStatus.PENDING
        workdir = os.path.dirname(job.light_input_path)
        assert os.path.isdir(workdir)

        job_id = ctx.queue.dequeue_blocking()
        status = controller.process_job(job_id)

        done = ctx.store.get(job.id)
        assert status == JobStatus.COMPLETED
        assert done.status == JobStatus.COMPLETED
        assert done.final_url == f"{PUBLIC_BASE}/wallpapers/{job.id}.heic"
        assert done.preview_url == f"{PUBLIC_BASE}/previews/{job.id}.jpg"
        assert not os.path.exists(workdir)
        tools = [os.path.basename(c[0]) for c in fake_tools["calls"]]
        assert tools == ["exiv2", "heif-enc", "convert"]
        assert "-L" in fake_tools["calls"][1]

    def test_encode_failure_marks_failed_without_upload(self, ctx, controller, fake_tools):
        job = submit_job(ctx, "a.png", b"light", "a_dark.png", b"dark")
        fake_tools["fail"] = "heif-enc"

        status = controller.process_job(ctx.queue.dequeue_blocking())

        failed = ctx.store.get(job.id)
        assert status == JobStatus.FAILED
        assert failed.status == JobStatus.FAILED
        assert failed.final_url is None
        assert failed.preview_url is None
        assert ctx.publisher.calls == []


class TestTransitions:

    def test_status_moves_pending_processing_completed(self, ctx, make_job, fake_tools):
        make_job("abc")
        recorder = StatusRecorder(ctx.store)
        ctx.store = recorder

        JobLifecycleController(ctx).process_job("abc")

        assert recorder.writes == [JobStatus.PROCESSING, JobStatus.COMPLETED]

    def test_stage_failure_moves_to_failed_and_skips_publish(self, ctx, make_job):
        make_job("abc")
        recorder = StatusRecorder(ctx.store)
        ctx.store = recorder
        controller = JobLifecycleController(ctx, stages=[FailingStage()])

        assert controller.process_job("abc") == JobStatus.FAILED
        assert recorder.writes == [JobStatus.PROCESSING, JobStatus.FAILED]
        assert ctx.publisher.calls == []

    def test_primary_publish_failure_never_completes(self, ctx, make_job, fake_tools):
        make_job("abc")
        ctx.publisher = FakePublisher(fail_prefix="wallpapers/")
        recorder = StatusRecorder(ctx.store)
        ctx.store = recorder

        status = JobLifecycleController(ctx).process_job("abc")

        assert status == JobStatus.FAILED
        assert JobStatus.COMPLETED not in recorder.writes
        assert [key for _, key, _ in ctx.publisher.calls] == ["wallpapers/abc.heic"]

    def test_missing_bucket_fails_the_job_not_the_worker(self, ctx, make_job, fake_tools):
        from backend.app.storage import R2ArtifactPublisher

        make_job("abc")
        ctx.publisher = R2ArtifactPublisher(client=None, bucket=None, public_base=PUBLIC_BASE)

        assert JobLifecycleController(ctx).process_job("abc") == JobStatus.FAILED
        assert ctx.store.get("abc").status == JobStatus.FAILED

    def test_unknown_job_is_abandoned(self, controller):
        assert controller.process_job("does-not-exist") is None

    def test_preview_disabled_completes_without_preview(self, ctx, make_job, fake_tools):
        ctx.settings = replace(ctx.settings, enable_preview=False)
        make_job("abc")

        JobLifecycleController(ctx).process_job("abc")

        job = ctx.store.get("abc")
        assert job.status == JobStatus.COMPLETED
        assert job.final_url.endswith("/wallpapers/abc.heic")
        assert job.preview_url is None

    def test_build_stages_respects_preview_flag(self, settings):
        assert isinstance(build_stages(settings)[-1], PreviewStage)
        assert len(build_stages(replace(settings, enable_preview=False))) == 2


class TestDuplicateDelivery:

    def test_second_delivery_of_completed_job_is_skipped(self, ctx, controller, fake_tools):
        job = submit_job(ctx, "a.png", b"light", "a_dark.png", b"dark")
        ctx.queue.enqueue(job.id)

        first = controller.process_job(ctx.queue.dequeue_blocking())
        second = controller.process_job(ctx.queue.dequeue_blocking())

        assert first == JobStatus.COMPLETED
        assert second == JobStatus.COMPLETED
        assert ctx.store.get(job.id).status == JobStatus.COMPLETED
        assert len(ctx.publisher.calls) == 2

    def test_second_delivery_of_failed_job_stays_failed(self, ctx, make_job):
        make_job("abc")
        controller = JobLifecycleController(ctx, stages=[FailingStage()])

        controller.process_job("abc")
        controller.process_job("abc")

        assert ctx.store.get("abc").status == JobStatus.FAILED


class TestCleanupPolicy:

    def test_failed_job_directory_removed_by_default(self, ctx, make_job):
        job = make_job("abc")
        JobLifecycleController(ctx, stages=[FailingStage()]).process_job("abc")

        assert not os.path.exists(os.path.dirname(job.light_input_path))

    def test_failed_job_directory_kept_when_configured(self, ctx, make_job):
        ctx.settings = replace(ctx.settings, keep_failed_workdirs=True)
        job = make_job("abc")

        JobLifecycleController(ctx, stages=[FailingStage()]).process_job("abc")

        assert os.path.isdir(os.path.dirname(job.light_input_path))

    def test_cleanup_error_is_not_fatal(self, ctx, make_job, fake_tools):
        make_job("abc")
        with patch("worker.main.shutil.rmtree", side_effect=PermissionError("busy")):
            status = JobLifecycleController(ctx).process_job("abc")

        assert status == JobStatus.COMPLETED


class TestCompletionWrite:

    def test_retries_then_succeeds(self, ctx, make_job, fake_tools):
        make_job("abc")
        real = ctx.store.update_completion
        calls = {"n": 0}

        def flaky(*args):
            calls["n"] += 1
            if calls["n"] == 1:
                raise PersistenceError("deadlock")
            return real(*args)

        sleeps = []
        with patch.object(ctx.store, "update_completion", side_effect=flaky):
            status = JobLifecycleController(ctx, sleep=sleeps.append).process_job("abc")

        assert status == JobStatus.COMPLETED
        assert calls["n"] == 2
        assert sleeps == [1.0]

    def test_exhausted_retries_leave_job_processing(self, ctx, make_job, fake_tools):
        job = make_job("abc")
        with patch.object(ctx.store, "update_completion", side_effect=PersistenceError("down")) as upd:
            status = JobLifecycleController(ctx, sleep=lambda _: None).process_job("abc")

        assert upd.call_count == ctx.settings.completion_write_attempts
        assert status == JobStatus.PROCESSING
        assert ctx.store.get("abc").status == JobStatus.PROCESSING
        assert os.path.isdir(os.path.dirname(job.light_input_path))


class TestRecovery:

    def test_recover_stuck_marks_processing_jobs_failed(self, ctx, controller, make_job):
        make_job("pending")
        make_job("stuck")
        ctx.store.update_status("stuck", JobStatus.PROCESSING)

        assert controller.recover_stuck() == 1
        assert ctx.store.get("stuck").status == JobStatus.FAILED
        assert ctx.store.get("pending").status == JobStatus.PENDING

    def test_recover_stuck_removes_working_directory(self, ctx, controller, make_job):
        pending = make_job("pending")
        stuck = make_job("stuck")
        ctx.store.update_status("stuck", JobStatus.PROCESSING)

        controller.recover_stuck()

        assert not os.path.exists(os.path.dirname(stuck.light_input_path))
        assert os.path.isdir(os.path.dirname(pending.light_input_path))

    def test_recover_stuck_keeps_directory_when_configured(self, ctx, make_job):
        ctx.settings = replace(ctx.settings, keep_failed_workdirs=True)
        stuck = make_job("stuck")
        ctx.store.update_status("stuck", JobStatus.PROCESSING)

        JobLifecycleController(ctx).recover_stuck()

        assert os.path.isdir(os.path.dirname(stuck.light_input_path))


class TestRunLoop:

    def test_processes_queue_until_stopped(self, ctx, controller, fake_tools):
        job = submit_job(ctx, "a.png", b"light", "a_dark.png", b"dark")
        stop = threading.Event()
        original = ctx.queue.dequeue_blocking

        def dequeue(timeout=0):
            item = original(timeout)
            if item is None:
                stop.set()
            return item

        ctx.queue.dequeue_blocking = dequeue
        controller.run(stop)

        assert ctx.store.get(job.id).status == JobStatus.COMPLETED
        assert controller.processed_jobs == 1

    def test_queue_errors_back_off_and_retry(self, ctx, controller, fake_tools):
        job = submit_job(ctx, "a.png", b"light", "a_dark.png", b"dark")
        ctx.queue.failures = 2
        stop = threading.Event()
        original = ctx.queue.dequeue_blocking

        def dequeue(timeout=0):
            item = original(timeout)
            if item is None:
                stop.set()
            return item

        ctx.queue.dequeue_blocking = dequeue
        controller.run(stop)

        assert ctx.queue.dequeue_calls == 4
        assert ctx.store.get(job.id).status == JobStatus.COMPLETED

    def test_redis_server_error_backs_off_instead_of_exiting(self, ctx, controller):
        stop = threading.Event()
        calls = {"n": 0}

        def brpop(keys, timeout=0):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise redis.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
            stop.set()
            return None

        client = MagicMock()
        client.brpop.side_effect = brpop
        ctx.queue = JobQueue(client, "wallpaper_jobs")

        controller.run(stop)

        assert calls["n"] == 3

    def test_unexpected_error_fails_job_and_loop_continues(self, ctx, make_job):
        bad = make_job("bad")
        make_job("good")
        ctx.queue.enqueue("bad")
        ctx.queue.enqueue("good")

        class Exploding(Stage):
            name = "explode"

            def run(self, ws):
                if ws.job_id == "bad":
                    raise RuntimeError("unexpected")
                return StageResult.success(self.name, artifacts={"wallpaper": ws.light_path})

        controller = JobLifecycleController(ctx, stages=[Exploding()])
        stop = threading.Event()
        original = ctx.queue.dequeue_blocking

        def dequeue(timeout=0):
            item = original(timeout)
            if item is None:
                stop.set()
            return item

        ctx.queue.dequeue_blocking = dequeue
        controller.run(stop)

        assert ctx.store.get("bad").status == JobStatus.FAILED
        assert ctx.store.get("good").status == JobStatus.COMPLETED
        assert controller.failed_jobs == 1
        assert not os.path.exists(os.path.dirname(bad.light_input_path))

    def test_stop_event_set_before_run_exits_immediately(self, ctx, controller):
        stop = threading.Event()
        stop.set()

        controller.run(stop)

        assert ctx.queue.dequeue_calls == 0

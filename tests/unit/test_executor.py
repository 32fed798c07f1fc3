"""
Unit tests for the pipeline executor.

Covers the happy path, failures at every stage, source release and the
ordering between release and the terminal status.
"""

import asyncio
import time

import pytest
from prometheus_client import REGISTRY

from imagelift.core.exceptions import RenderError
from imagelift.modules.enhancement.models import Job, JobStatus
from imagelift.pipeline.executor import PipelineExecutor
from imagelift.pipeline.renderer import Renderer
from tests.fakes import FakeRenderer, MemoryStorage, RecordingJobStore

TIERS = [("4K", 3840), ("8K", 7680)]


async def submit(store, storage, source_bytes, tiers=TIERS) -> Job:
    source_ref = await storage.upload(source_bytes, "cat.png")
    job = Job.new(source_ref=source_ref, tiers=tiers, original_filename="cat.png")
    await store.create(job)
    return job


class SlowRenderer(Renderer):
    def __init__(self, seconds: float):
        self.seconds = seconds

    def render(self, source_bytes, target_width):
        time.sleep(self.seconds)
        return b"too late"


class ExplodingRenderer(Renderer):
    def render(self, source_bytes, target_width):
        raise MemoryError("cannot allocate")


class TestSuccessfulRun:
    async def test_two_stages_complete(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        renderer = FakeRenderer()
        executor = PipelineExecutor(store, storage, renderer)

        final = await executor.run(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert final.error is None
        assert renderer.calls == [3840, 7680]
        assert final.stages[0].result == f"output/{job.id}_4K.jpg"
        assert final.stages[1].result == f"output/{job.id}_8K.jpg"
        assert storage.files[final.stages[0].result] == b"rendered-3840"
        assert storage.files[final.stages[1].result] == b"rendered-7680"

    async def test_progress_sequence(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)

        await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        timeline = store.timeline(job.id)
        progress = [entry[2] for entry in timeline]
        assert progress == sorted(progress)
        assert sorted(set(progress)) == [0, 50, 100]
        assert ("RENDERING", 0, 0) in timeline
        assert ("RENDERING", 1, 50) in timeline
        assert timeline[-1] == ("COMPLETED", 1, 100)

    async def test_stage_starts_only_after_previous_result(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)

        await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        second_start = next(
            snapshot for snapshot in store.history
            if snapshot.status == JobStatus.RENDERING and snapshot.stage_index == 1
        )
        assert second_start.stages[0].result is not None

    async def test_source_released_once_before_completion(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)

        await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        assert storage.delete_calls == {job.source_ref: 1}
        assert job.source_ref not in storage.files
        # The terminal snapshot is the first one that is terminal, and it already has the release
        terminal = [snapshot for snapshot in store.history if snapshot.is_terminal]
        assert len(terminal) == 1
        assert terminal[0].source_released is True
        release_index = next(i for i, s in enumerate(store.history) if s.source_released)
        assert release_index < store.history.index(terminal[0])

    async def test_three_tiers(self, store, storage, source_bytes):
        tiers = [("2K", 1920), ("4K", 3840), ("8K", 7680)]
        job = await submit(store, storage, source_bytes, tiers=tiers)

        final = await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        assert final.status == JobStatus.COMPLETED
        assert sorted(set(entry[2] for entry in store.timeline(job.id))) == [0, 33, 67, 100]

    async def test_non_queued_job_is_left_alone(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        executor = PipelineExecutor(store, storage, FakeRenderer())
        await executor.run(job.id)
        history_length = len(store.history)

        again = await executor.run(job.id)

        assert again.status == JobStatus.COMPLETED
        assert len(store.history) == history_length
        assert storage.delete_calls[job.source_ref] == 1


class TestFailures:
    async def test_second_stage_failure(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        renderer = FakeRenderer(fail_widths={7680})

        final = await PipelineExecutor(store, storage, renderer).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "RENDER_ERROR"
        assert final.error.startswith("8K stage failed:")
        assert final.progress == 50
        assert final.stages[0].result is not None
        assert final.stages[1].result is None
        assert storage.delete_calls == {job.source_ref: 1}
        assert final.to_view().artifacts is None

    @pytest.mark.parametrize("fail_width", [3840, 7680])
    async def test_source_released_exactly_once_on_failure(self, store, storage, source_bytes, fail_width):
        job = await submit(store, storage, source_bytes)

        final = await PipelineExecutor(store, storage, FakeRenderer(fail_widths={fail_width})).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.source_released is True
        assert storage.delete_calls == {job.source_ref: 1}

    async def test_first_stage_failure_stops_pipeline(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        renderer = FakeRenderer(fail_widths={3840})

        final = await PipelineExecutor(store, storage, renderer).run(job.id)

        assert renderer.calls == [3840]
        assert final.progress == 0
        assert final.error.startswith("4K stage failed:")

    async def test_missing_source(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        del storage.files[job.source_ref]
        renderer = FakeRenderer()

        final = await PipelineExecutor(store, storage, renderer).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "SOURCE_UNAVAILABLE"
        assert renderer.calls == []
        assert storage.delete_calls == {job.source_ref: 1}

    async def test_empty_render_output(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)

        final = await PipelineExecutor(store, storage, FakeRenderer(empty=True)).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "RENDER_ERROR"

    async def test_unexpected_renderer_exception_is_wrapped(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)

        final = await PipelineExecutor(store, storage, ExplodingRenderer()).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "RENDER_ERROR"
        assert "MemoryError" in final.error

    async def test_render_timeout(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        executor = PipelineExecutor(store, storage, SlowRenderer(0.3), render_timeout=0.05)

        final = await executor.run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "TIMEOUT"
        assert storage.delete_calls == {job.source_ref: 1}
        assert f"output/{job.id}_4K.jpg" not in storage.files

    async def test_artifact_write_failure(self, store, source_bytes):
        storage = MemoryStorage(fail_save=True)
        job = await submit(store, storage, source_bytes)

        final = await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "STORAGE_ERROR"
        assert final.stages[0].result is None

    async def test_release_failure_does_not_block_completion(self, store, source_bytes):
        storage = MemoryStorage(fail_delete=True)
        job = await submit(store, storage, source_bytes)

        final = await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.source_released is True
        assert storage.delete_calls == {job.source_ref: 1}

    async def test_cancelled_run_still_releases_and_fails(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        executor = PipelineExecutor(store, storage, SlowRenderer(0.2))

        task = asyncio.create_task(executor.run(job.id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        final = await store.get(job.id)
        assert final.status == JobStatus.FAILED
        assert final.error_code == "CANCELLED"
        assert storage.delete_calls == {job.source_ref: 1}


class RacingJobStore(RecordingJobStore):
    """Fails the job from outside the executor right after its source is released."""

    async def update(self, job_id, mutation):
        job = await super().update(job_id, mutation)
        if job.source_released and not job.is_terminal:
            job = await super().update(job_id, lambda j: j.mark_failed("failed elsewhere", "INTERNAL_ERROR"))
        return job


def active_jobs() -> float:
    return REGISTRY.get_sample_value("imagelift_active_jobs") or 0.0


class TestActiveJobGauge:
    async def test_gauge_returns_to_baseline_after_run(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        before = active_jobs()

        await PipelineExecutor(store, storage, FakeRenderer(fail_widths={7680})).run(job.id)

        assert active_jobs() == before

    async def test_gauge_released_when_terminal_state_set_elsewhere(self, storage, source_bytes):
        store = RacingJobStore()
        job = await submit(store, storage, source_bytes)
        before = active_jobs()

        final = await PipelineExecutor(store, storage, FakeRenderer()).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error == "failed elsewhere"
        assert storage.delete_calls == {job.source_ref: 1}
        assert active_jobs() == before

    async def test_gauge_released_on_cancellation(self, store, storage, source_bytes):
        job = await submit(store, storage, source_bytes)
        before = active_jobs()

        task = asyncio.create_task(PipelineExecutor(store, storage, SlowRenderer(0.2)).run(job.id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert active_jobs() == before


class TestIsolation:
    async def test_one_failing_job_does_not_affect_another(self, store, storage, source_bytes):
        good = await submit(store, storage, source_bytes)
        bad = await submit(store, storage, b"")

        class PickyRenderer(FakeRenderer):
            def render(self, source_bytes, target_width):
                if not source_bytes:
                    raise RenderError("empty source")
                return super().render(source_bytes, target_width)

        executor = PipelineExecutor(store, storage, PickyRenderer())
        good_final, bad_final = await asyncio.gather(executor.run(good.id), executor.run(bad.id))

        assert good_final.status == JobStatus.COMPLETED
        assert bad_final.status == JobStatus.FAILED
        assert storage.delete_calls == {good.source_ref: 1, bad.source_ref: 1}

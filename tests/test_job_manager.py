"""Tests for JobManager: admission, state machine, worker pool and cleanup.

The resolver, encoder and publisher are in-process fakes (see conftest), so
these tests exercise orchestration only.
"""

import asyncio
import math
import os
from contextlib import asynccontextmanager

import pytest

from clipforge.exceptions import (
    DownloadError,
    EncodeError,
    EncodeTimeoutError,
    JobNotFoundError,
    PublishError,
    ValidationError,
)
from clipforge.models.job import ClipRef, JobStatus, MusicRef, OutputFormat, RenderRequest
from clipforge.render.job_manager import JobManager
from clipforge.services.job_store import InMemoryJobStore

CLIP_A = "https://cdn.example.com/a.mp4"
CLIP_B = "https://cdn.example.com/b.mp4"
MUSIC = "https://cdn.example.com/music.mp3"


class RecordingStore(InMemoryJobStore):
    """Remembers every status written per job."""

    def __init__(self):
        super().__init__(ttl_seconds=3600)
        self.history: dict[str, list[JobStatus]] = {}

    def set(self, job):
        self.history.setdefault(job.id, []).append(job.status)
        super().set(job)


def _request(*clips: ClipRef, duration: float = 6.0, music: MusicRef | None = None, fmt=OutputFormat.VERTICAL):
    if not clips:
        clips = (ClipRef(reference=CLIP_A, order=0),)
    return RenderRequest(clips=tuple(clips), format=fmt, duration=duration, music=music)


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def make_manager(store, fake_resolver, graph_builder, fake_runner, fake_publisher, work_dir):
    def factory(**overrides) -> JobManager:
        options = dict(
            max_concurrent_jobs=2,
            download_concurrency=4,
            work_dir=str(work_dir),
            max_duration_seconds=300,
            strict_reference_validation=True,
            error_detail_max_chars=500,
        )
        options.update(overrides)
        return JobManager(store, fake_resolver, graph_builder, fake_runner, fake_publisher, **options)

    return factory


@asynccontextmanager
async def running(manager: JobManager):
    await manager.start()
    try:
        yield manager
    finally:
        await manager.shutdown()


async def wait_until(manager: JobManager, job_id: str, predicate, timeout: float = 5.0):
    async def poll():
        while True:
            job = manager.get_job(job_id)
            if predicate(job):
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)


class TestCreateJob:
    """Submission is validated and returns without doing pipeline work."""

    @pytest.mark.asyncio
    async def test_returns_queued_job_immediately(self, make_manager, fake_resolver):
        async with running(make_manager()) as manager:
            job = manager.create_job(_request())

            assert job.status == JobStatus.QUEUED
            assert job.progress == 0
            assert manager.get_job(job.id).status == JobStatus.QUEUED
            assert fake_resolver.calls == []
            await manager.join()

    @pytest.mark.asyncio
    async def test_job_ids_are_unique(self, make_manager):
        async with running(make_manager()) as manager:
            ids = {manager.create_job(_request()).id for _ in range(20)}
            assert len(ids) == 20
            await manager.join()

    def test_not_started(self, make_manager):
        manager = make_manager()
        with pytest.raises(RuntimeError):
            manager.create_job(_request())

    @pytest.mark.parametrize(
        "request_kwargs, field",
        [
            ({"duration": 0}, "duration"),
            ({"duration": -3}, "duration"),
            ({"duration": math.nan}, "duration"),
            ({"duration": math.inf}, "duration"),
            ({"duration": 301}, "duration"),
        ],
    )
    def test_invalid_duration(self, make_manager, request_kwargs, field):
        manager = make_manager()
        with pytest.raises(ValidationError) as exc_info:
            manager.create_job(_request(**request_kwargs))
        assert exc_info.value.location.field == field

    def test_empty_clips(self, make_manager, store):
        manager = make_manager()
        with pytest.raises(ValidationError):
            manager.create_job(RenderRequest(clips=(), format=OutputFormat.VERTICAL, duration=6))
        assert len(store) == 0

    def test_end_before_start(self, make_manager):
        manager = make_manager()
        clip = ClipRef(reference=CLIP_A, order=0, start_time=5, end_time=2)
        with pytest.raises(ValidationError) as exc_info:
            manager.create_job(_request(clip))
        assert exc_info.value.location.field == "clips.end_time"
        assert exc_info.value.location.index == 0

    def test_negative_start(self, make_manager):
        manager = make_manager()
        with pytest.raises(ValidationError):
            manager.create_job(_request(ClipRef(reference=CLIP_A, order=0, start_time=-1)))

    def test_blank_reference(self, make_manager):
        manager = make_manager(strict_reference_validation=False)
        with pytest.raises(ValidationError):
            manager.create_job(_request(ClipRef(reference="  ", order=0)))

    def test_music_volume_out_of_range(self, make_manager):
        manager = make_manager()
        with pytest.raises(ValidationError):
            manager.create_job(_request(music=MusicRef(reference=MUSIC, volume=3.0)))

    @pytest.mark.asyncio
    async def test_blob_rejected_at_submission_in_strict_mode(self, make_manager, store):
        async with running(make_manager()) as manager:
            blob = ClipRef(reference="blob:http://localhost:5173/abc", order=1)
            with pytest.raises(ValidationError) as exc_info:
                manager.create_job(_request(ClipRef(reference=CLIP_A, order=0), blob))

            assert exc_info.value.location.index == 1
            assert len(store) == 0


class TestPipeline:
    """A job walks queued -> resolving -> building -> encoding -> publishing -> done."""

    @pytest.mark.asyncio
    async def test_successful_job(self, make_manager, store, fake_publisher, work_dir):
        async with running(make_manager()) as manager:
            job = manager.create_job(_request(duration=6))
            await manager.join()

            done = manager.get_job(job.id)
            assert store.history[job.id] == [
                JobStatus.QUEUED,
                JobStatus.RESOLVING,
                JobStatus.BUILDING,
                JobStatus.ENCODING,
                JobStatus.PUBLISHING,
                JobStatus.DONE,
            ]
            assert done.progress == 100
            assert done.output_url == "https://cdn.example.com/renders/1.mp4"
            assert done.output_size == 64
            assert done.output_duration_ms == 6000
            assert done.error_code is None
            assert done.started_at is not None
            assert done.completed_at is not None
            assert fake_publisher.published[0].endswith("output.mp4")
            # Working directory is removed once the job finishes
            assert not os.path.exists(work_dir / job.id)

    @pytest.mark.asyncio
    async def test_clips_concatenated_by_order(self, make_manager, fake_runner):
        async with running(make_manager()) as manager:
            manager.create_job(
                _request(
                    ClipRef(reference=CLIP_B, order=2),
                    ClipRef(reference=CLIP_A, order=1),
                )
            )
            await manager.join()

        graph = fake_runner.graphs[0]
        # clip_000 is B (submitted first), clip_001 is A
        assert [os.path.basename(i.path) for i in graph.inputs] == ["clip_001.mp4", "clip_000.mp4"]

    @pytest.mark.asyncio
    async def test_format_sets_canvas(self, make_manager, fake_runner):
        async with running(make_manager()) as manager:
            manager.create_job(_request(fmt=OutputFormat.HORIZONTAL))
            await manager.join()

        graph = fake_runner.graphs[0]
        assert (graph.width, graph.height) == (1920, 1080)

    @pytest.mark.asyncio
    async def test_music_becomes_audio_track(self, make_manager, fake_runner, fake_resolver):
        async with running(make_manager()) as manager:
            job = manager.create_job(_request(music=MusicRef(reference=MUSIC, volume=0.5)))
            await manager.join()

            assert manager.get_job(job.id).status == JobStatus.DONE

        assert MUSIC in fake_resolver.calls
        graph = fake_runner.graphs[0]
        assert graph.has_audio
        assert "volume=0.5" in graph.audio_chain

    @pytest.mark.asyncio
    async def test_get_unknown_job(self, make_manager):
        manager = make_manager()
        with pytest.raises(JobNotFoundError) as exc_info:
            manager.get_job("does-not-exist")
        assert exc_info.value.status_code == 404


class TestFailures:
    """Each stage failure ends the job in error with the stage's code."""

    @pytest.mark.asyncio
    async def test_download_failure(self, make_manager, fake_resolver, fake_runner, store, work_dir):
        fake_resolver.failures[CLIP_B] = DownloadError(CLIP_B, status=404)
        async with running(make_manager()) as manager:
            job = manager.create_job(_request(ClipRef(reference=CLIP_A, order=0), ClipRef(reference=CLIP_B, order=1)))
            await manager.join()

            failed = manager.get_job(job.id)
            assert failed.status == JobStatus.ERROR
            assert failed.error_code == "DOWNLOAD_FAILED"
            assert "404" in failed.error_detail
            assert failed.output_url is None
            assert store.history[job.id][-2] == JobStatus.RESOLVING
            assert fake_runner.graphs == []
            assert not os.path.exists(work_dir / job.id)

    @pytest.mark.asyncio
    async def test_blob_reaches_error_in_lenient_mode(self, make_manager, fake_runner):
        manager = make_manager(strict_reference_validation=False)
        async with running(manager):
            job = manager.create_job(_request(ClipRef(reference="blob:http://localhost/abc", order=0)))
            await manager.join()

            failed = manager.get_job(job.id)
            assert failed.status == JobStatus.ERROR
            assert failed.error_code == "INVALID_REFERENCE"
            assert fake_runner.graphs == []

    @pytest.mark.asyncio
    async def test_first_download_failure_cancels_the_rest(self, make_manager, fake_resolver):
        fake_resolver.failures[CLIP_A] = DownloadError(CLIP_A, reason="connection reset")
        fake_resolver.delays[CLIP_B] = 30
        async with running(make_manager()) as manager:
            job = manager.create_job(_request(ClipRef(reference=CLIP_A, order=0), ClipRef(reference=CLIP_B, order=1)))
            await asyncio.wait_for(manager.join(), timeout=5)

            assert manager.get_job(job.id).error_code == "DOWNLOAD_FAILED"

    @pytest.mark.asyncio
    async def test_encode_failure(self, make_manager, fake_runner, fake_publisher):
        fake_runner.error = EncodeError(exit_code=1, diagnostic_tail="moov atom not found")
        async with running(make_manager()) as manager:
            job = manager.create_job(_request())
            await manager.join()

            failed = manager.get_job(job.id)
            assert failed.error_code == "ENCODE_FAILED"
            assert "moov atom not found" in failed.error_detail
            assert fake_publisher.published == []

    @pytest.mark.asyncio
    async def test_encode_timeout(self, make_manager, fake_runner):
        fake_runner.error = EncodeTimeoutError(900)
        async with running(make_manager()) as manager:
            job = manager.create_job(_request())
            await manager.join()

            assert manager.get_job(job.id).error_code == "ENCODE_TIMEOUT"

    @pytest.mark.asyncio
    async def test_publish_failure(self, make_manager, fake_publisher):
        fake_publisher.error = PublishError("Upload failed: 503")
        async with running(make_manager()) as manager:
            job = manager.create_job(_request())
            await manager.join()

            failed = manager.get_job(job.id)
            assert failed.error_code == "PUBLISH_FAILED"
            assert failed.output_url is None

    @pytest.mark.asyncio
    async def test_error_detail_is_truncated(self, make_manager, fake_runner):
        fake_runner.error = EncodeError(exit_code=1, diagnostic_tail="x" * 5000)
        async with running(make_manager(error_detail_max_chars=100)) as manager:
            job = manager.create_job(_request())
            await manager.join()

            detail = manager.get_job(job.id).error_detail
            assert len(detail) == 100
            assert detail.endswith("...")

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_workers(self, make_manager, fake_resolver):
        fake_resolver.failures[CLIP_B] = DownloadError(CLIP_B, status=500)
        async with running(make_manager(max_concurrent_jobs=1)) as manager:
            bad = manager.create_job(_request(ClipRef(reference=CLIP_B, order=0)))
            good = manager.create_job(_request(ClipRef(reference=CLIP_A, order=0)))
            await manager.join()

            assert manager.get_job(bad.id).status == JobStatus.ERROR
            assert manager.get_job(good.id).status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_shutdown_fails_in_flight_job(self, make_manager, fake_runner, work_dir):
        fake_runner.delay = 30
        manager = make_manager()
        await manager.start()
        job = manager.create_job(_request())
        await wait_until(manager, job.id, lambda j: j.status == JobStatus.ENCODING)

        await manager.shutdown()

        failed = manager.get_job(job.id)
        assert failed.status == JobStatus.ERROR
        assert failed.error_code == "INTERNAL_ERROR"
        assert not os.path.exists(work_dir / job.id)

    @pytest.mark.asyncio
    async def test_shutdown_fails_queued_jobs(self, make_manager, store, fake_runner):
        fake_runner.delay = 30
        manager = make_manager(max_concurrent_jobs=1)
        await manager.start()
        running_job = manager.create_job(_request())
        waiting_job = manager.create_job(_request())
        await wait_until(manager, running_job.id, lambda j: j.status == JobStatus.ENCODING)

        await manager.shutdown()

        for job_id in (running_job.id, waiting_job.id):
            failed = manager.get_job(job_id)
            assert failed.status == JobStatus.ERROR
            assert failed.error_code == "INTERNAL_ERROR"
            assert failed.completed_at is not None
        assert store.history[waiting_job.id] == [JobStatus.QUEUED, JobStatus.ERROR]


class TestConcurrency:
    """Jobs run independently within the worker pool bounds."""

    @pytest.mark.asyncio
    async def test_slow_job_does_not_block_fast_job(self, make_manager, fake_resolver):
        slow_ref = "https://slow.example.com/a.mp4"
        fake_resolver.delays[slow_ref] = 2.0
        async with running(make_manager(max_concurrent_jobs=2)) as manager:
            slow = manager.create_job(_request(ClipRef(reference=slow_ref, order=0)))
            fast = manager.create_job(_request(ClipRef(reference=CLIP_A, order=0)))

            await wait_until(manager, fast.id, lambda j: j.is_terminal)

            assert manager.get_job(fast.id).status == JobStatus.DONE
            assert manager.get_job(slow.id).status == JobStatus.RESOLVING
            await manager.join()

    @pytest.mark.asyncio
    async def test_encoder_concurrency_is_bounded(self, make_manager, fake_runner):
        fake_runner.delay = 0.1
        async with running(make_manager(max_concurrent_jobs=2)) as manager:
            jobs = [manager.create_job(_request()) for _ in range(5)]
            await manager.join()

            assert all(manager.get_job(j.id).status == JobStatus.DONE for j in jobs)
        assert fake_runner.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_download_concurrency_is_bounded(self, make_manager, fake_resolver):
        clips = [ClipRef(reference=f"https://cdn.example.com/{i}.mp4", order=i) for i in range(6)]
        for clip in clips:
            fake_resolver.delays[clip.reference] = 0.05
        async with running(make_manager(download_concurrency=2)) as manager:
            job = manager.create_job(_request(*clips))
            await manager.join()

            assert manager.get_job(job.id).status == JobStatus.DONE
        assert fake_resolver.max_in_flight == 2

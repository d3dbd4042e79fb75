"""
Render job orchestration.

Each job runs as one sequential pipeline inside a worker task:

    queued -> resolving -> building -> encoding -> publishing -> done

Any stage failure moves the job to ``error`` with the exception's error code;
nothing is retried. A fixed pool of worker tasks consumes a single queue, so
no more than ``max_concurrent_jobs`` encoder processes ever run at once.

Job records are frozen snapshots held in an injected JobStore. Only the
worker running a job writes its record, and every write replaces the whole
value, so pollers always read a consistent state.
"""

import asyncio
import logging
import math
import os
import shutil
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from clipforge.config import get_settings
from clipforge.exceptions import (
    ClipForgeError,
    InvalidReferenceError,
    InvalidTransitionError,
    JobNotFoundError,
    ValidationError,
)
from clipforge.models.job import (
    STATUS_PROGRESS,
    Job,
    JobStatus,
    RenderRequest,
    can_transition,
)
from clipforge.render.asset_resolver import AssetResolver
from clipforge.render.encode_runner import EncodeRunner
from clipforge.render.filter_graph import ClipInput, FilterGraphBuilder, MusicInput
from clipforge.render.publisher import Publisher
from clipforge.services.job_store import InMemoryJobStore, JobStore

logger = logging.getLogger(__name__)

settings = get_settings()

OUTPUT_FILENAME = "output.mp4"
OUTPUT_CONTENT_TYPE = "video/mp4"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobManager:
    """Owns render jobs: admission, state transitions, and the worker pool."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        resolver: Optional[AssetResolver] = None,
        builder: Optional[FilterGraphBuilder] = None,
        runner: Optional[EncodeRunner] = None,
        publisher: Optional[Publisher] = None,
        *,
        max_concurrent_jobs: Optional[int] = None,
        download_concurrency: Optional[int] = None,
        work_dir: Optional[str] = None,
        max_duration_seconds: Optional[float] = None,
        strict_reference_validation: Optional[bool] = None,
        error_detail_max_chars: Optional[int] = None,
    ):
        self.store = store if store is not None else InMemoryJobStore(ttl_seconds=settings.job_ttl_seconds)
        self.resolver = resolver or AssetResolver()
        self.builder = builder or FilterGraphBuilder()
        self.runner = runner or EncodeRunner()
        self.publisher = publisher or Publisher()

        self.max_concurrent_jobs = max_concurrent_jobs or settings.render_max_concurrent_jobs
        self.download_concurrency = download_concurrency or settings.download_max_concurrency
        self.work_dir = work_dir or settings.render_work_dir
        self.max_duration_seconds = max_duration_seconds or settings.render_max_duration_seconds
        self.strict_reference_validation = (
            settings.strict_reference_validation
            if strict_reference_validation is None
            else strict_reference_validation
        )
        self.error_detail_max_chars = error_detail_max_chars or settings.error_detail_max_chars

        self._queue: Optional[asyncio.Queue[str]] = None
        self._workers: list[asyncio.Task] = []

    # ========================================================================
    # Worker pool lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Spawn the worker tasks on the running event loop."""
        if self._workers:
            return
        os.makedirs(self.work_dir, exist_ok=True)
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(idx), name=f"render-worker-{idx}")
            for idx in range(self.max_concurrent_jobs)
        ]
        logger.info(f"[JOB] Started {self.max_concurrent_jobs} render workers")

    async def shutdown(self) -> None:
        """Stop the workers. Jobs interrupted mid-pipeline or still queued end in ``error``."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        if self._queue is not None:
            while not self._queue.empty():
                job_id = self._queue.get_nowait()
                job = self.store.get(job_id)
                if job is not None:
                    self._fail(job, "INTERNAL_ERROR", "Render interrupted by server shutdown")
                self._queue.task_done()
        logger.info("[JOB] Render workers stopped")

    async def join(self) -> None:
        """Wait until every submitted job has reached a terminal state."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, idx: int) -> None:
        assert self._queue is not None
        while True:
            job_id = await self._queue.get()
            try:
                await self.process_job(job_id)
            except Exception:
                logger.exception(f"[JOB] Worker {idx} crashed while processing {job_id}")
            finally:
                self._queue.task_done()

    # ========================================================================
    # Public operations
    # ========================================================================

    def create_job(self, request: RenderRequest) -> Job:
        """Validate ``request``, record a queued job and hand it to the workers.

        Returns immediately; no pipeline work happens here.

        Raises:
            ValidationError: request is malformed
            RuntimeError: the worker pool has not been started
        """
        self._validate(request)
        if self._queue is None or not self._workers:
            raise RuntimeError("JobManager is not started")

        job = Job(
            id=uuid4().hex,
            clips=tuple(request.clips),
            format=request.format,
            duration=float(request.duration),
            music=request.music,
        )
        self.store.set(job)
        self._queue.put_nowait(job.id)
        logger.info(
            f"[JOB] Queued {job.id}: {len(job.clips)} clips, format={job.format.value}, "
            f"duration={job.duration:g}s, music={'yes' if job.music else 'no'}"
        )
        return job

    def get_job(self, job_id: str) -> Job:
        """Return the current snapshot of a job.

        Raises:
            JobNotFoundError: unknown or expired job id
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ========================================================================
    # Validation
    # ========================================================================

    def _validate(self, request: RenderRequest) -> None:
        if not request.clips:
            raise ValidationError("At least one clip is required", field="clips")

        duration = request.duration
        if not isinstance(duration, (int, float)) or not math.isfinite(duration) or duration <= 0:
            raise ValidationError(f"Duration must be a positive number of seconds, got {duration!r}", field="duration")
        if duration > self.max_duration_seconds:
            raise ValidationError(
                f"Duration {duration:g}s exceeds maximum {self.max_duration_seconds:g}s",
                field="duration",
            )

        for idx, clip in enumerate(request.clips):
            self._validate_reference(clip.reference, field="clips.reference", index=idx)
            start = clip.start_time or 0.0
            if start < 0:
                raise ValidationError(f"Clip {idx}: start_time must not be negative", field="clips.start_time", index=idx)
            if clip.end_time is not None and clip.end_time <= start:
                raise ValidationError(
                    f"Clip {idx}: end_time ({clip.end_time:g}) must be after start_time ({start:g})",
                    field="clips.end_time",
                    index=idx,
                )

        if request.music is not None:
            self._validate_reference(request.music.reference, field="music.reference")
            if not 0.0 <= request.music.volume <= 2.0:
                raise ValidationError("Music volume must be between 0.0 and 2.0", field="music.volume")

    def _validate_reference(self, reference: str, *, field: str, index: Optional[int] = None) -> None:
        if not reference or not reference.strip():
            raise ValidationError("Asset reference must not be empty", field=field, index=index)
        if not self.strict_reference_validation:
            return
        try:
            self.resolver.check_reference(reference)
        except InvalidReferenceError as e:
            raise ValidationError(e.message, field=field, index=index) from e

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def process_job(self, job_id: str) -> None:
        """Drive one job from ``queued`` to a terminal state."""
        job = self.store.get(job_id)
        if job is None:
            logger.warning(f"[JOB] {job_id} disappeared before processing")
            return
        job_dir = os.path.join(self.work_dir, job_id)

        try:
            job = self._transition(job, JobStatus.RESOLVING, started_at=_utcnow())
            clips, music = await self._resolve_assets(job, job_dir)

            job = self._transition(job, JobStatus.BUILDING)
            width, height = job.format.canvas_size
            graph = self.builder.build(clips, music, width, height)

            job = self._transition(job, JobStatus.ENCODING)
            result = await self.runner.run(graph, os.path.join(job_dir, OUTPUT_FILENAME), job.duration)

            job = self._transition(job, JobStatus.PUBLISHING)
            url = await self.publisher.publish(result.path, OUTPUT_CONTENT_TYPE)

            job = self._transition(
                job,
                JobStatus.DONE,
                output_url=url,
                output_size=result.size,
                output_duration_ms=result.duration_ms,
                completed_at=_utcnow(),
            )
        except ClipForgeError as e:
            logger.warning(f"[JOB] {job_id} failed in {job.status.value}: {e.code} {e.message}")
            self._fail(job, e.code, e.message)
        except asyncio.CancelledError:
            self._fail(job, "INTERNAL_ERROR", "Render interrupted by server shutdown")
            raise
        except Exception as e:
            logger.exception(f"[JOB] {job_id} crashed in {job.status.value}")
            self._fail(job, "INTERNAL_ERROR", f"{type(e).__name__}: {e}")
        finally:
            await asyncio.to_thread(self._cleanup_work_dir, job_dir)

    async def _resolve_assets(
        self, job: Job, job_dir: str
    ) -> tuple[list[ClipInput], Optional[MusicInput]]:
        """Resolve every clip and the music concurrently; the first failure cancels the rest."""
        semaphore = asyncio.Semaphore(self.download_concurrency)

        async def fetch(reference: str, name: str):
            async with semaphore:
                return await self.resolver.resolve(reference, job_dir, job.id, name)

        tasks = [
            asyncio.create_task(fetch(clip.reference, f"clip_{idx:03d}"))
            for idx, clip in enumerate(job.clips)
        ]
        if job.music is not None:
            tasks.append(asyncio.create_task(fetch(job.music.reference, "music")))

        try:
            assets = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        clips = [
            ClipInput(path=asset.path, order=clip.order, start_time=clip.start_time, end_time=clip.end_time)
            for clip, asset in zip(job.clips, assets)
        ]
        music = None
        if job.music is not None:
            music = MusicInput(path=assets[-1].path, volume=job.music.volume)
        return clips, music

    def _transition(self, job: Job, target: JobStatus, **fields) -> Job:
        if not can_transition(job.status, target):
            raise InvalidTransitionError(job.id, job.status.value, target.value)
        updated = replace(job, status=target, progress=STATUS_PROGRESS.get(target, job.progress), **fields)
        self.store.set(updated)
        logger.info(f"[JOB] {job.id}: {job.status.value} -> {target.value}")
        return updated

    def _fail(self, job: Job, code: str, detail: str) -> None:
        if job.is_terminal:
            logger.error(f"[JOB] {job.id} already {job.status.value}; dropping error {code}")
            return
        limit = self.error_detail_max_chars
        if len(detail) > limit:
            detail = detail[: limit - 3] + "..."
        failed = replace(
            job,
            status=JobStatus.ERROR,
            error_code=code,
            error_detail=detail,
            completed_at=_utcnow(),
        )
        self.store.set(failed)
        logger.info(f"[JOB] {job.id}: {job.status.value} -> error ({code})")

    @staticmethod
    def _cleanup_work_dir(job_dir: str) -> None:
        """Remove a job's working directory. Failure is logged, never raised."""
        if not os.path.exists(job_dir):
            return
        try:
            shutil.rmtree(job_dir)
        except OSError as e:
            logger.warning(f"[JOB] Could not remove work dir {job_dir}: {e}")

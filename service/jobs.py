"""Isolated render jobs: staging, timeouts, cleanup and status tracking."""

from __future__ import annotations

from concurrent import futures
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from typing import Callable

from domain.short_video import (
    EMPTY_OUTPUT_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    JOB_TIMEOUT_CODE,
    ClipRef,
    EncodingError,
    RenderConfig,
    RenderMode,
    RenderPipelineError,
    RenderRequest,
    RenderTimeoutError,
    RenderValidationError,
)
from service.render_driver import (
    ProgressCallback,
    RenderControl,
    RenderResult,
    render_request,
    validate_render_inputs,
)

LOGGER = logging.getLogger("short_video.jobs")

JOB_DIR_PREFIX = "short_video_"
# Grace period for a cancelled worker to tear down players and the encoder.
CANCEL_GRACE_SECONDS = 30.0
QUEUE_POLL_SECONDS = 0.1

Renderer = Callable[..., RenderResult]


class JobStatus(str, Enum):
    """Lifecycle states for render jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RenderJob:
    """State snapshot for a render job."""

    job_id: str
    status: JobStatus
    message: str | None
    output_path: str | None
    progress: float

    def __post_init__(self) -> None:
        if self.progress < 0.0 or self.progress > 1.0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                f"progress must be between 0 and 1: {self.progress}",
            )


@dataclass
class RenderJobStore:
    """Thread-safe store of job snapshots."""

    jobs: dict[str, RenderJob] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def create_job(self, output_path: str | None = None) -> RenderJob:
        job = RenderJob(uuid.uuid4().hex, JobStatus.QUEUED, None, output_path, 0.0)
        with self.lock:
            self.jobs[job.job_id] = job
        return job

    def get_job(self, job_id: str) -> RenderJob | None:
        with self.lock:
            return self.jobs.get(job_id)

    def update_job(
        self,
        job_id: str,
        status: JobStatus,
        message: str | None = None,
        progress: float | None = None,
    ) -> RenderJob:
        with self.lock:
            current = self.jobs.get(job_id)
            progress_value = progress
            if progress_value is None:
                progress_value = current.progress if current else 0.0
            output_path = current.output_path if current else None
            job = RenderJob(job_id, status, message, output_path, progress_value)
            self.jobs[job_id] = job
        return job


def validate_output_path(output_path: str) -> None:
    if not output_path.lower().endswith(".mp4"):
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "output_video_file must end with .mp4"
        )
    parent = os.path.dirname(os.path.abspath(output_path))
    if not os.path.isdir(parent):
        raise RenderValidationError(
            INPUT_FILE_CODE, f"output directory does not exist: {parent}"
        )


def validate_input_files(request: RenderRequest) -> None:
    """Every required input must exist before a job directory is created."""
    for index, clip in enumerate(request.clips):
        if not os.path.isfile(clip.path):
            raise RenderValidationError(
                INPUT_FILE_CODE, f"clip {index} not found: {clip.path}"
            )
    if request.narration is not None and not os.path.isfile(request.narration.path):
        raise RenderValidationError(
            INPUT_FILE_CODE, f"narration audio not found: {request.narration.path}"
        )


def stage_inputs(request: RenderRequest, job_dir: str) -> RenderRequest:
    """Copy inputs into the job directory and point the request at the copies."""
    clips = []
    for index, clip in enumerate(request.clips):
        extension = os.path.splitext(clip.path)[1]
        staged_path = os.path.join(job_dir, f"clip_{index}{extension}")
        shutil.copyfile(clip.path, staged_path)
        clips.append(ClipRef(staged_path, clip.trim_start_seconds))

    cta_image_path = request.cta_image_path
    if cta_image_path is not None and os.path.isfile(cta_image_path):
        staged_path = os.path.join(job_dir, "cta" + os.path.splitext(cta_image_path)[1])
        shutil.copyfile(cta_image_path, staged_path)
        cta_image_path = staged_path

    narration = request.narration
    if narration is not None:
        staged_path = os.path.join(
            job_dir, "narration" + os.path.splitext(narration.path)[1]
        )
        shutil.copyfile(narration.path, staged_path)
        narration = replace(narration, path=staged_path)

    return replace(
        request,
        clips=tuple(clips),
        cta_image_path=cta_image_path,
        narration=narration,
    )


def run_render_job(
    request: RenderRequest,
    config: RenderConfig,
    output_path: str,
    mode: RenderMode | None = None,
    progress: ProgressCallback | None = None,
    control: RenderControl | None = None,
    renderer: Renderer = render_request,
) -> RenderResult:
    """Render one request in its own temporary directory.

    Validation happens before the directory exists; the directory and
    everything staged in it is removed on every exit path. The job's time
    budget starts here unless ``control`` already carries a deadline.
    """
    validate_output_path(output_path)
    validate_input_files(request)
    validate_render_inputs(request, config)

    control = control or RenderControl()
    if control.deadline is None:
        control.deadline = time.monotonic() + config.job_timeout_seconds
    job_dir = tempfile.mkdtemp(prefix=JOB_DIR_PREFIX)
    LOGGER.info("short_video.jobs.started dir=%s", job_dir)
    try:
        staged = stage_inputs(request, job_dir)
        work_output = os.path.join(job_dir, "output.mp4")
        result = renderer(
            staged,
            config,
            job_dir,
            work_output,
            mode=mode,
            control=control,
            progress=progress,
        )
        if not os.path.isfile(work_output) or os.path.getsize(work_output) == 0:
            raise EncodingError(EMPTY_OUTPUT_CODE, "encoder produced no output")
        shutil.move(work_output, output_path)
        return replace(result, output_path=output_path)
    finally:
        if config.keep_temp:
            LOGGER.info("short_video.jobs.kept_temp dir=%s", job_dir)
        else:
            shutil.rmtree(job_dir, ignore_errors=True)


class RenderJobRunner:
    """Runs independent render jobs concurrently with a hard timeout each."""

    def __init__(
        self,
        config: RenderConfig,
        store: RenderJobStore | None = None,
        max_workers: int = 2,
        renderer: Renderer = render_request,
    ) -> None:
        self.config = config
        self.store = store or RenderJobStore()
        self.renderer = renderer
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="render-job"
        )

    def __enter__(self) -> "RenderJobRunner":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def run(
        self,
        request: RenderRequest,
        output_path: str,
        mode: RenderMode | None = None,
    ) -> RenderResult:
        """Run a job to completion, raising its terminal error on failure.

        The timeout counts from the moment a worker picks the job up, so time
        spent queued behind other jobs does not eat into its budget.
        """
        job = self.store.create_job(output_path)
        control = RenderControl()
        started = threading.Event()

        def report(progress: float) -> None:
            self.store.update_job(job.job_id, JobStatus.RUNNING, progress=progress)

        def task() -> RenderResult:
            control.deadline = time.monotonic() + self.config.job_timeout_seconds
            started.set()
            self.store.update_job(job.job_id, JobStatus.RUNNING, progress=0.0)
            return run_render_job(
                request,
                self.config,
                output_path,
                mode=mode,
                progress=report,
                control=control,
                renderer=self.renderer,
            )

        future = self._executor.submit(task)
        while not started.wait(QUEUE_POLL_SECONDS):
            if future.done():
                break
        try:
            result = future.result(timeout=self.config.job_timeout_seconds)
        except (RenderValidationError, RenderPipelineError) as exc:
            self.store.update_job(job.job_id, JobStatus.FAILED, f"{exc.code}: {exc}")
            raise
        except futures.TimeoutError as exc:
            control.cancel()
            self._await_teardown(future)
            error = RenderTimeoutError(
                JOB_TIMEOUT_CODE,
                f"render exceeded {self.config.job_timeout_seconds:.0f}s",
            )
            self.store.update_job(job.job_id, JobStatus.FAILED, f"{error.code}: {error}")
            raise error from exc
        except Exception as exc:
            self.store.update_job(job.job_id, JobStatus.FAILED, str(exc).strip())
            raise

        self.store.update_job(job.job_id, JobStatus.COMPLETED, progress=1.0)
        LOGGER.info(
            "short_video.jobs.completed job=%s frames=%d output=%s",
            job.job_id,
            result.total_frames,
            result.output_path,
        )
        return result

    def _await_teardown(self, future: futures.Future[RenderResult]) -> None:
        try:
            future.result(timeout=CANCEL_GRACE_SECONDS)
        except (RenderTimeoutError, futures.TimeoutError):
            return
        except (RenderValidationError, RenderPipelineError) as exc:
            LOGGER.warning("%s: %s", exc.code, str(exc).strip())

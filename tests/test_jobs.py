"""Tests for render job isolation, cleanup and timeouts."""

from __future__ import annotations

import functools
import os
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path

from PIL import Image
import pytest

from domain.short_video import (
    EMPTY_OUTPUT_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    JOB_TIMEOUT_CODE,
    NARRATION_ALIGNMENT_CODE,
    RENDER_CANCELLED_CODE,
    ClipRef,
    EncodingError,
    NarrationTrack,
    RenderConfig,
    RenderMode,
    RenderRequest,
    RenderTimeoutError,
    RenderValidationError,
    TemplateKind,
    TemplateLabels,
)
from service.encoder import FrameEncoder
from service.jobs import JobStatus, RenderJobRunner, RenderJobStore, run_render_job
from service.media import ClipState, MediaHandle, MediaInfo
from service.render_driver import RenderResult, render_request


@pytest.fixture()
def scratch_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Route job directories into a directory the test can inspect."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


def write_clips(directory: Path, count: int) -> tuple[ClipRef, ...]:
    clips = []
    for index in range(count):
        clip_path = directory / f"source_{index}.mp4"
        clip_path.write_bytes(b"clip")
        clips.append(ClipRef(str(clip_path)))
    return tuple(clips)


def grid_request(directory: Path) -> RenderRequest:
    return RenderRequest(TemplateKind.GRID4, write_clips(directory, 4), TemplateLabels())


class FakeRenderer:
    """Writes a fixed payload to the work output and records its inputs."""

    def __init__(self, payload: bytes = b"video", delay: float = 0.0) -> None:
        self.payload = payload
        self.delay = delay
        self.calls: list[tuple[RenderRequest, str, str]] = []

    def __call__(
        self, request, config, work_dir, output_path, mode=None, control=None, progress=None
    ):
        self.calls.append((request, work_dir, output_path))
        if progress is not None:
            progress(0.5)
        time.sleep(self.delay)
        Path(output_path).write_bytes(self.payload)
        return RenderResult(output_path, mode or RenderMode.OFFLINE, 1, (), (), ())


def test_run_render_job_moves_output_and_cleans_up(tmp_path: Path, scratch_dir: Path) -> None:
    renderer = FakeRenderer()
    output_path = tmp_path / "final.mp4"
    result = run_render_job(
        grid_request(tmp_path), RenderConfig(), str(output_path), renderer=renderer
    )

    assert result.output_path == str(output_path)
    assert output_path.read_bytes() == b"video"
    staged_request, work_dir, _ = renderer.calls[0]
    assert all(clip.path.startswith(work_dir) for clip in staged_request.clips)
    assert os.listdir(scratch_dir) == []


def test_validation_failure_creates_no_job_dir(tmp_path: Path, scratch_dir: Path) -> None:
    request = grid_request(tmp_path)
    os.remove(request.clips[2].path)
    renderer = FakeRenderer()
    with pytest.raises(RenderValidationError) as exc_info:
        run_render_job(request, RenderConfig(), str(tmp_path / "final.mp4"), renderer=renderer)
    assert exc_info.value.code == INPUT_FILE_CODE
    assert renderer.calls == []
    assert os.listdir(scratch_dir) == []


def test_output_path_must_be_mp4(tmp_path: Path, scratch_dir: Path) -> None:
    with pytest.raises(RenderValidationError) as exc_info:
        run_render_job(
            grid_request(tmp_path),
            RenderConfig(),
            str(tmp_path / "final.mov"),
            renderer=FakeRenderer(),
        )
    assert exc_info.value.code == INVALID_CONFIG_CODE


def test_misaligned_narration_rejected_before_render(tmp_path: Path, scratch_dir: Path) -> None:
    narration_path = tmp_path / "voice.wav"
    narration_path.write_bytes(b"audio")
    request = RenderRequest(
        TemplateKind.NEWS_SEQUENCE,
        write_clips(tmp_path, 5),
        TemplateLabels(countries=("Chile",), date="today", tickers=("a", "b", "c")),
        narration=NarrationTrack(str(narration_path), 30.0, (0.0, 11.3, 20.7)),
    )
    with pytest.raises(RenderValidationError) as exc_info:
        run_render_job(
            request, RenderConfig(), str(tmp_path / "final.mp4"), renderer=FakeRenderer()
        )
    assert exc_info.value.code == NARRATION_ALIGNMENT_CODE
    assert os.listdir(scratch_dir) == []


def test_empty_output_is_an_error(tmp_path: Path, scratch_dir: Path) -> None:
    with pytest.raises(EncodingError) as exc_info:
        run_render_job(
            grid_request(tmp_path),
            RenderConfig(),
            str(tmp_path / "final.mp4"),
            renderer=FakeRenderer(payload=b""),
        )
    assert exc_info.value.code == EMPTY_OUTPUT_CODE
    assert not (tmp_path / "final.mp4").exists()
    assert os.listdir(scratch_dir) == []


def test_keep_temp_preserves_job_dir(tmp_path: Path, scratch_dir: Path) -> None:
    run_render_job(
        grid_request(tmp_path),
        RenderConfig(keep_temp=True),
        str(tmp_path / "final.mp4"),
        renderer=FakeRenderer(),
    )
    kept = os.listdir(scratch_dir)
    assert len(kept) == 1
    assert kept[0].startswith("short_video_")


def test_runner_marks_completed_job(tmp_path: Path, scratch_dir: Path) -> None:
    store = RenderJobStore()
    with RenderJobRunner(RenderConfig(), store=store, renderer=FakeRenderer()) as runner:
        runner.run(grid_request(tmp_path), str(tmp_path / "final.mp4"))
    jobs = list(store.jobs.values())
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.COMPLETED
    assert jobs[0].progress == 1.0


def test_runner_marks_failed_job(tmp_path: Path, scratch_dir: Path) -> None:
    store = RenderJobStore()
    request = grid_request(tmp_path)
    os.remove(request.clips[0].path)
    with RenderJobRunner(RenderConfig(), store=store, renderer=FakeRenderer()) as runner:
        with pytest.raises(RenderValidationError):
            runner.run(request, str(tmp_path / "final.mp4"))
    job = list(store.jobs.values())[0]
    assert job.status == JobStatus.FAILED
    assert INPUT_FILE_CODE in job.message


def test_runner_times_out_and_cancels_worker(tmp_path: Path, scratch_dir: Path) -> None:
    cancelled: list[bool] = []

    def slow_renderer(
        request, config, work_dir, output_path, mode=None, control=None, progress=None
    ):
        cancelled.append(control.cancel_event.wait(timeout=10))
        raise RenderTimeoutError(RENDER_CANCELLED_CODE, "render cancelled")

    store = RenderJobStore()
    config = RenderConfig(job_timeout_seconds=0.2)
    with RenderJobRunner(config, store=store, renderer=slow_renderer) as runner:
        with pytest.raises(RenderTimeoutError) as exc_info:
            runner.run(grid_request(tmp_path), str(tmp_path / "final.mp4"))

    assert exc_info.value.code == JOB_TIMEOUT_CODE
    assert cancelled == [True]
    assert list(store.jobs.values())[0].status == JobStatus.FAILED
    assert os.listdir(scratch_dir) == []


def test_store_rejects_out_of_range_progress() -> None:
    store = RenderJobStore()
    job = store.create_job()
    with pytest.raises(RenderValidationError):
        store.update_job(job.job_id, JobStatus.RUNNING, progress=1.5)


def test_queue_time_does_not_count_against_the_budget(
    tmp_path: Path, scratch_dir: Path
) -> None:
    store = RenderJobStore()
    renderer = FakeRenderer(delay=1.0)
    config = RenderConfig(job_timeout_seconds=1.6)
    errors: list[Exception] = []

    def submit(name: str) -> None:
        try:
            runner.run(grid_request(tmp_path), str(tmp_path / f"{name}.mp4"))
        except Exception as exc:
            errors.append(exc)

    with RenderJobRunner(config, store=store, max_workers=1, renderer=renderer) as runner:
        threads = [threading.Thread(target=submit, args=(name,)) for name in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert errors == []
    assert [job.status for job in store.jobs.values()] == [JobStatus.COMPLETED] * 2


class IdlePlayer:
    """Clip source that always returns the same small frame."""

    def __init__(self, handle: MediaHandle, config: RenderConfig) -> None:
        self.handle = handle
        self.state = ClipState.READY
        self.muted = True
        self.image = Image.new("RGB", (16, 16), (90, 0, 0))

    @property
    def last_frame(self) -> Image.Image:
        return self.image

    def open(self) -> None:
        pass

    def frame_at(self, local_seconds: float) -> Image.Image:
        return self.image

    def current_frame(self, clock_seconds: float) -> Image.Image:
        return self.image

    def play(self, local_seconds: float, clock_seconds: float) -> None:
        self.state = ClipState.PLAYING

    def pause(self) -> None:
        self.state = ClipState.PAUSED

    def mute(self) -> None:
        self.muted = True

    def unmute(self) -> None:
        self.muted = False

    def close(self) -> None:
        self.state = ClipState.UNLOADED

    def kill(self) -> None:
        pass


def test_timeout_kills_an_encoder_that_stopped_reading(
    tmp_path: Path, scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "service.render_driver.load_clip",
        lambda clip, clip_index, config: MediaHandle(
            clip.path, clip_index, 0.0, MediaInfo(4.0, 16, 16, True, False), (16, 16)
        ),
    )
    processes: list[subprocess.Popen] = []

    def spawn(command, **kwargs):
        process = subprocess.Popen(command, **kwargs)
        processes.append(process)
        return process

    stalled = [sys.executable, "-c", "import time; time.sleep(60)"]
    renderer = functools.partial(
        render_request,
        player_factory=IdlePlayer,
        encoder_factory=lambda command: FrameEncoder(stalled, process_factory=spawn),
    )
    config = RenderConfig(width=216, height=384, fps=2, job_timeout_seconds=1.0)
    store = RenderJobStore()

    started = time.monotonic()
    with RenderJobRunner(config, store=store, renderer=renderer) as runner:
        with pytest.raises(RenderTimeoutError) as exc_info:
            runner.run(grid_request(tmp_path), str(tmp_path / "final.mp4"), RenderMode.OFFLINE)
    elapsed = time.monotonic() - started

    assert exc_info.value.code == JOB_TIMEOUT_CODE
    assert elapsed < 15
    assert len(processes) == 1
    assert processes[0].poll() is not None
    assert os.listdir(scratch_dir) == []
    assert not (tmp_path / "final.mp4").exists()

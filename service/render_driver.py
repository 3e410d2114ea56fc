"""Render drivers: deterministic offline frame stepping and live capture.

Both drivers share the timeline and compositor; they differ only in how
``t`` advances and how finished frames reach the encoder.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from fractions import Fraction
import logging
import math
import os
import threading
import time
from typing import Callable, Iterator, Mapping, Protocol, Sequence, Tuple

from PIL import Image

from domain.short_video import (
    FRAME_RENDER_CODE,
    JOB_TIMEOUT_CODE,
    RENDER_CANCELLED_CODE,
    EncodingError,
    FrameRenderError,
    MediaLoadError,
    NarrationTrack,
    RenderConfig,
    RenderMode,
    RenderRequest,
    RenderTimeoutError,
)
from service.compositor import FrameCompositor, build_compositor
from service.encoder import (
    FrameEncoder,
    build_audio_mix,
    build_frame_encoder_command,
    build_mux_command,
    run_mux,
)
from service.media import ClipPlayer, ClipState, MediaHandle, load_clip, load_cta_image
from service.render_plan import (
    AudioRoute,
    FrameState,
    Phase,
    Timeline,
    build_audio_routes,
    build_render_plan,
    build_timeline,
    frame_time,
    validate_narration_alignment,
)

LOGGER = logging.getLogger("short_video.render")

PROGRESS_CEILING = 0.99
CAPTURE_FILE_NAME = "capture.mp4"

ProgressCallback = Callable[[float], None]


class Killable(Protocol):
    """Owner of a subprocess that can be stopped from another thread."""

    def kill(self) -> None: ...


class FramePlayer(Protocol):
    """What a driver needs from a clip source.

    ``muted`` decides audibility: the live driver opens an audio route when a
    player becomes unmuted and closes it when the player is muted again.
    ``kill`` must be safe to call from a thread other than the render loop.
    """

    handle: MediaHandle
    state: ClipState
    muted: bool

    def open(self) -> None: ...

    def frame_at(self, local_seconds: float) -> Image.Image: ...

    def current_frame(self, clock_seconds: float) -> Image.Image | None: ...

    def play(self, local_seconds: float, clock_seconds: float) -> None: ...

    def pause(self) -> None: ...

    def mute(self) -> None: ...

    def unmute(self) -> None: ...

    def close(self) -> None: ...

    def kill(self) -> None: ...

    @property
    def last_frame(self) -> Image.Image | None: ...


class FrameSink(Protocol):
    def __enter__(self) -> "FrameSink": ...

    def __exit__(self, exc_type, exc_value, traceback) -> None: ...

    def write_frame(self, frame_bytes: bytes, frame_index: int | None = None) -> None: ...

    def finish(self) -> None: ...

    def abort(self) -> None: ...

    def kill(self) -> None: ...


EncoderFactory = Callable[[Sequence[str]], FrameSink]
PlayerFactory = Callable[[MediaHandle, RenderConfig], FramePlayer]
Muxer = Callable[[Sequence[str], "float | None"], None]


@dataclass(frozen=True)
class RenderResult:
    """Outcome of one driver run."""

    output_path: str
    mode: RenderMode
    total_frames: int
    schedule: Tuple[Tuple[Phase, int], ...]
    audio_routes: Tuple[AudioRoute, ...]
    diagnostics: Tuple[str, ...]


class RenderControl:
    """Deadline and cancellation shared by a job and its driver.

    Frame loops poll ``check`` between frames. A worker blocked inside a
    subprocess pipe never reaches that poll, so ``cancel`` also kills every
    tracked subprocess owner, which turns the blocked call into an error.
    """

    def __init__(
        self,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.deadline = deadline
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._lock = threading.Lock()
        self._tracked: list[Killable] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and kill every tracked subprocess owner."""
        self.cancel_event.set()
        with self._lock:
            tracked = list(self._tracked)
        for item in tracked:
            item.kill()
        if tracked:
            LOGGER.info("short_video.render.cancel_killed count=%d", len(tracked))

    def remaining_seconds(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    @contextmanager
    def tracking(self, *items: Killable) -> Iterator[None]:
        """Keep ``items`` killable by ``cancel`` for the duration of the block."""
        with self._lock:
            self._tracked.extend(items)
        try:
            if self.cancelled:
                for item in items:
                    item.kill()
            yield
        finally:
            with self._lock:
                for item in items:
                    self._tracked.remove(item)

    def check(self, phase: str | None = None, frame_index: int | None = None) -> None:
        if self.cancel_event.is_set():
            raise RenderTimeoutError(
                RENDER_CANCELLED_CODE,
                "render cancelled",
                phase=phase,
                frame_index=frame_index,
            )
        if self.deadline is not None and self._clock() > self.deadline:
            raise RenderTimeoutError(
                JOB_TIMEOUT_CODE,
                "render exceeded its time budget",
                phase=phase,
                frame_index=frame_index,
            )


class RenderDriver:
    """Frame loop plumbing shared by both strategies."""

    mode: RenderMode

    def __init__(
        self,
        compositor: FrameCompositor,
        players: Sequence[FramePlayer],
        config: RenderConfig,
        narration: NarrationTrack | None = None,
        encoder_factory: EncoderFactory = FrameEncoder,
        control: RenderControl | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.compositor = compositor
        self.players = list(players)
        self.config = config
        self.narration = narration
        self.encoder_factory = encoder_factory
        self.control = control or RenderControl()
        self.progress = progress
        self.diagnostics: list[str] = []
        self._visible: Tuple[int, ...] = ()

    @property
    def timeline(self) -> Timeline:
        return self.compositor.timeline

    @property
    def clip_paths(self) -> list[str]:
        return [player.handle.path for player in self.players]

    def report_progress(self, frames_done: int, total_frames: int) -> None:
        if self.progress is None:
            return
        self.progress(min(frames_done / float(total_frames), PROGRESS_CEILING))

    def record_frame_failure(self, exc: FrameRenderError) -> None:
        LOGGER.warning("%s: %s", exc.code, str(exc).strip())
        self.diagnostics.append(f"{exc.code}: {exc}")

    def collect_frames(
        self,
        state: FrameState,
        frame_index: int,
        fetch: Callable[[FramePlayer], Image.Image | None],
    ) -> dict[int, Image.Image | None]:
        """Fetch visible clip frames, degrading a stuck clip to its last frame."""
        frames: dict[int, Image.Image | None] = {}
        for clip_index in state.visible_clips:
            player = self.players[clip_index]
            try:
                frames[clip_index] = fetch(player)
            except FrameRenderError as exc:
                self.record_frame_failure(
                    FrameRenderError(
                        exc.code,
                        exc.detail,
                        phase=state.phase.value,
                        frame_index=frame_index,
                        clip_index=clip_index,
                    )
                )
                frames[clip_index] = player.last_frame
        return frames

    def draw(
        self,
        state: FrameState,
        canvas: Image.Image,
        frames: Mapping[int, Image.Image | None],
        frame_index: int,
    ) -> None:
        try:
            self.compositor.draw_frame(state, canvas, frames)
        except (OSError, ValueError) as exc:
            self.record_frame_failure(
                FrameRenderError(
                    FRAME_RENDER_CODE,
                    f"draw failed: {exc}",
                    phase=state.phase.value,
                    frame_index=frame_index,
                )
            )

    def switch_clips(
        self,
        state: FrameState,
        on_start: Callable[[int], None] | None = None,
        on_audible: Callable[[int], None] | None = None,
        on_silent: Callable[[int], None] | None = None,
    ) -> None:
        """Apply playback transitions when the visible clip set changes.

        Sequential layouts pause and mute every clip that leaves the screen
        before the next one becomes audible. Concurrent layouts keep their
        clips muted and looping, and never pause them. ``on_audible`` and
        ``on_silent`` fire only on real mute flag transitions.
        """
        visible = state.visible_clips
        if visible == self._visible:
            return
        concurrent = self.timeline.concurrent_clips
        for clip_index in self._visible:
            if clip_index in visible:
                continue
            player = self.players[clip_index]
            was_audible = not player.muted
            player.mute()
            if not concurrent:
                player.pause()
            if was_audible and on_silent is not None:
                on_silent(clip_index)
        for clip_index in visible:
            if clip_index in self._visible:
                continue
            player = self.players[clip_index]
            if on_start is not None:
                on_start(clip_index)
            if not concurrent and player.muted:
                player.unmute()
                if on_audible is not None:
                    on_audible(clip_index)
            LOGGER.info(
                "short_video.render.clip_start clip=%d phase=%s t=%.3f",
                clip_index,
                state.phase.value,
                float(state.time),
            )
        self._visible = visible

    def abort_players(self) -> None:
        for player in self.players:
            player.mute()

    @contextmanager
    def encoding(self, command: Sequence[str]) -> Iterator[FrameSink]:
        """Run an encoder for one frame loop, killable by cancellation.

        A pipe failure caused by a cancel surfaces as the cancellation.
        """
        encoder = self.encoder_factory(command)
        try:
            with encoder, self.control.tracking(encoder):
                yield encoder
        except EncodingError:
            self.abort_players()
            self.control.check("encode")
            raise
        except BaseException:
            self.abort_players()
            raise


class OfflineRenderDriver(RenderDriver):
    """Deterministic frame stepping: every frame time is ``index / fps``."""

    mode = RenderMode.OFFLINE

    def render(self, output_path: str) -> RenderResult:
        timeline = self.timeline
        fps = self.config.fps
        plan = build_render_plan(timeline, fps)
        handles = [player.handle for player in self.players]
        routes = build_audio_routes(
            timeline,
            [handle.trim_start_seconds for handle in handles],
            [handle.duration_seconds for handle in handles],
            [handle.has_audio for handle in handles],
        )
        total_seconds = float(timeline.total_seconds)
        audio = build_audio_mix(
            routes, self.clip_paths, self.narration, total_seconds, self.config
        )
        command = build_frame_encoder_command(
            self.config, output_path, audio, total_seconds
        )
        LOGGER.info(
            "short_video.render.offline_start template=%s frames=%d routes=%d",
            timeline.template.value,
            plan.total_frames,
            len(routes),
        )

        canvas = self.compositor.new_canvas()
        with self.encoding(command) as encoder:
            for scheduled in plan.frames:
                frame_index = scheduled.frame_index
                self.control.check(scheduled.phase.value, frame_index)
                time_value = frame_time(frame_index, fps)
                state = timeline.state_at(time_value)
                self.switch_clips(state)
                frames = self.collect_frames(
                    state,
                    frame_index,
                    lambda player: player.frame_at(
                        float(timeline.clip_local_time(time_value, player.handle.clip_index))
                    ),
                )
                self.draw(state, canvas, frames, frame_index)
                encoder.write_frame(canvas.tobytes(), frame_index)
                self.report_progress(frame_index + 1, plan.total_frames)
            encoder.finish()

        return RenderResult(
            output_path=output_path,
            mode=self.mode,
            total_frames=plan.total_frames,
            schedule=plan.schedule(),
            audio_routes=routes,
            diagnostics=tuple(self.diagnostics),
        )


class LiveRenderDriver(RenderDriver):
    """Wall-clock playback captured at a constant frame cadence.

    Each tick draws the current state and writes it once per frame slot that
    has come due, so a late tick repeats the frame instead of dropping time
    and the capture always holds exactly ``total * fps`` frames.
    """

    mode = RenderMode.LIVE

    def __init__(
        self,
        compositor: FrameCompositor,
        players: Sequence[FramePlayer],
        config: RenderConfig,
        narration: NarrationTrack | None = None,
        encoder_factory: EncoderFactory = FrameEncoder,
        control: RenderControl | None = None,
        progress: ProgressCallback | None = None,
        muxer: Muxer = run_mux,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(
            compositor, players, config, narration, encoder_factory, control, progress
        )
        self.muxer = muxer
        self.clock = clock
        self.sleep = sleep

    def render(self, output_path: str, work_dir: str) -> RenderResult:
        timeline = self.timeline
        fps = self.config.fps
        total_frames = timeline.total_frames(fps)
        total_seconds = float(timeline.total_seconds)
        capture_path = os.path.join(work_dir, CAPTURE_FILE_NAME)
        command = build_frame_encoder_command(self.config, capture_path, None, total_seconds)
        LOGGER.info(
            "short_video.render.live_start template=%s frames=%d",
            timeline.template.value,
            total_frames,
        )

        routes: list[AudioRoute] = []
        open_routes: dict[int, tuple[float, float]] = {}
        written = 0
        schedule: list[Tuple[Phase, int]] = []
        canvas = self.compositor.new_canvas()

        def close_route(clip_index: int, end_seconds: float) -> None:
            opened = open_routes.pop(clip_index, None)
            if opened is None:
                return
            start_seconds, source_offset = opened
            if end_seconds > start_seconds:
                routes.append(
                    AudioRoute(
                        clip_index=clip_index,
                        source_offset=source_offset,
                        start=start_seconds,
                        duration=end_seconds - start_seconds,
                    )
                )

        with self.encoding(command) as encoder:
            start_clock = self.clock()
            while written < total_frames:
                now = self.clock()
                elapsed = max(0.0, now - start_clock)
                state = timeline.state_at(Fraction(elapsed))
                self.control.check(state.phase.value, written)
                output_seconds = written / float(fps)

                def start_clip(clip_index: int) -> None:
                    local_seconds = float(timeline.clip_local_time(state.time, clip_index))
                    self.players[clip_index].play(local_seconds, now)

                def open_route(clip_index: int) -> None:
                    handle = self.players[clip_index].handle
                    if not handle.has_audio:
                        return
                    local_seconds = float(timeline.clip_local_time(state.time, clip_index))
                    open_routes[clip_index] = (output_seconds, handle.media_time(local_seconds))

                self.switch_clips(
                    state,
                    on_start=start_clip,
                    on_audible=open_route,
                    on_silent=lambda clip_index: close_route(clip_index, output_seconds),
                )
                frames = self.collect_frames(
                    state, written, lambda player: player.current_frame(now)
                )
                self.draw(state, canvas, frames, written)

                due = min(total_frames, int(math.floor(elapsed * fps)) + 1)
                if due > written:
                    frame_bytes = canvas.tobytes()
                    while written < due:
                        encoder.write_frame(frame_bytes, written)
                        schedule.append((state.phase, state.clip_index))
                        written += 1
                    self.report_progress(written, total_frames)
                if written < total_frames:
                    self.sleep(max(0.0, start_clock + written / float(fps) - self.clock()))

            for clip_index in list(open_routes):
                close_route(clip_index, total_seconds)
            encoder.finish()

        audio = build_audio_mix(
            routes, self.clip_paths, self.narration, total_seconds, self.config
        )
        self.control.check("mux")
        self.muxer(
            build_mux_command(self.config, capture_path, output_path, audio, total_seconds),
            self.control.remaining_seconds(),
        )
        LOGGER.info(
            "short_video.render.live_finished frames=%d routes=%d", written, len(routes)
        )
        return RenderResult(
            output_path=output_path,
            mode=self.mode,
            total_frames=written,
            schedule=tuple(schedule),
            audio_routes=tuple(routes),
            diagnostics=tuple(self.diagnostics),
        )


def validate_render_inputs(request: RenderRequest, config: RenderConfig) -> None:
    """Checks that must pass before any media is touched."""
    if request.narration is not None:
        validate_narration_alignment(
            build_timeline(request.template), request.narration, config.fps
        )


def render_request(
    request: RenderRequest,
    config: RenderConfig,
    work_dir: str,
    output_path: str,
    mode: RenderMode | None = None,
    control: RenderControl | None = None,
    progress: ProgressCallback | None = None,
    player_factory: PlayerFactory = ClipPlayer,
    encoder_factory: EncoderFactory = FrameEncoder,
    muxer: Muxer = run_mux,
) -> RenderResult:
    """Load media, select the template strategy and run the chosen driver."""
    selected_mode = mode or config.mode_for(request.template)
    validate_render_inputs(request, config)
    control = control or RenderControl()

    handles = [load_clip(clip, index, config) for index, clip in enumerate(request.clips)]
    cta_image = load_cta_image(request.cta_image_path)
    compositor = build_compositor(request, config, cta_image)
    players = [player_factory(handle, config) for handle in handles]
    try:
        with control.tracking(*players):
            for player in players:
                control.check("load", None)
                try:
                    player.open()
                except MediaLoadError:
                    control.check("load", None)
                    raise
            LOGGER.info(
                "short_video.render.media_ready template=%s mode=%s clips=%d",
                request.template.value,
                selected_mode.value,
                len(players),
            )
            if selected_mode == RenderMode.OFFLINE:
                return OfflineRenderDriver(
                    compositor,
                    players,
                    config,
                    request.narration,
                    encoder_factory,
                    control,
                    progress,
                ).render(output_path)
            return LiveRenderDriver(
                compositor,
                players,
                config,
                request.narration,
                encoder_factory,
                control,
                progress,
                muxer=muxer,
            ).render(output_path, work_dir)
    finally:
        for player in players:
            player.close()

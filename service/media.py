"""Media probing, image loading and seekable clip playback."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
import os
import queue
import subprocess
import threading
from typing import Callable, Tuple

from PIL import Image

from domain.short_video import (
    FRAME_SEEK_CODE,
    INVALID_CONFIG_CODE,
    MEDIA_DECODE_CODE,
    MEDIA_NOT_FOUND_CODE,
    MEDIA_TIMEOUT_CODE,
    ClipRef,
    FrameRenderError,
    MediaLoadError,
    RenderConfig,
    RenderValidationError,
)
from service.render_plan import wrap_media_offset

LOGGER = logging.getLogger("short_video.media")

# Restart the decoder instead of reading forward past this many seconds.
SEEK_AHEAD_LIMIT_SECONDS = 2.0
END_OF_STREAM = None

ProcessFactory = Callable[..., "subprocess.Popen[bytes]"]


@dataclass(frozen=True)
class MediaInfo:
    """Probed container facts."""

    duration_seconds: float
    width: int
    height: int
    has_video: bool
    has_audio: bool


@dataclass(frozen=True)
class MediaHandle:
    """A probed clip ready to be decoded."""

    path: str
    clip_index: int
    trim_start_seconds: float
    info: MediaInfo
    decode_size: Tuple[int, int]

    @property
    def duration_seconds(self) -> float:
        return self.info.duration_seconds

    @property
    def has_audio(self) -> bool:
        return self.info.has_audio

    def media_time(self, local_seconds: float) -> float:
        """Map slot-local time to a looped position inside the file."""
        return wrap_media_offset(
            self.trim_start_seconds + max(0.0, local_seconds), self.duration_seconds
        )


def parse_probe_output(payload: str, path: str) -> MediaInfo:
    """Parse ``ffprobe -of json`` output into MediaInfo."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MediaLoadError(
            MEDIA_DECODE_CODE, f"ffprobe returned invalid JSON for {path}"
        ) from exc

    streams = data.get("streams") or []
    video_streams = [stream for stream in streams if stream.get("codec_type") == "video"]
    has_audio = any(stream.get("codec_type") == "audio" for stream in streams)
    width = 0
    height = 0
    if video_streams:
        width = int(video_streams[0].get("width") or 0)
        height = int(video_streams[0].get("height") or 0)

    raw_duration = (data.get("format") or {}).get("duration")
    if raw_duration is None and video_streams:
        raw_duration = video_streams[0].get("duration")
    try:
        duration_seconds = float(raw_duration)
    except (TypeError, ValueError) as exc:
        raise MediaLoadError(
            MEDIA_DECODE_CODE, f"media duration unavailable: {path}"
        ) from exc
    if duration_seconds <= 0:
        raise MediaLoadError(MEDIA_DECODE_CODE, f"media duration invalid: {path}")

    return MediaInfo(
        duration_seconds=duration_seconds,
        width=width,
        height=height,
        has_video=bool(video_streams) and width > 0 and height > 0,
        has_audio=has_audio,
    )


def probe_media(path: str, config: RenderConfig) -> MediaInfo:
    """Probe a media file with a bounded timeout."""
    if not os.path.isfile(path):
        raise MediaLoadError(MEDIA_NOT_FOUND_CODE, f"media file not found: {path}")
    try:
        result = subprocess.run(
            [
                config.ffprobe_binary,
                "-v",
                "error",
                "-show_entries",
                "stream=codec_type,width,height,duration:format=duration",
                "-of",
                "json",
                path,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            timeout=config.media_load_timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise MediaLoadError(
            MEDIA_TIMEOUT_CODE,
            f"probing {path} exceeded {config.media_load_timeout_seconds:.0f}s",
        ) from exc
    except FileNotFoundError as exc:
        raise MediaLoadError(
            MEDIA_DECODE_CODE, f"{config.ffprobe_binary} not found"
        ) from exc
    if result.returncode != 0:
        raise MediaLoadError(
            MEDIA_DECODE_CODE, f"ffprobe failed for {path}: {result.stderr.strip()}"
        )
    return parse_probe_output(result.stdout, path)


def compute_decode_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Cap the longer edge, keep the aspect ratio and round to even sizes."""
    if width <= 0 or height <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, "media size must be positive")
    scale = min(1.0, max_dimension / float(max(width, height)))
    scaled_width = max(2, int(round(width * scale / 2.0)) * 2)
    scaled_height = max(2, int(round(height * scale / 2.0)) * 2)
    return scaled_width, scaled_height


def load_clip(clip: ClipRef, clip_index: int, config: RenderConfig) -> MediaHandle:
    """Resolve a clip reference into a probed, decodable handle."""
    info = probe_media(clip.path, config)
    if not info.has_video:
        raise MediaLoadError(
            MEDIA_DECODE_CODE,
            f"clip has no decodable video stream: {clip.path}",
            clip_index=clip_index,
        )
    handle = MediaHandle(
        path=clip.path,
        clip_index=clip_index,
        trim_start_seconds=clip.trim_start_seconds,
        info=info,
        decode_size=compute_decode_size(
            info.width, info.height, config.decode_max_dimension
        ),
    )
    LOGGER.info(
        "short_video.media.loaded clip=%d duration=%.3f size=%dx%d audio=%s",
        clip_index,
        info.duration_seconds,
        info.width,
        info.height,
        info.has_audio,
    )
    return handle


def load_cta_image(image_path: str | None) -> Image.Image | None:
    """Load the optional CTA image; failures degrade to no image."""
    if image_path is None:
        return None
    try:
        with Image.open(image_path) as image:
            image.load()
            return image.convert("RGBA")
    except (OSError, ValueError) as exc:
        LOGGER.warning(
            "%s: cta image unavailable, using solid background: %s",
            MEDIA_DECODE_CODE,
            exc,
        )
        return None


class ClipState(str, Enum):
    """Playback lifecycle of a clip player."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    SEEKING = "seeking"
    PLAYING = "playing"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(frozen=True)
class DecodedFrame:
    """A decoded frame and its position inside the media file."""

    media_time: float
    image: Image.Image


def build_decoder_command(
    handle: MediaHandle, start_seconds: float, fps: int, ffmpeg_binary: str
) -> list[str]:
    """Build an ffmpeg command streaming rgb24 frames from an offset."""
    width, height = handle.decode_size
    return [
        ffmpeg_binary,
        "-v",
        "error",
        "-nostdin",
        "-ss",
        f"{start_seconds:.6f}",
        "-i",
        handle.path,
        "-an",
        "-vf",
        f"fps={fps},scale={width}:{height}",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgb24",
        "pipe:1",
    ]


class ClipPlayer:
    """Seekable frame source for one clip, driven by an explicit state machine.

    A reader thread streams decoded frames into a bounded queue; when the
    queue is full the reader blocks, which in turn stalls the decoder.
    """

    def __init__(
        self,
        handle: MediaHandle,
        config: RenderConfig,
        process_factory: ProcessFactory = subprocess.Popen,
    ) -> None:
        self.handle = handle
        self.state = ClipState.UNLOADED
        self.muted = True
        self._config = config
        self._process_factory = process_factory
        self._frame_step = 1.0 / config.fps
        self._frame_bytes = handle.decode_size[0] * handle.decode_size[1] * 3
        self._queue: queue.Queue[DecodedFrame | None] = queue.Queue(
            maxsize=config.frame_queue_size
        )
        self._process: subprocess.Popen[bytes] | None = None
        self._reader: threading.Thread | None = None
        self._stop_reader = threading.Event()
        self._stream_position = 0.0
        self._stream_ended = False
        self._pending: DecodedFrame | None = None
        self._last_frame: DecodedFrame | None = None
        self._play_offset = 0.0
        self._play_clock = 0.0
        self._paused_offset = 0.0

    @property
    def clip_index(self) -> int:
        return self.handle.clip_index

    @property
    def last_frame(self) -> Image.Image | None:
        return self._last_frame.image if self._last_frame else None

    def open(self) -> None:
        """Start decoding at the trim offset and wait for the first frame."""
        if self.state not in (ClipState.UNLOADED, ClipState.FAILED):
            return
        self.state = ClipState.LOADING
        start = self.handle.media_time(0.0)
        self._start_decoder(start)
        try:
            first = self._queue.get(timeout=self._config.media_load_timeout_seconds)
        except queue.Empty as exc:
            self.state = ClipState.FAILED
            self._stop_decoder()
            raise MediaLoadError(
                MEDIA_TIMEOUT_CODE,
                f"no frame decoded within {self._config.media_load_timeout_seconds:.0f}s",
                clip_index=self.clip_index,
            ) from exc
        if first is END_OF_STREAM:
            self.state = ClipState.FAILED
            self._stop_decoder()
            raise MediaLoadError(
                MEDIA_DECODE_CODE,
                f"decoder produced no frames for {self.handle.path}",
                clip_index=self.clip_index,
            )
        self._pending = first
        self.state = ClipState.READY

    def frame_at(self, local_seconds: float) -> Image.Image:
        """Return the frame shown ``local_seconds`` into the clip's slot.

        Raises FrameRenderError when the decoder cannot deliver the frame
        within the configured poll budget.
        """
        if self.state in (ClipState.UNLOADED, ClipState.FAILED):
            raise FrameRenderError(
                FRAME_SEEK_CODE,
                f"clip is {self.state.value}",
                clip_index=self.clip_index,
            )
        target = self.handle.media_time(local_seconds)
        half_step = self._frame_step / 2.0
        last = self._last_frame
        if last is not None and abs(last.media_time - target) < half_step:
            return last.image

        if self._needs_seek(target):
            resume_state = self.state
            self.state = ClipState.SEEKING
            self._start_decoder(target)
            self.state = (
                resume_state if resume_state != ClipState.SEEKING else ClipState.READY
            )

        attempts = 0
        while True:
            frame = self._next_frame()
            if frame is END_OF_STREAM:
                if self._stream_ended and self._last_frame is not None:
                    return self._last_frame.image
                attempts += 1
                if attempts >= self._config.seek_max_attempts:
                    raise FrameRenderError(
                        FRAME_SEEK_CODE,
                        f"no frame at {target:.3f}s after {attempts} polls",
                        clip_index=self.clip_index,
                    )
                continue
            self._last_frame = frame
            if frame.media_time + half_step >= target:
                return frame.image

    def play(self, local_seconds: float, clock_seconds: float) -> None:
        """Begin wall-clock playback at a slot-local offset."""
        self._play_offset = local_seconds
        self._play_clock = clock_seconds
        self.state = ClipState.PLAYING

    def pause(self) -> None:
        """Freeze playback and release the decoder; the last frame is kept."""
        if self.state in (ClipState.UNLOADED, ClipState.FAILED, ClipState.PAUSED):
            return
        self._stop_decoder()
        self.state = ClipState.PAUSED

    def mute(self) -> None:
        self.muted = True

    def unmute(self) -> None:
        self.muted = False

    def current_frame(self, clock_seconds: float) -> Image.Image | None:
        """Frame for live playback at a wall-clock instant."""
        if self.state == ClipState.PAUSED:
            return self.last_frame
        if self.state != ClipState.PLAYING:
            return self.frame_at(0.0)
        local_seconds = self._play_offset + (clock_seconds - self._play_clock)
        return self.frame_at(local_seconds)

    def kill(self) -> None:
        """Kill the decoder from any thread; the reader then sees end of stream."""
        process = self._process
        if process is not None and process.poll() is None:
            process.kill()

    def close(self) -> None:
        self._stop_decoder()
        if self.state != ClipState.FAILED:
            self.state = ClipState.UNLOADED

    def _needs_seek(self, target: float) -> bool:
        if self._process is None:
            return True
        position = self._position()
        if target + self._frame_step / 2.0 < position:
            return True
        return target - position > SEEK_AHEAD_LIMIT_SECONDS

    def _position(self) -> float:
        if self._pending is not None:
            return self._pending.media_time
        return self._stream_position

    def _next_frame(self) -> DecodedFrame | None:
        if self._pending is not None:
            frame = self._pending
            self._pending = None
            return frame
        if self._stream_ended:
            return END_OF_STREAM
        try:
            frame = self._queue.get(timeout=self._config.seek_poll_interval_seconds)
        except queue.Empty:
            return END_OF_STREAM
        if frame is END_OF_STREAM:
            self._stream_ended = True
            return END_OF_STREAM
        self._stream_position = frame.media_time + self._frame_step
        return frame

    def _start_decoder(self, start_seconds: float) -> None:
        self._stop_decoder()
        command = build_decoder_command(
            self.handle, start_seconds, self._config.fps, self._config.ffmpeg_binary
        )
        try:
            process = self._process_factory(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            self.state = ClipState.FAILED
            raise MediaLoadError(
                MEDIA_DECODE_CODE,
                f"{self._config.ffmpeg_binary} not found",
                clip_index=self.clip_index,
            ) from exc
        self._process = process
        self._stream_position = start_seconds
        self._stream_ended = False
        self._stop_reader = threading.Event()
        self._queue = queue.Queue(maxsize=self._config.frame_queue_size)
        self._reader = threading.Thread(
            target=self._read_frames,
            args=(process, start_seconds, self._queue, self._stop_reader),
            name=f"clip-reader-{self.clip_index}",
            daemon=True,
        )
        self._reader.start()

    def _read_frames(
        self,
        process: subprocess.Popen[bytes],
        start_seconds: float,
        frames: queue.Queue[DecodedFrame | None],
        stop: threading.Event,
    ) -> None:
        width, height = self.handle.decode_size
        stream = process.stdout
        frame_index = 0
        while not stop.is_set():
            data = stream.read(self._frame_bytes) if stream else b""
            if len(data) < self._frame_bytes:
                break
            decoded = DecodedFrame(
                media_time=start_seconds + frame_index * self._frame_step,
                image=Image.frombytes("RGB", (width, height), data),
            )
            frame_index += 1
            if not self._put(frames, decoded, stop):
                return
        self._put(frames, END_OF_STREAM, stop)

    def _put(
        self,
        frames: queue.Queue[DecodedFrame | None],
        item: DecodedFrame | None,
        stop: threading.Event,
    ) -> bool:
        while not stop.is_set():
            try:
                frames.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _stop_decoder(self) -> None:
        self._stop_reader.set()
        process = self._process
        self._process = None
        self._pending = None
        if process is not None:
            try:
                if process.poll() is None:
                    process.kill()
                process.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired) as exc:
                LOGGER.warning(
                    "short_video.media.decoder_stop_failed clip=%d: %s",
                    self.clip_index,
                    exc,
                )
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=5)
        if process is not None and process.stdout is not None:
            process.stdout.close()

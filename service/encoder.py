"""ffmpeg argument building, raw-frame encoding and audio muxing."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import shutil
import subprocess
import threading
from typing import Callable, Sequence, Tuple

from domain.short_video import (
    FFMPEG_EXEC_CODE,
    FFMPEG_NOT_FOUND_CODE,
    FFMPEG_PIPE_CODE,
    FFMPEG_PROCESS_CODE,
    JOB_TIMEOUT_CODE,
    EncodingError,
    NarrationTrack,
    RenderConfig,
    RenderTimeoutError,
)
from service.render_plan import AudioRoute

LOGGER = logging.getLogger("short_video.encoder")

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
AUDIO_SAMPLE_RATE = 48000
AUDIO_LAYOUT = "stereo"
STDERR_TAIL_LINES = 200
AUDIO_OUTPUT_LABEL = "[aout]"

ProcessFactory = Callable[..., "subprocess.Popen[bytes]"]


def ensure_ffmpeg_available(ffmpeg_binary: str) -> None:
    """Ensure ffmpeg is installed and executable."""
    ffmpeg_path = shutil.which(ffmpeg_binary)
    if not ffmpeg_path:
        raise EncodingError(FFMPEG_NOT_FOUND_CODE, f"{ffmpeg_binary} not on PATH")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise EncodingError(
            FFMPEG_EXEC_CODE, f"{ffmpeg_binary} exists but could not be executed"
        ) from exc


def format_seconds(value: float) -> str:
    """Compact decimal seconds for ffmpeg filter arguments."""
    return f"{value:.6f}".rstrip("0").rstrip(".") or "0"


@dataclass(frozen=True)
class AudioMix:
    """Extra ffmpeg inputs and the filter graph producing ``[aout]``."""

    input_args: Tuple[str, ...]
    filter_graph: str


def build_audio_mix(
    routes: Sequence[AudioRoute],
    clip_paths: Sequence[str],
    narration: NarrationTrack | None,
    total_seconds: float,
    config: RenderConfig,
    first_input_index: int = 1,
) -> AudioMix:
    """Build inputs and a filter graph that lay routed audio on the timeline.

    Clip inputs loop so a route longer than its clip keeps sounding. Every
    branch is delayed to its start, mixed without normalisation, then padded
    and trimmed to exactly ``total_seconds``. With nothing to mix a silent
    track is generated so the output always carries audio.
    """
    total = format_seconds(total_seconds)
    input_args: list[str] = []
    input_index = first_input_index
    clip_inputs: dict[int, int] = {}
    for route in routes:
        if route.clip_index in clip_inputs:
            continue
        clip_inputs[route.clip_index] = input_index
        input_args.extend(["-stream_loop", "-1", "-i", clip_paths[route.clip_index]])
        input_index += 1

    resample = f"aresample={AUDIO_SAMPLE_RATE},aformat=channel_layouts={AUDIO_LAYOUT}"
    filters: list[str] = []
    labels: list[str] = []
    for route_index, route in enumerate(routes):
        label = f"[r{route_index}]"
        delay_ms = int(round(route.start * 1000))
        filters.append(
            f"[{clip_inputs[route.clip_index]}:a]"
            f"atrim=start={format_seconds(route.source_offset)}"
            f":duration={format_seconds(route.duration)},"
            f"asetpts=PTS-STARTPTS,{resample},"
            f"volume={config.clip_audio_volume},"
            f"adelay={delay_ms}:all=1{label}"
        )
        labels.append(label)

    if narration is not None:
        input_args.extend(["-i", narration.path])
        filters.append(
            f"[{input_index}:a]{resample},volume={config.narration_volume},"
            f"apad,atrim=end={total}[narration]"
        )
        labels.append("[narration]")
        input_index += 1

    if not labels:
        input_args.extend(
            [
                "-f",
                "lavfi",
                "-t",
                total,
                "-i",
                f"anullsrc=channel_layout={AUDIO_LAYOUT}:sample_rate={AUDIO_SAMPLE_RATE}",
            ]
        )
        filters.append(
            f"[{input_index}:a]apad,atrim=end={total},asetpts=PTS-STARTPTS{AUDIO_OUTPUT_LABEL}"
        )
        return AudioMix(tuple(input_args), ";".join(filters))

    filters.append(
        "".join(labels)
        + f"amix=inputs={len(labels)}:duration=longest:normalize=0,"
        + f"apad,atrim=end={total},asetpts=PTS-STARTPTS{AUDIO_OUTPUT_LABEL}"
    )
    return AudioMix(tuple(input_args), ";".join(filters))


def build_h264_args(config: RenderConfig) -> list[str]:
    """Build H.264 codec arguments with a constant frame rate and short GOP."""
    return [
        "-c:v",
        H264_CODEC,
        "-crf",
        str(config.encoder_crf),
        "-preset",
        config.encoder_preset,
        "-pix_fmt",
        H264_PIXEL_FORMAT,
        "-r",
        str(config.fps),
        "-g",
        str(config.fps * 2),
        "-bf",
        "0",
    ]


def build_audio_output_args(total_seconds: float) -> list[str]:
    """Map the mixed audio and cap the output at the timeline length."""
    return [
        "-map",
        AUDIO_OUTPUT_LABEL,
        "-c:a",
        AUDIO_CODEC,
        "-b:a",
        AUDIO_BITRATE,
        "-t",
        format_seconds(total_seconds),
        "-movflags",
        "+faststart",
    ]


def build_frame_encoder_command(
    config: RenderConfig,
    output_path: str,
    audio: AudioMix | None,
    total_seconds: float,
) -> list[str]:
    """ffmpeg reading raw RGBA frames from stdin; audio is mixed in when given."""
    command = [
        config.ffmpeg_binary,
        "-y",
        "-v",
        "error",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{config.width}x{config.height}",
        "-r",
        str(config.fps),
        "-i",
        "-",
    ]
    if audio is None:
        command.extend(["-map", "0:v:0", "-an"])
        command.extend(build_h264_args(config))
        command.extend(["-movflags", "+faststart", output_path])
        return command
    command.extend(audio.input_args)
    command.extend(["-filter_complex", audio.filter_graph, "-map", "0:v:0"])
    command.extend(build_h264_args(config))
    command.extend(build_audio_output_args(total_seconds))
    command.append(output_path)
    return command


def build_mux_command(
    config: RenderConfig,
    video_path: str,
    output_path: str,
    audio: AudioMix,
    total_seconds: float,
) -> list[str]:
    """ffmpeg copying a captured video stream and adding the mixed audio."""
    command = [config.ffmpeg_binary, "-y", "-v", "error", "-i", video_path]
    command.extend(audio.input_args)
    command.extend(
        ["-filter_complex", audio.filter_graph, "-map", "0:v:0", "-c:v", "copy"]
    )
    command.extend(build_audio_output_args(total_seconds))
    command.append(output_path)
    return command


def run_mux(command: Sequence[str], timeout_seconds: float | None = None) -> None:
    """Run a finalize/mux pass and surface ffmpeg diagnostics on failure.

    subprocess.run kills ffmpeg when ``timeout_seconds`` runs out.
    """
    try:
        result = subprocess.run(
            list(command),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            check=False,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise EncodingError(FFMPEG_NOT_FOUND_CODE, f"{command[0]} not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise RenderTimeoutError(
            JOB_TIMEOUT_CODE, f"ffmpeg mux exceeded {timeout_seconds:.1f}s"
        ) from exc
    if result.returncode != 0:
        stderr_text = result.stderr.decode("utf-8", errors="replace").strip()
        raise EncodingError(
            FFMPEG_PROCESS_CODE,
            f"ffmpeg mux failed with exit code {result.returncode}. {stderr_text}",
        )


class FrameEncoder:
    """A running ffmpeg process fed raw frames over its stdin pipe.

    Writes block while the pipe is full, so a slow encoder throttles the
    frame producer instead of frames piling up in memory. A background
    thread drains stderr into a bounded tail for diagnostics.
    """

    def __init__(
        self, command: Sequence[str], process_factory: ProcessFactory = subprocess.Popen
    ) -> None:
        self.command = list(command)
        self.frames_written = 0
        self._process_factory = process_factory
        self._process: subprocess.Popen[bytes] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: threading.Thread | None = None

    def __enter__(self) -> "FrameEncoder":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if exc_type is not None:
            self.abort()

    @property
    def diagnostics(self) -> str:
        return "\n".join(self._stderr_tail).strip()

    def start(self) -> None:
        try:
            self._process = self._process_factory(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise EncodingError(
                FFMPEG_NOT_FOUND_CODE, f"{self.command[0]} not found"
            ) from exc
        if self._process.stdin is None:
            raise EncodingError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name="encoder-stderr", daemon=True
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        for raw_line in process.stderr:
            self._stderr_tail.append(raw_line.decode("utf-8", errors="replace").rstrip())

    def write_frame(self, frame_bytes: bytes, frame_index: int | None = None) -> None:
        """Write one frame; a closed pipe is fatal."""
        process = self._process
        if process is None or process.stdin is None:
            raise EncodingError(FFMPEG_PROCESS_CODE, "encoder is not running")
        try:
            process.stdin.write(frame_bytes)
        except (BrokenPipeError, ValueError) as exc:
            self._join_stderr()
            raise EncodingError(
                FFMPEG_PIPE_CODE,
                f"encoder pipe closed. {self.diagnostics}".strip(),
                frame_index=frame_index,
            ) from exc
        self.frames_written += 1

    def finish(self) -> None:
        """Flush stdin, wait for ffmpeg and fail on a non-zero exit."""
        process = self._process
        if process is None:
            raise EncodingError(FFMPEG_PROCESS_CODE, "encoder is not running")
        try:
            if process.stdin and not process.stdin.closed:
                process.stdin.close()
        except BrokenPipeError as exc:
            self._join_stderr()
            raise EncodingError(
                FFMPEG_PIPE_CODE, f"encoder pipe closed. {self.diagnostics}".strip()
            ) from exc
        return_code = process.wait()
        self._join_stderr()
        self._process = None
        if return_code != 0:
            raise EncodingError(
                FFMPEG_PROCESS_CODE,
                f"ffmpeg failed with exit code {return_code}. {self.diagnostics}".strip(),
            )
        LOGGER.info("short_video.encoder.finished frames=%d", self.frames_written)

    def kill(self) -> None:
        """Kill ffmpeg from any thread; a write blocked on the pipe then fails."""
        process = self._process
        if process is not None and process.poll() is None:
            process.kill()

    def abort(self) -> None:
        """Tear the encoder down without waiting for a clean exit."""
        process = self._process
        self._process = None
        if process is None:
            return
        try:
            if process.stdin and not process.stdin.closed:
                process.stdin.close()
        except OSError:
            LOGGER.debug("short_video.encoder.stdin_close_failed", exc_info=True)
        if process.poll() is None:
            process.kill()
        process.wait()
        self._join_stderr()

    def _join_stderr(self) -> None:
        thread = self._stderr_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

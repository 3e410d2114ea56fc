"""Unit tests for media probing and clip playback."""

from __future__ import annotations

import io
import json
from pathlib import Path

from PIL import Image
import pytest

from domain.short_video import (
    FRAME_SEEK_CODE,
    MEDIA_DECODE_CODE,
    ClipRef,
    FrameRenderError,
    MediaLoadError,
    RenderConfig,
)
from service.media import (
    ClipPlayer,
    ClipState,
    MediaHandle,
    MediaInfo,
    build_decoder_command,
    compute_decode_size,
    load_clip,
    load_cta_image,
    parse_probe_output,
)

FPS = 10
DECODE_SIZE = (4, 2)
FRAME_BYTES = DECODE_SIZE[0] * DECODE_SIZE[1] * 3


class FakeDecoder:
    """Stands in for an ffmpeg decoder; pixel values encode the frame number."""

    def __init__(self, first_frame: int, frame_count: int) -> None:
        payload = b"".join(
            bytes([frame_number % 256]) * FRAME_BYTES
            for frame_number in range(first_frame, frame_count)
        )
        self.stdout = io.BytesIO(payload)
        self.killed = False

    def poll(self) -> int | None:
        return 0 if self.killed else None

    def kill(self) -> None:
        self.killed = True

    def wait(self, timeout: float | None = None) -> int:
        return 0


class DecoderFactory:
    def __init__(self, frame_count: int, empty_after: int | None = None) -> None:
        self.frame_count = frame_count
        self.empty_after = empty_after
        self.commands: list[list[str]] = []
        self.decoders: list[FakeDecoder] = []

    def __call__(self, command, **kwargs) -> FakeDecoder:
        self.commands.append(list(command))
        if self.empty_after is not None and len(self.commands) > self.empty_after:
            decoder = FakeDecoder(0, 0)
        else:
            start_seconds = float(command[command.index("-ss") + 1])
            decoder = FakeDecoder(int(round(start_seconds * FPS)), self.frame_count)
        self.decoders.append(decoder)
        return decoder


def build_config() -> RenderConfig:
    return RenderConfig(
        fps=FPS,
        seek_poll_interval_seconds=0.05,
        seek_max_attempts=40,
        media_load_timeout_seconds=5.0,
        frame_queue_size=4,
    )


def build_handle(duration: float = 3.0, trim: float = 0.0) -> MediaHandle:
    return MediaHandle(
        path="clip.mp4",
        clip_index=0,
        trim_start_seconds=trim,
        info=MediaInfo(duration, 8, 4, True, False),
        decode_size=DECODE_SIZE,
    )


def frame_number(image: Image.Image) -> int:
    return image.getpixel((0, 0))[0]


def open_player(factory: DecoderFactory, trim: float = 0.0) -> ClipPlayer:
    player = ClipPlayer(build_handle(trim=trim), build_config(), process_factory=factory)
    player.open()
    return player


def test_parse_probe_output() -> None:
    payload = json.dumps(
        {
            "streams": [
                {"codec_type": "video", "width": 1920, "height": 1080, "duration": "9.9"},
                {"codec_type": "audio"},
            ],
            "format": {"duration": "10.5"},
        }
    )
    info = parse_probe_output(payload, "clip.mp4")
    assert info == MediaInfo(10.5, 1920, 1080, True, True)


def test_parse_probe_output_without_duration_fails() -> None:
    with pytest.raises(MediaLoadError) as exc_info:
        parse_probe_output(json.dumps({"streams": [], "format": {}}), "clip.mp4")
    assert exc_info.value.code == MEDIA_DECODE_CODE
    with pytest.raises(MediaLoadError):
        parse_probe_output("not json", "clip.mp4")


def test_compute_decode_size_caps_long_edge() -> None:
    assert compute_decode_size(1920, 1080, 1920) == (1920, 1080)
    assert compute_decode_size(3840, 2160, 1920) == (1920, 1080)
    assert compute_decode_size(1280, 720, 640) == (640, 360)


def test_load_clip_missing_file(tmp_path: Path) -> None:
    with pytest.raises(MediaLoadError):
        load_clip(ClipRef(str(tmp_path / "missing.mp4")), 0, RenderConfig())


def test_load_cta_image(tmp_path: Path) -> None:
    image_path = tmp_path / "cta.png"
    Image.new("RGB", (6, 4), (1, 2, 3)).save(image_path)
    image = load_cta_image(str(image_path))
    assert image is not None
    assert image.mode == "RGBA"
    assert image.size == (6, 4)
    assert load_cta_image(str(tmp_path / "missing.png")) is None
    assert load_cta_image(None) is None


def test_build_decoder_command() -> None:
    command = build_decoder_command(build_handle(), 1.5, 30, "ffmpeg")
    assert command[command.index("-ss") + 1] == "1.500000"
    assert "fps=30,scale=4:2" in command
    assert command[-1] == "pipe:1"


def test_media_time_wraps_and_applies_trim() -> None:
    handle = build_handle(duration=3.0, trim=1.0)
    assert handle.media_time(0.0) == pytest.approx(1.0)
    assert handle.media_time(2.5) == pytest.approx(0.5)


def test_player_opens_and_reads_forward() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory)
    try:
        assert player.state == ClipState.READY
        assert frame_number(player.frame_at(0.0)) == 0
        assert frame_number(player.frame_at(0.5)) == 5
        assert len(factory.commands) == 1
    finally:
        player.close()
    assert player.state == ClipState.UNLOADED


def test_player_seeks_backwards_and_far_ahead() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory)
    try:
        assert frame_number(player.frame_at(0.5)) == 5
        assert frame_number(player.frame_at(0.2)) == 2
        assert len(factory.commands) == 2
        assert frame_number(player.frame_at(2.8)) == 28
        assert len(factory.commands) == 3
    finally:
        player.close()


def test_player_loops_past_clip_end() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory)
    try:
        assert frame_number(player.frame_at(3.2)) == 2
    finally:
        player.close()


def test_player_applies_trim_offset() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory, trim=1.0)
    try:
        assert frame_number(player.frame_at(0.0)) == 10
    finally:
        player.close()


def test_player_open_fails_without_frames() -> None:
    player = ClipPlayer(build_handle(), build_config(), process_factory=DecoderFactory(0))
    with pytest.raises(MediaLoadError) as exc_info:
        player.open()
    assert exc_info.value.code == MEDIA_DECODE_CODE
    assert player.state == ClipState.FAILED


def test_player_seek_exhaustion_raises() -> None:
    factory = DecoderFactory(frame_count=30, empty_after=1)
    player = open_player(factory)
    try:
        with pytest.raises(FrameRenderError) as exc_info:
            player.frame_at(2.5)
        assert exc_info.value.code == FRAME_SEEK_CODE
        assert exc_info.value.clip_index == 0
    finally:
        player.close()


def test_player_live_playback_and_pause() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory)
    try:
        player.play(1.0, 100.0)
        assert player.state == ClipState.PLAYING
        assert frame_number(player.current_frame(100.5)) == 15
        player.pause()
        assert player.state == ClipState.PAUSED
        assert frame_number(player.current_frame(200.0)) == 15
    finally:
        player.close()


def test_player_mute_flags() -> None:
    player = ClipPlayer(build_handle(), build_config(), process_factory=DecoderFactory(30))
    assert player.muted
    player.unmute()
    assert not player.muted
    player.mute()
    assert player.muted


def test_player_kill_stops_the_running_decoder() -> None:
    factory = DecoderFactory(frame_count=30)
    player = open_player(factory)
    try:
        player.kill()
        assert factory.decoders[-1].killed
    finally:
        player.close()
    player.kill()

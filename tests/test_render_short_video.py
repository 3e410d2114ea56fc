"""Integration tests for the render_short_video CLI."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = REPO_ROOT / "render_short_video.py"


def run_render_short_video(
    args: List[str], env: dict[str, str] | None = None
) -> subprocess.CompletedProcess[str]:
    """Run render_short_video.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        cwd=REPO_ROOT,
        text=True,
        capture_output=True,
        check=False,
        env={**os.environ, **(env or {})},
    )


def write_request(target_path: Path, payload: dict) -> None:
    target_path.write_text(json.dumps(payload), encoding="utf-8")


def make_test_clip(target_path: Path, color: str) -> None:
    """Render a one-second clip with a tone using ffmpeg's lavfi sources."""
    result = subprocess.run(
        [
            "ffmpeg",
            "-y",
            "-v",
            "error",
            "-f",
            "lavfi",
            "-i",
            f"color=c={color}:s=64x48:r=10:d=1",
            "-f",
            "lavfi",
            "-i",
            "sine=frequency=440:duration=1",
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            "-shortest",
            str(target_path),
        ],
        capture_output=True,
        check=False,
    )
    assert result.returncode == 0, result.stderr.decode("utf-8", errors="replace")


def probe_duration(video_path: Path) -> float:
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(video_path),
        ],
        capture_output=True,
        text=True,
        check=False,
    )
    assert result.returncode == 0, result.stderr
    return float(result.stdout.strip())


def probe_stream_types(video_path: Path) -> list[str]:
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "stream=codec_type",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(video_path),
        ],
        capture_output=True,
        text=True,
        check=False,
    )
    assert result.returncode == 0, result.stderr
    return result.stdout.split()


def test_wrong_clip_count_fails_fast(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    write_request(
        request_path,
        {"template": "grid4", "clips": ["a.mp4", "b.mp4", "c.mp4"], "labels": {}},
    )
    result = run_render_short_video(
        ["--request-file", str(request_path), "--output-video-file", str(tmp_path / "out.mp4")]
    )
    assert result.returncode != 0
    assert "short_video.input.clip_count" in result.stderr
    assert not (tmp_path / "out.mp4").exists()


def test_invalid_request_json(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    request_path.write_text("{not json", encoding="utf-8")
    result = run_render_short_video(["--request-file", str(request_path)])
    assert result.returncode != 0
    assert "short_video.input.request_file" in result.stderr


def test_missing_request_file(tmp_path: Path) -> None:
    result = run_render_short_video(["--request-file", str(tmp_path / "missing.json")])
    assert result.returncode != 0
    assert "short_video.input.request_file" in result.stderr


def test_invalid_mode(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    write_request(request_path, {"template": "grid4", "clips": ["a", "b", "c", "d"]})
    result = run_render_short_video(
        ["--request-file", str(request_path), "--mode", "realtime"]
    )
    assert result.returncode != 0
    assert "short_video.input.invalid_mode" in result.stderr


def test_invalid_env_config(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    write_request(request_path, {"template": "grid4", "clips": ["a", "b", "c", "d"]})
    result = run_render_short_video(
        ["--request-file", str(request_path)], env={"SHORT_VIDEO_FPS": "fast"}
    )
    assert result.returncode != 0
    assert "short_video.input.invalid_config" in result.stderr


def test_news_sequence_requires_labels(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    write_request(
        request_path,
        {
            "template": "news_sequence",
            "clips": [f"clip_{index}.mp4" for index in range(5)],
            "labels": {"country": "Chile"},
            "narration_text": "one two three four five six",
        },
    )
    result = run_render_short_video(["--request-file", str(request_path)])
    assert result.returncode != 0
    assert "short_video.input.missing_label" in result.stderr


@pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg is required for rendering",
)
def test_missing_clip_file_reports_input_error(tmp_path: Path) -> None:
    request_path = tmp_path / "request.json"
    write_request(
        request_path, {"template": "grid4", "clips": ["a.mp4", "b.mp4", "c.mp4", "d.mp4"]}
    )
    result = run_render_short_video(
        ["--request-file", str(request_path), "--output-video-file", str(tmp_path / "out.mp4")]
    )
    assert result.returncode != 0
    assert "short_video.input.file_error" in result.stderr


@pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg is required for rendering",
)
def test_grid4_offline_render(tmp_path: Path) -> None:
    clip_names = []
    for index, color in enumerate(("red", "green", "blue", "yellow")):
        clip_path = tmp_path / f"clip_{index}.mp4"
        make_test_clip(clip_path, color)
        clip_names.append(clip_path.name)
    request_path = tmp_path / "request.json"
    write_request(
        request_path,
        {
            "template": "grid4",
            "clips": clip_names,
            "labels": {"countries": ["chile", "peru", "japan", "italy"], "date": "14 MARCH"},
        },
    )
    output_path = tmp_path / "grid.mp4"
    result = run_render_short_video(
        [
            "--request-file",
            str(request_path),
            "--output-video-file",
            str(output_path),
            "--mode",
            "offline",
            "--width",
            "108",
            "--height",
            "192",
            "--fps",
            "5",
        ]
    )
    assert result.returncode == 0, result.stderr
    assert output_path.exists()
    assert abs(probe_duration(output_path) - 25.0) < 0.3
    assert sorted(probe_stream_types(output_path)) == ["audio", "video"]

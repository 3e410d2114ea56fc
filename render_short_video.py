#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy>=1.24"
# ]
# ///
"""Compose a vertical short video from clips, labels and narration."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Sequence

from domain.short_video import (
    INVALID_CONFIG_CODE,
    REQUEST_FILE_CODE,
    ClipRef,
    NarrationTrack,
    RenderConfig,
    RenderMode,
    RenderPipelineError,
    RenderRequest,
    RenderValidationError,
    TemplateKind,
    TemplateLabels,
    parse_render_mode,
    parse_template_kind,
    split_narration_text,
)
from service.encoder import ensure_ffmpeg_available
from service.jobs import RenderJobRunner

LOGGER = logging.getLogger("short_video")

ENV_PREFIX = "SHORT_VIDEO_"
LOG_LEVEL_ENV = "SHORT_VIDEO_LOG_LEVEL"
TRUE_VALUES = {"1", "true", "yes", "on"}
DEFAULT_CONFIG = RenderConfig()


def configure_logging(env: dict[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_short_video.py", add_help=True)
    parser.add_argument("--request-file", required=True)
    parser.add_argument("--output-video-file", default="video.mp4")
    parser.add_argument("--mode", default=None, help="live or offline")
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--height", type=int, default=None)
    parser.add_argument("--fps", type=int, default=None)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--font-path", default=None)
    parser.add_argument("--job-timeout-seconds", type=float, default=None)
    parser.add_argument("--logo-text", default=None, help="logo lines separated by |")
    parser.add_argument("--keep-temp", action="store_true")
    return parser.parse_args(list(argv))


def read_env_int(env: dict[str, str], name: str, fallback: int) -> int:
    """Read an integer from the environment."""
    raw_value = env.get(ENV_PREFIX + name, "").strip()
    if not raw_value:
        return fallback
    try:
        return int(raw_value)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{ENV_PREFIX}{name} must be an integer"
        ) from exc


def read_env_float(env: dict[str, str], name: str, fallback: float) -> float:
    """Read a float from the environment."""
    raw_value = env.get(ENV_PREFIX + name, "").strip()
    if not raw_value:
        return fallback
    try:
        return float(raw_value)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{ENV_PREFIX}{name} must be a number"
        ) from exc


def read_env_str(env: dict[str, str], name: str, fallback: str | None) -> str | None:
    """Read a string env var, treating blank values as unset."""
    raw_value = env.get(ENV_PREFIX + name, "").strip()
    return raw_value or fallback


def parse_logo_text(raw_value: str | None) -> tuple[str, ...]:
    if not raw_value:
        return ()
    return tuple(part.strip() for part in raw_value.split("|") if part.strip())


def pick(cli_value: Any, env_value: Any) -> Any:
    """Prefer an explicit CLI value over the environment value."""
    return env_value if cli_value is None else cli_value


def load_config(args: argparse.Namespace, env: dict[str, str]) -> RenderConfig:
    """Build the job configuration: CLI flags over environment over defaults."""
    defaults = DEFAULT_CONFIG
    return RenderConfig(
        width=pick(args.width, read_env_int(env, "WIDTH", defaults.width)),
        height=pick(args.height, read_env_int(env, "HEIGHT", defaults.height)),
        fps=pick(args.fps, read_env_int(env, "FPS", defaults.fps)),
        fonts_dir=pick(args.fonts_dir, read_env_str(env, "FONTS_DIR", defaults.fonts_dir)),
        font_path=pick(args.font_path, read_env_str(env, "FONT_PATH", defaults.font_path)),
        ffmpeg_binary=read_env_str(env, "FFMPEG", defaults.ffmpeg_binary),
        ffprobe_binary=read_env_str(env, "FFPROBE", defaults.ffprobe_binary),
        decode_max_dimension=read_env_int(
            env, "DECODE_MAX_DIMENSION", defaults.decode_max_dimension
        ),
        media_load_timeout_seconds=read_env_float(
            env, "MEDIA_LOAD_TIMEOUT_SECONDS", defaults.media_load_timeout_seconds
        ),
        seek_poll_interval_seconds=read_env_float(
            env, "SEEK_POLL_INTERVAL_SECONDS", defaults.seek_poll_interval_seconds
        ),
        seek_max_attempts=read_env_int(env, "SEEK_MAX_ATTEMPTS", defaults.seek_max_attempts),
        frame_queue_size=read_env_int(env, "FRAME_QUEUE_SIZE", defaults.frame_queue_size),
        job_timeout_seconds=pick(
            args.job_timeout_seconds,
            read_env_float(env, "JOB_TIMEOUT_SECONDS", defaults.job_timeout_seconds),
        ),
        grid4_mode=parse_render_mode(
            read_env_str(env, "GRID4_MODE", defaults.grid4_mode.value)
        ),
        news_sequence_mode=parse_render_mode(
            read_env_str(env, "NEWS_SEQUENCE_MODE", defaults.news_sequence_mode.value)
        ),
        cta_caption=read_env_str(env, "CTA_CAPTION", defaults.cta_caption),
        cta_highlight=read_env_str(env, "CTA_HIGHLIGHT", defaults.cta_highlight),
        logo_lines=parse_logo_text(pick(args.logo_text, read_env_str(env, "LOGO_TEXT", None))),
        encoder_crf=read_env_int(env, "ENCODER_CRF", defaults.encoder_crf),
        encoder_preset=read_env_str(env, "ENCODER_PRESET", defaults.encoder_preset),
        clip_audio_volume=read_env_float(env, "CLIP_AUDIO_VOLUME", defaults.clip_audio_volume),
        narration_volume=read_env_float(env, "NARRATION_VOLUME", defaults.narration_volume),
        keep_temp=args.keep_temp
        or env.get(ENV_PREFIX + "KEEP_TEMP", "").strip().lower() in TRUE_VALUES,
    )


def resolve_path(base_dir: str, raw_value: Any, field_name: str) -> str:
    """Resolve a request path relative to the request file directory."""
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"{field_name} must be a non-empty string"
        )
    return os.path.normpath(os.path.join(base_dir, raw_value.strip()))


def parse_clip(base_dir: str, raw_clip: Any, index: int) -> ClipRef:
    """Parse a clip entry given as a path or as {path, trim_start_seconds}."""
    if isinstance(raw_clip, str):
        return ClipRef(resolve_path(base_dir, raw_clip, f"clips[{index}]"))
    if not isinstance(raw_clip, dict):
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"clips[{index}] must be a path or an object"
        )
    trim = raw_clip.get("trim_start_seconds", 0.0)
    if not isinstance(trim, (int, float)) or isinstance(trim, bool):
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"clips[{index}].trim_start_seconds must be a number"
        )
    return ClipRef(
        resolve_path(base_dir, raw_clip.get("path"), f"clips[{index}].path"), float(trim)
    )


def parse_string_list(raw_value: Any, field_name: str) -> tuple[str, ...]:
    if raw_value is None:
        return ()
    if not isinstance(raw_value, list) or not all(isinstance(item, str) for item in raw_value):
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"{field_name} must be a list of strings"
        )
    return tuple(raw_value)


def parse_labels(payload: dict[str, Any], template: TemplateKind) -> TemplateLabels:
    raw_labels = payload.get("labels") or {}
    if not isinstance(raw_labels, dict):
        raise RenderValidationError(REQUEST_FILE_CODE, "labels must be an object")
    countries = parse_string_list(raw_labels.get("countries"), "labels.countries")
    country = raw_labels.get("country")
    if isinstance(country, str) and not countries:
        countries = (country,)
    date_value = raw_labels.get("date", "")
    if not isinstance(date_value, str):
        raise RenderValidationError(REQUEST_FILE_CODE, "labels.date must be a string")
    tickers = parse_string_list(raw_labels.get("tickers"), "labels.tickers")
    narration_text = payload.get("narration_text")
    if template == TemplateKind.NEWS_SEQUENCE and not tickers and isinstance(narration_text, str):
        tickers = split_narration_text(narration_text)
    return TemplateLabels(countries=countries, date=date_value, tickers=tickers)


def parse_narration(base_dir: str, raw_narration: Any) -> NarrationTrack | None:
    if raw_narration is None:
        return None
    if not isinstance(raw_narration, dict):
        raise RenderValidationError(REQUEST_FILE_CODE, "narration must be an object")
    offsets = raw_narration.get("segment_offsets")
    duration = raw_narration.get("duration_seconds")
    if not isinstance(offsets, list) or not all(
        isinstance(value, (int, float)) for value in offsets
    ):
        raise RenderValidationError(
            REQUEST_FILE_CODE, "narration.segment_offsets must be a list of numbers"
        )
    if not isinstance(duration, (int, float)):
        raise RenderValidationError(
            REQUEST_FILE_CODE, "narration.duration_seconds must be a number"
        )
    return NarrationTrack(
        path=resolve_path(base_dir, raw_narration.get("path"), "narration.path"),
        duration_seconds=float(duration),
        segment_offsets=tuple(float(value) for value in offsets),
    )


def load_request_file(request_path: str) -> RenderRequest:
    """Read and validate a JSON render request."""
    try:
        with open(request_path, "r", encoding="utf-8") as file_handle:
            payload = json.load(file_handle)
    except FileNotFoundError as exc:
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"request file not found: {request_path}"
        ) from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise RenderValidationError(
            REQUEST_FILE_CODE, f"request file is not valid JSON: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise RenderValidationError(REQUEST_FILE_CODE, "request must be a JSON object")

    base_dir = os.path.dirname(os.path.abspath(request_path))
    raw_template = payload.get("template")
    if not isinstance(raw_template, str):
        raise RenderValidationError(REQUEST_FILE_CODE, "template must be a string")
    template = parse_template_kind(raw_template)
    raw_clips = payload.get("clips")
    if not isinstance(raw_clips, list):
        raise RenderValidationError(REQUEST_FILE_CODE, "clips must be a list")
    clips = tuple(parse_clip(base_dir, raw_clip, index) for index, raw_clip in enumerate(raw_clips))
    cta_image = payload.get("cta_image")
    return RenderRequest(
        template=template,
        clips=clips,
        labels=parse_labels(payload, template),
        cta_image_path=(
            None if cta_image is None else resolve_path(base_dir, cta_image, "cta_image")
        ),
        narration=parse_narration(base_dir, payload.get("narration")),
    )


def main() -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        args = parse_args(sys.argv[1:])
        config = load_config(args, env)
        mode: RenderMode | None = parse_render_mode(args.mode) if args.mode else None
        request = load_request_file(args.request_file)
        ensure_ffmpeg_available(config.ffmpeg_binary)
        with RenderJobRunner(config, max_workers=1) as runner:
            result = runner.run(request, args.output_video_file, mode=mode)
        for diagnostic in result.diagnostics:
            LOGGER.warning("short_video.render.diagnostic: %s", diagnostic)
        LOGGER.info(
            "short_video.done mode=%s frames=%d output=%s",
            result.mode.value,
            result.total_frames,
            result.output_path,
        )
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("short_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

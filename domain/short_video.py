"""Domain types and parsing for render_short_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Tuple

INVALID_CONFIG_CODE = "short_video.input.invalid_config"
INVALID_TEMPLATE_CODE = "short_video.input.invalid_template"
INVALID_MODE_CODE = "short_video.input.invalid_mode"
CLIP_COUNT_CODE = "short_video.input.clip_count"
INVALID_CLIP_CODE = "short_video.input.invalid_clip"
MISSING_LABEL_CODE = "short_video.input.missing_label"
INVALID_LABELS_CODE = "short_video.input.invalid_labels"
INVALID_NARRATION_CODE = "short_video.input.invalid_narration"
NARRATION_ALIGNMENT_CODE = "short_video.input.narration_misaligned"
REQUEST_FILE_CODE = "short_video.input.request_file"
INPUT_FILE_CODE = "short_video.input.file_error"
FONT_DIR_CODE = "short_video.input.fonts_missing"

MEDIA_NOT_FOUND_CODE = "short_video.media.not_found"
MEDIA_TIMEOUT_CODE = "short_video.media.timeout"
MEDIA_DECODE_CODE = "short_video.media.decode_error"
FRAME_RENDER_CODE = "short_video.render.frame_failed"
FRAME_SEEK_CODE = "short_video.render.seek_exhausted"
RENDER_CANCELLED_CODE = "short_video.render.cancelled"
FFMPEG_NOT_FOUND_CODE = "short_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "short_video.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "short_video.ffmpeg.process_failed"
FFMPEG_PIPE_CODE = "short_video.ffmpeg.pipe_closed"
EMPTY_OUTPUT_CODE = "short_video.ffmpeg.empty_output"
JOB_TIMEOUT_CODE = "short_video.job.timeout"

NARRATION_BLOCK_COUNT = 3
GRID4_LABEL_COUNT = 4
DEFAULT_CTA_CAPTION = (
    "О причинах учащения природных катастроф и прогнозах на ближайшие годы"
    " - в климатическом докладе учёных АЛЛАТРА"
)
DEFAULT_CTA_HIGHLIGHT = "учёных АЛЛАТРА"

WORD_PATTERN = re.compile(r"\S+")


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code and render context."""

    def __init__(
        self,
        code: str,
        message: str,
        phase: str | None = None,
        frame_index: int | None = None,
        clip_index: int | None = None,
    ) -> None:
        context = format_error_context(phase, frame_index, clip_index)
        super().__init__(f"{message} ({context})" if context else message)
        self.code = code
        self.detail = message
        self.phase = phase
        self.frame_index = frame_index
        self.clip_index = clip_index


class MediaLoadError(RenderPipelineError):
    """A source file failed to decode or timed out loading."""


class FrameRenderError(RenderPipelineError):
    """A single frame failed to seek or draw."""


class EncodingError(RenderPipelineError):
    """The external encoder exited abnormally or its pipe closed."""


class RenderTimeoutError(RenderPipelineError, TimeoutError):
    """The render job exceeded its wall-clock budget."""


class TemplateKind(str, Enum):
    """Supported visual templates."""

    GRID4 = "grid4"
    NEWS_SEQUENCE = "news_sequence"


class RenderMode(str, Enum):
    """Render driver strategies."""

    LIVE = "live"
    OFFLINE = "offline"


TEMPLATE_CLIP_COUNTS = {
    TemplateKind.GRID4: 4,
    TemplateKind.NEWS_SEQUENCE: 5,
}


def format_error_context(
    phase: str | None, frame_index: int | None, clip_index: int | None
) -> str:
    """Render the optional phase/frame/clip context of an error."""
    parts = []
    if phase is not None:
        parts.append(f"phase={phase}")
    if frame_index is not None:
        parts.append(f"frame={frame_index}")
    if clip_index is not None:
        parts.append(f"clip={clip_index}")
    return " ".join(parts)


def parse_template_kind(value: str) -> TemplateKind:
    """Parse a template name into a TemplateKind."""
    normalized = value.strip().lower().replace("-", "_")
    aliases = {"grid": "grid4", "news": "news_sequence", "newssequence": "news_sequence"}
    normalized = aliases.get(normalized, normalized)
    try:
        return TemplateKind(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_TEMPLATE_CODE, f"invalid template kind: {value!r}"
        ) from exc


def parse_render_mode(value: str) -> RenderMode:
    """Parse a render mode name into a RenderMode."""
    try:
        return RenderMode(value.strip().lower())
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_MODE_CODE, f"invalid render mode: {value!r}"
        ) from exc


@dataclass(frozen=True)
class ClipRef:
    """A local clip file with an optional trim start offset."""

    path: str
    trim_start_seconds: float = 0.0

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip():
            raise RenderValidationError(INVALID_CLIP_CODE, "clip path must be non-empty")
        if self.trim_start_seconds < 0:
            raise RenderValidationError(
                INVALID_CLIP_CODE, "clip trim_start_seconds must be non-negative"
            )


@dataclass(frozen=True)
class TemplateLabels:
    """Template text fields.

    Grid4 uses up to four quadrant country labels plus the centre date.
    NewsSequence uses a single country, the date and three narration blocks.
    """

    countries: Tuple[str, ...] = ()
    date: str = ""
    tickers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NarrationTrack:
    """Pre-rendered narration audio with per-block start offsets."""

    path: str
    duration_seconds: float
    segment_offsets: Tuple[float, ...]

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip():
            raise RenderValidationError(
                INVALID_NARRATION_CODE, "narration path must be non-empty"
            )
        if self.duration_seconds <= 0:
            raise RenderValidationError(
                INVALID_NARRATION_CODE, "narration duration must be positive"
            )
        if len(self.segment_offsets) != NARRATION_BLOCK_COUNT:
            raise RenderValidationError(
                INVALID_NARRATION_CODE,
                f"narration requires {NARRATION_BLOCK_COUNT} segment offsets",
            )
        previous = -1.0
        for offset in self.segment_offsets:
            if offset < 0 or offset >= self.duration_seconds:
                raise RenderValidationError(
                    INVALID_NARRATION_CODE,
                    f"narration segment offset out of range: {offset}",
                )
            if offset <= previous:
                raise RenderValidationError(
                    INVALID_NARRATION_CODE, "narration segment offsets must increase"
                )
            previous = offset


@dataclass(frozen=True)
class RenderRequest:
    """Validated, immutable input to a single render."""

    template: TemplateKind
    clips: Tuple[ClipRef, ...]
    labels: TemplateLabels
    cta_image_path: str | None = None
    narration: NarrationTrack | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.template, TemplateKind):
            raise RenderValidationError(INVALID_TEMPLATE_CODE, "template is invalid")
        required = TEMPLATE_CLIP_COUNTS[self.template]
        if len(self.clips) != required:
            raise RenderValidationError(
                CLIP_COUNT_CODE,
                f"{self.template.value} requires exactly {required} clips, "
                f"got {len(self.clips)}",
            )
        if self.cta_image_path is not None and not self.cta_image_path.strip():
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "cta_image_path must be non-empty when set"
            )
        if self.template == TemplateKind.GRID4:
            if len(self.labels.countries) > GRID4_LABEL_COUNT:
                raise RenderValidationError(
                    INVALID_LABELS_CODE,
                    f"grid4 accepts at most {GRID4_LABEL_COUNT} country labels",
                )
            if self.labels.tickers:
                raise RenderValidationError(
                    INVALID_LABELS_CODE, "grid4 does not use narration blocks"
                )
            if self.narration is not None:
                raise RenderValidationError(
                    INVALID_NARRATION_CODE, "grid4 does not accept narration audio"
                )
            return

        if len(self.labels.countries) != 1 or not self.labels.countries[0].strip():
            raise RenderValidationError(
                MISSING_LABEL_CODE, "news_sequence requires one country label"
            )
        if not self.labels.date.strip():
            raise RenderValidationError(
                MISSING_LABEL_CODE, "news_sequence requires a date label"
            )
        if len(self.labels.tickers) != NARRATION_BLOCK_COUNT:
            raise RenderValidationError(
                MISSING_LABEL_CODE,
                f"news_sequence requires {NARRATION_BLOCK_COUNT} narration blocks",
            )


@dataclass(frozen=True)
class RenderConfig:
    """Per-job render configuration; never mutated after construction."""

    width: int = 1080
    height: int = 1920
    fps: int = 30
    fonts_dir: str | None = None
    font_path: str | None = None
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    decode_max_dimension: int = 1920
    media_load_timeout_seconds: float = 60.0
    seek_poll_interval_seconds: float = 0.02
    seek_max_attempts: int = 50
    frame_queue_size: int = 8
    job_timeout_seconds: float = 600.0
    grid4_mode: RenderMode = RenderMode.LIVE
    news_sequence_mode: RenderMode = RenderMode.OFFLINE
    cta_caption: str = DEFAULT_CTA_CAPTION
    cta_highlight: str = DEFAULT_CTA_HIGHLIGHT
    logo_lines: Tuple[str, ...] = ()
    encoder_crf: int = 16
    encoder_preset: str = "slow"
    clip_audio_volume: float = 1.0
    narration_volume: float = 1.0
    keep_temp: bool = False

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width and height must be even"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.decode_max_dimension < 2:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "decode_max_dimension must be at least 2"
            )
        if self.media_load_timeout_seconds <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "media_load_timeout_seconds must be positive"
            )
        if self.seek_poll_interval_seconds <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "seek_poll_interval_seconds must be positive"
            )
        if self.seek_max_attempts <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "seek_max_attempts must be positive"
            )
        if self.frame_queue_size <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "frame_queue_size must be positive"
            )
        if self.job_timeout_seconds <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "job_timeout_seconds must be positive"
            )
        if not isinstance(self.grid4_mode, RenderMode) or not isinstance(
            self.news_sequence_mode, RenderMode
        ):
            raise RenderValidationError(INVALID_MODE_CODE, "render mode is invalid")
        if self.encoder_crf < 0 or self.encoder_crf > 51:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "encoder_crf must be between 0 and 51"
            )
        if not self.encoder_preset.strip():
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "encoder_preset must be non-empty"
            )
        if self.clip_audio_volume < 0 or self.narration_volume < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "audio volumes must be non-negative"
            )
        if self.font_path is not None and not self.font_path.strip():
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "font_path must be non-empty when set"
            )

    def mode_for(self, template: TemplateKind) -> RenderMode:
        """Return the render mode configured for a template."""
        if template == TemplateKind.GRID4:
            return self.grid4_mode
        return self.news_sequence_mode


def capitalize_first(text_value: str) -> str:
    """Uppercase the first character, leaving the rest untouched."""
    stripped = text_value.strip()
    if not stripped:
        return ""
    return stripped[0].upper() + stripped[1:]


def title_case_label(text_value: str) -> str:
    """Title-case every word of a short label."""
    return " ".join(
        word[0].upper() + word[1:].lower() for word in text_value.split() if word
    )


def format_date_label(text_value: str) -> str:
    """Soften shouted date words: all-caps words longer than two letters."""

    def soften(match: re.Match[str]) -> str:
        word = match.group(0)
        letters = [character for character in word if character.isalpha()]
        if len(letters) > 2 and word.isupper():
            return word[0] + word[1:].lower()
        return word

    return WORD_PATTERN.sub(soften, text_value.strip())


def split_narration_text(text_value: str, parts: int = NARRATION_BLOCK_COUNT) -> Tuple[str, ...]:
    """Split text into contiguous word blocks of near-equal size.

    Block sizes differ by at most one word and the remainder goes to the
    earliest blocks. Each block starts with an uppercase letter.
    """
    if parts <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, "parts must be positive")
    words = text_value.split()
    if not words:
        return tuple("" for _ in range(parts))

    base, remainder = divmod(len(words), parts)
    blocks: list[str] = []
    cursor = 0
    for index in range(parts):
        size = base + (1 if index < remainder else 0)
        blocks.append(capitalize_first(" ".join(words[cursor : cursor + size])))
        cursor += size
    return tuple(blocks)

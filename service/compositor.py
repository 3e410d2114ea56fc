"""Frame compositing for the Grid4 and NewsSequence templates.

Geometry is authored against a 1080x1920 frame and scaled linearly to the
configured width. Static graphics are pre-rendered once per job as sprites;
each frame only pastes clip pixels and alpha-composites those sprites.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import os
from typing import Mapping, Sequence, Tuple

import numpy as np
from PIL import Image, ImageChops, ImageDraw, ImageFilter, ImageFont

from domain.short_video import (
    FONT_DIR_CODE,
    RenderConfig,
    RenderRequest,
    RenderValidationError,
    TemplateKind,
    capitalize_first,
    format_date_label,
    title_case_label,
)
from service.render_plan import FrameState, Phase, Timeline, build_timeline

LOGGER = logging.getLogger("short_video.compositor")

REFERENCE_WIDTH = 1080

Color = Tuple[int, int, int, int]
FontType = ImageFont.FreeTypeFont | ImageFont.ImageFont

TRANSPARENT: Color = (0, 0, 0, 0)
WHITE: Color = (255, 255, 255, 255)
BLACK: Color = (0, 0, 0, 255)
RED: Color = (255, 0, 0, 255)
LIVE_RED: Color = (204, 0, 0, 255)
QUOTE_GREEN: Color = (74, 222, 128, 255)
CTA_BACKGROUND: Color = (15, 15, 18, 255)
LABEL_SHADOW: Color = (0, 0, 0, 204)
LOGO_GRADIENT_STOPS = (
    (0.0, (255, 107, 53)),
    (0.6, (255, 69, 0)),
    (1.0, (204, 51, 0)),
)

DIVIDER_WIDTH = 15
GRID_LABEL_FONT_SIZE = 36
GRID_LABEL_OFFSET_Y = 120
GRID_LABEL_SHADOW_BLUR = 15
GRID_LABEL_SHADOW_OFFSET = 4
DATE_STRIP_HEIGHT = 120
DATE_FONT_SIZE = 65
DATE_SHADOW_BLUR = 20
DATE_SHADOW_OFFSET = 5
DATE_TEXT_OFFSET_Y = 5
LOGO_INSET = 200
LOGO_SIZE = 160

GRADIENT_HEIGHT = 800
GRADIENT_MAX_ALPHA = 0.7
LIVE_BADGE_BOX = (200, 160, 160, 50)
LIVE_DOT_CENTER = (30, 25)
LIVE_DOT_RADIUS = 8
LIVE_TEXT_ORIGIN = (60, 26)
LIVE_FONT_SIZE = 30

HEADER_BOX_HEIGHT = 170
HEADER_BOX_PADDING = 120
HEADER_TEXT_INSET = 12
HEADER_DATE_FONT_SIZE = 60
HEADER_COUNTRY_FONT_SIZE = 90
HEADER_COUNTRY_MIN_FONT_SIZE = 40
HEADER_COUNTRY_FONT_STEP = 5
HEADER_COUNTRY_MARGIN = 100
HEADER_COUNTRY_SLACK = 80

CAPTION_SAFE_BOTTOM = 400
CAPTION_START_X = 160
CAPTION_QUOTE_SIZE = 50
CAPTION_TEXT_OFFSET_X = 62
CAPTION_WIDTH_MARGIN = 40
CAPTION_FONT_SIZE = 32
CAPTION_MIN_FONT_SIZE = 20
CAPTION_FONT_STEP = 2
CAPTION_MAX_LINES = 10
CAPTION_LINE_GAP = 2
CAPTION_BOX_PADDING = 4
CAPTION_BOX_EXTRA_WIDTH = 20
CAPTION_TEXT_INSET = (10, 2)

CTA_IMAGE_WIDTH = 700
CTA_IMAGE_TOP = 300
CTA_IMAGE_RADIUS = 30
CTA_MISSING_IMAGE_HEIGHT = 600
CTA_MISSING_IMAGE_RISE = 400
# (blur radius, vertical offset, alpha) from widest to tightest.
CTA_SHADOW_LAYERS = ((30, 20, 0.5), (15, 10, 0.3), (6, 4, 0.25))

HAND_POLYGON = ((0, 0), (18, 15), (10, 15), (15, 28), (11, 30), (6, 16), (0, 22))
HAND_SCALE = 2.5
HAND_STROKE = 2
HAND_ROTATION_DEGREES = 45
HAND_BOB_PERIOD_FRAMES = 60
HAND_BOB_AMPLITUDE = 10
HAND_OFFSET = (20, -50)


@dataclass(frozen=True)
class FrameGeometry:
    """Output frame size and the scale relative to the reference layout."""

    width: int
    height: int

    @property
    def scale(self) -> float:
        return self.width / float(REFERENCE_WIDTH)

    @property
    def mid_x(self) -> int:
        return self.width // 2

    @property
    def mid_y(self) -> int:
        return self.height // 2

    def px(self, value: float) -> int:
        return int(round(value * self.scale))


@dataclass(frozen=True)
class Sprite:
    """Pre-rendered RGBA graphic with its top-left frame position."""

    image: Image.Image
    x: int
    y: int


@dataclass(frozen=True)
class FontPaths:
    regular: str | None
    bold: str | None


def list_font_files(fonts_dir: str) -> list[str]:
    """List font files from the fonts directory."""
    if not os.path.isdir(fonts_dir):
        raise RenderValidationError(
            FONT_DIR_CODE, f"fonts directory does not exist: {fonts_dir}"
        )
    font_files = [
        os.path.join(fonts_dir, entry_name)
        for entry_name in sorted(os.listdir(fonts_dir))
        if entry_name.lower().endswith((".ttf", ".otf"))
    ]
    if not font_files:
        raise RenderValidationError(FONT_DIR_CODE, f"no font files found in {fonts_dir}")
    return font_files


def resolve_font_paths(config: RenderConfig) -> FontPaths:
    """Pick regular and bold faces from the configured font sources."""
    if config.font_path is not None:
        return FontPaths(regular=config.font_path, bold=config.font_path)
    if config.fonts_dir is None:
        return FontPaths(regular=None, bold=None)
    font_files = list_font_files(config.fonts_dir)
    bold_files = [path for path in font_files if "bold" in os.path.basename(path).lower()]
    regular_files = [path for path in font_files if path not in bold_files]
    regular = regular_files[0] if regular_files else font_files[0]
    bold = bold_files[0] if bold_files else regular
    return FontPaths(regular=regular, bold=bold)


class FontBook:
    """Size-keyed font cache for one job."""

    def __init__(self, paths: FontPaths) -> None:
        self._paths = paths
        self._cache: dict[tuple[int, bool], FontType] = {}
        if paths.regular is None:
            LOGGER.warning(
                "short_video.fonts.default: no fonts configured, using Pillow's default face"
            )

    def get(self, size: int, bold: bool = False) -> FontType:
        key = (max(1, size), bold)
        font = self._cache.get(key)
        if font is not None:
            return font
        path = self._paths.bold if bold else self._paths.regular
        if path is None:
            font = ImageFont.load_default(size=key[0])
        else:
            try:
                font = ImageFont.truetype(path, key[0])
            except OSError as exc:
                raise RenderValidationError(
                    FONT_DIR_CODE, f"font could not be loaded: {path}"
                ) from exc
        self._cache[key] = font
        return font


def measure_text_width(font: FontType, text_value: str) -> float:
    """Measure rendered text width in pixels."""
    if not text_value:
        return 0.0
    return float(font.getlength(text_value))


def wrap_words(words: Sequence[str], font: FontType, max_width: float) -> list[list[str]]:
    """Greedy line fill: keep appending while the line stays under max_width."""
    lines: list[list[str]] = []
    current: list[str] = []
    for word in words:
        if not current:
            current = [word]
            continue
        candidate = " ".join(current + [word])
        if measure_text_width(font, candidate) < max_width:
            current.append(word)
        else:
            lines.append(current)
            current = [word]
    if current:
        lines.append(current)
    return lines


@dataclass(frozen=True)
class CaptionLayout:
    font_size: int
    lines: Tuple[Tuple[str, ...], ...]


def fit_caption(
    text_value: str,
    fonts: FontBook,
    max_width: float,
    font_size: int,
    min_font_size: int,
    step: int,
    max_lines: int,
) -> CaptionLayout:
    """Wrap text, shrinking the font while the line count exceeds the cap."""
    words = text_value.split()
    lines = wrap_words(words, fonts.get(font_size, bold=True), max_width)
    while len(lines) > max_lines and font_size > min_font_size:
        font_size = max(min_font_size, font_size - step)
        lines = wrap_words(words, fonts.get(font_size, bold=True), max_width)
    return CaptionLayout(font_size=font_size, lines=tuple(tuple(line) for line in lines))


def cover_crop_box(
    source_width: int, source_height: int, target_width: int, target_height: int
) -> Tuple[float, float, float, float]:
    """Centered crop of the source that matches the target aspect ratio."""
    source_ratio = source_width / float(source_height)
    target_ratio = target_width / float(target_height)
    if source_ratio > target_ratio:
        crop_width = source_height * target_ratio
        left = (source_width - crop_width) / 2.0
        return (left, 0.0, left + crop_width, float(source_height))
    crop_height = source_width / target_ratio
    top = (source_height - crop_height) / 2.0
    return (0.0, top, float(source_width), top + crop_height)


def cover_fit(image: Image.Image, target_width: int, target_height: int) -> Image.Image:
    """Scale and crop an image to fill the target exactly, never stretching."""
    box = cover_crop_box(image.width, image.height, target_width, target_height)
    return image.resize(
        (target_width, target_height), resample=Image.Resampling.BILINEAR, box=box
    )


def scale_alpha(image: Image.Image, opacity: float) -> Image.Image:
    """Return a copy of the image with its alpha channel multiplied by opacity."""
    pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
    alpha = pixels[..., 3].astype(np.float32) * float(opacity)
    pixels[..., 3] = np.clip(np.round(alpha), 0, 255).astype(np.uint8)
    return Image.fromarray(pixels)


def composite_sprite(canvas: Image.Image, sprite: Sprite, opacity: float = 1.0) -> None:
    """Alpha-composite a sprite in place, clipping it to the canvas."""
    if opacity <= 0:
        return
    image = sprite.image if opacity >= 1 else scale_alpha(sprite.image, opacity)
    left = max(0, sprite.x)
    top = max(0, sprite.y)
    right = min(canvas.width, sprite.x + image.width)
    bottom = min(canvas.height, sprite.y + image.height)
    if right <= left or bottom <= top:
        return
    source_left = left - sprite.x
    source_top = top - sprite.y
    canvas.alpha_composite(
        image,
        dest=(left, top),
        source=(
            source_left,
            source_top,
            source_left + right - left,
            source_top + bottom - top,
        ),
    )


def blurred_shadow(mask: Image.Image, blur: float, color: Color) -> Image.Image:
    """Turn an L mask into a soft RGBA shadow layer."""
    if blur > 0:
        # Canvas shadowBlur is roughly twice the Gaussian sigma.
        mask = mask.filter(ImageFilter.GaussianBlur(blur / 2.0))
    alpha = mask.point(lambda value: value * color[3] // 255)
    layer = Image.new("RGBA", mask.size, color[:3] + (0,))
    layer.putalpha(alpha)
    return layer


def render_shadowed_text(
    text_value: str,
    font: FontType,
    fill: Color,
    anchor_point: Tuple[float, float],
    shadow: Color,
    blur: int,
    offset_y: int,
    anchor: str = "mm",
) -> Sprite:
    """Render text with a soft drop shadow, positioned by its anchor."""
    left, top, right, bottom = font.getbbox(text_value, anchor=anchor)
    pad = blur * 2 + abs(offset_y) + 2
    width = int(math.ceil(right - left)) + pad * 2
    height = int(math.ceil(bottom - top)) + pad * 2
    origin = (pad - left, pad - top)

    mask = Image.new("L", (width, height), 0)
    ImageDraw.Draw(mask).text(
        (origin[0], origin[1] + offset_y), text_value, font=font, fill=255, anchor=anchor
    )
    layer = blurred_shadow(mask, blur, shadow)
    text_layer = Image.new("RGBA", (width, height), TRANSPARENT)
    ImageDraw.Draw(text_layer).text(origin, text_value, font=font, fill=fill, anchor=anchor)
    layer.alpha_composite(text_layer)
    return Sprite(
        image=layer,
        x=int(round(anchor_point[0] - origin[0])),
        y=int(round(anchor_point[1] - origin[1])),
    )


def find_highlight_indices(words: Sequence[str], highlight: str) -> set[int]:
    """Indices of the first run of words matching the highlight phrase."""
    phrase = highlight.split()
    if not phrase:
        return set()
    for start in range(len(words) - len(phrase) + 1):
        if list(words[start : start + len(phrase)]) == phrase:
            return set(range(start, start + len(phrase)))
    return set()


def render_caption_block(
    text_value: str,
    fonts: FontBook,
    geometry: FrameGeometry,
    highlight: str = "",
) -> Sprite | None:
    """Render the lower-third caption: quote icon plus boxed wrapped lines."""
    if not text_value.strip():
        return None
    px = geometry.px
    start_x = px(CAPTION_START_X)
    quote_size = px(CAPTION_QUOTE_SIZE)
    max_width = geometry.width - 2 * start_x - quote_size - px(CAPTION_WIDTH_MARGIN)
    layout = fit_caption(
        text_value,
        fonts,
        max_width,
        px(CAPTION_FONT_SIZE),
        px(CAPTION_MIN_FONT_SIZE),
        max(1, px(CAPTION_FONT_STEP)),
        CAPTION_MAX_LINES,
    )
    font = fonts.get(layout.font_size, bold=True)
    gap = px(CAPTION_LINE_GAP)
    box_height = layout.font_size + px(CAPTION_BOX_PADDING)
    total_height = len(layout.lines) * (box_height + gap) - gap
    start_y = geometry.height - px(CAPTION_SAFE_BOTTOM) - total_height
    text_x = px(CAPTION_TEXT_OFFSET_X)
    inset_x, inset_y = px(CAPTION_TEXT_INSET[0]), px(CAPTION_TEXT_INSET[1])

    sprite = Image.new(
        "RGBA", (geometry.width - start_x, max(total_height, quote_size)), TRANSPARENT
    )
    draw = ImageDraw.Draw(sprite)
    draw.rectangle((0, 0, quote_size - 1, quote_size - 1), fill=QUOTE_GREEN)
    draw.text(
        (quote_size / 2.0, quote_size * 0.7),
        "“",
        font=fonts.get(quote_size, bold=True),
        fill=WHITE,
        anchor="mm",
    )

    highlighted = find_highlight_indices(
        [word for line in layout.lines for word in line], highlight
    )
    word_index = 0
    for line_index, line in enumerate(layout.lines):
        line_text = " ".join(line)
        line_top = line_index * (box_height + gap)
        line_width = measure_text_width(font, line_text)
        draw.rectangle(
            (
                text_x,
                line_top,
                text_x + int(math.ceil(line_width)) + px(CAPTION_BOX_EXTRA_WIDTH) - 1,
                line_top + box_height - 1,
            ),
            fill=WHITE,
        )
        for position, word in enumerate(line):
            prefix = " ".join(line[:position]) + (" " if position else "")
            draw.text(
                (text_x + inset_x + measure_text_width(font, prefix), line_top + inset_y),
                word,
                font=font,
                fill=RED if word_index in highlighted else BLACK,
                anchor="la",
            )
            word_index += 1
    return Sprite(image=sprite, x=start_x, y=start_y)


def render_hand_sprite(geometry: FrameGeometry) -> Tuple[Image.Image, Tuple[float, float]]:
    """Render the pointer cue; returns the sprite and its fingertip position."""
    scale = HAND_SCALE * geometry.scale
    stroke = max(1, int(round(HAND_STROKE * scale)))
    pad = int(round(12 * scale))
    max_x = max(point[0] for point in HAND_POLYGON)
    max_y = max(point[1] for point in HAND_POLYGON)
    size = (int(math.ceil(max_x * scale)) + pad * 2, int(math.ceil(max_y * scale)) + pad * 2)
    points = [(pad + x * scale, pad + y * scale) for x, y in HAND_POLYGON]
    shadow_shift = 3 * geometry.scale

    mask = Image.new("L", size, 0)
    ImageDraw.Draw(mask).polygon(
        [(x + shadow_shift, y + shadow_shift) for x, y in points], fill=255
    )
    sprite = blurred_shadow(mask, 6 * geometry.scale, (0, 0, 0, 128))
    shape = Image.new("RGBA", size, TRANSPARENT)
    ImageDraw.Draw(shape).polygon(points, fill=WHITE, outline=BLACK, width=stroke)
    sprite.alpha_composite(shape)

    rotated = sprite.rotate(
        HAND_ROTATION_DEGREES, resample=Image.Resampling.BICUBIC, expand=True
    )
    angle = math.radians(HAND_ROTATION_DEGREES)
    delta_x = pad - size[0] / 2.0
    delta_y = pad - size[1] / 2.0
    tip = (
        rotated.width / 2.0 + delta_x * math.cos(angle) + delta_y * math.sin(angle),
        rotated.height / 2.0 - delta_x * math.sin(angle) + delta_y * math.cos(angle),
    )
    return rotated, tip


def hand_bob_offset(frame_count: int) -> float:
    """Vertical bob of the hand cue for a frame, one sine period per cycle."""
    phase = (frame_count % HAND_BOB_PERIOD_FRAMES) / float(HAND_BOB_PERIOD_FRAMES)
    return math.sin(2 * math.pi * phase) * HAND_BOB_AMPLITUDE


def radial_gradient_disc(size: int) -> Image.Image:
    """Anti-aliased disc filled with the logo's radial gradient."""
    coords = np.arange(size, dtype=np.float32) + 0.5
    grid_x, grid_y = np.meshgrid(coords, coords)
    radius = size / 2.0
    distance = np.sqrt((grid_x - radius) ** 2 + (grid_y - radius) ** 2) / radius
    stops = [stop for stop, _ in LOGO_GRADIENT_STOPS]
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    for channel in range(3):
        values = [color[channel] for _, color in LOGO_GRADIENT_STOPS]
        pixels[..., channel] = np.interp(np.clip(distance, 0, 1), stops, values).astype(np.uint8)
    edge = np.clip((1.0 - distance) * radius, 0.0, 1.0)
    pixels[..., 3] = (edge * 255).astype(np.uint8)
    return Image.fromarray(pixels)


def render_logo(lines: Sequence[str], fonts: FontBook, geometry: FrameGeometry) -> Sprite | None:
    """Build the logo badge sprite, or None when no line has text."""
    visible = [line for line in lines if line.strip()]
    if not visible:
        return None
    size = geometry.px(LOGO_SIZE)
    disc = radial_gradient_disc(size)
    draw = ImageDraw.Draw(disc)
    font_sizes = [max(8, int(size * 0.11))] * len(visible)
    font_sizes[-1] = max(8, int(size * 0.2))
    line_height = sum(font_sizes) + (len(visible) - 1) * int(size * 0.04)
    cursor = (size - line_height) / 2.0
    for line, font_size in zip(visible, font_sizes):
        font = fonts.get(font_size, bold=True)
        while measure_text_width(font, line) > size * 0.86 and font_size > 8:
            font_size -= 1
            font = fonts.get(font_size, bold=True)
        draw.text((size / 2.0, cursor), line, font=font, fill=WHITE, anchor="mt")
        cursor += font_size + int(size * 0.04)
    inset = geometry.px(LOGO_INSET)
    return Sprite(image=disc, x=geometry.width - inset, y=geometry.height - inset)


class CtaScene:
    """Closing call to action shared by both templates."""

    def __init__(
        self,
        config: RenderConfig,
        geometry: FrameGeometry,
        fonts: FontBook,
        cta_image: Image.Image | None,
    ) -> None:
        self._fps = config.fps
        self._base = Image.new("RGBA", (geometry.width, geometry.height), CTA_BACKGROUND)
        px = geometry.px
        image_width = px(CTA_IMAGE_WIDTH)
        image_x = (geometry.width - image_width) // 2
        if cta_image is not None:
            image_top = px(CTA_IMAGE_TOP)
            aspect = cta_image.height / float(cta_image.width)
            image_height = max(1, int(round(image_width * aspect)))
            self._draw_image(
                cta_image, image_x, image_top, image_width, image_height, px(CTA_IMAGE_RADIUS)
            )
        else:
            image_height = px(CTA_MISSING_IMAGE_HEIGHT)
            image_top = geometry.mid_y - px(CTA_MISSING_IMAGE_RISE)
        caption = render_caption_block(
            config.cta_caption, fonts, geometry, highlight=config.cta_highlight
        )
        if caption is not None:
            composite_sprite(self._base, caption)

        self._hand, self._hand_tip = render_hand_sprite(geometry)
        self._hand_anchor = (
            image_x + image_width + px(HAND_OFFSET[0]),
            image_top + image_height + px(HAND_OFFSET[1]),
        )
        self._scale = geometry.scale

    def _draw_image(
        self, image: Image.Image, x: int, y: int, width: int, height: int, radius: int
    ) -> None:
        resized = image.resize((width, height), resample=Image.Resampling.LANCZOS)
        rounded = Image.new("L", (width, height), 0)
        ImageDraw.Draw(rounded).rounded_rectangle(
            (0, 0, width - 1, height - 1), radius=radius, fill=255
        )
        for blur, offset_y, alpha in CTA_SHADOW_LAYERS:
            pad = blur * 2
            mask = Image.new("L", (width + pad * 2, height + pad * 2), 0)
            mask.paste(rounded, (pad, pad))
            shadow = blurred_shadow(mask, blur, (0, 0, 0, int(round(alpha * 255))))
            composite_sprite(self._base, Sprite(shadow, x - pad, y - pad + offset_y))
        mask = ImageChops.multiply(rounded, resized.getchannel("A"))
        layer = Image.new("RGBA", (width, height), TRANSPARENT)
        layer.paste(resized, (0, 0), mask)
        composite_sprite(self._base, Sprite(layer, x, y))

    def draw(self, canvas: Image.Image, frame_count: int) -> None:
        canvas.paste(self._base, (0, 0))
        offset = hand_bob_offset(frame_count) * self._scale
        composite_sprite(
            canvas,
            Sprite(
                image=self._hand,
                x=int(round(self._hand_anchor[0] - offset - self._hand_tip[0])),
                y=int(round(self._hand_anchor[1] + offset - self._hand_tip[1])),
            ),
        )


class TemplateLayout:
    """Per-template drawing strategy, selected once per job."""

    def __init__(
        self,
        request: RenderRequest,
        config: RenderConfig,
        fonts: FontBook,
        cta_image: Image.Image | None,
    ) -> None:
        self.request = request
        self.config = config
        self.fonts = fonts
        self.geometry = FrameGeometry(config.width, config.height)
        self.timeline = build_timeline(request.template)
        self.cta = CtaScene(config, self.geometry, fonts, cta_image)

    def phase_schedule(self) -> Timeline:
        return self.timeline

    def draw_header(self, canvas: Image.Image, state: FrameState) -> None:
        """Templates without a header draw nothing."""

    def draw_content_frame(
        self,
        canvas: Image.Image,
        state: FrameState,
        clip_frames: Mapping[int, Image.Image | None],
    ) -> None:
        raise NotImplementedError


class GridTemplate(TemplateLayout):
    """Four looping quadrants under a static divider/label overlay."""

    def __init__(
        self,
        request: RenderRequest,
        config: RenderConfig,
        fonts: FontBook,
        cta_image: Image.Image | None,
    ) -> None:
        super().__init__(request, config, fonts, cta_image)
        self._overlay = self._build_overlay()

    def quadrant_box(self, clip_index: int) -> Tuple[int, int, int, int]:
        half_width = self.geometry.width // 2
        half_height = self.geometry.height // 2
        left = (clip_index % 2) * half_width
        top = (clip_index // 2) * half_height
        return left, top, half_width, half_height

    def _build_overlay(self) -> Image.Image:
        geometry = self.geometry
        px = geometry.px
        overlay = Image.new("RGBA", (geometry.width, geometry.height), TRANSPARENT)
        draw = ImageDraw.Draw(overlay)
        half_divider = px(DIVIDER_WIDTH) / 2.0
        draw.rectangle(
            (geometry.mid_x - half_divider, 0, geometry.mid_x + half_divider - 1, geometry.height),
            fill=RED,
        )
        draw.rectangle(
            (0, geometry.mid_y - half_divider, geometry.width, geometry.mid_y + half_divider - 1),
            fill=RED,
        )

        quarter_x = geometry.mid_x / 2.0
        label_offset = px(GRID_LABEL_OFFSET_Y)
        anchors = (
            (quarter_x, geometry.mid_y - label_offset),
            (geometry.mid_x + quarter_x, geometry.mid_y - label_offset),
            (quarter_x, geometry.mid_y + label_offset),
            (geometry.mid_x + quarter_x, geometry.mid_y + label_offset),
        )
        label_font = self.fonts.get(px(GRID_LABEL_FONT_SIZE), bold=True)
        for label, anchor_point in zip(self.request.labels.countries, anchors):
            text_value = title_case_label(label)
            if not text_value:
                continue
            composite_sprite(
                overlay,
                render_shadowed_text(
                    text_value,
                    label_font,
                    WHITE,
                    anchor_point,
                    LABEL_SHADOW,
                    px(GRID_LABEL_SHADOW_BLUR),
                    px(GRID_LABEL_SHADOW_OFFSET),
                ),
            )

        date_text = format_date_label(self.request.labels.date)
        if date_text:
            strip_half = px(DATE_STRIP_HEIGHT) // 2
            draw.rectangle(
                (0, geometry.mid_y - strip_half, geometry.width, geometry.mid_y + strip_half - 1),
                fill=RED,
            )
            composite_sprite(
                overlay,
                render_shadowed_text(
                    date_text,
                    self.fonts.get(px(DATE_FONT_SIZE), bold=True),
                    WHITE,
                    (geometry.mid_x, geometry.mid_y + px(DATE_TEXT_OFFSET_Y)),
                    LABEL_SHADOW,
                    px(DATE_SHADOW_BLUR),
                    px(DATE_SHADOW_OFFSET),
                ),
            )

        logo = render_logo(self.config.logo_lines, self.fonts, geometry)
        if logo is not None:
            composite_sprite(overlay, logo)
        return overlay

    def draw_content_frame(
        self,
        canvas: Image.Image,
        state: FrameState,
        clip_frames: Mapping[int, Image.Image | None],
    ) -> None:
        canvas.paste(BLACK, (0, 0, canvas.width, canvas.height))
        for clip_index in state.visible_clips:
            frame = clip_frames.get(clip_index)
            if frame is None:
                continue
            left, top, width, height = self.quadrant_box(clip_index)
            canvas.paste(cover_fit(frame, width, height), (left, top))
        canvas.alpha_composite(self._overlay)


class NewsTemplate(TemplateLayout):
    """Full-bleed sequential clips with a live badge, header and tickers."""

    def __init__(
        self,
        request: RenderRequest,
        config: RenderConfig,
        fonts: FontBook,
        cta_image: Image.Image | None,
    ) -> None:
        super().__init__(request, config, fonts, cta_image)
        self._gradient = self._build_gradient()
        self._badges = (self._build_live_badge(True), self._build_live_badge(False))
        self._header = self._build_header()
        self._tickers = tuple(
            render_caption_block(capitalize_first(text_value), fonts, self.geometry)
            for text_value in request.labels.tickers
        )

    def _build_gradient(self) -> Sprite:
        geometry = self.geometry
        height = min(geometry.height, geometry.px(GRADIENT_HEIGHT))
        alpha = np.linspace(0.0, GRADIENT_MAX_ALPHA * 255.0, height, dtype=np.float32)
        pixels = np.zeros((height, geometry.width, 4), dtype=np.uint8)
        pixels[..., 3] = np.round(alpha)[:, None].astype(np.uint8)
        return Sprite(Image.fromarray(pixels), 0, geometry.height - height)

    def _build_live_badge(self, with_dot: bool) -> Sprite:
        px = self.geometry.px
        inset, top, width, height = (px(value) for value in LIVE_BADGE_BOX)
        badge = Image.new("RGBA", (width, height), LIVE_RED)
        draw = ImageDraw.Draw(badge)
        if with_dot:
            center_x, center_y = px(LIVE_DOT_CENTER[0]), px(LIVE_DOT_CENTER[1])
            radius = px(LIVE_DOT_RADIUS)
            draw.ellipse(
                (center_x - radius, center_y - radius, center_x + radius, center_y + radius),
                fill=WHITE,
            )
        draw.text(
            (px(LIVE_TEXT_ORIGIN[0]), px(LIVE_TEXT_ORIGIN[1])),
            "LIVE",
            font=self.fonts.get(px(LIVE_FONT_SIZE), bold=True),
            fill=WHITE,
            anchor="lm",
        )
        return Sprite(badge, self.geometry.width - inset, top)

    def _build_header(self) -> Sprite | None:
        geometry = self.geometry
        px = geometry.px
        countries = self.request.labels.countries
        country = countries[0].strip().upper() if countries else ""
        date_text = format_date_label(self.request.labels.date)
        if not country and not date_text:
            return None

        country_size = px(HEADER_COUNTRY_FONT_SIZE)
        country_font = self.fonts.get(country_size, bold=True)
        limit = geometry.width - px(HEADER_COUNTRY_MARGIN)
        while (
            measure_text_width(country_font, country) + px(HEADER_COUNTRY_SLACK) > limit
            and country_size > px(HEADER_COUNTRY_MIN_FONT_SIZE)
        ):
            country_size = max(
                px(HEADER_COUNTRY_MIN_FONT_SIZE), country_size - px(HEADER_COUNTRY_FONT_STEP)
            )
            country_font = self.fonts.get(country_size, bold=True)
        date_font = self.fonts.get(px(HEADER_DATE_FONT_SIZE))

        text_width = max(
            measure_text_width(country_font, country), measure_text_width(date_font, date_text)
        )
        box_width = int(math.ceil(text_width)) + px(HEADER_BOX_PADDING)
        box_height = px(HEADER_BOX_HEIGHT)
        inset = px(HEADER_TEXT_INSET)
        box = Image.new("RGBA", (box_width, box_height), WHITE)
        draw = ImageDraw.Draw(box)
        if date_text:
            draw.text((box_width / 2.0, inset), date_text, font=date_font, fill=BLACK, anchor="mt")
        if country:
            draw.text(
                (box_width / 2.0, box_height - inset),
                country,
                font=country_font,
                fill=RED,
                anchor="md",
            )
        return Sprite(
            box,
            int(round((geometry.width - box_width) / 2.0)),
            int(round(geometry.mid_y - box_height / 2.0)),
        )

    def live_dot_visible(self, state: FrameState) -> bool:
        return math.floor(state.time * 2) % 2 == 0

    def draw_header(self, canvas: Image.Image, state: FrameState) -> None:
        if self._header is not None:
            composite_sprite(canvas, self._header)

    def draw_content_frame(
        self,
        canvas: Image.Image,
        state: FrameState,
        clip_frames: Mapping[int, Image.Image | None],
    ) -> None:
        canvas.paste(BLACK, (0, 0, canvas.width, canvas.height))
        frame = clip_frames.get(state.clip_index)
        if frame is not None:
            canvas.paste(cover_fit(frame, canvas.width, canvas.height), (0, 0))
        composite_sprite(canvas, self._gradient)
        composite_sprite(canvas, self._badges[0 if self.live_dot_visible(state) else 1])
        if state.ticker is not None:
            sprite = self._tickers[state.ticker.index]
            if sprite is not None:
                composite_sprite(canvas, sprite, float(state.ticker.alpha))


TEMPLATE_LAYOUTS = {
    TemplateKind.GRID4: GridTemplate,
    TemplateKind.NEWS_SEQUENCE: NewsTemplate,
}


class FrameCompositor:
    """Draws complete frames for a template onto a reused canvas."""

    def __init__(self, layout: TemplateLayout, fps: int) -> None:
        self.layout = layout
        self.fps = fps

    @property
    def timeline(self) -> Timeline:
        return self.layout.phase_schedule()

    def new_canvas(self) -> Image.Image:
        geometry = self.layout.geometry
        return Image.new("RGBA", (geometry.width, geometry.height), BLACK)

    def draw_frame(
        self,
        state: FrameState,
        canvas: Image.Image,
        clip_frames: Mapping[int, Image.Image | None],
    ) -> None:
        """Draw the frame for ``state`` in place; missing clip frames draw nothing."""
        if state.phase == Phase.CTA:
            self.layout.cta.draw(canvas, math.floor(state.time * self.fps))
            return
        self.layout.draw_content_frame(canvas, state, clip_frames)
        if state.phase == Phase.HEADER:
            self.layout.draw_header(canvas, state)

    def draw_frame_at(
        self,
        time_value: float,
        canvas: Image.Image,
        clip_frames: Mapping[int, Image.Image | None],
    ) -> FrameState:
        state = self.timeline.state_at(time_value)
        self.draw_frame(state, canvas, clip_frames)
        return state


def build_compositor(
    request: RenderRequest,
    config: RenderConfig,
    cta_image: Image.Image | None = None,
    fonts: FontBook | None = None,
) -> FrameCompositor:
    """Select the template strategy once and pre-render its static graphics."""
    font_book = fonts if fonts is not None else FontBook(resolve_font_paths(config))
    layout = TEMPLATE_LAYOUTS[request.template](request, config, font_book, cta_image)
    return FrameCompositor(layout, config.fps)

"""Timeline model and render plan construction for render_short_video.

Every schedule value is an exact ``Fraction`` so that phase boundaries,
ticker windows and frame times add up without floating point drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
import math
from typing import Sequence, Tuple

from domain.short_video import (
    INVALID_CONFIG_CODE,
    NARRATION_ALIGNMENT_CODE,
    NarrationTrack,
    RenderValidationError,
    TemplateKind,
)

TICKER_FADE_SECONDS = Fraction(3, 10)


class Phase(str, Enum):
    """Named visual phases of a render."""

    HEADER = "header"
    CONTENT = "content"
    CTA = "cta"


@dataclass(frozen=True)
class PhaseSpan:
    """A phase bound to a half-open ``[start, end)`` interval."""

    phase: Phase
    start: Fraction
    end: Fraction

    def __post_init__(self) -> None:
        if self.start < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "phase start must be non-negative"
            )
        if self.end <= self.start:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "phase end must be after start"
            )

    @property
    def duration(self) -> Fraction:
        return self.end - self.start

    def contains(self, time_value: Fraction) -> bool:
        return self.start <= time_value < self.end


@dataclass(frozen=True)
class TickerSlot:
    """Narration caption window with a symmetric trapezoidal fade."""

    index: int
    start: Fraction
    end: Fraction
    fade: Fraction = TICKER_FADE_SECONDS

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "ticker slot end must be after start"
            )
        if self.fade <= 0 or self.fade * 2 > self.end - self.start:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "ticker fade does not fit inside its slot"
            )

    @property
    def duration(self) -> Fraction:
        return self.end - self.start

    def contains(self, time_value: Fraction) -> bool:
        return self.start <= time_value < self.end

    def alpha_at(self, time_value: Fraction) -> Fraction:
        """Return the caption opacity in ``[0, 1]``; zero outside the slot."""
        if not self.contains(time_value):
            return Fraction(0)
        local_time = time_value - self.start
        return min(
            Fraction(1),
            local_time / self.fade,
            (self.duration - local_time) / self.fade,
        )


@dataclass(frozen=True)
class TickerState:
    """Active ticker index with its current opacity."""

    index: int
    alpha: Fraction


@dataclass(frozen=True)
class TemplateTiming:
    """Fixed duration constants for one template."""

    template: TemplateKind
    clip_count: int
    clip_slot_count: int
    clip_slot_seconds: Fraction
    header_seconds: Fraction
    ticker_count: int
    cta_seconds: Fraction

    def __post_init__(self) -> None:
        if self.clip_slot_count <= 0 or self.clip_slot_count > self.clip_count:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "clip_slot_count is out of range"
            )
        if self.clip_slot_seconds <= 0 or self.cta_seconds <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "clip and cta durations must be positive"
            )
        if self.header_seconds < 0 or self.header_seconds >= self.content_seconds:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "header must fit inside the clip content"
            )
        if self.ticker_count < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "ticker_count must be non-negative"
            )

    @property
    def content_seconds(self) -> Fraction:
        return self.clip_slot_seconds * self.clip_slot_count

    @property
    def ticker_seconds(self) -> Fraction:
        if not self.ticker_count:
            return Fraction(0)
        return (self.content_seconds - self.header_seconds) / self.ticker_count

    @property
    def total_seconds(self) -> Fraction:
        return self.content_seconds + self.cta_seconds


# Grid4 clips play concurrently in one 20s slot; NewsSequence plays its
# five clips one after another.
GRID4_TIMING = TemplateTiming(
    template=TemplateKind.GRID4,
    clip_count=4,
    clip_slot_count=1,
    clip_slot_seconds=Fraction(20),
    header_seconds=Fraction(0),
    ticker_count=0,
    cta_seconds=Fraction(5),
)
NEWS_SEQUENCE_TIMING = TemplateTiming(
    template=TemplateKind.NEWS_SEQUENCE,
    clip_count=5,
    clip_slot_count=5,
    clip_slot_seconds=Fraction(6),
    header_seconds=Fraction(2),
    ticker_count=3,
    cta_seconds=Fraction(5),
)
TEMPLATE_TIMINGS = {
    TemplateKind.GRID4: GRID4_TIMING,
    TemplateKind.NEWS_SEQUENCE: NEWS_SEQUENCE_TIMING,
}


@dataclass(frozen=True)
class FrameState:
    """Everything that should be visible at one instant."""

    time: Fraction
    phase: Phase
    clip_index: int
    visible_clips: Tuple[int, ...]
    ticker: TickerState | None


@dataclass(frozen=True)
class Timeline:
    """Authoritative, immutable schedule of a render.

    All queries are pure functions of ``t``; ``t`` before zero is treated as
    zero and ``t`` past the end as the final instant.
    """

    timing: TemplateTiming
    phases: Tuple[PhaseSpan, ...]
    ticker_slots: Tuple[TickerSlot, ...]

    def __post_init__(self) -> None:
        if not self.phases:
            raise RenderValidationError(INVALID_CONFIG_CODE, "timeline has no phases")
        cursor = Fraction(0)
        for span in self.phases:
            if span.start != cursor:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, "phases must be contiguous"
                )
            cursor = span.end
        if sum(span.duration for span in self.phases) != self.timing.total_seconds:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "phase durations do not sum to the total"
            )
        if self.ticker_slots:
            content = self.span_of(Phase.CONTENT)
            cursor = content.start
            for slot in self.ticker_slots:
                if slot.start != cursor:
                    raise RenderValidationError(
                        INVALID_CONFIG_CODE, "ticker slots must partition content"
                    )
                cursor = slot.end
            if cursor != content.end:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, "ticker slots must partition content"
                )

    @property
    def template(self) -> TemplateKind:
        return self.timing.template

    @property
    def total_seconds(self) -> Fraction:
        return self.phases[-1].end

    @property
    def concurrent_clips(self) -> bool:
        """True when every clip plays at once in a single slot."""
        return self.timing.clip_slot_count == 1

    def span_of(self, phase: Phase) -> PhaseSpan:
        for span in self.phases:
            if span.phase == phase:
                return span
        raise KeyError(phase)

    def clamp_time(self, time_value: Fraction | float | int) -> Fraction:
        value = Fraction(time_value)
        if value < 0:
            return Fraction(0)
        return value

    def phase_at(self, time_value: Fraction | float | int) -> Phase:
        value = self.clamp_time(time_value)
        for span in self.phases:
            if span.contains(value):
                return span.phase
        return self.phases[-1].phase

    def is_content_phase(self, time_value: Fraction | float | int) -> bool:
        """True while clips are on screen, header included."""
        return self.clamp_time(time_value) < self.timing.content_seconds

    def active_clip_index_at(self, time_value: Fraction | float | int) -> int:
        value = self.clamp_time(time_value)
        slot = math.floor(value / self.timing.clip_slot_seconds)
        return min(slot, self.timing.clip_slot_count - 1)

    def visible_clips_at(self, time_value: Fraction | float | int) -> Tuple[int, ...]:
        if not self.is_content_phase(time_value):
            return ()
        if self.timing.clip_slot_count == 1:
            return tuple(range(self.timing.clip_count))
        return (self.active_clip_index_at(time_value),)

    def active_ticker_at(self, time_value: Fraction | float | int) -> TickerState | None:
        value = self.clamp_time(time_value)
        for slot in self.ticker_slots:
            if slot.contains(value):
                return TickerState(index=slot.index, alpha=slot.alpha_at(value))
        return None

    def clip_slot_start(self, clip_index: int) -> Fraction:
        if self.timing.clip_slot_count == 1:
            return Fraction(0)
        return self.timing.clip_slot_seconds * clip_index

    def clip_local_time(self, time_value: Fraction | float | int, clip_index: int) -> Fraction:
        """Seconds elapsed since the clip's slot started."""
        return max(Fraction(0), self.clamp_time(time_value) - self.clip_slot_start(clip_index))

    def state_at(self, time_value: Fraction | float | int) -> FrameState:
        value = self.clamp_time(time_value)
        return FrameState(
            time=value,
            phase=self.phase_at(value),
            clip_index=self.active_clip_index_at(value),
            visible_clips=self.visible_clips_at(value),
            ticker=self.active_ticker_at(value),
        )

    def total_frames(self, fps: int) -> int:
        return compute_total_frames(self.total_seconds, fps)


def build_timeline(template: TemplateKind) -> Timeline:
    """Derive the phase and ticker schedule for a template."""
    timing = TEMPLATE_TIMINGS[template]
    phases: list[PhaseSpan] = []
    cursor = Fraction(0)
    if timing.header_seconds:
        phases.append(PhaseSpan(Phase.HEADER, cursor, timing.header_seconds))
        cursor = timing.header_seconds
    phases.append(PhaseSpan(Phase.CONTENT, cursor, timing.content_seconds))
    phases.append(PhaseSpan(Phase.CTA, timing.content_seconds, timing.total_seconds))

    slots: list[TickerSlot] = []
    slot_start = timing.header_seconds
    for index in range(timing.ticker_count):
        slot_end = slot_start + timing.ticker_seconds
        slots.append(TickerSlot(index=index, start=slot_start, end=slot_end))
        slot_start = slot_end

    return Timeline(timing=timing, phases=tuple(phases), ticker_slots=tuple(slots))


def compute_total_frames(duration_seconds: Fraction, fps: int) -> int:
    """Compute total frames for a duration."""
    if fps <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")
    total_frames = int(round(duration_seconds * fps))
    if total_frames <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "duration and fps produce zero frames"
        )
    return total_frames


def frame_time(frame_index: int, fps: int) -> Fraction:
    """Exact presentation time of a frame index."""
    return Fraction(frame_index, fps)


@dataclass(frozen=True)
class ScheduledFrame:
    """Phase and clip assignment of one output frame."""

    frame_index: int
    phase: Phase
    clip_index: int


@dataclass(frozen=True)
class RenderPlan:
    """Frame-by-frame schedule of an offline render."""

    fps: int
    total_frames: int
    frames: Tuple[ScheduledFrame, ...]

    def __post_init__(self) -> None:
        if self.total_frames <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "total_frames must be positive"
            )
        if len(self.frames) != self.total_frames:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "plan frame count mismatch"
            )
        for expected_index, scheduled in enumerate(self.frames):
            if scheduled.frame_index != expected_index:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, "plan frames must be in increasing order"
                )

    def schedule(self) -> Tuple[Tuple[Phase, int], ...]:
        return tuple((frame.phase, frame.clip_index) for frame in self.frames)


def build_render_plan(timeline: Timeline, fps: int) -> RenderPlan:
    """Build the per-frame schedule for a timeline."""
    total_frames = timeline.total_frames(fps)
    frames = []
    for frame_index in range(total_frames):
        time_value = frame_time(frame_index, fps)
        frames.append(
            ScheduledFrame(
                frame_index=frame_index,
                phase=timeline.phase_at(time_value),
                clip_index=timeline.active_clip_index_at(time_value),
            )
        )
    return RenderPlan(fps=fps, total_frames=total_frames, frames=tuple(frames))


@dataclass(frozen=True)
class AudioRoute:
    """An audible interval of one clip's soundtrack on the output timeline."""

    clip_index: int
    source_offset: float
    start: float
    duration: float

    def __post_init__(self) -> None:
        if self.clip_index < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "audio route clip_index must be non-negative"
            )
        if self.source_offset < 0 or self.start < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "audio route offsets must be non-negative"
            )
        if self.duration <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "audio route duration must be positive"
            )

    @property
    def end(self) -> float:
        return self.start + self.duration


def wrap_media_offset(offset_seconds: float, duration_seconds: float) -> float:
    """Wrap a media offset into ``[0, duration)`` for looping playback."""
    if duration_seconds <= 0:
        return 0.0
    return math.fmod(offset_seconds, duration_seconds)


def build_audio_routes(
    timeline: Timeline,
    clip_trims: Sequence[float],
    clip_durations: Sequence[float],
    clip_has_audio: Sequence[bool],
) -> Tuple[AudioRoute, ...]:
    """Route one clip soundtrack per sequential slot.

    Concurrent layouts stay silent; only sequential slots carry audio, so at
    most one clip is audible at any instant.
    """
    timing = timeline.timing
    if timing.clip_slot_count == 1:
        return ()
    routes: list[AudioRoute] = []
    for clip_index in range(timing.clip_slot_count):
        if not clip_has_audio[clip_index]:
            continue
        routes.append(
            AudioRoute(
                clip_index=clip_index,
                source_offset=wrap_media_offset(
                    clip_trims[clip_index], clip_durations[clip_index]
                ),
                start=float(timeline.clip_slot_start(clip_index)),
                duration=float(timing.clip_slot_seconds),
            )
        )
    return tuple(routes)


def validate_narration_alignment(
    timeline: Timeline, narration: NarrationTrack, fps: int
) -> None:
    """Require narration segments to start within one frame of their slots."""
    if len(narration.segment_offsets) != len(timeline.ticker_slots):
        raise RenderValidationError(
            NARRATION_ALIGNMENT_CODE,
            f"narration has {len(narration.segment_offsets)} segments, "
            f"timeline has {len(timeline.ticker_slots)} ticker slots",
        )
    tolerance = Fraction(1, fps)
    for slot, offset in zip(timeline.ticker_slots, narration.segment_offsets):
        delta = abs(Fraction(offset) - slot.start)
        if delta > tolerance:
            raise RenderValidationError(
                NARRATION_ALIGNMENT_CODE,
                f"narration segment {slot.index} starts at {offset:.3f}s, "
                f"ticker slot starts at {float(slot.start):.3f}s",
            )
    if Fraction(narration.duration_seconds) > timeline.total_seconds + tolerance:
        raise RenderValidationError(
            NARRATION_ALIGNMENT_CODE,
            f"narration lasts {narration.duration_seconds:.3f}s, "
            f"longer than the {float(timeline.total_seconds):.3f}s render",
        )

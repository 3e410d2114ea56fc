"""Unit tests for the timeline and render plan."""

from __future__ import annotations

from fractions import Fraction

import pytest

from domain.short_video import (
    NARRATION_ALIGNMENT_CODE,
    NarrationTrack,
    RenderValidationError,
    TemplateKind,
)
from service.render_plan import (
    TICKER_FADE_SECONDS,
    Phase,
    build_audio_routes,
    build_render_plan,
    build_timeline,
    frame_time,
    validate_narration_alignment,
    wrap_media_offset,
)

FPS = 30


def test_news_sequence_phases_sum_to_total() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert [span.phase for span in timeline.phases] == [Phase.HEADER, Phase.CONTENT, Phase.CTA]
    assert timeline.span_of(Phase.HEADER).end == 2
    assert timeline.span_of(Phase.CTA).start == 30
    assert timeline.total_seconds == 35
    assert sum(span.duration for span in timeline.phases) == timeline.total_seconds


def test_grid4_has_no_header_or_tickers() -> None:
    timeline = build_timeline(TemplateKind.GRID4)
    assert [span.phase for span in timeline.phases] == [Phase.CONTENT, Phase.CTA]
    assert timeline.total_seconds == 25
    assert timeline.ticker_slots == ()
    assert timeline.concurrent_clips


def test_phase_at_boundaries_and_clamping() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert timeline.phase_at(-5) == Phase.HEADER
    assert timeline.phase_at(Fraction(2)) == Phase.CONTENT
    assert timeline.phase_at(Fraction(30)) == Phase.CTA
    assert timeline.phase_at(1000) == Phase.CTA


def test_header_counts_as_content_phase() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert timeline.is_content_phase(0)
    assert timeline.is_content_phase(Fraction(299, 10))
    assert not timeline.is_content_phase(30)


def test_active_clip_index_is_monotonic_and_clamped() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    previous = 0
    for frame_index in range(timeline.total_frames(FPS)):
        clip_index = timeline.active_clip_index_at(frame_time(frame_index, FPS))
        assert previous <= clip_index <= 4
        previous = clip_index
    assert timeline.active_clip_index_at(Fraction(599, 100)) == 0
    assert timeline.active_clip_index_at(6) == 1
    assert timeline.active_clip_index_at(-1) == 0
    assert timeline.active_clip_index_at(34) == 4


def test_visible_clips() -> None:
    grid = build_timeline(TemplateKind.GRID4)
    assert grid.visible_clips_at(5) == (0, 1, 2, 3)
    assert grid.visible_clips_at(21) == ()
    news = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert news.visible_clips_at(13) == (2,)
    assert news.visible_clips_at(31) == ()


def test_ticker_slots_partition_content() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    slots = timeline.ticker_slots
    assert len(slots) == 3
    assert slots[0].start == 2
    assert slots[-1].end == 30
    for left, right in zip(slots, slots[1:]):
        assert left.end == right.start
    assert slots[0].duration == Fraction(28, 3)


def test_ticker_alpha_is_trapezoid() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    slot = timeline.ticker_slots[1]
    assert slot.alpha_at(slot.start) == 0
    assert slot.alpha_at(slot.start + TICKER_FADE_SECONDS / 2) == Fraction(1, 2)
    assert slot.alpha_at(slot.start + slot.duration / 2) == 1
    assert slot.alpha_at(slot.end - TICKER_FADE_SECONDS / 2) == Fraction(1, 2)
    assert slot.alpha_at(slot.end) == 0
    for frame_index in range(timeline.total_frames(FPS)):
        ticker = timeline.active_ticker_at(frame_time(frame_index, FPS))
        if ticker is not None:
            assert 0 <= ticker.alpha <= 1


def test_no_ticker_during_header_or_cta() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert timeline.active_ticker_at(1) is None
    assert timeline.active_ticker_at(32) is None
    assert timeline.active_ticker_at(15).index == 1


def test_state_at_reports_clip_local_time() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    state = timeline.state_at(Fraction(13))
    assert state.phase == Phase.CONTENT
    assert state.clip_index == 2
    assert timeline.clip_local_time(13, 2) == 1
    grid = build_timeline(TemplateKind.GRID4)
    assert grid.clip_local_time(13, 3) == 13


def test_render_plan_frame_counts() -> None:
    news_plan = build_render_plan(build_timeline(TemplateKind.NEWS_SEQUENCE), FPS)
    assert news_plan.total_frames == 35 * FPS
    grid_plan = build_render_plan(build_timeline(TemplateKind.GRID4), FPS)
    assert grid_plan.total_frames == 25 * FPS
    assert grid_plan.frames[20 * FPS].phase == Phase.CTA
    assert grid_plan.frames[20 * FPS - 1].phase == Phase.CONTENT


def test_render_plan_is_deterministic() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    assert build_render_plan(timeline, FPS).schedule() == build_render_plan(
        timeline, FPS
    ).schedule()


def test_audio_routes_follow_sequential_slots() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    routes = build_audio_routes(
        timeline,
        [0.0, 12.0, 0.0, 0.0, 0.0],
        [10.0, 5.0, 10.0, 10.0, 10.0],
        [True, True, False, True, True],
    )
    assert [route.clip_index for route in routes] == [0, 1, 3, 4]
    assert [route.start for route in routes] == [0.0, 6.0, 18.0, 24.0]
    assert all(route.duration == 6.0 for route in routes)
    assert routes[1].source_offset == pytest.approx(2.0)
    for left, right in zip(routes, routes[1:]):
        assert left.end <= right.start


def test_grid4_routes_no_clip_audio() -> None:
    timeline = build_timeline(TemplateKind.GRID4)
    assert build_audio_routes(timeline, [0.0] * 4, [10.0] * 4, [True] * 4) == ()


def test_wrap_media_offset() -> None:
    assert wrap_media_offset(7.5, 5.0) == pytest.approx(2.5)
    assert wrap_media_offset(3.0, 0.0) == 0.0


def test_narration_alignment_within_one_frame() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    validate_narration_alignment(
        timeline, NarrationTrack("voice.wav", 34.0, (2.0, 11.34, 20.67)), FPS
    )


def test_narration_alignment_rejects_drift() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    with pytest.raises(RenderValidationError) as exc_info:
        validate_narration_alignment(
            timeline, NarrationTrack("voice.wav", 34.0, (2.0, 12.0, 20.67)), FPS
        )
    assert exc_info.value.code == NARRATION_ALIGNMENT_CODE


def test_narration_alignment_rejects_long_audio() -> None:
    timeline = build_timeline(TemplateKind.NEWS_SEQUENCE)
    with pytest.raises(RenderValidationError) as exc_info:
        validate_narration_alignment(
            timeline, NarrationTrack("voice.wav", 40.0, (2.0, 11.34, 20.67)), FPS
        )
    assert exc_info.value.code == NARRATION_ALIGNMENT_CODE

"""End-to-end tests for LayoutEngine on hand-built canonical scores."""

import pytest

from engraveplan.config import LayoutCoefficients, LayoutOptions
from engraveplan.diagnostics import ScoreValidationError, Severity
from engraveplan.layout_engine import LayoutEngine, layout_many, layout_score, spanner_markers, staff_keys
from engraveplan.plan_models import ElementKind
from engraveplan.score_models import (
    CanonicalScore,
    DirectionEvent,
    LyricSyllable,
    Measure,
    NoteEvent,
    NoteHead,
    Part,
    RestEvent,
    SpannerAction,
    SpannerEvent,
    SpannerKind,
    Staff,
    TextCategory,
    Voice,
)
from engraveplan.text_lanes import lane_intervals_overlap

TPQ = 480


def _sample_events(measure_index: int) -> tuple:
    notes = []
    for beat in range(4):
        lyric = (LyricSyllable(f"syl{measure_index}{beat}"),)
        notes.append(NoteEvent(beat * TPQ, TPQ, (NoteHead((beat + measure_index) % 5 - 2),), lyrics=lyric))
    return (DirectionEvent(0, TextCategory.DYNAMICS, "mf"), *notes)


def _sample_score(measures: int = 8, name: str = "Voice", with_slur: bool = False) -> CanonicalScore:
    built = []
    for index in range(measures):
        events = list(_sample_events(index))
        if with_slur and index == 0:
            events.insert(2, SpannerEvent(0, SpannerKind.SLUR, SpannerAction.START))
        if with_slur and index == 1:
            events.append(SpannerEvent(3 * TPQ, SpannerKind.SLUR, SpannerAction.STOP))
        staff = Staff(number=1, voices=(Voice(id="1", events=tuple(events)),))
        built.append(Measure(index=index, duration_ticks=4 * TPQ, staves=(staff,)))
    return CanonicalScore(parts=(Part(id="P1", name=name, measures=tuple(built)),), ticks_per_quarter=TPQ, title="Sample")


def _sample_piano(measures: int = 2) -> CanonicalScore:
    built = []
    for index in range(measures):
        upper = Staff(number=1, voices=(Voice(id="1", events=(NoteEvent(0, 4 * TPQ, (NoteHead(2),)),)),))
        lower = Staff(number=2, voices=(Voice(id="1", events=(RestEvent(0, 4 * TPQ),)),))
        built.append(Measure(index=index, duration_ticks=4 * TPQ, staves=(upper, lower)))
    return CanonicalScore(parts=(Part(id="P1", name="Piano", measures=tuple(built)),), ticks_per_quarter=TPQ)


def test_layout_is_deterministic() -> None:
    engine = LayoutEngine()
    assert engine.layout(_sample_score(with_slur=True)) == engine.layout(_sample_score(with_slur=True))


def test_every_measure_is_placed_once_in_order() -> None:
    result = layout_score(_sample_score(12), LayoutOptions(max_measures_per_system=4))
    indices = [column.measure_index for page in result.pages for system in page.systems for column in system.columns]
    assert indices == list(range(12))


def test_columns_never_shrink_below_floor() -> None:
    result = layout_score(_sample_score(12))
    for page in result.pages:
        for system in page.systems:
            assert all(column.width >= column.floor - 1e-9 for column in system.columns)


def test_text_lanes_never_overlap() -> None:
    result = layout_score(_sample_score(6))
    for page in result.pages:
        for system in page.systems:
            assert not lane_intervals_overlap(system.text_lanes)
            assert page.collision_report is not None


def test_system_carries_lane_counts_and_voice_lanes() -> None:
    system = layout_score(_sample_score(2)).pages[0].systems[0]
    counts = dict(system.lane_counts)
    assert counts[TextCategory.LYRIC] >= 1
    assert counts[TextCategory.DYNAMICS] == 1
    assert {lane.voice_id for lane in system.voice_lanes} == {"1"}


def test_slur_across_measures_is_routed_within_cap() -> None:
    result = layout_score(_sample_score(with_slur=True))
    paths = [path for page in result.pages for path in page.spanner_paths]
    assert len(paths) == 1
    assert paths[0].kind is SpannerKind.SLUR
    assert paths[0].delta_y <= LayoutCoefficients().spanner_vertical_cap() + 1e-9


def test_barlines_and_labels_are_emitted() -> None:
    system = layout_score(_sample_score(2)).pages[0].systems[0]
    barlines = [e for e in system.elements if e.kind is ElementKind.BARLINE]
    labels = [e for e in system.elements if e.kind is ElementKind.TEXT and e.ref.startswith("label:")]
    assert len(barlines) == len(system.columns)
    assert [label.text for label in labels] == ["Voice"]


def test_measure_numbers_are_optional() -> None:
    plain = layout_score(_sample_score(8), LayoutOptions(max_measures_per_system=4))
    numbered = layout_score(_sample_score(8), LayoutOptions(max_measures_per_system=4, measure_numbers=True))
    assert not any(e.kind is ElementKind.MEASURE_NUMBER for page in plain.pages for e in page.elements)
    numbers = [e.text for page in numbered.pages for e in page.elements if e.kind is ElementKind.MEASURE_NUMBER]
    assert numbers == ["1", "4", "5", "8"]


def test_grand_staff_rows_are_stacked() -> None:
    score = _sample_piano()
    assert staff_keys(score) == [(0, 1), (0, 2)]
    system = layout_score(score).pages[0].systems[0]
    tops = dict(system.staff_tops)
    assert tops[(0, 2)] - tops[(0, 1)] >= LayoutCoefficients().staff_distance


def test_four_systems_on_a_three_system_page_make_two_pages() -> None:
    score = _sample_score(4)
    probe = LayoutOptions(max_measures_per_system=1, system_gap=40.0)
    height = max(system.height for page in layout_score(score, probe).pages for system in page.systems)
    page_height = probe.margin_top + probe.margin_bottom + 3 * height + 2 * 40.0 + 1.0
    options = LayoutOptions(max_measures_per_system=1, system_gap=40.0, page_height=page_height)

    result = layout_score(score, options)

    assert len(result.pages) == 2
    assert [len(page.systems) for page in result.pages] == [3, 1]
    assert not any(page.telemetry.overflow.any for page in result.pages)


def test_window_matches_full_layout() -> None:
    options = LayoutOptions(max_measures_per_system=2)
    full = layout_score(_sample_score(12, with_slur=True), options)
    windowed = layout_score(_sample_score(12, with_slur=True), LayoutOptions(max_measures_per_system=2, measure_window=(3, 7)))

    expected = [s for page in full.pages for s in page.systems if s.measure_start < 7 and s.measure_stop > 3]
    actual = [s for page in windowed.pages for s in page.systems]
    assert actual == expected
    assert [page.number for page in windowed.pages] == sorted({p.number for p in full.pages if any(s in expected for s in p.systems)})


def test_empty_score_has_no_pages() -> None:
    result = layout_score(CanonicalScore(parts=(), ticks_per_quarter=TPQ))
    assert result.pages == ()
    assert [item.code for item in result.diagnostics] == ["EMPTY_SCORE"]


def test_invalid_score_is_rejected() -> None:
    overlapping = (NoteEvent(0, TPQ, (NoteHead(0),)), NoteEvent(TPQ // 2, TPQ, (NoteHead(1),)))
    staff = Staff(number=1, voices=(Voice(id="1", events=overlapping),))
    score = CanonicalScore(
        parts=(Part(id="P1", measures=(Measure(index=0, duration_ticks=4 * TPQ, staves=(staff,)),)),),
        ticks_per_quarter=TPQ,
    )
    with pytest.raises(ScoreValidationError):
        layout_score(score)


def test_strict_mode_promotes_unmatched_spanner() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(
                id="1",
                events=(NoteEvent(0, 4 * TPQ, (NoteHead(0),)), SpannerEvent(0, SpannerKind.SLUR, SpannerAction.START)),
            ),
        ),
    )
    score = CanonicalScore(
        parts=(Part(id="P1", measures=(Measure(index=0, duration_ticks=4 * TPQ, staves=(staff,)),)),),
        ticks_per_quarter=TPQ,
    )
    lenient = layout_score(score)
    strict = layout_score(score, LayoutOptions(strict=True))
    assert not lenient.has_errors
    assert [d.severity for d in lenient.diagnostics if d.code == "SPANNER_START_UNMATCHED"] == [Severity.WARNING]
    assert strict.has_errors
    assert len(strict.pages) == 1


def test_spanner_markers_follow_score_order() -> None:
    markers = spanner_markers(_sample_score(3, with_slur=True))
    assert [(m.measure_index, m.event.action) for m in markers] == [(0, SpannerAction.START), (1, SpannerAction.STOP)]


def test_layout_many_preserves_order() -> None:
    scores = [_sample_score(2), _sample_score(5)]
    results = layout_many(scores, max_workers=1)
    assert [r.pages[-1].systems[-1].measure_stop for r in results] == [2, 5]


def test_arpeggio_on_tall_chord_is_not_flattened() -> None:
    events = (
        NoteEvent(0, 4 * TPQ, (NoteHead(-10), NoteHead(0), NoteHead(10))),
        SpannerEvent(0, SpannerKind.ARPEGGIO, SpannerAction.START),
        SpannerEvent(0, SpannerKind.ARPEGGIO, SpannerAction.STOP),
    )
    staff = Staff(number=1, voices=(Voice(id="1", events=events),))
    score = CanonicalScore(
        parts=(Part(id="P1", measures=(Measure(index=0, duration_ticks=4 * TPQ, staves=(staff,)),)),),
        ticks_per_quarter=TPQ,
    )
    page = layout_score(score).pages[0]

    (path,) = page.spanner_paths
    heads = [e.bbox for e in page.elements if e.kind is ElementKind.NOTEHEAD]
    chord_height = max(box.bottom for box in heads) - min(box.top for box in heads)
    assert path.kind is SpannerKind.ARPEGGIO
    assert not path.flattened
    assert path.delta_y == pytest.approx(chord_height)
    assert chord_height > LayoutCoefficients().spanner_vertical_cap()


def test_layout_many_uses_worker_processes() -> None:
    scores = [_sample_score(3), _sample_score(6)]
    pooled = layout_many(scores, max_workers=2)
    assert pooled == [layout_score(score) for score in scores]

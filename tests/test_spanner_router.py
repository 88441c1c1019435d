"""Unit tests for SpannerRouter pairing, side selection and flattening."""

import pytest

from engraveplan.config import LayoutCoefficients
from engraveplan.diagnostics import DiagnosticLog, Severity
from engraveplan.plan_models import BoundingBox, MeasureColumn, PressureInputs
from engraveplan.score_models import Placement, SpannerAction, SpannerEvent, SpannerKind, StemDirection
from engraveplan.spanner_router import SpannerIndex, SpannerMarker, SpannerRouter, SystemFrame, _Endpoint
from engraveplan.voice_formatter import NoteAnchor, TickMap

TPQ = 480


def _sample_frame(index: int = 0, measure_start: int = 0, measure_stop: int = 4) -> SystemFrame:
    return SystemFrame(
        index=index,
        page_number=1,
        measure_start=measure_start,
        measure_stop=measure_stop,
        left=60.0,
        right=880.0,
        staff_tops=(((0, 1), 100.0), ((0, 2), 180.0)),
    )


def _sample_note(
    x: float,
    y: float,
    tick: int = 0,
    measure_index: int = 0,
    stem: StemDirection = StemDirection.UP,
    staff: int = 1,
) -> NoteAnchor:
    return NoteAnchor(
        part_index=0,
        staff=staff,
        voice_id="1",
        measure_index=measure_index,
        tick=tick,
        stem=stem,
        x=x,
        head_boxes=(BoundingBox(x - 5.5, y - 5, x + 5.5, y + 5),),
        stem_end=y - 35 if stem is StemDirection.UP else y + 35,
        ref=f"0:{staff}:1:{measure_index}:{tick}",
    )


def _sample_marker(
    kind: SpannerKind,
    action: SpannerAction,
    tick: int,
    measure_index: int = 0,
    number: str = "1",
) -> SpannerMarker:
    return SpannerMarker(SpannerEvent(tick, kind, action, number=number), 0, 1, "1", measure_index)


def _sample_tick_maps(count: int = 4) -> dict[int, TickMap]:
    maps = {}
    for index in range(count):
        column = MeasureColumn(index, 200.0, 82.0, 200.0, 1.0, PressureInputs(), measure_ticks=4 * TPQ, x=80 + 200 * index)
        maps[index] = TickMap(column, 20.0)
    return maps


def test_wide_tie_is_flattened_to_the_cap() -> None:
    log = DiagnosticLog()
    router = SpannerRouter(LayoutCoefficients(), log)
    start = _sample_note(100.0, 100.0)
    end = _sample_note(411.0, 190.0, tick=TPQ)

    path = router.route_pair(SpannerKind.TIE, start, end, _sample_frame())

    assert path.flattened
    assert path.delta_y == pytest.approx(68.0)
    assert path.delta_x == pytest.approx(300.0)
    assert "SPANNER_FLATTENED" in log.codes()


def test_short_slur_is_not_flattened() -> None:
    router = SpannerRouter(LayoutCoefficients())
    path = router.route_pair(SpannerKind.SLUR, _sample_note(100.0, 120.0), _sample_note(160.0, 125.0, tick=TPQ), _sample_frame())
    assert not path.flattened
    assert path.curvature == pytest.approx(11.0 + 0.03 * path.delta_x)


def test_curvature_is_clamped() -> None:
    router = SpannerRouter(LayoutCoefficients())
    path = router.route_pair(SpannerKind.SLUR, _sample_note(100.0, 120.0), _sample_note(700.0, 120.0, tick=TPQ), _sample_frame())
    assert path.curvature == pytest.approx(20.0)


def test_tie_goes_opposite_the_stem() -> None:
    router = SpannerRouter(LayoutCoefficients())
    up = router.route_pair(SpannerKind.TIE, _sample_note(100.0, 120.0), _sample_note(200.0, 120.0, tick=TPQ), _sample_frame())
    down = router.route_pair(
        SpannerKind.TIE,
        _sample_note(100.0, 120.0, stem=StemDirection.DOWN),
        _sample_note(200.0, 120.0, tick=TPQ, stem=StemDirection.DOWN),
        _sample_frame(),
    )
    assert up.side is Placement.BELOW
    assert down.side is Placement.ABOVE


def test_explicit_placement_wins() -> None:
    router = SpannerRouter(LayoutCoefficients())
    path = router.route_pair(
        SpannerKind.SLUR,
        _sample_note(100.0, 120.0),
        _sample_note(200.0, 120.0, tick=TPQ),
        _sample_frame(),
        placement=Placement.ABOVE,
    )
    assert path.side is Placement.ABOVE


def test_distant_cross_staff_pair_becomes_connector() -> None:
    coefficients = LayoutCoefficients()
    frame = SystemFrame(0, 1, 0, 4, 60.0, 880.0, (((0, 1), 100.0), ((0, 2), 250.0)))
    path = SpannerRouter(coefficients).route_pair(
        SpannerKind.SLUR,
        _sample_note(100.0, 120.0),
        _sample_note(200.0, 270.0, tick=TPQ, staff=2),
        frame,
    )
    assert path.connector
    assert path.curvature == 0.0
    assert path.delta_y > coefficients.spanner_vertical_cap()


def test_spanner_index_pairs_by_kind_and_number() -> None:
    index = SpannerIndex()
    router_frame = _sample_frame()
    first = _Endpoint(_sample_marker(SpannerKind.SLUR, SpannerAction.START, 0), router_frame, 100.0, None)
    second = _Endpoint(_sample_marker(SpannerKind.SLUR, SpannerAction.START, 0, number="2"), router_frame, 100.0, None)
    assert index.open(first) is None
    assert index.open(second) is None
    assert len(index) == 2
    assert index.close(_sample_marker(SpannerKind.SLUR, SpannerAction.STOP, TPQ, number="2")) is second
    assert index.close(_sample_marker(SpannerKind.TIE, SpannerAction.STOP, TPQ)) is None
    assert index.drain() == [first]
    assert len(index) == 0


def test_route_pairs_markers_in_one_system() -> None:
    tick_maps = _sample_tick_maps()
    notes = [
        _sample_note(tick_maps[0].x_at(0), 120.0, tick=0),
        _sample_note(tick_maps[0].x_at(TPQ), 120.0, tick=TPQ),
    ]
    markers = [
        _sample_marker(SpannerKind.SLUR, SpannerAction.START, 0),
        _sample_marker(SpannerKind.SLUR, SpannerAction.STOP, TPQ),
    ]
    log = DiagnosticLog()
    paths = SpannerRouter(LayoutCoefficients(), log).route(markers, notes, [_sample_frame()], tick_maps)
    assert len(paths) == 1
    assert paths[0].segment == "whole"
    assert len(log) == 0


def test_cross_system_spanner_splits_into_two_segments() -> None:
    tick_maps = _sample_tick_maps()
    frames = [_sample_frame(0, 0, 2), _sample_frame(1, 2, 4)]
    notes = [_sample_note(tick_maps[1].x_at(0), 120.0, measure_index=1), _sample_note(tick_maps[2].x_at(0), 320.0, measure_index=2)]
    markers = [
        _sample_marker(SpannerKind.SLUR, SpannerAction.START, 0, measure_index=1),
        _sample_marker(SpannerKind.SLUR, SpannerAction.STOP, 0, measure_index=2),
    ]
    paths = SpannerRouter(LayoutCoefficients()).route(markers, notes, frames, tick_maps)
    assert [path.segment for path in paths] == ["start", "continuation"]
    assert [path.system_index for path in paths] == [0, 1]
    assert paths[0].end.x == frames[0].right
    assert paths[1].start.x == frames[1].left


def test_unmatched_markers_warn_and_are_omitted() -> None:
    log = DiagnosticLog()
    markers = [
        _sample_marker(SpannerKind.SLUR, SpannerAction.STOP, 0),
        _sample_marker(SpannerKind.TIE, SpannerAction.START, TPQ),
    ]
    paths = SpannerRouter(LayoutCoefficients(), log).route(markers, [], [_sample_frame()], _sample_tick_maps())
    assert paths == []
    assert log.codes() == ["SPANNER_STOP_UNMATCHED", "SPANNER_START_UNMATCHED"]
    assert all(item.severity is Severity.WARNING for item in log.items)


def test_unmatched_markers_are_errors_in_strict_mode() -> None:
    log = DiagnosticLog(strict=True)
    markers = [_sample_marker(SpannerKind.SLUR, SpannerAction.START, 0)]
    SpannerRouter(LayoutCoefficients(), log).route(markers, [], [_sample_frame()], _sample_tick_maps())
    assert log.has_errors


def _sample_chord(x: float, ys: tuple[float, ...], tick: int = 0, stem: StemDirection = StemDirection.UP) -> NoteAnchor:
    boxes = tuple(BoundingBox(x - 5.5, y - 5, x + 5.5, y + 5) for y in ys)
    return NoteAnchor(
        part_index=0,
        staff=1,
        voice_id="1",
        measure_index=0,
        tick=tick,
        stem=stem,
        x=x,
        head_boxes=boxes,
        stem_end=min(ys) - 35 if stem is StemDirection.UP else max(ys) + 35,
        ref=f"0:1:1:0:{tick}",
    )


def test_tuplet_bracket_follows_stem_side() -> None:
    router = SpannerRouter(LayoutCoefficients())
    up = router.route_pair(SpannerKind.TUPLET, _sample_note(100.0, 120.0), _sample_note(160.0, 125.0, tick=TPQ), _sample_frame())
    down = router.route_pair(
        SpannerKind.TUPLET,
        _sample_note(100.0, 120.0, stem=StemDirection.DOWN),
        _sample_note(160.0, 125.0, tick=TPQ, stem=StemDirection.DOWN),
        _sample_frame(),
    )

    # clears the highest stem tip (85) or lowest stem tip (160) by the bracket offset
    assert up.side is Placement.ABOVE
    assert up.start.y == up.end.y == pytest.approx(85.0 - 8.0)
    assert (up.start.x, up.end.x) == (pytest.approx(94.5), pytest.approx(165.5))
    assert down.side is Placement.BELOW
    assert down.start.y == down.end.y == pytest.approx(160.0 + 8.0)
    assert up.curvature == down.curvature == 0.0


def test_wedge_sits_below_the_staff() -> None:
    coefficients = LayoutCoefficients()
    path = SpannerRouter(coefficients).route_pair(
        SpannerKind.WEDGE, _sample_note(100.0, 120.0), _sample_note(300.0, 90.0, tick=TPQ), _sample_frame()
    )
    expected = 100.0 + coefficients.staff_height + 2 * coefficients.staff_space
    assert path.side is Placement.BELOW
    assert path.start.y == path.end.y == pytest.approx(expected)
    assert path.curvature == 0.0


def test_tall_arpeggio_spans_the_whole_chord() -> None:
    chord = _sample_chord(200.0, (60.0, 110.0, 160.0))
    path = SpannerRouter(LayoutCoefficients()).route_pair(SpannerKind.ARPEGGIO, chord, chord, _sample_frame())

    assert path.side is Placement.LEFT
    assert path.start.x == path.end.x == pytest.approx(200.0 - 5.5 - 8.0)
    assert (path.start.y, path.end.y) == (pytest.approx(55.0), pytest.approx(165.0))
    assert path.delta_y > LayoutCoefficients().spanner_vertical_cap()
    assert not path.flattened


def test_near_cross_staff_pair_routes_as_curve() -> None:
    coefficients = LayoutCoefficients()
    frame = _sample_frame()
    separation = frame.staff_top((0, 2)) - frame.staff_top((0, 1))
    assert separation < coefficients.cross_staff_threshold()

    path = SpannerRouter(coefficients).route_pair(
        SpannerKind.SLUR,
        _sample_note(100.0, 120.0),
        _sample_note(200.0, 160.0, tick=TPQ, staff=2),
        frame,
    )
    assert not path.connector
    assert path.curvature > 0.0


def test_route_resolves_chord_member_by_note_index() -> None:
    tick_maps = _sample_tick_maps()
    notes = [
        _sample_chord(tick_maps[0].x_at(0), (120.0, 100.0)),
        _sample_chord(tick_maps[0].x_at(TPQ), (120.0, 100.0), tick=TPQ),
    ]
    markers = [
        SpannerMarker(SpannerEvent(0, SpannerKind.TIE, SpannerAction.START, note_index=0), 0, 1, "1", 0),
        SpannerMarker(SpannerEvent(TPQ, SpannerKind.TIE, SpannerAction.STOP, note_index=0), 0, 1, "1", 0),
    ]
    (path,) = SpannerRouter(LayoutCoefficients()).route(markers, notes, [_sample_frame()], tick_maps)

    # the lower chord member (index 0), not the stem-up default of the top head
    member = notes[0].head_boxes[0]
    assert path.side is Placement.BELOW
    assert path.start.y == pytest.approx(member.bottom)
    assert path.start.x == pytest.approx(member.right)
    assert path.end.x == pytest.approx(notes[1].head_boxes[0].left)

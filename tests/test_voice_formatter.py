"""Unit tests for VoiceFormatter stem, rest and notehead placement."""

from engraveplan.config import LayoutCoefficients
from engraveplan.diagnostics import DiagnosticLog
from engraveplan.plan_models import ElementKind, MeasureColumn, PressureInputs
from engraveplan.score_models import NoteEvent, NoteHead, RestEvent, Staff, StemDirection, Voice
from engraveplan.voice_formatter import TickMap, VoiceFormatter, default_stem_policy

TPQ = 480


def _sample_tick_map(width: float = 200.0, x: float = 100.0) -> TickMap:
    column = MeasureColumn(
        measure_index=0,
        width=width,
        floor=82.0,
        natural_width=width,
        density_hint=1.0,
        pressures=PressureInputs(),
        measure_ticks=4 * TPQ,
        x=x,
    )
    return TickMap(column, LayoutCoefficients().measure_padding)


def _sample_note(tick: int, duration: int, *steps: int, stem: StemDirection | None = None) -> NoteEvent:
    return NoteEvent(tick=tick, duration=duration, heads=tuple(NoteHead(step) for step in steps), stem=stem)


def _sample_formatter(log: DiagnosticLog | None = None) -> VoiceFormatter:
    return VoiceFormatter(LayoutCoefficients(), TPQ, log)


def test_default_stem_policy_alternates() -> None:
    assert [default_stem_policy(i) for i in range(4)] == [
        StemDirection.UP,
        StemDirection.DOWN,
        StemDirection.UP,
        StemDirection.DOWN,
    ]


def test_tick_map_is_shared_and_monotonic() -> None:
    tick_map = _sample_tick_map()
    xs = [tick_map.x_at(tick) for tick in range(0, 4 * TPQ + 1, TPQ)]
    assert xs == sorted(xs)
    assert xs[0] == 110.0
    assert xs[-1] == 290.0


def test_crossing_voices_stem_apart_without_shared_boxes() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(id="1", events=(_sample_note(0, TPQ, -1),)),
            Voice(id="2", events=(_sample_note(0, TPQ, 0),)),
        ),
    )
    result = _sample_formatter().format_staff(staff, 0, _sample_tick_map())

    stems = {note.voice_id: note.stem for note in result.notes}
    assert stems == {"1": StemDirection.UP, "2": StemDirection.DOWN}
    heads = [element.bbox for element in result.elements if element.kind is ElementKind.NOTEHEAD]
    assert len(heads) == 2
    assert heads[0] != heads[1]


def test_second_clash_shifts_secondary_voice() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(id="1", events=(_sample_note(0, TPQ, 0),)),
            Voice(id="2", events=(_sample_note(0, TPQ, 1),)),
        ),
    )
    result = _sample_formatter().format_staff(staff, 0, _sample_tick_map())
    first, second = result.notes
    assert second.x - first.x == LayoutCoefficients().notehead_width


def test_third_voice_clears_already_shifted_voice() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(id="1", events=(_sample_note(0, TPQ, 0),)),
            Voice(id="2", events=(_sample_note(0, TPQ, 0),)),
            Voice(id="3", events=(_sample_note(0, TPQ, 1),)),
        ),
    )
    result = _sample_formatter().format_staff(staff, 0, _sample_tick_map())

    width = LayoutCoefficients().notehead_width
    xs = {note.voice_id: note.x for note in result.notes}
    assert xs["2"] - xs["1"] == width
    assert xs["3"] - xs["1"] == 2 * width
    heads = [(e.voice_id, e.bbox) for e in result.elements if e.kind is ElementKind.NOTEHEAD]
    clashes = [(a, b) for i, (a, box_a) in enumerate(heads) for b, box_b in heads[i + 1 :] if box_a.intersects(box_b)]
    assert not clashes


def test_non_clashing_voice_stays_in_place() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(id="1", events=(_sample_note(0, TPQ, 0),)),
            Voice(id="2", events=(_sample_note(0, TPQ, 0),)),
            Voice(id="3", events=(_sample_note(0, TPQ, 6),)),
        ),
    )
    xs = {note.voice_id: note.x for note in _sample_formatter().format_staff(staff, 0, _sample_tick_map()).notes}
    assert xs["3"] == xs["1"]


def test_explicit_stem_overrides_policy() -> None:
    staff = Staff(number=1, voices=(Voice(id="1", events=(_sample_note(0, TPQ, 2, stem=StemDirection.DOWN),)),))
    result = _sample_formatter().format_staff(staff, 0, _sample_tick_map())
    assert result.notes[0].stem is StemDirection.DOWN


def test_secondary_voice_rests_are_offset() -> None:
    staff = Staff(
        number=1,
        voices=(
            Voice(id="1", events=(RestEvent(0, 4 * TPQ),)),
            Voice(id="2", events=(RestEvent(0, 4 * TPQ),)),
        ),
    )
    formatter = _sample_formatter()
    lanes = formatter.voice_lanes(staff, 0, 0)
    assert [lane.rest_offset for lane in lanes] == [0, -4]
    rests = [e for e in formatter.format_staff(staff, 0, _sample_tick_map()).elements if e.kind is ElementKind.REST]
    assert rests[1].anchor.y > rests[0].anchor.y


def test_single_voice_rest_sits_on_middle_line() -> None:
    staff = Staff(number=1, voices=(Voice(id="1", events=(RestEvent(0, 4 * TPQ),)),))
    rest = _sample_formatter().format_staff(staff, 0, _sample_tick_map()).elements[0]
    assert rest.kind is ElementKind.REST
    assert rest.anchor.y == 2 * LayoutCoefficients().staff_space


def test_voice_ceiling_keeps_first_voice_and_warns() -> None:
    log = DiagnosticLog()
    voices = tuple(Voice(id=str(i), events=(_sample_note(0, TPQ, i),)) for i in range(1, 6))
    result = _sample_formatter(log).format_staff(Staff(number=1, voices=voices), 0, _sample_tick_map())
    assert [lane.voice_id for lane in result.voice_lanes] == ["1"]
    assert result.dropped_voices == ("2", "3", "4", "5")
    assert log.codes() == ["VOICES_DROPPED"]


def test_four_voices_are_all_formatted() -> None:
    voices = tuple(Voice(id=str(i), events=(_sample_note(0, TPQ, 2 * i),)) for i in range(1, 5))
    result = _sample_formatter().format_staff(Staff(number=1, voices=voices), 0, _sample_tick_map())
    assert len(result.voice_lanes) == 4
    assert len(result.notes) == 4


def test_eighths_in_one_beat_share_a_beam() -> None:
    events = tuple(_sample_note(i * TPQ // 2, TPQ // 2, 0) for i in range(4))
    result = _sample_formatter().format_staff(
        Staff(number=1, voices=(Voice(id="1", events=events),)), 0, _sample_tick_map()
    )
    beams = [e for e in result.elements if e.kind is ElementKind.BEAM]
    flags = [e for e in result.elements if e.kind is ElementKind.FLAG]
    assert len(beams) == 2
    assert flags == []
    assert all(len(beam.stem_refs) == 2 for beam in beams)


def test_lone_eighth_gets_a_flag() -> None:
    events = (_sample_note(0, TPQ // 2, 0), _sample_note(TPQ // 2, TPQ // 2 * 7, 0))
    result = _sample_formatter().format_staff(
        Staff(number=1, voices=(Voice(id="1", events=events),)), 0, _sample_tick_map()
    )
    flags = [e for e in result.elements if e.kind is ElementKind.FLAG]
    assert len(flags) == 1
    assert flags[0].stem_refs == (result.notes[0].ref,)


def test_whole_note_has_no_stem() -> None:
    staff = Staff(number=1, voices=(Voice(id="1", events=(_sample_note(0, 4 * TPQ, 0),)),))
    result = _sample_formatter().format_staff(staff, 0, _sample_tick_map())
    assert not any(e.kind is ElementKind.STEM for e in result.elements)
    assert result.notes[0].stem_end is None


def test_stem_up_anchor_is_top_of_chord() -> None:
    staff = Staff(number=1, voices=(Voice(id="1", events=(_sample_note(0, TPQ, -2, 0, 2),)),))
    note = _sample_formatter().format_staff(staff, 0, _sample_tick_map()).notes[0]
    assert note.stem is StemDirection.UP
    assert note.anchor_box() == min(note.head_boxes, key=lambda box: box.top)
    assert note.anchor_box(0) == note.head_boxes[0]
    assert note.top < note.anchor_box().top

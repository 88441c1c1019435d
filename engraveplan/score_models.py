"""Canonical timed score model consumed by the layout core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from engraveplan.diagnostics import ScoreValidationError


class StemDirection(str, Enum):
    UP = "up"
    DOWN = "down"

    @property
    def sign(self) -> int:
        """-1 for up (towards smaller y), +1 for down."""
        return -1 if self is StemDirection.UP else 1


class Placement(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    LEFT = "left"
    RIGHT = "right"


class SpannerKind(str, Enum):
    TIE = "tie"
    SLUR = "slur"
    WEDGE = "wedge"
    TUPLET = "tuplet"
    ARPEGGIO = "arpeggio"


class SpannerAction(str, Enum):
    START = "start"
    STOP = "stop"


class TextCategory(str, Enum):
    LYRIC = "lyric"
    HARMONY = "harmony"
    DIRECTION = "direction"
    DYNAMICS = "dynamics"


@dataclass(frozen=True)
class NoteHead:
    """
    One resolved notehead.

    Attributes:
        step:       Staff position in half-spaces above the middle line
                    (0 = middle line, 4 = top line, -4 = bottom line).
        alter:      Chromatic alteration already resolved by the parser.
        accidental: True when an accidental glyph is displayed.
    """

    step: int
    alter: int = 0
    accidental: bool = False

    @property
    def needs_clearance(self) -> bool:
        return self.accidental or self.alter != 0


@dataclass(frozen=True)
class LyricSyllable:
    text: str
    verse: int = 1
    italic: bool = False


@dataclass(frozen=True)
class NoteEvent:
    """A note (one head) or chord (several heads) with measure-relative timing."""

    tick: int
    duration: int
    heads: tuple[NoteHead, ...]
    stem: StemDirection | None = None
    lyrics: tuple[LyricSyllable, ...] = ()

    @property
    def is_chord(self) -> bool:
        return len(self.heads) > 1


@dataclass(frozen=True)
class RestEvent:
    tick: int
    duration: int


@dataclass(frozen=True)
class DirectionEvent:
    """Harmony symbol, direction words or dynamics anchored at a tick."""

    tick: int
    category: TextCategory
    text: str
    bold: bool = False
    italic: bool = False
    font_size: float | None = None


@dataclass(frozen=True)
class SpannerEvent:
    """
    One end of a paired annotation, matched to its partner by kind + number.

    ``note_index`` targets a specific chord member (ties); when absent the
    router anchors to the chord note consistent with the stem direction.
    """

    tick: int
    kind: SpannerKind
    action: SpannerAction
    number: str = "1"
    placement: Placement | None = None
    note_index: int | None = None


Event = Union[NoteEvent, RestEvent, DirectionEvent, SpannerEvent]
TimedEvent = Union[NoteEvent, RestEvent]


@dataclass(frozen=True)
class Voice:
    id: str
    events: tuple[Event, ...] = ()

    @property
    def timed_events(self) -> list[TimedEvent]:
        return [event for event in self.events if isinstance(event, (NoteEvent, RestEvent))]


@dataclass(frozen=True)
class Staff:
    number: int
    voices: tuple[Voice, ...] = ()


@dataclass(frozen=True)
class Measure:
    """
    One measure of one part.

    Attributes:
        index:          Absolute measure index shared by all parts.
        duration_ticks: Nominal measure length in ticks.
        staves:         Staves in top-to-bottom order.
        width_hint:     Authored width in layout units, if the source had one.
        number_label:   Displayed measure number, when it differs from index + 1.
        key_fifths:     Key signature accidental count (sign ignored for width).
        time_signature: ``(beats, beat_type)`` when a time signature is shown here.
    """

    index: int
    duration_ticks: int
    staves: tuple[Staff, ...] = ()
    width_hint: float | None = None
    number_label: str | None = None
    key_fifths: int = 0
    time_signature: tuple[int, int] | None = None


@dataclass(frozen=True)
class Part:
    id: str
    measures: tuple[Measure, ...] = ()
    name: str = ""

    @property
    def staff_count(self) -> int:
        return max((len(measure.staves) for measure in self.measures), default=1)


@dataclass(frozen=True)
class CanonicalScore:
    parts: tuple[Part, ...]
    ticks_per_quarter: int
    title: str = ""

    @property
    def measure_count(self) -> int:
        return max((len(part.measures) for part in self.parts), default=0)

    def measures_at(self, index: int) -> list[tuple[Part, Measure]]:
        """All (part, measure) pairs sharing one absolute measure index."""
        found: list[tuple[Part, Measure]] = []
        for part in self.parts:
            if index < len(part.measures):
                found.append((part, part.measures[index]))
        return found


# ── Validation ───────────────────────────────────────────────────────────────

def _require_int(value: object, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScoreValidationError(f"{what} must be an integer tick value, got {value!r}.")
    return value


def validate_score(score: CanonicalScore) -> None:
    """
    Fail fast on structurally invalid canonical input.

    Degenerate-but-valid input (empty measures, zero-duration events) passes;
    it is handled downstream with diagnostics.

    Raises:
        ScoreValidationError: On missing/negative timing fields or overlapping,
            out-of-order events inside one voice.
    """
    if _require_int(score.ticks_per_quarter, "ticks_per_quarter") <= 0:
        raise ScoreValidationError("ticks_per_quarter must be positive.")

    for part in score.parts:
        for position, measure in enumerate(part.measures):
            where = f"part '{part.id}' measure {position}"
            if measure.index != position:
                raise ScoreValidationError(f"{where}: index {measure.index} is out of sequence.")
            if _require_int(measure.duration_ticks, f"{where} duration_ticks") < 0:
                raise ScoreValidationError(f"{where}: duration_ticks is negative.")
            for staff in measure.staves:
                for voice in staff.voices:
                    _validate_voice(voice, f"{where} staff {staff.number} voice '{voice.id}'")


def _validate_voice(voice: Voice, where: str) -> None:
    cursor = 0
    for event in voice.events:
        tick = _require_int(event.tick, f"{where} event tick")
        if tick < 0:
            raise ScoreValidationError(f"{where}: negative tick {tick}.")
        if not isinstance(event, (NoteEvent, RestEvent)):
            continue
        duration = _require_int(event.duration, f"{where} event duration")
        if duration < 0:
            raise ScoreValidationError(f"{where}: negative duration at tick {tick}.")
        if isinstance(event, NoteEvent) and not event.heads:
            raise ScoreValidationError(f"{where}: note at tick {tick} has no noteheads.")
        if tick < cursor:
            raise ScoreValidationError(
                f"{where}: event at tick {tick} overlaps or precedes the previous event ending at {cursor}."
            )
        cursor = tick + duration

"""ScoreLoader: parses MusicXML or MIDI with music21 into the canonical score model."""

from __future__ import annotations

import logging
from fractions import Fraction
from typing import Any, Final

from engraveplan.score_models import (
    CanonicalScore,
    DirectionEvent,
    Event,
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
    StemDirection,
    TextCategory,
    Voice,
)

logger = logging.getLogger(__name__)

DEFAULT_TICKS_PER_QUARTER: Final[int] = 480

#: Diatonic number of the bottom staff line when no clef is known (treble, E4).
_TREBLE_LOWEST_LINE: Final[int] = 31

_STEMS: Final[dict[str, StemDirection]] = {"up": StemDirection.UP, "down": StemDirection.DOWN}


class ScoreLoader:
    """
    Load a notated score file and map it onto ``CanonicalScore``.

    Parts that music21 splits into ``PartStaff`` objects of one staff group
    (a piano grand staff, for example) become the staves of a single part.
    Dynamics, words and chord symbols are attached to the first voice of
    their staff; ties, slurs, wedges, tuplets and arpeggios become spanner
    markers on the voice that carries the note.

    Args:
        ticks_per_quarter: Tick resolution of the produced score.
    """

    def __init__(self, ticks_per_quarter: int = DEFAULT_TICKS_PER_QUARTER) -> None:
        if ticks_per_quarter <= 0:
            raise ValueError("ticks_per_quarter must be positive.")
        self.ticks_per_quarter = ticks_per_quarter
        self._spanner_numbers: dict[int, str] = {}

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _parse(self, path: str) -> Any:
        from music21 import converter, exceptions21

        try:
            parsed = converter.parse(path)
        except exceptions21.Music21Exception as exc:
            raise ValueError(f"music21 could not parse '{path}': {exc}") from exc
        if not hasattr(parsed, "parts"):
            raise ValueError(f"'{path}' does not contain a score.")
        return parsed

    def _ticks(self, quarter_length: Any) -> int:
        return int(round(Fraction(quarter_length) * self.ticks_per_quarter))

    def _title(self, score: Any) -> str:
        metadata = getattr(score, "metadata", None)
        title = getattr(metadata, "title", None) if metadata is not None else None
        return str(title) if title else ""

    def _group_parts(self, score: Any) -> list[list[Any]]:
        """Group PartStaff members of one staff group; every other part stands alone."""
        owner: dict[int, int] = {}
        for group_index, group in enumerate(score.getElementsByClass("StaffGroup")):
            for member in group.getSpannedElements():
                if "PartStaff" in member.classes:
                    owner.setdefault(id(member), group_index)

        groups: list[list[Any]] = []
        seen: dict[int, list[Any]] = {}
        for part in score.parts:
            key = owner.get(id(part))
            if key is None:
                groups.append([part])
            elif key in seen:
                seen[key].append(part)
            else:
                seen[key] = [part]
                groups.append(seen[key])
        return groups

    def _measures(self, part: Any) -> list[Any]:
        measures = list(part.getElementsByClass("Measure"))
        if not measures:
            measures = list(part.makeMeasures().getElementsByClass("Measure"))
        return measures

    def _number(self, spanner: Any) -> str:
        return self._spanner_numbers.setdefault(id(spanner), str(len(self._spanner_numbers) + 1))

    def _head(self, pitch: Any, lowest_line: int) -> NoteHead:
        accidental = getattr(pitch, "accidental", None)
        displayed = accidental is not None and getattr(accidental, "displayStatus", True) is not False
        alter = int(round(float(getattr(pitch, "alter", 0) or 0)))
        return NoteHead(step=pitch.diatonicNoteNum - (lowest_line + 4), alter=alter, accidental=displayed)

    def _note_spanners(self, element: Any, tick: int) -> list[SpannerEvent]:
        """Spanner markers for one note or chord: stops first, then starts."""
        stops: list[SpannerEvent] = []
        starts: list[SpannerEvent] = []

        def add(kind: SpannerKind, action: SpannerAction, number: str, note_index: int | None = None) -> None:
            bucket = starts if action is SpannerAction.START else stops
            bucket.append(SpannerEvent(tick=tick, kind=kind, action=action, number=number, note_index=note_index))

        members = list(element.notes) if element.isChord else [element]
        for position, member in enumerate(members):
            tie = getattr(member, "tie", None)
            if tie is None:
                continue
            number = str(position + 1)
            note_index = position if element.isChord else None
            if tie.type in ("stop", "continue"):
                add(SpannerKind.TIE, SpannerAction.STOP, number, note_index)
            if tie.type in ("start", "continue"):
                add(SpannerKind.TIE, SpannerAction.START, number, note_index)

        for spanner in element.getSpannerSites():
            classes = spanner.classes
            if "Slur" in classes:
                kind = SpannerKind.SLUR
            elif "DynamicWedge" in classes:
                kind = SpannerKind.WEDGE
            else:
                continue
            if spanner.isFirst(element):
                add(kind, SpannerAction.START, self._number(spanner))
            if spanner.isLast(element):
                add(kind, SpannerAction.STOP, self._number(spanner))

        tuplet_type = element.duration.tuplets[0].type if element.duration.tuplets else None
        if tuplet_type == "stop":
            add(SpannerKind.TUPLET, SpannerAction.STOP, "1")
        elif tuplet_type == "start":
            add(SpannerKind.TUPLET, SpannerAction.START, "1")

        # Arpeggios open and close on the same chord.
        same_note: list[SpannerEvent] = []
        if any("ArpeggioMark" in expression.classes for expression in element.expressions):
            same_note = [
                SpannerEvent(tick, SpannerKind.ARPEGGIO, SpannerAction.START),
                SpannerEvent(tick, SpannerKind.ARPEGGIO, SpannerAction.STOP),
            ]
        return stops + starts + same_note

    def _voice_events(self, stream: Any, measure: Any, lowest_line: int) -> list[Event]:
        events: list[Event] = []
        for element in stream.notesAndRests:
            if "Harmony" in element.classes:
                continue
            tick = self._ticks(element.getOffsetInHierarchy(measure))
            duration = self._ticks(element.duration.quarterLength)
            if element.isRest:
                events.append(RestEvent(tick=tick, duration=duration))
                continue
            pitches = element.pitches if element.isChord else (element.pitch,)
            lyrics = tuple(
                LyricSyllable(text=lyric.text, verse=int(lyric.number or 1))
                for lyric in element.lyrics
                if lyric.text
            )
            events.append(
                NoteEvent(
                    tick=tick,
                    duration=duration,
                    heads=tuple(self._head(pitch, lowest_line) for pitch in pitches),
                    stem=_STEMS.get(str(getattr(element, "stemDirection", ""))),
                    lyrics=lyrics,
                )
            )
            events.extend(self._note_spanners(element, tick))
        return events

    def _directions(self, measure: Any) -> list[DirectionEvent]:
        found: list[DirectionEvent] = []
        for element in measure.recurse().getElementsByClass(["Dynamic", "TextExpression", "ChordSymbol"]):
            tick = self._ticks(element.getOffsetInHierarchy(measure))
            classes = element.classes
            if "Dynamic" in classes:
                found.append(DirectionEvent(tick, TextCategory.DYNAMICS, str(element.value)))
            elif "ChordSymbol" in classes:
                found.append(DirectionEvent(tick, TextCategory.HARMONY, str(element.figure)))
            elif element.content:
                style = getattr(element, "style", None)
                found.append(
                    DirectionEvent(
                        tick,
                        TextCategory.DIRECTION,
                        str(element.content),
                        bold=getattr(style, "fontWeight", None) == "bold",
                        italic=getattr(style, "fontStyle", None) == "italic",
                    )
                )
        return found

    def _staff(self, measure: Any, number: int, lowest_line: int) -> Staff:
        streams = list(measure.voices) or [measure]
        voices: list[Voice] = []
        for position, stream in enumerate(streams):
            events = self._voice_events(stream, measure, lowest_line)
            if position == 0:
                # Stable on tick, so markers stay behind the note they belong to.
                events = sorted([*self._directions(measure), *events], key=lambda event: event.tick)
            voice_id = str(stream.id) if stream is not measure else "1"
            voices.append(Voice(id=voice_id, events=tuple(events)))
        return Staff(number=number, voices=tuple(voices))

    def _part(self, members: list[Any]) -> Part:
        staff_measures = [self._measures(member) for member in members]
        lowest_lines = [_TREBLE_LOWEST_LINE] * len(members)
        measures: list[Measure] = []
        for index in range(max(len(found) for found in staff_measures)):
            staves: list[Staff] = []
            duration = 0
            head: Any | None = None
            for number, found in enumerate(staff_measures, start=1):
                if index >= len(found):
                    continue
                m21_measure = found[index]
                head = head if head is not None else m21_measure
                clef = m21_measure.clef
                if clef is not None and getattr(clef, "lowestLine", None) is not None:
                    lowest_lines[number - 1] = clef.lowestLine
                staves.append(self._staff(m21_measure, number, lowest_lines[number - 1]))
                duration = max(duration, self._ticks(m21_measure.duration.quarterLength))
            measures.append(self._measure(index, head, duration, staves))
        first = members[0]
        return Part(id=str(first.id), measures=tuple(measures), name=str(first.partName or ""))

    def _measure(self, index: int, m21_measure: Any, duration: int, staves: list[Staff]) -> Measure:
        key = m21_measure.keySignature
        time = m21_measure.timeSignature
        width = getattr(m21_measure, "layoutWidth", None)
        suffix = getattr(m21_measure, "numberSuffix", None) or ""
        return Measure(
            index=index,
            duration_ticks=duration,
            staves=tuple(staves),
            width_hint=float(width) if width else None,
            number_label=f"{m21_measure.number}{suffix}",
            key_fifths=key.sharps if key is not None else 0,
            time_signature=(time.numerator, time.denominator) if time is not None else None,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, path: str) -> CanonicalScore:
        """
        Parse ``path`` and build a canonical score.

        Raises:
            ValueError: If the file does not hold a score music21 can parse.
        """
        m21_score = self._parse(path)
        self._spanner_numbers = {}
        parts = [self._part(members) for members in self._group_parts(m21_score) if members]
        score = CanonicalScore(
            parts=tuple(parts),
            ticks_per_quarter=self.ticks_per_quarter,
            title=self._title(m21_score),
        )
        logger.info("Loaded '%s': %d part(s), %d measure(s).", path, len(parts), score.measure_count)
        return score

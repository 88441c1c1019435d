"""VoiceFormatter: stem directions, rest offsets and notehead geometry per staff."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable

from engraveplan.config import LayoutCoefficients
from engraveplan.diagnostics import DiagnosticLog
from engraveplan.plan_models import (
    BoundingBox,
    ElementKind,
    ElementPlacement,
    MeasureColumn,
    Point,
    StaffKey,
    VoiceLane,
)
from engraveplan.score_models import NoteEvent, RestEvent, Staff, StemDirection, Voice

logger = logging.getLogger(__name__)

#: Maps a voice's ordinal within its staff to a default stem direction.
StemPolicy = Callable[[int], StemDirection]

_STEM_WIDTH = 1.0


def default_stem_policy(ordinal: int) -> StemDirection:
    """First voice stems up, second down, further voices alternate."""
    return StemDirection.UP if ordinal % 2 == 0 else StemDirection.DOWN


@dataclass(frozen=True)
class TickMap:
    """Shared tick→x function for every voice of every staff in one column."""

    column: MeasureColumn
    padding: float

    def x_at(self, tick: int) -> float:
        usable = max(0.0, self.column.width - self.padding)
        if self.column.measure_ticks <= 0:
            return self.column.x + self.padding / 2
        fraction = min(1.0, max(0.0, tick / self.column.measure_ticks))
        return self.column.x + self.padding / 2 + fraction * usable


@dataclass(frozen=True)
class NoteAnchor:
    """
    Placed geometry of one note or chord, kept for spanner anchoring.

    ``head_boxes`` follow the source order of the event's heads so a spanner
    can target a specific chord member by index.
    """

    part_index: int
    staff: int
    voice_id: str
    measure_index: int
    tick: int
    stem: StemDirection
    x: float
    head_boxes: tuple[BoundingBox, ...]
    stem_end: float | None = None
    ref: str = ""

    @property
    def staff_key(self) -> StaffKey:
        return (self.part_index, self.staff)

    def anchor_box(self, note_index: int | None = None) -> BoundingBox:
        """
        The notehead a spanner attaches to.

        An explicit chord-member index wins; otherwise the topmost head for
        stem-up chords and the bottommost head for stem-down chords.
        """
        if note_index is not None and 0 <= note_index < len(self.head_boxes):
            return self.head_boxes[note_index]
        if self.stem is StemDirection.UP:
            return min(self.head_boxes, key=lambda box: box.top)
        return max(self.head_boxes, key=lambda box: box.bottom)

    @property
    def top(self) -> float:
        tops = [box.top for box in self.head_boxes]
        if self.stem_end is not None:
            tops.append(self.stem_end)
        return min(tops)

    @property
    def bottom(self) -> float:
        bottoms = [box.bottom for box in self.head_boxes]
        if self.stem_end is not None:
            bottoms.append(self.stem_end)
        return max(bottoms)

    def shifted(self, dy: float) -> NoteAnchor:
        return replace(
            self,
            head_boxes=tuple(box.shifted(dy=dy) for box in self.head_boxes),
            stem_end=None if self.stem_end is None else self.stem_end + dy,
        )


@dataclass(frozen=True)
class StaffFormat:
    """Everything the formatter produced for one staff in one measure."""

    staff_key: StaffKey
    measure_index: int
    voice_lanes: tuple[VoiceLane, ...]
    elements: tuple[ElementPlacement, ...]
    notes: tuple[NoteAnchor, ...]
    dropped_voices: tuple[str, ...] = ()


@dataclass
class _StemDraft:
    ref: str
    voice_id: str
    stem: StemDirection
    x: float
    attach_y: float
    tip_y: float
    duration: int
    tick: int
    anchor_index: int


class VoiceFormatter:
    """
    Assigns per-voice stems and rest offsets and places noteheads, stems,
    flags, beams and rests on one staff.

    Geometry is produced with the staff's top line at ``y = 0``; callers
    shift the result once the vertical layout is known.

    Args:
        coefficients:      Shared layout coefficients.
        ticks_per_quarter: Score timebase.
        diagnostics:       Log receiving ``VOICES_DROPPED``.
        stem_policy:       Ordinal → default stem direction. Explicit event
                           stems always take precedence.
    """

    def __init__(
        self,
        coefficients: LayoutCoefficients,
        ticks_per_quarter: int,
        diagnostics: DiagnosticLog | None = None,
        stem_policy: StemPolicy = default_stem_policy,
    ) -> None:
        self.coefficients = coefficients
        self.ticks_per_quarter = ticks_per_quarter
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.stem_policy = stem_policy

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _step_y(self, step: int) -> float:
        space = self.coefficients.staff_space
        return 2 * space - step * space / 2

    def _rest_offset(self, ordinal: int, stem: StemDirection, voice_count: int) -> int:
        if voice_count < 2 or ordinal == 0:
            return 0
        distance = self.coefficients.rest_offset_steps * ((ordinal + 1) // 2)
        return distance if stem is StemDirection.UP else -distance

    def _active_voices(self, staff: Staff, staff_key: StaffKey, measure_index: int) -> tuple[list[Voice], list[str]]:
        active = [voice for voice in staff.voices if voice.events]
        if len(active) <= self.coefficients.max_voices_per_staff:
            return active, []
        dropped = [voice.id for voice in active[1:]]
        self.diagnostics.warning(
            "VOICES_DROPPED",
            f"Staff {staff_key[1]} of part {staff_key[0]} in measure {measure_index + 1} has "
            f"{len(active)} voices (limit {self.coefficients.max_voices_per_staff}); "
            f"kept voice '{active[0].id}', dropped {', '.join(dropped)}.",
            measure_index,
        )
        return active[:1], dropped

    def _clash_shift(self, event: NoteEvent, placed_heads: dict[int, list[tuple[int, int]]]) -> int:
        """
        Smallest column, in notehead widths right of the tick, that clears every
        head already placed at this tick by an earlier voice.

        Heads clash when they share a column and sit a unison or a second apart.
        """
        placed = placed_heads.get(event.tick, [])
        column = 0
        while any(
            placed_column == column and abs(head.step - step) < 2
            for placed_column, step in placed
            for head in event.heads
        ):
            column += 1
        return column

    def _place_rest(
        self,
        x: float,
        rest_offset: int,
        staff_key: StaffKey,
        voice_id: str,
        measure_index: int,
    ) -> ElementPlacement:
        c = self.coefficients
        centre = self._step_y(rest_offset)
        return ElementPlacement(
            kind=ElementKind.REST,
            bbox=BoundingBox(x - c.rest_width / 2, centre - c.rest_height / 2, x + c.rest_width / 2, centre + c.rest_height / 2),
            anchor=Point(x, centre),
            measure_index=measure_index,
            staff_key=staff_key,
            voice_id=voice_id,
        )

    def _beam_groups(self, drafts: list[_StemDraft]) -> list[list[_StemDraft]]:
        """Consecutive sub-quarter stems of one direction inside one beat."""
        groups: list[list[_StemDraft]] = []
        current: list[_StemDraft] = []
        for draft in drafts:
            beamable = draft.duration < self.ticks_per_quarter
            if (
                current
                and beamable
                and draft.stem is current[-1].stem
                and draft.tick // self.ticks_per_quarter == current[-1].tick // self.ticks_per_quarter
                and draft.anchor_index == current[-1].anchor_index + 1
            ):
                current.append(draft)
                continue
            if current:
                groups.append(current)
            current = [draft] if beamable else []
        if current:
            groups.append(current)
        return groups

    def _stem_elements(
        self,
        drafts: list[_StemDraft],
        staff_key: StaffKey,
        measure_index: int,
    ) -> tuple[list[ElementPlacement], dict[str, float]]:
        c = self.coefficients
        elements: list[ElementPlacement] = []
        tips: dict[str, float] = {draft.ref: draft.tip_y for draft in drafts}

        for group in self._beam_groups(drafts):
            if len(group) < 2:
                continue
            up = group[0].stem is StemDirection.UP
            beam_y = min(d.tip_y for d in group) if up else max(d.tip_y for d in group)
            for draft in group:
                tips[draft.ref] = beam_y
            top = beam_y if up else beam_y - c.beam_thickness
            elements.append(
                ElementPlacement(
                    kind=ElementKind.BEAM,
                    bbox=BoundingBox(group[0].x, top, group[-1].x, top + c.beam_thickness),
                    anchor=Point(group[0].x, beam_y),
                    measure_index=measure_index,
                    staff_key=staff_key,
                    voice_id=group[0].voice_id,
                    stem=group[0].stem,
                    ref=f"beam:{group[0].ref}",
                    stem_refs=tuple(d.ref for d in group),
                )
            )

        beamed = {ref for element in elements for ref in element.stem_refs}
        for draft in drafts:
            tip = tips[draft.ref]
            top, bottom = sorted((draft.attach_y, tip))
            elements.append(
                ElementPlacement(
                    kind=ElementKind.STEM,
                    bbox=BoundingBox(draft.x - _STEM_WIDTH / 2, top, draft.x + _STEM_WIDTH / 2, bottom),
                    anchor=Point(draft.x, tip),
                    measure_index=measure_index,
                    staff_key=staff_key,
                    voice_id=draft.voice_id,
                    stem=draft.stem,
                    ref=draft.ref,
                )
            )
            if draft.ref in beamed or draft.duration >= self.ticks_per_quarter:
                continue
            flag_top = tip if draft.stem is StemDirection.UP else tip - c.flag_height
            elements.append(
                ElementPlacement(
                    kind=ElementKind.FLAG,
                    bbox=BoundingBox(draft.x, flag_top, draft.x + c.flag_width, flag_top + c.flag_height),
                    anchor=Point(draft.x, tip),
                    measure_index=measure_index,
                    staff_key=staff_key,
                    voice_id=draft.voice_id,
                    stem=draft.stem,
                    ref=f"flag:{draft.ref}",
                    stem_refs=(draft.ref,),
                )
            )
        return elements, tips

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def voice_lanes(self, staff: Staff, part_index: int, measure_index: int) -> list[VoiceLane]:
        """Stem/rest-offset assignment for every active voice, in ordinal order."""
        active = [voice for voice in staff.voices if voice.events]
        voice_count = len(active)
        lanes = []
        for ordinal, voice in enumerate(active):
            stem = self.stem_policy(ordinal)
            lanes.append(
                VoiceLane(
                    part_index=part_index,
                    staff=staff.number,
                    voice_id=voice.id,
                    ordinal=ordinal,
                    stem=stem,
                    rest_offset=self._rest_offset(ordinal, stem, voice_count),
                    measure_index=measure_index,
                )
            )
        return lanes

    def format_staff(self, staff: Staff, part_index: int, tick_map: TickMap) -> StaffFormat:
        """
        Place every voice of one staff in one measure.

        Returns:
            StaffFormat whose geometry has the staff's top line at ``y = 0``.
        """
        c = self.coefficients
        measure_index = tick_map.column.measure_index
        staff_key: StaffKey = (part_index, staff.number)
        voices, dropped = self._active_voices(staff, staff_key, measure_index)
        kept = Staff(number=staff.number, voices=tuple(voices))
        lanes = self.voice_lanes(kept, part_index, measure_index)

        elements: list[ElementPlacement] = []
        notes: list[NoteAnchor] = []
        placed_heads: dict[int, list[tuple[int, int]]] = {}
        stem_length = c.stem_length
        half_head = c.notehead_width / 2

        for lane, voice in zip(lanes, voices):
            drafts: list[_StemDraft] = []
            voice_heads: dict[int, list[tuple[int, int]]] = {}
            for event_index, event in enumerate(voice.timed_events):
                x = tick_map.x_at(event.tick)
                if isinstance(event, RestEvent):
                    elements.append(self._place_rest(x, lane.rest_offset, staff_key, voice.id, measure_index))
                    continue

                stem = event.stem or lane.stem
                shift = self._clash_shift(event, placed_heads) if lane.ordinal > 0 else 0
                x += shift * c.notehead_width
                ref = f"{part_index}:{staff.number}:{voice.id}:{measure_index}:{event_index}"
                boxes = []
                for head in event.heads:
                    y = self._step_y(head.step)
                    box = BoundingBox(x - half_head, y - c.staff_space / 2, x + half_head, y + c.staff_space / 2)
                    boxes.append(box)
                    elements.append(
                        ElementPlacement(
                            kind=ElementKind.NOTEHEAD,
                            bbox=box,
                            anchor=Point(x, y),
                            measure_index=measure_index,
                            staff_key=staff_key,
                            voice_id=voice.id,
                            stem=stem,
                            ref=ref,
                        )
                    )
                    voice_heads.setdefault(event.tick, []).append((shift, head.step))

                stem_end = None
                # Whole notes and zero-duration grace events carry no stem.
                if 0 < event.duration < 4 * self.ticks_per_quarter:
                    if stem is StemDirection.UP:
                        stem_x = x + half_head
                        attach = max(box.bottom for box in boxes) - c.staff_space / 2
                        stem_end = min(box.top for box in boxes) + c.staff_space / 2 - stem_length
                    else:
                        stem_x = x - half_head
                        attach = min(box.top for box in boxes) + c.staff_space / 2
                        stem_end = max(box.bottom for box in boxes) - c.staff_space / 2 + stem_length
                    drafts.append(
                        _StemDraft(
                            ref=ref,
                            voice_id=voice.id,
                            stem=stem,
                            x=stem_x,
                            attach_y=attach,
                            tip_y=stem_end,
                            duration=event.duration,
                            tick=event.tick,
                            anchor_index=event_index,
                        )
                    )
                notes.append(
                    NoteAnchor(
                        part_index=part_index,
                        staff=staff.number,
                        voice_id=voice.id,
                        measure_index=measure_index,
                        tick=event.tick,
                        stem=stem,
                        x=x,
                        head_boxes=tuple(boxes),
                        stem_end=stem_end,
                        ref=ref,
                    )
                )

            stem_elements, tips = self._stem_elements(drafts, staff_key, measure_index)
            elements.extend(stem_elements)
            notes = [replace(note, stem_end=tips[note.ref]) if note.ref in tips else note for note in notes]
            for tick, heads in voice_heads.items():
                placed_heads.setdefault(tick, []).extend(heads)

        logger.debug(
            "Formatted staff %s in measure %d: %d voice(s), %d element(s).",
            staff_key,
            measure_index,
            len(lanes),
            len(elements),
        )
        return StaffFormat(
            staff_key=staff_key,
            measure_index=measure_index,
            voice_lanes=tuple(lanes),
            elements=tuple(elements),
            notes=tuple(notes),
            dropped_voices=tuple(dropped),
        )

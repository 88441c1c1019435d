"""SpannerRouter: pairs start/stop markers and routes them into concrete paths."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Mapping, Sequence

from engraveplan.config import LayoutCoefficients
from engraveplan.diagnostics import DiagnosticLog
from engraveplan.plan_models import Point, SpannerPath, StaffKey
from engraveplan.score_models import Placement, SpannerAction, SpannerEvent, SpannerKind, StemDirection
from engraveplan.voice_formatter import NoteAnchor, TickMap

logger = logging.getLogger(__name__)

#: Kinds drawn as curves; the rest are straight lines or brackets.
_CURVED_KINDS = (SpannerKind.TIE, SpannerKind.SLUR)


@dataclass(frozen=True)
class SpannerMarker:
    """One spanner start/stop event with the scope it was found in."""

    event: SpannerEvent
    part_index: int
    staff: int
    voice_id: str
    measure_index: int

    @property
    def scope_key(self) -> tuple[SpannerKind, int, str, str]:
        # Wedges belong to a staff, every other kind to a voice.
        if self.event.kind is SpannerKind.WEDGE:
            return (self.event.kind, self.part_index, f"staff:{self.staff}", self.event.number)
        return (self.event.kind, self.part_index, f"voice:{self.voice_id}", self.event.number)

    @property
    def staff_key(self) -> StaffKey:
        return (self.part_index, self.staff)


@dataclass(frozen=True)
class SystemFrame:
    """The parts of a placed system the router needs: extent, page and staff rows."""

    index: int
    page_number: int
    measure_start: int
    measure_stop: int
    left: float
    right: float
    staff_tops: tuple[tuple[StaffKey, float], ...]

    def staff_top(self, staff_key: StaffKey) -> float:
        for key, top in self.staff_tops:
            if key == staff_key:
                return top
        return self.staff_tops[0][1] if self.staff_tops else 0.0

    def contains(self, measure_index: int) -> bool:
        return self.measure_start <= measure_index < self.measure_stop


@dataclass(frozen=True)
class _Endpoint:
    marker: SpannerMarker
    frame: SystemFrame
    x: float
    note: NoteAnchor | None


class SpannerIndex:
    """
    Pending spanner starts keyed by ``(kind, part, scope, number)``.

    A start is consumed by the first stop with the same key. Paired markers
    never reference each other directly; the index is the only link.
    """

    def __init__(self) -> None:
        self._pending: dict[tuple[SpannerKind, int, str, str], _Endpoint] = {}

    def open(self, endpoint: _Endpoint) -> _Endpoint | None:
        """Register a start; returns the start it displaced, if any."""
        key = endpoint.marker.scope_key
        displaced = self._pending.pop(key, None)
        self._pending[key] = endpoint
        return displaced

    def close(self, marker: SpannerMarker) -> _Endpoint | None:
        return self._pending.pop(marker.scope_key, None)

    def drain(self) -> list[_Endpoint]:
        pending = list(self._pending.values())
        self._pending.clear()
        return pending

    def __len__(self) -> int:
        return len(self._pending)


class SpannerRouter:
    """
    Turns matched start/stop markers into ``SpannerPath`` objects.

    Side selection prefers an explicit placement and otherwise minimises the
    vertical skew between the two endpoints. Paths whose endpoint spread
    exceeds the staff-distance-scaled caps are flattened (end clamped toward
    the start, curvature scaled down), never dropped. Cross-staff pairs whose
    staves sit further apart than the connector threshold become straight
    connectors. Connectors and arpeggio brackets must reach both of their
    anchors and are never flattened. Pairs in different systems split into a
    ``start`` and a ``continuation`` segment.

    Args:
        coefficients: Shared layout coefficients (caps, curve shape, offsets).
        diagnostics:  Log receiving unmatched-marker and flattening records.
    """

    def __init__(self, coefficients: LayoutCoefficients, diagnostics: DiagnosticLog | None = None) -> None:
        self.coefficients = coefficients
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _curvature(self, span_x: float) -> float:
        c = self.coefficients
        return min(c.curve_max_height, max(c.curve_base_height, c.curve_base_height + span_x * c.curve_height_per_unit))

    def _fallback_y(self, endpoint: _Endpoint, side: Placement) -> float:
        c = self.coefficients
        top = endpoint.frame.staff_top(endpoint.marker.staff_key)
        if side is Placement.ABOVE:
            return top - c.staff_space
        return top + c.staff_height + c.staff_space

    def _side_y(self, endpoint: _Endpoint, side: Placement, kind: SpannerKind) -> float:
        note = endpoint.note
        if note is None:
            return self._fallback_y(endpoint, side)
        box = note.anchor_box(endpoint.marker.event.note_index)
        if side is Placement.ABOVE:
            if kind is not SpannerKind.TIE and note.stem is StemDirection.UP and note.stem_end is not None:
                return min(box.top, note.stem_end)
            return box.top
        if kind is not SpannerKind.TIE and note.stem is StemDirection.DOWN and note.stem_end is not None:
            return max(box.bottom, note.stem_end)
        return box.bottom

    def _anchor_x(self, endpoint: _Endpoint, kind: SpannerKind, is_start: bool) -> float:
        note = endpoint.note
        if note is None:
            return endpoint.x
        box = note.anchor_box(endpoint.marker.event.note_index)
        if kind is SpannerKind.TIE:
            # Ties leave from the right of the first head into the left of the second.
            return box.right if is_start else box.left
        if kind is SpannerKind.TUPLET:
            return box.left if is_start else box.right
        return (box.left + box.right) / 2

    def _choose_side(self, start: _Endpoint, end: _Endpoint | None, kind: SpannerKind) -> Placement:
        explicit = start.marker.event.placement or (end.marker.event.placement if end else None)
        if explicit in (Placement.ABOVE, Placement.BELOW):
            return explicit
        stem = start.note.stem if start.note is not None else StemDirection.UP
        if kind is SpannerKind.WEDGE:
            return Placement.BELOW
        if kind is SpannerKind.TUPLET:
            return Placement.ABOVE if stem is StemDirection.UP else Placement.BELOW
        opposite_stem = Placement.BELOW if stem is StemDirection.UP else Placement.ABOVE
        if end is None:
            return opposite_stem
        above = abs(self._side_y(start, Placement.ABOVE, kind) - self._side_y(end, Placement.ABOVE, kind))
        below = abs(self._side_y(start, Placement.BELOW, kind) - self._side_y(end, Placement.BELOW, kind))
        if above == below:
            return opposite_stem
        return Placement.ABOVE if above < below else Placement.BELOW

    def _flatten(self, path: SpannerPath) -> SpannerPath:
        """Clamp the end anchor so both spreads respect the caps."""
        c = self.coefficients
        dx = path.end.x - path.start.x
        dy = path.end.y - path.start.y
        x_cap = c.spanner_horizontal_cap()
        y_cap = c.spanner_vertical_cap()
        if abs(dx) <= x_cap and abs(dy) <= y_cap:
            return path
        ratio = 1.0
        if abs(dx) > x_cap:
            ratio = min(ratio, x_cap / abs(dx))
            dx = x_cap if dx > 0 else -x_cap
        if abs(dy) > y_cap:
            ratio = min(ratio, y_cap / abs(dy))
            dy = y_cap if dy > 0 else -y_cap
        self.diagnostics.info(
            "SPANNER_FLATTENED",
            f"{path.kind.value} '{path.spanner_id}' spread ({abs(path.end.x - path.start.x):.1f}, "
            f"{abs(path.end.y - path.start.y):.1f}) exceeds caps ({x_cap:.1f}, {y_cap:.1f}); flattened.",
        )
        return replace(
            path,
            end=Point(path.start.x + dx, path.start.y + dy),
            curvature=path.curvature * ratio,
            flattened=True,
        )

    def _tuplet_y(self, start: _Endpoint, end: _Endpoint, side: Placement, notes: Sequence[NoteAnchor]) -> float:
        marker = start.marker
        covered = [
            note
            for note in notes
            if note.part_index == marker.part_index
            and note.voice_id == marker.voice_id
            and (start.marker.measure_index, start.marker.event.tick)
            <= (note.measure_index, note.tick)
            <= (end.marker.measure_index, end.marker.event.tick)
        ]
        offset = self.coefficients.tuplet_bracket_offset
        if not covered:
            return self._fallback_y(start, side)
        if side is Placement.ABOVE:
            return min(note.top for note in covered) - offset
        return max(note.bottom for note in covered) + offset

    def _arpeggio(self, spanner_id: str, start: _Endpoint, end: _Endpoint) -> SpannerPath:
        offset = self.coefficients.arpeggio_offset
        notes = [endpoint.note for endpoint in (start, end) if endpoint.note is not None]
        if notes:
            x = min(box.left for note in notes for box in note.head_boxes) - offset
            top = min(box.top for note in notes for box in note.head_boxes)
            bottom = max(box.bottom for note in notes for box in note.head_boxes)
        else:
            x = start.x - offset
            top = self._fallback_y(start, Placement.ABOVE)
            bottom = self._fallback_y(start, Placement.BELOW)
        return SpannerPath(
            spanner_id=spanner_id,
            kind=SpannerKind.ARPEGGIO,
            start=Point(x, top),
            end=Point(x, bottom),
            side=Placement.LEFT,
            curvature=0.0,
            system_index=start.frame.index,
            page_number=start.frame.page_number,
        )

    def _same_system(
        self,
        spanner_id: str,
        start: _Endpoint,
        end: _Endpoint,
        notes: Sequence[NoteAnchor],
    ) -> SpannerPath:
        kind = start.marker.event.kind
        if kind is SpannerKind.ARPEGGIO:
            return self._arpeggio(spanner_id, start, end)

        frame = start.frame
        if start.marker.staff_key != end.marker.staff_key:
            separation = abs(frame.staff_top(start.marker.staff_key) - frame.staff_top(end.marker.staff_key))
            if separation > self.coefficients.cross_staff_threshold():
                return self._connector(spanner_id, start, end)

        side = self._choose_side(start, end, kind)
        x0 = self._anchor_x(start, kind, True)
        x1 = self._anchor_x(end, kind, False)
        if kind is SpannerKind.TUPLET:
            y0 = y1 = self._tuplet_y(start, end, side, notes)
        elif kind is SpannerKind.WEDGE:
            y0 = y1 = self._fallback_y(start, side) + (
                self.coefficients.staff_space if side is Placement.BELOW else -self.coefficients.staff_space
            )
        else:
            y0 = self._side_y(start, side, kind)
            y1 = self._side_y(end, side, kind)
        curvature = self._curvature(abs(x1 - x0)) if kind in _CURVED_KINDS else 0.0
        return self._flatten(
            SpannerPath(
                spanner_id=spanner_id,
                kind=kind,
                start=Point(x0, y0),
                end=Point(x1, y1),
                side=side,
                curvature=curvature,
                system_index=frame.index,
                page_number=frame.page_number,
            )
        )

    def _connector(self, spanner_id: str, start: _Endpoint, end: _Endpoint) -> SpannerPath:
        kind = start.marker.event.kind
        lower = start.frame.staff_top(end.marker.staff_key) > start.frame.staff_top(start.marker.staff_key)
        side = Placement.BELOW if lower else Placement.ABOVE
        opposite = Placement.ABOVE if lower else Placement.BELOW
        return SpannerPath(
            spanner_id=spanner_id,
            kind=kind,
            start=Point(self._anchor_x(start, kind, True), self._side_y(start, side, kind)),
            end=Point(self._anchor_x(end, kind, False), self._side_y(end, opposite, kind)),
            side=side,
            curvature=0.0,
            connector=True,
            system_index=start.frame.index,
            page_number=start.frame.page_number,
        )

    def _cross_system(self, spanner_id: str, start: _Endpoint, end: _Endpoint) -> list[SpannerPath]:
        kind = start.marker.event.kind
        side = self._choose_side(start, None, kind)
        x0 = self._anchor_x(start, kind, True)
        y0 = self._side_y(start, side, kind)
        x1 = self._anchor_x(end, kind, False)
        y1 = self._side_y(end, side, kind)
        curved = kind in _CURVED_KINDS
        head = SpannerPath(
            spanner_id=spanner_id,
            kind=kind,
            start=Point(x0, y0),
            end=Point(start.frame.right, y0),
            side=side,
            curvature=self._curvature(start.frame.right - x0) if curved else 0.0,
            cross_system=True,
            segment="start",
            system_index=start.frame.index,
            page_number=start.frame.page_number,
        )
        tail = SpannerPath(
            spanner_id=spanner_id,
            kind=kind,
            start=Point(end.frame.left, y1),
            end=Point(x1, y1),
            side=side,
            curvature=self._curvature(x1 - end.frame.left) if curved else 0.0,
            cross_system=True,
            segment="continuation",
            system_index=end.frame.index,
            page_number=end.frame.page_number,
        )
        return [self._flatten(head), self._flatten(tail)]

    def _warn_unmatched(self, code: str, marker: SpannerMarker, what: str) -> None:
        self.diagnostics.warning(
            code,
            f"{marker.event.kind.value} {what} (number {marker.event.number}) in part {marker.part_index}, "
            f"voice '{marker.voice_id}', measure {marker.measure_index + 1} has no partner; omitted.",
            marker.measure_index,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def route_pair(
        self,
        kind: SpannerKind,
        start: NoteAnchor,
        end: NoteAnchor,
        frame: SystemFrame,
        spanner_id: str = "",
        placement: Placement | None = None,
        note_indices: tuple[int | None, int | None] = (None, None),
    ) -> SpannerPath:
        """Route one pair of already-placed notes inside a single system."""
        start_marker = SpannerMarker(
            event=SpannerEvent(start.tick, kind, SpannerAction.START, placement=placement, note_index=note_indices[0]),
            part_index=start.part_index,
            staff=start.staff,
            voice_id=start.voice_id,
            measure_index=start.measure_index,
        )
        end_marker = SpannerMarker(
            event=SpannerEvent(end.tick, kind, SpannerAction.STOP, note_index=note_indices[1]),
            part_index=end.part_index,
            staff=end.staff,
            voice_id=end.voice_id,
            measure_index=end.measure_index,
        )
        return self._same_system(
            spanner_id or f"{kind.value}-{start.ref}",
            _Endpoint(start_marker, frame, start.x, start),
            _Endpoint(end_marker, frame, end.x, end),
            [start, end],
        )

    def route(
        self,
        markers: Iterable[SpannerMarker],
        notes: Sequence[NoteAnchor],
        frames: Sequence[SystemFrame],
        tick_maps: Mapping[int, TickMap],
    ) -> list[SpannerPath]:
        """
        Pair every marker through a ``SpannerIndex`` and route the pairs.

        Args:
            markers:   Spanner markers in score order.
            notes:     Placed notes in page coordinates.
            frames:    Placed systems, in order.
            tick_maps: Final tick→x map per measure index.

        Returns:
            Paths in start-marker order; each carries its owning system index.
        """
        by_tick: dict[tuple[int, str, int, int], NoteAnchor] = {}
        for note in notes:
            by_tick.setdefault((note.part_index, note.voice_id, note.measure_index, note.tick), note)

        def frame_for(measure_index: int) -> SystemFrame | None:
            for frame in frames:
                if frame.contains(measure_index):
                    return frame
            return None

        def endpoint(marker: SpannerMarker) -> _Endpoint | None:
            frame = frame_for(marker.measure_index)
            tick_map = tick_maps.get(marker.measure_index)
            if frame is None or tick_map is None:
                return None
            note = None
            if marker.event.kind is not SpannerKind.WEDGE:
                note = by_tick.get((marker.part_index, marker.voice_id, marker.measure_index, marker.event.tick))
            return _Endpoint(marker, frame, tick_map.x_at(marker.event.tick), note)

        index = SpannerIndex()
        paths: list[SpannerPath] = []
        for marker in markers:
            resolved = endpoint(marker)
            if resolved is None:
                continue
            if marker.event.action is SpannerAction.START:
                displaced = index.open(resolved)
                if displaced is not None:
                    self._warn_unmatched("SPANNER_START_UNMATCHED", displaced.marker, "start")
                continue
            start = index.close(marker)
            if start is None:
                self._warn_unmatched("SPANNER_STOP_UNMATCHED", marker, "stop")
                continue
            spanner_id = (
                f"{marker.event.kind.value}-p{marker.part_index}-{marker.event.number}"
                f"-m{start.marker.measure_index}t{start.marker.event.tick}"
            )
            if start.frame.index == resolved.frame.index:
                paths.append(self._same_system(spanner_id, start, resolved, notes))
            else:
                paths.extend(self._cross_system(spanner_id, start, resolved))

        for leftover in index.drain():
            self._warn_unmatched("SPANNER_START_UNMATCHED", leftover.marker, "start")

        logger.debug("Routed %d spanner path(s).", len(paths))
        return paths

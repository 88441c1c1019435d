"""Data models for layout plan outputs consumed by drawing collaborators."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from engraveplan.score_models import Placement, SpannerKind, StemDirection, TextCategory

if TYPE_CHECKING:
    from engraveplan.collision_audit import CollisionReport

#: (part index, staff number) identifies one staff row inside a system.
StaffKey = tuple[int, int]


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in page coordinates (y grows downwards)."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def horizontal_overlap(self, other: BoundingBox) -> float:
        return min(self.right, other.right) - max(self.left, other.left)

    def vertical_overlap(self, other: BoundingBox) -> float:
        return min(self.bottom, other.bottom) - max(self.top, other.top)

    def intersects(self, other: BoundingBox) -> bool:
        return self.horizontal_overlap(other) > 0 and self.vertical_overlap(other) > 0

    def shifted(self, dx: float = 0.0, dy: float = 0.0) -> BoundingBox:
        return BoundingBox(self.left + dx, self.top + dy, self.right + dx, self.bottom + dy)

    def union(self, other: BoundingBox) -> BoundingBox:
        return BoundingBox(
            min(self.left, other.left),
            min(self.top, other.top),
            max(self.right, other.right),
            max(self.bottom, other.bottom),
        )


class ElementKind(str, Enum):
    NOTEHEAD = "notehead"
    REST = "rest"
    STEM = "stem"
    FLAG = "flag"
    BEAM = "beam"
    BARLINE = "barline"
    TEXT = "text"
    MEASURE_NUMBER = "measure_number"


@dataclass(frozen=True)
class PressureInputs:
    """The pressure signals that produced one measure column, kept for traceability."""

    density: float = 0.0
    dense_rhythm: float = 0.0
    peak_density: float = 0.0
    staff_count: int = 1
    accidentals: int = 0
    onsets: int = 0


@dataclass(frozen=True)
class MeasureColumn:
    """
    One measure's allocated width inside one system.

    Attributes:
        measure_index: Absolute measure index.
        width:         Allocated width after blending and justification.
        floor:         Minimum width guaranteeing no notehead overlap.
        natural_width: Planner width before system justification.
        x:             Left edge in page coordinates (0 until placed).
        density_hint:  1.0 (sparse) … 3.2 (very dense); drives stretch/compaction.
        pressures:     Inputs that produced the width.
        width_hint:    Authored width hint (median across parts) that was blended in.
        measure_ticks: Tick length shared by every staff's tick→x map.
    """

    measure_index: int
    width: float
    floor: float
    natural_width: float
    density_hint: float
    pressures: PressureInputs
    measure_ticks: int = 0
    x: float = 0.0
    width_hint: float | None = None

    @property
    def right(self) -> float:
        return self.x + self.width


@dataclass(frozen=True)
class VoiceLane:
    """Stem direction and rest offset for one voice in one measure."""

    part_index: int
    staff: int
    voice_id: str
    ordinal: int
    stem: StemDirection
    rest_offset: int
    measure_index: int


@dataclass(frozen=True)
class TextPlacement:
    """Resolved position of one text annotation inside its system."""

    annotation_id: str
    category: TextCategory
    text: str
    staff_key: StaffKey
    measure_index: int
    x: float
    width: float
    lane: int | None
    merged_into: str | None = None
    y: float = 0.0
    height: float = 0.0

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height)

    def shifted(self, dy: float) -> TextPlacement:
        return replace(self, y=self.y + dy)


@dataclass(frozen=True)
class TextLane:
    """Occupied horizontal intervals of one text row, persisted for a whole system."""

    category: TextCategory
    staff_key: StaffKey
    index: int
    intervals: tuple[tuple[float, float], ...]


@dataclass(frozen=True)
class SpannerPath:
    """
    One resolved spanner instance.

    ``segment`` is ``whole`` for spanners inside one system, otherwise
    ``start`` / ``continuation`` for the two halves of a cross-system spanner.
    """

    spanner_id: str
    kind: SpannerKind
    start: Point
    end: Point
    side: Placement
    curvature: float
    flattened: bool = False
    connector: bool = False
    cross_system: bool = False
    segment: str = "whole"
    system_index: int = 0
    page_number: int = 1

    @property
    def delta_x(self) -> float:
        return abs(self.end.x - self.start.x)

    @property
    def delta_y(self) -> float:
        return abs(self.end.y - self.start.y)


@dataclass(frozen=True)
class ElementPlacement:
    """
    One placed geometry element for the drawing collaborator.

    ``ref`` names the stem (or text id) an element belongs to; flags and
    beams list the stems they decorate in ``stem_refs``. ``row_key`` groups
    text that shares one visual row.
    """

    kind: ElementKind
    bbox: BoundingBox
    anchor: Point
    measure_index: int
    staff_key: StaffKey
    voice_id: str | None = None
    stem: StemDirection | None = None
    lane: int | None = None
    ref: str = ""
    row_key: str | None = None
    stem_refs: tuple[str, ...] = ()
    text: str | None = None

    def shifted(self, dy: float) -> ElementPlacement:
        return replace(self, bbox=self.bbox.shifted(dy=dy), anchor=Point(self.anchor.x, self.anchor.y + dy))


@dataclass(frozen=True)
class SystemPlan:
    """
    A horizontal row of measures and everything placed inside it.

    ``staff_tops`` maps each staff row (in order) to its top-line y.
    """

    index: int
    measure_start: int
    measure_stop: int
    columns: tuple[MeasureColumn, ...]
    top: float
    height: float
    staff_tops: tuple[tuple[StaffKey, float], ...]
    above_extent: float
    below_extent: float
    lane_counts: tuple[tuple[TextCategory, int], ...]
    voice_lanes: tuple[VoiceLane, ...] = ()
    text_lanes: tuple[TextLane, ...] = ()
    text_placements: tuple[TextPlacement, ...] = ()
    spanner_paths: tuple[SpannerPath, ...] = ()
    elements: tuple[ElementPlacement, ...] = ()

    @property
    def measure_count(self) -> int:
        return self.measure_stop - self.measure_start

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def content_width(self) -> float:
        return sum(column.width for column in self.columns)

    def shifted(self, dy: float) -> SystemPlan:
        """The same system moved down by ``dy`` (spanner paths are routed after placement)."""
        return replace(
            self,
            top=self.top + dy,
            staff_tops=tuple((key, top + dy) for key, top in self.staff_tops),
            text_placements=tuple(placement.shifted(dy) for placement in self.text_placements),
            elements=tuple(element.shifted(dy) for element in self.elements),
        )

    def staff_top(self, staff_key: StaffKey) -> float:
        for key, top in self.staff_tops:
            if key == staff_key:
                return top
        raise KeyError(staff_key)


@dataclass(frozen=True)
class PageOverflow:
    left: float = 0.0
    right: float = 0.0
    top: float = 0.0
    bottom: float = 0.0

    @property
    def any(self) -> bool:
        return max(self.left, self.right, self.top, self.bottom) > 0


@dataclass(frozen=True)
class PageTelemetry:
    """Covered half-open measure range and page-box overflow amounts."""

    measure_start: int
    measure_stop: int
    overflow: PageOverflow
    content_bounds: BoundingBox | None = None


@dataclass(frozen=True)
class PagePlan:
    number: int
    width: float
    height: float
    content_box: BoundingBox
    systems: tuple[SystemPlan, ...]
    gaps: tuple[float, ...]
    telemetry: PageTelemetry
    collision_report: CollisionReport | None = None

    @property
    def elements(self) -> list[ElementPlacement]:
        return [element for system in self.systems for element in system.elements]

    @property
    def spanner_paths(self) -> list[SpannerPath]:
        return [path for system in self.systems for path in system.spanner_paths]

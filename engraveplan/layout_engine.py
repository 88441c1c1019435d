"""LayoutEngine: runs the planning pipeline for one score or a batch of scores."""

from __future__ import annotations

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, replace
from typing import Sequence

from engraveplan.collision_audit import audit_page
from engraveplan.config import LayoutCoefficients, LayoutOptions
from engraveplan.diagnostics import Diagnostic, DiagnosticLog, Severity
from engraveplan.measure_width import MeasureWidthPlanner
from engraveplan.page_planner import PagePlanner, StaffRowExtent, SystemBreak
from engraveplan.plan_models import (
    BoundingBox,
    ElementKind,
    ElementPlacement,
    PagePlan,
    Point,
    StaffKey,
    SystemPlan,
)
from engraveplan.score_models import CanonicalScore, Placement, SpannerEvent, validate_score
from engraveplan.spanner_router import SpannerMarker, SpannerRouter, SystemFrame
from engraveplan.text_lanes import TextLanePacker, collect_annotations, estimate_text_width
from engraveplan.voice_formatter import NoteAnchor, StemPolicy, TickMap, VoiceFormatter, default_stem_policy

logger = logging.getLogger(__name__)

_MP_CONTEXT = mp.get_context("spawn")


@dataclass(frozen=True)
class LayoutResult:
    """Pages plus every diagnostic recorded while planning them."""

    pages: tuple[PagePlan, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def has_errors(self) -> bool:
        return any(item.severity is Severity.ERROR for item in self.diagnostics)


@dataclass
class _SystemBuild:
    """One system at y = 0 plus what the later stages still need."""

    plan: SystemPlan
    notes: list[NoteAnchor]
    pressure: tuple[float, float]


def staff_keys(score: CanonicalScore) -> list[StaffKey]:
    """Every staff row of the score, in part then staff-number order."""
    keys: list[StaffKey] = []
    for part_index, part in enumerate(score.parts):
        numbers = sorted({staff.number for measure in part.measures for staff in measure.staves})
        keys.extend((part_index, number) for number in numbers or [1])
    return keys


def spanner_markers(score: CanonicalScore) -> list[SpannerMarker]:
    """Spanner markers in score order: measure, part, staff, voice, event."""
    markers: list[SpannerMarker] = []
    for measure_index in range(score.measure_count):
        for part_index, part in enumerate(score.parts):
            if measure_index >= len(part.measures):
                continue
            for staff in part.measures[measure_index].staves:
                for voice in staff.voices:
                    markers.extend(
                        SpannerMarker(event, part_index, staff.number, voice.id, measure_index)
                        for event in voice.events
                        if isinstance(event, SpannerEvent)
                    )
    return markers


class LayoutEngine:
    """
    Holds the immutable configuration for layout runs.

    Each ``layout`` call builds fresh components and a fresh diagnostic log,
    so one engine can serve any number of scores.

    Args:
        options:      Page and system options (defaults when None).
        coefficients: Heuristic coefficients (defaults when None).
        stem_policy:  Voice ordinal → default stem direction.
    """

    def __init__(
        self,
        options: LayoutOptions | None = None,
        coefficients: LayoutCoefficients | None = None,
        stem_policy: StemPolicy = default_stem_policy,
    ) -> None:
        self.options = options or LayoutOptions()
        self.coefficients = coefficients or LayoutCoefficients()
        self.stem_policy = stem_policy

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _label_elements(
        self,
        score: CanonicalScore,
        system_break: SystemBreak,
        staff_tops: dict[StaffKey, float],
    ) -> list[ElementPlacement]:
        if system_break.label_width <= 0:
            return []
        c = self.coefficients
        labels = []
        for part_index, part in enumerate(score.parts):
            if not part.name:
                continue
            rows = [top for (index, _), top in staff_tops.items() if index == part_index]
            if not rows:
                continue
            centre = (min(rows) + max(rows) + c.staff_height) / 2
            width = min(estimate_text_width(part.name, 12.0), system_break.label_width)
            labels.append(
                ElementPlacement(
                    kind=ElementKind.TEXT,
                    bbox=BoundingBox(system_break.left, centre - 6.0, system_break.left + width, centre + 6.0),
                    anchor=Point(system_break.left, centre),
                    measure_index=system_break.measure_start,
                    staff_key=(part_index, 1),
                    ref=f"label:{part.id}",
                    text=part.name,
                )
            )
        return labels

    def _measure_numbers(self, score: CanonicalScore, system_break: SystemBreak, key: StaffKey) -> list[ElementPlacement]:
        size = self.coefficients.measure_number_size
        interval = self.options.measure_number_interval
        numbers = []
        for column in system_break.columns:
            index = column.measure_index
            if index != system_break.measure_start and (index + 1) % interval != 0:
                continue
            labels = [measure.number_label for _, measure in score.measures_at(index) if measure.number_label]
            text = labels[0] if labels else str(index + 1)
            width = estimate_text_width(text, size)
            numbers.append(
                ElementPlacement(
                    kind=ElementKind.MEASURE_NUMBER,
                    bbox=BoundingBox(column.x, 0.0, column.x + width, size),
                    anchor=Point(column.x, size),
                    measure_index=index,
                    staff_key=key,
                    ref=f"measure-number:{index}",
                    text=text,
                )
            )
        return numbers

    def _build_system(
        self,
        score: CanonicalScore,
        system_break: SystemBreak,
        rows: Sequence[StaffKey],
        formatter: VoiceFormatter,
        packer: TextLanePacker,
        pager: PagePlanner,
    ) -> _SystemBuild:
        c = self.coefficients
        formats = []
        annotations = []
        for column in system_break.columns:
            tick_map = TickMap(column, c.measure_padding)
            for part_index, part in enumerate(score.parts):
                if column.measure_index >= len(part.measures):
                    continue
                for staff in part.measures[column.measure_index].staves:
                    formats.append(formatter.format_staff(staff, part_index, tick_map))
                    annotations.extend(collect_annotations(staff, part_index, tick_map, packer.rules))
        packing = packer.pack(annotations)

        extents = []
        for key in rows:
            staff_elements = [element for fmt in formats if fmt.staff_key == key for element in fmt.elements]
            extents.append(
                StaffRowExtent(
                    staff_key=key,
                    glyph_top=min([0.0, *(element.bbox.top for element in staff_elements)]),
                    glyph_bottom=max([c.staff_height, *(element.bbox.bottom for element in staff_elements)]),
                    text_above=packer.band_height(packing, key, Placement.ABOVE),
                    text_below=packer.band_height(packing, key, Placement.BELOW),
                )
            )
        extra_above = c.measure_number_size + c.text_clearance if self.options.measure_numbers else 0.0
        stack = pager.stack_staves(extents, extra_above)
        tops = dict(stack.staff_tops)

        elements: list[ElementPlacement] = []
        notes: list[NoteAnchor] = []
        for fmt in formats:
            dy = tops[fmt.staff_key]
            elements.extend(element.shifted(dy) for element in fmt.elements)
            notes.extend(note.shifted(dy) for note in fmt.notes)

        texts = []
        for extent in extents:
            top = tops[extent.staff_key]
            texts.extend(packer.position(packing, extent.staff_key, top + extent.glyph_top, top + extent.glyph_bottom))
        for text in texts:
            if text.lane is None:
                continue
            elements.append(
                ElementPlacement(
                    kind=ElementKind.TEXT,
                    bbox=text.bbox,
                    anchor=Point(text.x, text.y),
                    measure_index=text.measure_index,
                    staff_key=text.staff_key,
                    lane=text.lane,
                    ref=text.annotation_id,
                    row_key=f"{system_break.index}:{text.category.value}:{text.staff_key[0]}.{text.staff_key[1]}:{text.lane}",
                    text=text.text,
                )
            )

        for key in rows:
            top = tops[key]
            for column in system_break.columns:
                half = c.barline_width / 2
                elements.append(
                    ElementPlacement(
                        kind=ElementKind.BARLINE,
                        bbox=BoundingBox(column.right - half, top, column.right + half, top + c.staff_height),
                        anchor=Point(column.right, top),
                        measure_index=column.measure_index,
                        staff_key=key,
                        ref=f"barline:{column.measure_index}",
                    )
                )
        elements.extend(self._label_elements(score, system_break, tops))
        if self.options.measure_numbers and rows:
            elements.extend(self._measure_numbers(score, system_break, rows[0]))

        plan = SystemPlan(
            index=system_break.index,
            measure_start=system_break.measure_start,
            measure_stop=system_break.measure_stop,
            columns=system_break.columns,
            top=0.0,
            height=stack.height,
            staff_tops=stack.staff_tops,
            above_extent=stack.above_extent,
            below_extent=stack.below_extent,
            lane_counts=packing.lane_counts(),
            voice_lanes=tuple(lane for fmt in formats for lane in fmt.voice_lanes),
            text_lanes=packing.lanes,
            text_placements=tuple(texts),
            elements=tuple(elements),
        )
        pressure = (packer.gap_pressure(packing, Placement.ABOVE), packer.gap_pressure(packing, Placement.BELOW))
        return _SystemBuild(plan=plan, notes=notes, pressure=pressure)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def layout(self, score: CanonicalScore) -> LayoutResult:
        """
        Plan every page of ``score``.

        Raises:
            ScoreValidationError: If the score is structurally invalid.
        """
        validate_score(score)
        c = self.coefficients
        diagnostics = DiagnosticLog(strict=self.options.strict)
        width_planner = MeasureWidthPlanner(c, score.ticks_per_quarter, diagnostics)
        formatter = VoiceFormatter(c, score.ticks_per_quarter, diagnostics, self.stem_policy)
        packer = TextLanePacker(c)
        pager = PagePlanner(self.options, c, diagnostics, width_planner)
        router = SpannerRouter(c, diagnostics)

        if score.measure_count == 0:
            diagnostics.warning("EMPTY_SCORE", "Score has no measures; nothing to lay out.")
            return LayoutResult(pages=(), diagnostics=diagnostics.items)

        breaks = pager.break_systems(width_planner.plan_score(score), score)
        rows = staff_keys(score)
        builds = [self._build_system(score, brk, rows, formatter, packer, pager) for brk in breaks]
        pages = pager.paginate([build.plan for build in builds], [build.pressure for build in builds])

        frames = []
        notes = []
        for page in pages:
            for system in page.systems:
                brk = breaks[system.index]
                frames.append(
                    SystemFrame(
                        index=system.index,
                        page_number=page.number,
                        measure_start=system.measure_start,
                        measure_stop=system.measure_stop,
                        left=brk.music_left,
                        right=brk.right,
                        staff_tops=system.staff_tops,
                    )
                )
                notes.extend(note.shifted(system.top) for note in builds[system.index].notes)
        tick_maps = {
            column.measure_index: TickMap(column, c.measure_padding) for brk in breaks for column in brk.columns
        }
        paths = router.route(spanner_markers(score), notes, frames, tick_maps)

        routed = []
        for page in pages:
            systems = tuple(
                replace(system, spanner_paths=tuple(path for path in paths if path.system_index == system.index))
                for system in page.systems
            )
            routed.append(pager.with_telemetry(replace(page, systems=systems)))

        audited = []
        for page in pager.apply_window(routed):
            report = audit_page(page, c.barline_overlap_tolerance)
            if report.count():
                logger.info("Page %d: %d collision(s) %s.", page.number, report.count(), report.summary())
            audited.append(replace(page, collision_report=report))

        logger.info(
            "Laid out '%s': %d page(s), %d diagnostic(s).",
            score.title or "untitled",
            len(audited),
            len(diagnostics),
        )
        return LayoutResult(pages=tuple(audited), diagnostics=diagnostics.items)


def layout_score(
    score: CanonicalScore,
    options: LayoutOptions | None = None,
    coefficients: LayoutCoefficients | None = None,
) -> LayoutResult:
    """Lay out one score with the given (or default) configuration."""
    return LayoutEngine(options, coefficients).layout(score)


def layout_many(
    scores: Sequence[CanonicalScore],
    options: LayoutOptions | None = None,
    coefficients: LayoutCoefficients | None = None,
    max_workers: int | None = None,
) -> list[LayoutResult]:
    """
    Lay out independent scores in parallel worker processes.

    Results come back in input order. ``max_workers=1`` runs in-process.
    """
    if max_workers == 1 or len(scores) <= 1:
        return [layout_score(score, options, coefficients) for score in scores]
    with ProcessPoolExecutor(max_workers=max_workers, mp_context=_MP_CONTEXT) as pool:
        futures = [pool.submit(layout_score, score, options, coefficients) for score in scores]
        return [future.result() for future in futures]

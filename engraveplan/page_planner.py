"""PagePlanner: breaks measure columns into systems and stacks systems into pages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Sequence

from engraveplan.config import LayoutCoefficients, LayoutOptions
from engraveplan.diagnostics import DiagnosticLog
from engraveplan.measure_width import MeasureWidthPlanner
from engraveplan.plan_models import (
    BoundingBox,
    MeasureColumn,
    PageOverflow,
    PagePlan,
    PageTelemetry,
    StaffKey,
    SystemPlan,
)
from engraveplan.score_models import CanonicalScore
from engraveplan.text_lanes import estimate_text_width

logger = logging.getLogger(__name__)

# ── Part labels ─────────────────────────────────────────────────────────────
LABEL_FONT_SIZE = 12.0
LABEL_PADDING = 16.0
MIN_LABEL_WIDTH = 64.0
MAX_LABEL_WIDTH = 180.0

#: Measures the bounded backtrack may move between adjacent systems.
MAX_BACKTRACK_MOVES = 2


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class SystemBreak:
    """
    The horizontal plan of one system.

    Attributes:
        index:        System index in score order.
        columns:      Justified columns with their page x assigned.
        left:         Left edge of the label column.
        label_width:  Width reserved for part labels.
        header_width: Clef/key/time reserve before the first column.
        budget:       Width available to the columns.
        justified:    Whether leftover width was distributed.
    """

    index: int
    columns: tuple[MeasureColumn, ...]
    left: float
    label_width: float
    header_width: float
    budget: float
    justified: bool

    @property
    def measure_start(self) -> int:
        return self.columns[0].measure_index

    @property
    def measure_stop(self) -> int:
        return self.columns[-1].measure_index + 1

    @property
    def music_left(self) -> float:
        return self.left + self.label_width + self.header_width

    @property
    def right(self) -> float:
        return self.columns[-1].right


@dataclass(frozen=True)
class StaffRowExtent:
    """
    Vertical needs of one staff row, relative to its top line.

    ``glyph_top`` is at most 0 and ``glyph_bottom`` at least the staff height;
    ``text_above`` / ``text_below`` are the packed text band heights.
    """

    staff_key: StaffKey
    glyph_top: float
    glyph_bottom: float
    text_above: float = 0.0
    text_below: float = 0.0


@dataclass(frozen=True)
class StaffStack:
    staff_tops: tuple[tuple[StaffKey, float], ...]
    height: float
    above_extent: float
    below_extent: float


class PagePlanner:
    """
    Groups measure columns into systems and systems into pages.

    Horizontal pass
    ---------------
    Columns are accumulated greedily while their summed width fits the
    system budget (content width minus labels and the clef/key/time header)
    and the per-system measure ceiling. A bounded backtrack then moves up to
    ``MAX_BACKTRACK_MOVES`` measures so that neither the final nor the
    penultimate system falls under the minimum measure count. Leftover width
    is distributed by inverse density; sparse systems are compacted toward a
    density-justified target instead, never below any column's floor.

    Vertical pass
    -------------
    Staff rows are separated by ``staff_distance`` plus the text bands
    between them. Systems stack with a gap that is the larger of the minimum
    gap and the weighted text-lane pressure of the adjoining systems; a new
    page starts when the next system would cross the bottom margin.

    Args:
        options:       Page and system options.
        coefficients:  Shared layout coefficients.
        diagnostics:   Log receiving budget-exceeded errors.
        width_planner: Used to re-plan the opening column of each system.
    """

    def __init__(
        self,
        options: LayoutOptions,
        coefficients: LayoutCoefficients,
        diagnostics: DiagnosticLog | None = None,
        width_planner: MeasureWidthPlanner | None = None,
    ) -> None:
        self.options = options
        self.coefficients = coefficients
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.width_planner = width_planner

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _header_width(self, score: CanonicalScore, measure_index: int) -> float:
        c = self.coefficients
        fifths = 0
        shows_time = measure_index == 0
        for _, measure in score.measures_at(measure_index):
            fifths = max(fifths, abs(measure.key_fifths))
            shows_time = shows_time or measure.time_signature is not None
        width = c.clef_width + c.key_accidental_width * fifths + c.system_header_padding
        if shows_time:
            width += c.time_signature_width
        return width

    def _budget(self, score: CanonicalScore, measure_index: int, label_width: float) -> float:
        content = self.options.content_right - self.options.content_left
        return content - label_width - self._header_width(score, measure_index)

    def _greedy(
        self,
        columns: Sequence[MeasureColumn],
        score: CanonicalScore,
        label_width: float,
    ) -> list[list[MeasureColumn]]:
        groups: list[list[MeasureColumn]] = []
        current: list[MeasureColumn] = []
        used = 0.0
        for column in columns:
            budget = self._budget(score, current[0].measure_index if current else column.measure_index, label_width)
            fits = used + column.width <= budget and len(current) < self.options.max_measures_per_system
            if current and not fits:
                groups.append(current)
                current, used = [], 0.0
            current.append(column)
            used += column.width
        if current:
            groups.append(current)
        return groups

    def _fits(self, group: list[MeasureColumn], score: CanonicalScore, label_width: float) -> bool:
        if len(group) > self.options.max_measures_per_system:
            return False
        budget = self._budget(score, group[0].measure_index, label_width)
        return sum(column.width for column in group) <= budget

    def _backtrack(
        self,
        groups: list[list[MeasureColumn]],
        score: CanonicalScore,
        label_width: float,
    ) -> list[list[MeasureColumn]]:
        """Move trailing measures so the last two systems meet the minimum count."""
        minimum = self.options.min_measures_per_system
        moves = 0
        for target in (len(groups) - 1, len(groups) - 2):
            if target < 1:
                continue
            donor = target - 1
            while len(groups[target]) < minimum and moves < MAX_BACKTRACK_MOVES:
                if len(groups[donor]) <= minimum:
                    break
                candidate = [groups[donor][-1], *groups[target]]
                if not self._fits(candidate, score, label_width):
                    break
                groups[donor] = groups[donor][:-1]
                groups[target] = candidate
                moves += 1
        last = len(groups) - 1
        if last >= 1 and len(groups[last]) < minimum:
            merged = [*groups[last - 1], *groups[last]]
            if self._fits(merged, score, label_width):
                groups[last - 1 : last + 1] = [merged]
        return groups

    def sparse_target(self, columns: Sequence[MeasureColumn], available: float) -> float:
        """
        Width a sparse system should occupy instead of the whole budget.

        Dense systems, systems with authored width hints and systems whose
        floors already need the budget keep ``available``.
        """
        c = self.coefficients
        minimum_required = sum(column.floor for column in columns)
        if not columns or minimum_required >= available or any(col.width_hint is not None for col in columns):
            return available
        hints = [column.density_hint for column in columns]
        mean_density = sum(hints) / len(hints)
        peak_density = max(hints)
        if peak_density >= c.sparse_density_threshold:
            return available
        density_signal = _clamp(
            (c.sparse_density_threshold - mean_density)
            / max(0.01, c.sparse_density_threshold - c.very_sparse_density_threshold),
            0.0,
            1.0,
        )
        peak_signal = _clamp((c.sparse_density_threshold - peak_density) / 0.6, 0.0, 1.0)
        count = len(columns)
        column_factor = 1.0 if count <= 2 else 0.9 if count <= 3 else 0.75 if count <= 4 else 0.6
        reduction = _clamp(
            (density_signal * 0.7 + peak_signal * 0.3) * c.max_sparse_reduction_ratio * column_factor,
            0.0,
            c.max_sparse_reduction_ratio,
        )
        minimum_target = max(minimum_required, available * c.min_sparse_target_ratio)
        return _clamp(available * (1.0 - reduction), minimum_target, available)

    @staticmethod
    def justify(columns: Sequence[MeasureColumn], target: float) -> list[MeasureColumn]:
        """
        Resize ``columns`` to sum to ``target``.

        Growth is weighted by width over density hint, so denser measures
        stretch less; shrinking takes from each column's slack above its floor.
        """
        total = sum(column.width for column in columns)
        if not columns or abs(total - target) < 1e-9:
            return list(columns)
        if total < target:
            weights = [column.width / max(column.density_hint, 1e-6) for column in columns]
            weight_sum = sum(weights)
            extra = target - total
            return [replace(col, width=col.width + extra * w / weight_sum) for col, w in zip(columns, weights)]
        slack = [max(0.0, column.width - column.floor) for column in columns]
        slack_sum = sum(slack)
        if slack_sum <= 0:
            return list(columns)
        shrink = min(total - target, slack_sum)
        return [replace(col, width=col.width - shrink * s / slack_sum) for col, s in zip(columns, slack)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def label_width(self, score: CanonicalScore) -> float:
        """Label column width: explicit, estimated from part names, or 0."""
        if not self.options.show_part_labels:
            return 0.0
        if self.options.label_width is not None:
            return self.options.label_width
        names = [part.name for part in score.parts if part.name]
        if not names:
            return 0.0
        widest = max(estimate_text_width(name, LABEL_FONT_SIZE) for name in names)
        return _clamp(widest + LABEL_PADDING, MIN_LABEL_WIDTH, MAX_LABEL_WIDTH)

    def break_systems(self, columns: Sequence[MeasureColumn], score: CanonicalScore) -> list[SystemBreak]:
        """Group, justify and position every measure column."""
        if not columns:
            return []
        label_width = self.label_width(score)
        groups = self._backtrack(self._greedy(columns, score, label_width), score, label_width)

        breaks: list[SystemBreak] = []
        for index, group in enumerate(groups):
            if self.width_planner is not None:
                group = self.width_planner.normalize_system_start(group)
            first = group[0].measure_index
            budget = self._budget(score, first, label_width)
            natural = sum(column.width for column in group)
            if natural > budget:
                self.diagnostics.error(
                    "MEASURE_EXCEEDS_SYSTEM_WIDTH",
                    f"System {index + 1} needs {natural:.1f} units but only {budget:.1f} are available.",
                    first,
                )
            is_last = index == len(groups) - 1
            justified = natural <= budget and (not is_last or self.options.justify_last_system)
            if justified:
                group = self.justify(group, self.sparse_target(group, budget))

            header = self._header_width(score, first)
            x = self.options.content_left + label_width + header
            placed: list[MeasureColumn] = []
            for column in group:
                placed.append(replace(column, x=x))
                x += column.width
            breaks.append(
                SystemBreak(
                    index=index,
                    columns=tuple(placed),
                    left=self.options.content_left,
                    label_width=label_width,
                    header_width=header,
                    budget=budget,
                    justified=justified,
                )
            )
        logger.info("Planned %d system(s) for %d measure(s).", len(breaks), len(columns))
        return breaks

    def stack_staves(self, rows: Sequence[StaffRowExtent], extra_above: float = 0.0) -> StaffStack:
        """Place staff rows of one system relative to the system top (y = 0)."""
        c = self.coefficients
        clearance = c.text_clearance

        def above_need(row: StaffRowExtent) -> float:
            return -row.glyph_top + (clearance + row.text_above if row.text_above else 0.0)

        def below_need(row: StaffRowExtent) -> float:
            return row.glyph_bottom + (clearance + row.text_below if row.text_below else 0.0)

        if not rows:
            return StaffStack(staff_tops=(), height=0.0, above_extent=0.0, below_extent=0.0)

        top = extra_above + above_need(rows[0])
        tops: list[tuple[StaffKey, float]] = [(rows[0].staff_key, top)]
        for previous, row in zip(rows, rows[1:]):
            spacing = max(
                c.staff_distance + previous.text_below + row.text_above,
                below_need(previous) + above_need(row) + clearance,
            )
            top += spacing
            tops.append((row.staff_key, top))
        height = top + below_need(rows[-1])
        return StaffStack(
            staff_tops=tuple(tops),
            height=height,
            above_extent=tops[0][1],
            below_extent=height - (top + c.staff_height),
        )

    def system_gap(self, pressure_below: float, pressure_above: float) -> float:
        """
        Gap between two systems from their adjoining text-band pressures.

        An explicit ``system_gap`` option pins the gap.
        """
        if self.options.system_gap is not None:
            return self.options.system_gap
        c = self.coefficients
        expansion = pressure_below + pressure_above + c.system_gap_clearance
        return min(c.max_system_gap, max(c.min_system_gap, expansion))

    def paginate(
        self,
        systems: Sequence[SystemPlan],
        pressures: Sequence[tuple[float, float]],
    ) -> list[PagePlan]:
        """
        Stack systems (built with ``top == 0``) onto pages.

        Args:
            systems:   Systems in order, each positioned at y = 0.
            pressures: Per system ``(above, below)`` text-band gap pressure.

        Returns:
            Pages with systems shifted into page coordinates.
        """
        options = self.options
        pages: list[PagePlan] = []
        current: list[SystemPlan] = []
        gaps: list[float] = []
        cursor = options.content_top

        def close_page() -> None:
            pages.append(self._page(len(pages) + 1, current, gaps))

        for index, system in enumerate(systems):
            if current:
                gap = self.system_gap(pressures[index - 1][1], pressures[index][0])
                if cursor + gap + system.height > options.content_bottom:
                    close_page()
                    current, gaps, cursor = [], [], options.content_top
                else:
                    gaps.append(gap)
                    cursor += gap
            if not current and system.height > options.content_bottom - options.content_top:
                self.diagnostics.error(
                    "SYSTEM_EXCEEDS_PAGE_HEIGHT",
                    f"System {index + 1} is {system.height:.1f} units tall; the page holds "
                    f"{options.content_bottom - options.content_top:.1f}.",
                    system.measure_start,
                )
            current.append(system.shifted(cursor - system.top))
            cursor += system.height
        if current:
            close_page()
        logger.info("Paginated %d system(s) onto %d page(s).", len(systems), len(pages))
        return pages

    def _page(self, number: int, systems: Sequence[SystemPlan], gaps: Sequence[float]) -> PagePlan:
        options = self.options
        page = PagePlan(
            number=number,
            width=options.page_width,
            height=options.page_height,
            content_box=BoundingBox(
                options.content_left, options.content_top, options.content_right, options.content_bottom
            ),
            systems=tuple(systems),
            gaps=tuple(gaps),
            telemetry=PageTelemetry(0, 0, PageOverflow()),
        )
        return self.with_telemetry(page)

    def with_telemetry(self, page: PagePlan) -> PagePlan:
        """Recompute covered measures and overflow of the page's content box."""
        boxes: list[BoundingBox] = []
        for system in page.systems:
            boxes.append(BoundingBox(system.columns[0].x, system.top, system.columns[-1].right, system.bottom))
            boxes.extend(element.bbox for element in system.elements)
            for path in system.spanner_paths:
                boxes.append(
                    BoundingBox(
                        min(path.start.x, path.end.x),
                        min(path.start.y, path.end.y),
                        max(path.start.x, path.end.x),
                        max(path.start.y, path.end.y),
                    )
                )
        bounds = None
        for box in boxes:
            bounds = box if bounds is None else bounds.union(box)

        content = page.content_box
        overflow = PageOverflow()
        if bounds is not None:
            overflow = PageOverflow(
                left=max(0.0, content.left - bounds.left),
                right=max(0.0, bounds.right - content.right),
                top=max(0.0, content.top - bounds.top),
                bottom=max(0.0, bounds.bottom - content.bottom),
            )
        start = page.systems[0].measure_start if page.systems else 0
        stop = page.systems[-1].measure_stop if page.systems else 0
        return replace(page, telemetry=PageTelemetry(start, stop, overflow, bounds))

    def apply_window(self, pages: Sequence[PagePlan]) -> list[PagePlan]:
        """Keep only systems intersecting ``measure_window``; page numbers are preserved."""
        if self.options.measure_window is None:
            return list(pages)
        start, stop = self.options.measure_window
        windowed: list[PagePlan] = []
        for page in pages:
            keep = [
                position
                for position, system in enumerate(page.systems)
                if system.measure_start < stop and system.measure_stop > start
            ]
            if not keep:
                continue
            if len(keep) == len(page.systems):
                windowed.append(page)
                continue
            systems = tuple(page.systems[position] for position in keep)
            gaps = tuple(page.gaps[position] for position in keep[:-1])
            windowed.append(self.with_telemetry(replace(page, systems=systems, gaps=gaps)))
        return windowed

"""MeasureWidthPlanner: turns rhythmic pressure into a target width per measure."""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np

from engraveplan.config import LayoutCoefficients
from engraveplan.diagnostics import DiagnosticLog
from engraveplan.plan_models import MeasureColumn, PressureInputs
from engraveplan.score_models import (
    CanonicalScore,
    Measure,
    RestEvent,
    SpannerAction,
    SpannerEvent,
    SpannerKind,
    Voice,
)

#: Density-hint boosts per measure feature (1.0 = sparse, capped at +2.2).
_TICKABLE_BOOST = 0.24
_DENSE_RHYTHM_BOOST = 0.08
_CHORD_BOOST = 0.04
_ACCIDENTAL_BOOST = 0.02
_TUPLET_BOOST = 0.05
_MAX_DENSITY_BOOST = 2.2


def _tuplet_spans(voice: Voice) -> list[tuple[int, int]]:
    """Tick ranges covered by tuplet brackets inside one voice's measure."""
    spans: list[tuple[int, int]] = []
    open_starts: dict[str, int] = {}
    for event in voice.events:
        if not isinstance(event, SpannerEvent) or event.kind is not SpannerKind.TUPLET:
            continue
        if event.action is SpannerAction.START:
            open_starts[event.number] = event.tick
        elif event.number in open_starts:
            spans.append((open_starts.pop(event.number), event.tick))
    # A bracket left open continues past the barline.
    spans.extend((start, sys.maxsize) for start in open_starts.values())
    return spans


@dataclass(frozen=True)
class _MeasureStats:
    measure_ticks: int
    onsets: np.ndarray
    min_onset_gap: int
    shortest: int
    staff_count: int
    accidentals: int
    max_events_per_staff: int
    dense_events: int
    chords: int
    tuplet_notes: int
    zero_duration: int


class MeasureWidthPlanner:
    """
    Computes one ``MeasureColumn`` per absolute measure index.

    Algorithm overview
    ------------------
    1. **Union** – all timed events of every part, staff and voice sharing the
       measure index are pooled; simultaneous onsets count once.

    2. **Floor** – the smallest width at which the shared tick→x map keeps the
       closest pair of onsets one notehead clearance apart::

           floor = max(min_measure_width,
                       padding + clearance * measure_ticks / min_onset_gap)

    3. **Pressure** – ``width = floor + Σ pressure_i × weight_i`` using the
       weights in ``LayoutCoefficients`` (density, dense rhythm, peak local
       density, staff count, accidentals).

    4. **Hints** – an authored width hint is blended in with
       ``width_hint_weight`` but never below the floor.

    Empty measures fall back to the floor and record ``EMPTY_MEASURE``.
    """

    def __init__(
        self,
        coefficients: LayoutCoefficients,
        ticks_per_quarter: int,
        diagnostics: DiagnosticLog | None = None,
    ) -> None:
        self.coefficients = coefficients
        self.ticks_per_quarter = ticks_per_quarter
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _collect_stats(self, measures: Sequence[Measure]) -> _MeasureStats | None:
        onset_ticks: set[int] = set()
        durations: list[int] = []
        accidentals = 0
        dense_events = 0
        chords = 0
        tuplet_notes = 0
        zero_duration = 0
        max_events_per_staff = 0
        measure_ticks = max((measure.duration_ticks for measure in measures), default=0)
        dense_limit = self.ticks_per_quarter // 4

        for measure in measures:
            for staff in measure.staves:
                staff_events = 0
                for voice in staff.voices:
                    tuplet_spans = _tuplet_spans(voice)
                    for event in voice.timed_events:
                        if event.duration <= 0:
                            zero_duration += 1
                            continue
                        staff_events += 1
                        onset_ticks.add(event.tick)
                        durations.append(event.duration)
                        measure_ticks = max(measure_ticks, event.tick + event.duration)
                        if isinstance(event, RestEvent):
                            continue
                        if event.duration <= dense_limit:
                            dense_events += 1
                        if event.is_chord:
                            chords += 1
                        if any(start <= event.tick <= stop for start, stop in tuplet_spans):
                            tuplet_notes += 1
                        accidentals += sum(1 for head in event.heads if head.needs_clearance)
                max_events_per_staff = max(max_events_per_staff, staff_events)

        if not onset_ticks or measure_ticks <= 0:
            return None

        onsets = np.array(sorted(onset_ticks), dtype=np.int64)
        boundaries = np.append(onsets, measure_ticks)
        gaps = np.diff(boundaries)
        positive_gaps = gaps[gaps > 0]
        min_onset_gap = int(positive_gaps.min()) if positive_gaps.size else measure_ticks

        return _MeasureStats(
            measure_ticks=measure_ticks,
            onsets=onsets,
            min_onset_gap=min_onset_gap,
            shortest=min(durations),
            staff_count=max((len(measure.staves) for measure in measures), default=1),
            accidentals=accidentals,
            max_events_per_staff=max_events_per_staff,
            dense_events=dense_events,
            chords=chords,
            tuplet_notes=tuplet_notes,
            zero_duration=zero_duration,
        )

    def _peak_window_onsets(self, onsets: np.ndarray) -> int:
        """Largest number of onsets inside any one-beat window starting at an onset."""
        window_ends = np.searchsorted(onsets, onsets + self.ticks_per_quarter, side="left")
        counts = window_ends - np.arange(onsets.size)
        return int(counts.max()) if counts.size else 0

    def _pressures(self, stats: _MeasureStats) -> PressureInputs:
        quarters = stats.measure_ticks / self.ticks_per_quarter
        density = stats.onsets.size / quarters if quarters > 0 else 0.0
        dense_rhythm = max(0.0, math.log2(self.ticks_per_quarter / stats.shortest))
        # A measure shorter than one beat cannot hold a denser sub-window.
        peak = self._peak_window_onsets(stats.onsets) if quarters >= 1 else stats.onsets.size
        return PressureInputs(
            density=density,
            dense_rhythm=dense_rhythm,
            peak_density=max(0.0, peak - density),
            staff_count=stats.staff_count,
            accidentals=stats.accidentals,
            onsets=int(stats.onsets.size),
        )

    def _floor(self, stats: _MeasureStats) -> float:
        c = self.coefficients
        spacing_floor = c.measure_padding + c.min_note_clearance * stats.measure_ticks / stats.min_onset_gap
        return max(c.min_measure_width, spacing_floor)

    def _density_hint(self, stats: _MeasureStats) -> float:
        boost = (
            max(0, stats.max_events_per_staff - 1) * _TICKABLE_BOOST
            + stats.dense_events * _DENSE_RHYTHM_BOOST
            + stats.chords * _CHORD_BOOST
            + stats.accidentals * _ACCIDENTAL_BOOST
            + stats.tuplet_notes * _TUPLET_BOOST
        )
        return 1.0 + min(_MAX_DENSITY_BOOST, boost)

    def _compose_width(self, pressures: PressureInputs, floor: float, hint: float | None) -> float:
        c = self.coefficients
        computed = (
            floor
            + pressures.density * c.density_weight
            + pressures.dense_rhythm * c.dense_rhythm_weight
            + pressures.peak_density * c.peak_density_weight
            + max(0, pressures.staff_count - 1) * c.staff_count_weight
            + pressures.accidentals * c.accidental_weight
        )
        if hint is None or hint <= 0:
            return computed
        blended = (1.0 - c.width_hint_weight) * computed + c.width_hint_weight * hint
        return max(floor, blended)

    @staticmethod
    def _width_hint(measures: Sequence[Measure]) -> float | None:
        hints = [m.width_hint for m in measures if m.width_hint is not None and m.width_hint > 0]
        if not hints:
            return None
        return float(np.median(hints))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan_measure(self, measures: Sequence[Measure], measure_index: int) -> MeasureColumn:
        """
        Plan one column from every part's measure at ``measure_index``.

        Never raises for degenerate content: an empty measure yields the
        configured floor width.
        """
        hint = self._width_hint(measures)
        stats = self._collect_stats(measures)
        floor_width = self.coefficients.min_measure_width

        if stats is None:
            self.diagnostics.warning(
                "EMPTY_MEASURE",
                f"Measure {measure_index + 1} has no timed events; using the floor width.",
                measure_index,
            )
            return MeasureColumn(
                measure_index=measure_index,
                width=floor_width,
                floor=floor_width,
                natural_width=floor_width,
                density_hint=1.0,
                measure_ticks=max((m.duration_ticks for m in measures), default=0),
                pressures=PressureInputs(staff_count=max((len(m.staves) for m in measures), default=1)),
            )

        if stats.zero_duration:
            self.diagnostics.warning(
                "ZERO_DURATION_EVENT",
                f"Measure {measure_index + 1} has {stats.zero_duration} zero-duration event(s); "
                "they are placed without horizontal spacing.",
                measure_index,
            )

        pressures = self._pressures(stats)
        floor_width = self._floor(stats)
        width = self._compose_width(pressures, floor_width, hint)
        return MeasureColumn(
            measure_index=measure_index,
            width=width,
            floor=floor_width,
            natural_width=width,
            density_hint=self._density_hint(stats),
            measure_ticks=stats.measure_ticks,
            pressures=pressures,
            width_hint=hint,
        )

    def plan_score(self, score: CanonicalScore) -> list[MeasureColumn]:
        """Plan every measure column of ``score`` in index order."""
        return [
            self.plan_measure([measure for _, measure in score.measures_at(index)], index)
            for index in range(score.measure_count)
        ]

    def normalize_system_start(self, columns: Sequence[MeasureColumn]) -> list[MeasureColumn]:
        """
        Re-plan the first column of a system against its followers.

        The opening measure's density pressure is scaled by its onset count
        relative to the median of the remaining measures, so a sparse opening
        bar is not over-widened. The result is never wider than before, never
        below the floor and never below ``first_column_floor_ratio`` of the
        followers' median width.
        """
        planned = list(columns)
        if len(planned) < 2:
            return planned

        first = planned[0]
        later = [column.pressures.onsets for column in planned[1:] if column.pressures.onsets > 0]
        if not later or first.pressures.onsets <= 0:
            return planned

        relative = first.pressures.onsets / float(np.median(later))
        if relative >= 1.0:
            return planned

        pressures = replace(first.pressures, density=first.pressures.density * relative)
        follower_floor = self.coefficients.first_column_floor_ratio * float(
            np.median([column.width for column in planned[1:]])
        )
        normalized = self._compose_width(pressures, first.floor, first.width_hint)
        width = min(first.width, max(normalized, follower_floor))
        planned[0] = replace(first, width=width, natural_width=width, pressures=pressures)
        return planned

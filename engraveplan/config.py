"""Layout configuration: page options and the tunable pressure coefficients."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LayoutCoefficients:
    """
    Immutable heuristic constants shared by every layout component.

    All lengths are layout units (one staff space = ``staff_space`` units).
    Each weight is documented against the engraving concern it addresses so
    that a coefficient can be tuned and tested in isolation.
    """

    # ── Staff geometry ─────────────────────────────────────────────────────
    staff_space: float = 10.0
    #: Distance between the top lines of two adjacent staves in one system.
    staff_distance: float = 80.0
    notehead_width: float = 11.0
    stem_length: float = 35.0
    beam_thickness: float = 5.0
    flag_width: float = 8.0
    flag_height: float = 20.0
    rest_width: float = 10.0
    rest_height: float = 25.0
    barline_width: float = 1.0

    # ── Measure width (MeasureWidthPlanner) ────────────────────────────────
    #: Absolute lower bound for any measure column.
    min_measure_width: float = 82.0
    #: Barline-to-first-note plus last-note-to-barline room.
    measure_padding: float = 20.0
    #: Horizontal room one notehead needs before the next onset may start.
    min_note_clearance: float = 12.0
    #: Onsets per quarter; widens bars that simply hold more notes per beat.
    density_weight: float = 28.0
    #: Smallest subdivision; keeps short values from sub-glyph-width spacing.
    dense_rhythm_weight: float = 22.0
    #: Densest beat window; protects crowded beats inside otherwise sparse bars.
    peak_density_weight: float = 16.0
    #: Extra staves per part; grand staves need cross-staff clearance.
    staff_count_weight: float = 20.0
    #: Per altered notehead; accidentals need lateral clearance.
    accidental_weight: float = 5.0
    #: The opening column of a system never shrinks below this share of the
    #: median width of the columns that follow it.
    first_column_floor_ratio: float = 0.6
    #: Share of an authored width hint in the blended width (0 ignores hints).
    width_hint_weight: float = 0.5

    # ── System justification (PagePlanner) ────────────────────────────────
    sparse_density_threshold: float = 1.38
    very_sparse_density_threshold: float = 1.18
    max_sparse_reduction_ratio: float = 0.24
    min_sparse_target_ratio: float = 0.72
    clef_width: float = 24.0
    key_accidental_width: float = 8.0
    time_signature_width: float = 16.0
    system_header_padding: float = 6.0

    # ── Voices (VoiceFormatter) ────────────────────────────────────────────
    max_voices_per_staff: int = 4
    #: Half-space steps a secondary voice's rest moves off the centre line.
    rest_offset_steps: int = 4

    # ── Spanners (SpannerRouter) ──────────────────────────────────────────
    #: Vertical anchor spread cap, as a multiple of ``staff_distance``.
    spanner_vertical_cap_ratio: float = 0.85
    #: Horizontal anchor spread cap, as a multiple of ``staff_distance``.
    spanner_horizontal_cap_ratio: float = 10.0
    #: Staff separation beyond which cross-staff spanners become connectors.
    cross_staff_connector_ratio: float = 1.25
    curve_base_height: float = 11.0
    curve_height_per_unit: float = 0.03
    curve_max_height: float = 20.0
    tuplet_bracket_offset: float = 8.0
    arpeggio_offset: float = 8.0

    # ── Text lanes (TextLanePacker) ───────────────────────────────────────
    lyric_padding: float = 6.0
    harmony_padding: float = 8.0
    direction_padding: float = 16.0
    dynamics_padding: float = 8.0
    lyric_row_spacing: float = 14.0
    harmony_row_spacing: float = 14.0
    direction_row_spacing: float = 22.0
    dynamics_row_spacing: float = 16.0
    #: Dynamics are compact glyph runs and need less inter-system clearance.
    dynamics_gap_weight: float = 0.6
    #: Identical consecutive dynamics closer than this merge into one mark.
    dynamics_merge_window: float = 120.0
    #: Gap between the outermost glyph of a staff and its first text row.
    text_clearance: float = 6.0

    # ── Vertical spacing ──────────────────────────────────────────────────
    min_system_gap: float = 40.0
    max_system_gap: float = 160.0
    system_gap_clearance: float = 12.0
    #: Height of the measure-number row reserved above a system.
    measure_number_size: float = 10.0

    # ── Collision audit ───────────────────────────────────────────────────
    #: Notehead/barline overlap tolerated before it is reported.
    barline_overlap_tolerance: float = 1.0

    def spanner_vertical_cap(self) -> float:
        return self.spanner_vertical_cap_ratio * self.staff_distance

    def spanner_horizontal_cap(self) -> float:
        return self.spanner_horizontal_cap_ratio * self.staff_distance

    def cross_staff_threshold(self) -> float:
        return self.cross_staff_connector_ratio * self.staff_distance

    @property
    def staff_height(self) -> float:
        return 4 * self.staff_space


@dataclass(frozen=True)
class LayoutOptions:
    """Per-run page and system options recognised by the layout engine."""

    # Page dimensions and margins
    page_width: float = 900.0
    page_height: float = 1270.0
    margin_top: float = 40.0
    margin_bottom: float = 52.0
    margin_left: float = 20.0
    margin_right: float = 20.0
    scale: float = 1.0

    # Systems
    min_measures_per_system: int = 1
    max_measures_per_system: int = 8
    #: When set, pins the gap between systems and disables text-aware expansion.
    system_gap: float | None = None
    justify_last_system: bool = False

    # Labels and overlays
    show_part_labels: bool = True
    #: Explicit label column width; estimated from part names when None.
    label_width: float | None = None
    measure_numbers: bool = False
    measure_number_interval: int = 4

    #: Half-open ``(start, stop)`` measure-index window to render; None renders all.
    measure_window: tuple[int, int] | None = None

    #: Promote every warning diagnostic to an error.
    strict: bool = False

    def __post_init__(self) -> None:
        if self.min_measures_per_system < 1:
            raise ValueError("min_measures_per_system must be at least 1.")
        if self.max_measures_per_system < self.min_measures_per_system:
            raise ValueError("max_measures_per_system must be >= min_measures_per_system.")
        if self.scale <= 0:
            raise ValueError("scale must be positive.")
        if self.measure_number_interval < 1:
            raise ValueError("measure_number_interval must be at least 1.")
        if self.measure_window is not None:
            start, stop = self.measure_window
            if start < 0 or stop <= start:
                raise ValueError(f"Invalid measure window {self.measure_window!r}.")

    @property
    def content_left(self) -> float:
        return self.margin_left

    @property
    def content_right(self) -> float:
        return self.page_width / self.scale - self.margin_right

    @property
    def content_top(self) -> float:
        return self.margin_top

    @property
    def content_bottom(self) -> float:
        return self.page_height / self.scale - self.margin_bottom

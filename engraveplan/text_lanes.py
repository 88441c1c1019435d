"""TextLanePacker: assigns lyric, harmony, direction and dynamics text to lanes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Sequence

from engraveplan.config import LayoutCoefficients
from engraveplan.plan_models import StaffKey, TextLane, TextPlacement
from engraveplan.score_models import DirectionEvent, NoteEvent, Placement, Staff, TextCategory
from engraveplan.voice_formatter import TickMap

logger = logging.getLogger(__name__)

# ── Width estimation ────────────────────────────────────────────────────────

#: Advance of each character class, as a fraction of the font size.
SPACE_SCALE = 0.34
TAB_SCALE = 0.68
UPPERCASE_SCALE = 0.64
DIGIT_SCALE = 0.58
PUNCTUATION_SCALE = 0.28
BRACKET_SCALE = 0.35
ACCIDENTAL_SCALE = 0.62
DEFAULT_SCALE = 0.56

BOLD_FACTOR = 1.12
ITALIC_FACTOR = 1.10

_PUNCTUATION = set(".,:;'\"!")
_BRACKETS = set("(){}[]/\\|")
_ACCIDENTALS = set("#♭♯𝄪𝄫")

#: Advance widths of the dynamics glyph alphabet at the default size.
DYNAMICS_GLYPH_ADVANCES: dict[str, float] = {"f": 14, "p": 15, "m": 19, "s": 12, "z": 13, "r": 13}
DYNAMICS_SIDE_BEARING = 3.0
DYNAMICS_SPACE_ADVANCE = 8.0
DYNAMICS_FONT_SIZE = 12.0


def character_width_scale(character: str) -> float:
    if character == " ":
        return SPACE_SCALE
    if character == "\t":
        return TAB_SCALE
    if "A" <= character <= "Z":
        return UPPERCASE_SCALE
    if "0" <= character <= "9":
        return DIGIT_SCALE
    if character in _PUNCTUATION:
        return PUNCTUATION_SCALE
    if character in _BRACKETS:
        return BRACKET_SCALE
    if character in _ACCIDENTALS:
        return ACCIDENTAL_SCALE
    return DEFAULT_SCALE


def estimate_text_width(text: str, font_size: float = 12.0, bold: bool = False, italic: bool = False) -> float:
    """
    Estimate rendered width from character classes instead of a flat average.

    Args:
        text:      The string to measure.
        font_size: Font size in layout units.
        bold:      Bold text is ~12% wider.
        italic:    Italic text is ~10% wider.

    Returns:
        Estimated width in layout units (0 for empty text).
    """
    if not text:
        return 0.0
    width = sum(character_width_scale(character) for character in text) * font_size
    if bold:
        width *= BOLD_FACTOR
    if italic:
        width *= ITALIC_FACTOR
    return width


def estimate_dynamics_width(text: str, font_size: float = DYNAMICS_FONT_SIZE) -> float:
    """Width of a dynamics mark set in the glyph alphabet; other text falls back to letters."""
    if not text:
        return 0.0
    if not all(character in DYNAMICS_GLYPH_ADVANCES or character == " " for character in text):
        return estimate_text_width(text, font_size, italic=True)
    scale = font_size / DYNAMICS_FONT_SIZE
    advance = sum(
        DYNAMICS_SPACE_ADVANCE if character == " " else DYNAMICS_GLYPH_ADVANCES[character] for character in text
    )
    return (advance + 2 * DYNAMICS_SIDE_BEARING) * scale


# ── Category rules ──────────────────────────────────────────────────────────

class Alignment(str, Enum):
    LEFT = "left"
    CENTER = "center"


@dataclass(frozen=True)
class CategoryRule:
    """
    Packing and spacing rule for one text category.

    Attributes:
        side:        Staff side the category's band sits on.
        alignment:   How the text box sits relative to its anchor x.
        padding:     Minimum horizontal gap between two boxes in one lane.
        row_spacing: Distance between successive lanes.
        font_size:   Default font size.
        gap_weight:  Share of the band that counts towards inter-system gaps.
        mergeable:   Whether identical neighbours collapse into one mark.
    """

    side: Placement
    alignment: Alignment
    padding: float
    row_spacing: float
    font_size: float
    gap_weight: float = 1.0
    mergeable: bool = False


def category_rules(coefficients: LayoutCoefficients) -> dict[TextCategory, CategoryRule]:
    """The closed rule table; every ``TextCategory`` has exactly one rule."""
    c = coefficients
    return {
        TextCategory.LYRIC: CategoryRule(
            Placement.BELOW, Alignment.CENTER, c.lyric_padding, c.lyric_row_spacing, 12.0
        ),
        TextCategory.HARMONY: CategoryRule(
            Placement.ABOVE, Alignment.LEFT, c.harmony_padding, c.harmony_row_spacing, 13.0
        ),
        TextCategory.DIRECTION: CategoryRule(
            Placement.ABOVE, Alignment.LEFT, c.direction_padding, c.direction_row_spacing, 12.0
        ),
        TextCategory.DYNAMICS: CategoryRule(
            Placement.BELOW,
            Alignment.CENTER,
            c.dynamics_padding,
            c.dynamics_row_spacing,
            DYNAMICS_FONT_SIZE,
            gap_weight=c.dynamics_gap_weight,
            mergeable=True,
        ),
    }


#: Band order away from the staff on each side.
ABOVE_BANDS: tuple[TextCategory, ...] = (TextCategory.DIRECTION, TextCategory.HARMONY)
BELOW_BANDS: tuple[TextCategory, ...] = (TextCategory.DYNAMICS, TextCategory.LYRIC)


# ── Annotations ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TextAnnotation:
    """One text item waiting for a lane."""

    annotation_id: str
    category: TextCategory
    text: str
    staff_key: StaffKey
    measure_index: int
    anchor_x: float
    width: float
    font_size: float
    verse: int = 1


def collect_annotations(
    staff: Staff,
    part_index: int,
    tick_map: TickMap,
    rules: dict[TextCategory, CategoryRule],
) -> list[TextAnnotation]:
    """Lyric syllables and direction events of one staff in one measure."""
    measure_index = tick_map.column.measure_index
    staff_key: StaffKey = (part_index, staff.number)
    found: list[TextAnnotation] = []
    for voice in staff.voices:
        for position, event in enumerate(voice.events):
            base_id = f"{part_index}.{staff.number}.{voice.id}.m{measure_index}.e{position}"
            if isinstance(event, NoteEvent):
                for syllable in event.lyrics:
                    size = rules[TextCategory.LYRIC].font_size
                    found.append(
                        TextAnnotation(
                            annotation_id=f"lyric:{base_id}.v{syllable.verse}",
                            category=TextCategory.LYRIC,
                            text=syllable.text,
                            staff_key=staff_key,
                            measure_index=measure_index,
                            anchor_x=tick_map.x_at(event.tick),
                            width=estimate_text_width(syllable.text, size, italic=syllable.italic),
                            font_size=size,
                            verse=max(1, syllable.verse),
                        )
                    )
            elif isinstance(event, DirectionEvent):
                size = event.font_size or rules[event.category].font_size
                if event.category is TextCategory.DYNAMICS:
                    width = estimate_dynamics_width(event.text, size)
                else:
                    width = estimate_text_width(event.text, size, event.bold, event.italic)
                found.append(
                    TextAnnotation(
                        annotation_id=f"{event.category.value}:{base_id}",
                        category=event.category,
                        text=event.text,
                        staff_key=staff_key,
                        measure_index=measure_index,
                        anchor_x=tick_map.x_at(event.tick),
                        width=width,
                        font_size=size,
                    )
                )
    return found


@dataclass(frozen=True)
class LanePacking:
    """Lane assignment for every annotation of one system."""

    placements: tuple[TextPlacement, ...]
    lanes: tuple[TextLane, ...]

    def lane_count(self, category: TextCategory, staff_key: StaffKey | None = None) -> int:
        """Lanes used by ``category`` on one staff, or the most on any staff."""
        counts = [
            lane.index + 1
            for lane in self.lanes
            if lane.category is category and (staff_key is None or lane.staff_key == staff_key)
        ]
        return max(counts, default=0)

    def lane_counts(self) -> tuple[tuple[TextCategory, int], ...]:
        return tuple((category, self.lane_count(category)) for category in TextCategory)


# ── Packer ──────────────────────────────────────────────────────────────────

class TextLanePacker:
    """
    Packs text annotations into lanes that persist for a whole system.

    Annotations are processed left to right by anchor x. Each one takes the
    first lane, scanning outward from the staff, whose occupied intervals
    (widened by the category padding) do not overlap it; a new lane is opened
    when none admits it. Lyrics start scanning at lane ``verse - 1`` so verse
    lines stay aligned. Identical consecutive dynamics on one staff closer
    than ``dynamics_merge_window`` are merged into the first mark.
    """

    def __init__(
        self,
        coefficients: LayoutCoefficients,
        rules: dict[TextCategory, CategoryRule] | None = None,
    ) -> None:
        self.coefficients = coefficients
        self.rules = rules if rules is not None else category_rules(coefficients)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _interval(self, annotation: TextAnnotation) -> tuple[float, float]:
        rule = self.rules[annotation.category]
        if rule.alignment is Alignment.CENTER:
            left = annotation.anchor_x - annotation.width / 2
        else:
            left = annotation.anchor_x
        return (left, left + annotation.width)

    @staticmethod
    def _admits(intervals: list[tuple[float, float]], candidate: tuple[float, float], padding: float) -> bool:
        left, right = candidate
        return all(right + padding <= start or end + padding <= left for start, end in intervals)

    def _pack_group(
        self,
        category: TextCategory,
        staff_key: StaffKey,
        annotations: list[TextAnnotation],
    ) -> tuple[list[TextPlacement], list[TextLane]]:
        rule = self.rules[category]
        lanes: list[list[tuple[float, float]]] = []
        placements: list[TextPlacement] = []
        last_kept: TextAnnotation | None = None

        for annotation in sorted(annotations, key=lambda item: (item.anchor_x, item.annotation_id)):
            interval = self._interval(annotation)
            if (
                rule.mergeable
                and last_kept is not None
                and last_kept.text == annotation.text
                and annotation.anchor_x - last_kept.anchor_x <= self.coefficients.dynamics_merge_window
            ):
                placements.append(
                    TextPlacement(
                        annotation_id=annotation.annotation_id,
                        category=category,
                        text=annotation.text,
                        staff_key=staff_key,
                        measure_index=annotation.measure_index,
                        x=interval[0],
                        width=annotation.width,
                        lane=None,
                        merged_into=last_kept.annotation_id,
                        height=annotation.font_size,
                    )
                )
                continue

            first = annotation.verse - 1 if category is TextCategory.LYRIC else 0
            while len(lanes) <= first:
                lanes.append([])
            chosen = next(
                (index for index in range(first, len(lanes)) if self._admits(lanes[index], interval, rule.padding)),
                None,
            )
            if chosen is None:
                lanes.append([])
                chosen = len(lanes) - 1
            lanes[chosen].append(interval)
            placements.append(
                TextPlacement(
                    annotation_id=annotation.annotation_id,
                    category=category,
                    text=annotation.text,
                    staff_key=staff_key,
                    measure_index=annotation.measure_index,
                    x=interval[0],
                    width=annotation.width,
                    lane=chosen,
                    height=annotation.font_size,
                )
            )
            last_kept = annotation

        text_lanes = [
            TextLane(category=category, staff_key=staff_key, index=index, intervals=tuple(sorted(intervals)))
            for index, intervals in enumerate(lanes)
        ]
        return placements, text_lanes

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def pack(self, annotations: Iterable[TextAnnotation]) -> LanePacking:
        """Pack every annotation of one system; categories never share lanes."""
        groups: dict[tuple[TextCategory, StaffKey], list[TextAnnotation]] = {}
        for annotation in annotations:
            groups.setdefault((annotation.category, annotation.staff_key), []).append(annotation)

        placements: list[TextPlacement] = []
        lanes: list[TextLane] = []
        order = list(TextCategory)
        for category, staff_key in sorted(groups, key=lambda key: (key[1], order.index(key[0]))):
            group_placements, group_lanes = self._pack_group(category, staff_key, groups[(category, staff_key)])
            placements.extend(group_placements)
            lanes.extend(group_lanes)

        logger.debug("Packed %d text annotation(s) into %d lane(s).", len(placements), len(lanes))
        return LanePacking(placements=tuple(placements), lanes=tuple(lanes))

    def row_pitch(self, packing: LanePacking, category: TextCategory, staff_key: StaffKey) -> float:
        """Lane pitch of one band; oversized fonts widen it."""
        sizes = [
            placement.height
            for placement in packing.placements
            if placement.category is category and placement.staff_key == staff_key
        ]
        return max([self.rules[category].row_spacing, *sizes])

    def band_height(self, packing: LanePacking, staff_key: StaffKey, side: Placement) -> float:
        """Total height of the text bands on one side of one staff."""
        bands = ABOVE_BANDS if side is Placement.ABOVE else BELOW_BANDS
        return sum(
            packing.lane_count(category, staff_key) * self.row_pitch(packing, category, staff_key)
            for category in bands
        )

    def gap_pressure(self, packing: LanePacking, side: Placement) -> float:
        """Weighted band extent one system contributes to an adjoining gap."""
        bands = ABOVE_BANDS if side is Placement.ABOVE else BELOW_BANDS
        return sum(
            packing.lane_count(category) * self.rules[category].row_spacing * self.rules[category].gap_weight
            for category in bands
        )

    def position(
        self,
        packing: LanePacking,
        staff_key: StaffKey,
        glyph_top: float,
        glyph_bottom: float,
    ) -> list[TextPlacement]:
        """
        Resolve the y of every placed annotation of one staff.

        Bands start ``text_clearance`` beyond the outermost glyph on each side
        and stack outward in band order; merged marks share their target's y.
        """
        clearance = self.coefficients.text_clearance
        offsets: dict[tuple[TextCategory, int], float] = {}

        cursor = glyph_top - clearance
        for category in ABOVE_BANDS:
            pitch = self.row_pitch(packing, category, staff_key)
            for lane in range(packing.lane_count(category, staff_key)):
                offsets[(category, lane)] = cursor - (lane + 1) * pitch
            cursor -= packing.lane_count(category, staff_key) * pitch

        cursor = glyph_bottom + clearance
        for category in BELOW_BANDS:
            pitch = self.row_pitch(packing, category, staff_key)
            for lane in range(packing.lane_count(category, staff_key)):
                offsets[(category, lane)] = cursor + lane * pitch
            cursor += packing.lane_count(category, staff_key) * pitch

        positioned: dict[str, TextPlacement] = {}
        resolved: list[TextPlacement] = []
        for placement in packing.placements:
            if placement.staff_key != staff_key:
                continue
            if placement.lane is None:
                target = positioned.get(placement.merged_into or "")
                y = target.y if target is not None else glyph_bottom + clearance
            else:
                row_top = offsets[(placement.category, placement.lane)]
                pitch = self.row_pitch(packing, placement.category, staff_key)
                # Above the staff text sits on the bottom of its row; below it hangs from the top.
                y = row_top + pitch - placement.height if self.rules[placement.category].side is Placement.ABOVE else row_top
            moved = replace(placement, y=y)
            positioned[placement.annotation_id] = moved
            resolved.append(moved)
        return resolved


def lane_intervals_overlap(lanes: Sequence[TextLane]) -> bool:
    """True when any lane holds two overlapping intervals."""
    for lane in lanes:
        ordered = sorted(lane.intervals)
        for (_, first_end), (second_start, _) in zip(ordered, ordered[1:]):
            if second_start < first_end:
                return True
    return False

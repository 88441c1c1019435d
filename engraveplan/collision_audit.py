"""CollisionAuditor: read-only overlap inspection of finished page geometry."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from engraveplan.diagnostics import Severity
from engraveplan.plan_models import ElementKind, ElementPlacement, PagePlan


class CollisionKind(str, Enum):
    NOTEHEAD_BARLINE = "notehead_barline"
    TEXT_TEXT = "text_text"
    TEXT_NOTEHEAD = "text_notehead"
    DUPLICATE_STEM_DECORATION = "duplicate_stem_decoration"


@dataclass(frozen=True)
class Collision:
    """One overlapping pair (or, for stem decorations, the stem and its extras)."""

    kind: CollisionKind
    severity: Severity
    first: ElementPlacement
    second: ElementPlacement
    overlap: float


@dataclass(frozen=True)
class CollisionReport:
    collisions: tuple[Collision, ...] = ()

    def count(self, kind: CollisionKind | None = None) -> int:
        if kind is None:
            return len(self.collisions)
        return sum(1 for collision in self.collisions if collision.kind is kind)

    @property
    def has_errors(self) -> bool:
        return any(collision.severity is Severity.ERROR for collision in self.collisions)

    def summary(self) -> dict[str, int]:
        return {kind.value: self.count(kind) for kind in CollisionKind}


def _by_kind(elements: Iterable[ElementPlacement], kind: ElementKind) -> list[ElementPlacement]:
    return [element for element in elements if element.kind is kind]


def _barline_intrusions(
    noteheads: Sequence[ElementPlacement],
    barlines: Sequence[ElementPlacement],
    min_overlap: float,
) -> list[Collision]:
    found = []
    for barline in barlines:
        for head in noteheads:
            if head.staff_key != barline.staff_key or head.bbox.vertical_overlap(barline.bbox) <= 0:
                continue
            overlap = head.bbox.horizontal_overlap(barline.bbox)
            if overlap <= min_overlap:
                continue
            # Intrusions deeper than half a notehead are unreadable.
            severity = Severity.ERROR if overlap > head.bbox.width / 2 else Severity.WARNING
            found.append(Collision(CollisionKind.NOTEHEAD_BARLINE, severity, head, barline, overlap))
    return found


def _text_overlaps(texts: Sequence[ElementPlacement]) -> list[Collision]:
    rows: dict[str, list[ElementPlacement]] = {}
    for text in texts:
        if text.row_key is not None:
            rows.setdefault(text.row_key, []).append(text)
    found = []
    for row_key in sorted(rows):
        row = sorted(rows[row_key], key=lambda element: (element.bbox.left, element.ref))
        for position, first in enumerate(row):
            for second in row[position + 1 :]:
                if second.bbox.left >= first.bbox.right:
                    break
                overlap = first.bbox.horizontal_overlap(second.bbox)
                if overlap > 0:
                    found.append(Collision(CollisionKind.TEXT_TEXT, Severity.ERROR, first, second, overlap))
    return found


def _text_on_noteheads(
    texts: Sequence[ElementPlacement],
    noteheads: Sequence[ElementPlacement],
) -> list[Collision]:
    found = []
    for text in texts:
        for head in noteheads:
            if text.bbox.intersects(head.bbox):
                overlap = text.bbox.horizontal_overlap(head.bbox)
                found.append(Collision(CollisionKind.TEXT_NOTEHEAD, Severity.WARNING, text, head, overlap))
    return found


def _duplicate_decorations(
    stems: Sequence[ElementPlacement],
    decorations: Sequence[ElementPlacement],
) -> list[Collision]:
    by_stem = {stem.ref: stem for stem in stems}
    uses = Counter(ref for decoration in decorations for ref in decoration.stem_refs)
    found = []
    for decoration in decorations:
        for ref in decoration.stem_refs:
            stem = by_stem.get(ref)
            if stem is not None and uses[ref] > 1:
                found.append(
                    Collision(CollisionKind.DUPLICATE_STEM_DECORATION, Severity.ERROR, stem, decoration, 0.0)
                )
    return found


def audit_elements(elements: Sequence[ElementPlacement], min_barline_overlap: float = 0.0) -> CollisionReport:
    """
    Detect overlaps among placed elements.

    Checks notehead/barline intrusions deeper than ``min_barline_overlap``,
    text/text overlaps inside one visual row, text/notehead overlaps and
    stems carrying more than one flag or beam. The input is never modified.
    """
    noteheads = _by_kind(elements, ElementKind.NOTEHEAD)
    texts = _by_kind(elements, ElementKind.TEXT)
    collisions = [
        *_barline_intrusions(noteheads, _by_kind(elements, ElementKind.BARLINE), min_barline_overlap),
        *_text_overlaps(texts),
        *_text_on_noteheads(texts, noteheads),
        *_duplicate_decorations(
            _by_kind(elements, ElementKind.STEM),
            _by_kind(elements, ElementKind.FLAG) + _by_kind(elements, ElementKind.BEAM),
        ),
    ]
    return CollisionReport(collisions=tuple(collisions))


def audit_page(page: PagePlan, min_barline_overlap: float = 0.0) -> CollisionReport:
    """Audit every element placed on one page."""
    return audit_elements(page.elements, min_barline_overlap)

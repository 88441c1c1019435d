"""PlanExporter: lays out a score file and writes the plan in a chosen format."""

from __future__ import annotations

import logging
from typing import Final

from engraveplan.config import LayoutCoefficients, LayoutOptions
from engraveplan.layout_engine import LayoutEngine, LayoutResult
from engraveplan.plan_renderers import HtmlPreviewRenderer, JsonPlanRenderer, PlanRenderer
from engraveplan.score_loader import ScoreLoader
from engraveplan.score_models import CanonicalScore

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS: Final[set[str]] = {"json", "html"}


class PlanExporter:
    """
    Turn a score into plan output via a pluggable renderer.

    Supported formats:
    - ``json``: the complete plan and diagnostics, with sorted keys.
    - ``html``: a self-contained preview with one inline SVG per page.
    """

    def __init__(
        self,
        title: str = "",
        output_format: str = "json",
        options: LayoutOptions | None = None,
        coefficients: LayoutCoefficients | None = None,
    ) -> None:
        self.title = title
        normalized = output_format.strip().lower()
        if normalized not in SUPPORTED_FORMATS:
            supported = ", ".join(sorted(SUPPORTED_FORMATS))
            raise ValueError(f"Unsupported output format '{output_format}'. Use one of: {supported}.")
        self.output_format = normalized
        self.engine = LayoutEngine(options, coefficients)
        self.renderer = self._build_renderer(normalized)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_renderer(self, output_format: str) -> PlanRenderer:
        if output_format == "html":
            return HtmlPreviewRenderer(staff_space=self.engine.coefficients.staff_space)
        return JsonPlanRenderer()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def default_extension(self) -> str:
        return self.renderer.default_extension

    def render(self, score: CanonicalScore) -> tuple[str, LayoutResult]:
        """Lay out ``score`` and render it; returns the content and the result."""
        result = self.engine.layout(score)
        return self.renderer.render(title=self.title or score.title, result=result), result

    def write(self, content: str, output_path: str) -> None:
        """Write rendered plan content to ``output_path`` as UTF-8."""
        with open(output_path, "w", encoding="utf-8") as fh:
            fh.write(content)
        logger.info("Wrote %s plan to %s.", self.output_format, output_path)

    def export(self, score_path: str, output_path: str) -> LayoutResult:
        """
        Load a score file, lay it out and write the rendered plan to disk.

        Raises:
            ValueError: If the score cannot be parsed or is invalid.
            OSError: If the output file cannot be written.
        """
        score = ScoreLoader().load(score_path)
        content, result = self.render(score)
        self.write(content, output_path)
        return result

"""Renderer implementations for layout plan output formats."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict
from enum import Enum
from typing import Any, Final

from engraveplan.layout_engine import LayoutResult
from engraveplan.plan_models import ElementKind, PagePlan, SpannerPath
from engraveplan.score_models import Placement


def _escape_html(text: str) -> str:
    """Escape the three characters that are unsafe in HTML text content."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _plain(value: Any) -> Any:
    """Turn enums and tuples into JSON-native values, recursively."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(_plain(key)): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, float):
        return round(value, 3)
    return value


class PlanRenderer(ABC):
    """Abstract layout plan renderer."""

    @property
    @abstractmethod
    def default_extension(self) -> str:
        """Default filename extension for this renderer."""

    @abstractmethod
    def render(self, *, title: str, result: LayoutResult) -> str:
        """Render a layout result into a file content string."""


class JsonPlanRenderer(PlanRenderer):
    """Serialise the full plan and its diagnostics as deterministic JSON."""

    @property
    def default_extension(self) -> str:
        return ".json"

    def to_dict(self, title: str, result: LayoutResult) -> dict[str, Any]:
        return {
            "title": title,
            "pages": [_plain(asdict(page)) for page in result.pages],
            "diagnostics": [_plain(asdict(item)) for item in result.diagnostics],
        }

    def render(self, *, title: str, result: LayoutResult) -> str:
        return json.dumps(self.to_dict(title, result), indent=2, sort_keys=True) + "\n"


class HtmlPreviewRenderer(PlanRenderer):
    """
    Draw each planned page as an inline SVG of boxes and spanner paths.

    No music glyphs are drawn; the preview is for inspecting geometry.
    """

    _COLOURS: Final[dict[ElementKind, str]] = {
        ElementKind.NOTEHEAD: "#1f4e8c",
        ElementKind.REST: "#4f7cac",
        ElementKind.STEM: "#222222",
        ElementKind.FLAG: "#8c4f1f",
        ElementKind.BEAM: "#5a3a1a",
        ElementKind.BARLINE: "#777777",
        ElementKind.TEXT: "#2e7d32",
        ElementKind.MEASURE_NUMBER: "#9c27b0",
    }

    def __init__(self, staff_space: float = 10.0) -> None:
        self.staff_space = staff_space

    @property
    def default_extension(self) -> str:
        return ".html"

    def render(self, *, title: str, result: LayoutResult) -> str:
        svgs = [self.render_page_svg(page) for page in result.pages]
        return self.build_html(title, svgs)

    def _path_svg(self, path: SpannerPath) -> str:
        x0, y0, x1, y1 = path.start.x, path.start.y, path.end.x, path.end.y
        if path.curvature == 0:
            return f'<line class="spanner" x1="{x0:.1f}" y1="{y0:.1f}" x2="{x1:.1f}" y2="{y1:.1f}" />'
        bend = -path.curvature if path.side is Placement.ABOVE else path.curvature
        cx, cy = (x0 + x1) / 2, (y0 + y1) / 2 + bend
        return f'<path class="spanner" d="M {x0:.1f} {y0:.1f} Q {cx:.1f} {cy:.1f} {x1:.1f} {y1:.1f}" />'

    def render_page_svg(self, page: PagePlan) -> str:
        """Render one page to an SVG string in page units."""
        box = page.content_box
        parts = [
            f'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 {page.width:.0f} {page.height:.0f}">',
            f'<rect class="content" x="{box.left:.1f}" y="{box.top:.1f}" '
            f'width="{box.width:.1f}" height="{box.height:.1f}" />',
        ]
        for system in page.systems:
            for _, top in system.staff_tops:
                for line in range(5):
                    y = top + line * self.staff_space
                    parts.append(
                        f'<line class="staff" x1="{system.columns[0].x:.1f}" y1="{y:.1f}" '
                        f'x2="{system.columns[-1].right:.1f}" y2="{y:.1f}" />'
                    )
            for element in system.elements:
                b = element.bbox
                colour = self._COLOURS[element.kind]
                if element.text:
                    parts.append(
                        f'<text x="{b.left:.1f}" y="{b.bottom:.1f}" fill="{colour}" '
                        f'font-size="{max(b.height, 1.0):.0f}">{_escape_html(element.text)}</text>'
                    )
                else:
                    parts.append(
                        f'<rect x="{b.left:.1f}" y="{b.top:.1f}" width="{max(b.width, 0.5):.1f}" '
                        f'height="{max(b.height, 0.5):.1f}" fill="{colour}" />'
                    )
            parts.extend(self._path_svg(path) for path in system.spanner_paths)
        parts.append("</svg>")
        return "\n".join(parts)

    def build_html(self, title: str, svgs: list[str]) -> str:
        """Wrap a list of SVG strings in a self-contained HTML document."""
        title_safe = _escape_html(title)
        heading = f"  <h1>{title_safe}</h1>\n" if title else ""
        pages = "\n".join(f'  <div class="page">{svg}</div>' for svg in svgs)

        return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>{title_safe}</title>
  <style>
    body {{
      font-family: Georgia, serif;
      background: #f0f0f0;
      margin: 0;
      padding: 2rem;
    }}
    h1 {{
      text-align: center;
      font-size: 1.6rem;
      color: #222;
    }}
    .page {{
      background: #fff;
      box-shadow: 0 2px 8px rgba(0, 0, 0, 0.15);
      margin: 0 auto 3rem;
      max-width: 900px;
    }}
    .page svg {{ display: block; width: 100%; height: auto; }}
    .content {{ fill: none; stroke: #d0d0d0; stroke-dasharray: 4 4; }}
    .staff {{ stroke: #c8c8c8; stroke-width: 0.6; }}
    .spanner {{ fill: none; stroke: #c62828; stroke-width: 1.2; }}
    @media print {{
      body {{ background: #fff; padding: 0; }}
      .page {{ box-shadow: none; page-break-after: always; }}
      .page:last-child {{ page-break-after: avoid; }}
    }}
  </style>
</head>
<body>
{heading}{pages}
</body>
</html>"""

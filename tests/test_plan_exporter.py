"""Unit tests for PlanExporter (score loading is monkeypatched out)."""

import json

import pytest

from engraveplan.config import LayoutOptions
from engraveplan.plan_exporter import PlanExporter
from engraveplan.score_loader import ScoreLoader
from engraveplan.score_models import CanonicalScore, Measure, NoteEvent, NoteHead, Part, Staff, Voice

TPQ = 480


def _sample_score(measures: int = 3) -> CanonicalScore:
    staff = Staff(number=1, voices=(Voice(id="1", events=(NoteEvent(0, 4 * TPQ, (NoteHead(0),)),)),))
    part = Part(
        id="P1",
        name="Oboe",
        measures=tuple(Measure(index=i, duration_ticks=4 * TPQ, staves=(staff,)) for i in range(measures)),
    )
    return CanonicalScore(parts=(part,), ticks_per_quarter=TPQ, title="Loaded Title")


def test_unsupported_format_raises() -> None:
    with pytest.raises(ValueError, match="Unsupported output format"):
        PlanExporter(output_format="pdf")


def test_format_is_normalised() -> None:
    exporter = PlanExporter(output_format=" HTML ")
    assert exporter.output_format == "html"
    assert exporter.default_extension == ".html"


def test_render_falls_back_to_score_title() -> None:
    content, result = PlanExporter().render(_sample_score())
    assert json.loads(content)["title"] == "Loaded Title"
    assert len(result.pages) == 1


def test_explicit_title_wins() -> None:
    content, _ = PlanExporter(title="Override").render(_sample_score())
    assert json.loads(content)["title"] == "Override"


def test_options_reach_the_engine() -> None:
    exporter = PlanExporter(options=LayoutOptions(max_measures_per_system=1))
    _, result = exporter.render(_sample_score())
    assert sum(len(page.systems) for page in result.pages) == 3


def test_export_writes_file(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(ScoreLoader, "load", lambda self, path: _sample_score())
    output = tmp_path / "plan.html"

    result = PlanExporter(output_format="html").export("ignored.musicxml", str(output))

    assert output.read_text(encoding="utf-8").startswith("<!DOCTYPE html>")
    assert not result.has_errors


def test_write_stores_rendered_content(tmp_path) -> None:
    exporter = PlanExporter()
    content, _ = exporter.render(_sample_score())
    output = tmp_path / "plan.json"
    exporter.write(content, str(output))
    assert output.read_text(encoding="utf-8") == content

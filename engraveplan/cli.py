"""engraveplan CLI entry point."""

import logging
import re
import sys
from pathlib import Path

import click

from engraveplan import __version__
from engraveplan.config import LayoutOptions
from engraveplan.diagnostics import Severity
from engraveplan.layout_engine import LayoutEngine, LayoutResult
from engraveplan.plan_exporter import SUPPORTED_FORMATS, PlanExporter
from engraveplan.score_loader import ScoreLoader

_WINDOW_PATTERN = re.compile(r"^\s*(\d+)\s*:\s*(\d+)\s*$")


def _parse_window(window: str | None) -> tuple[int, int] | None:
    """Parse ``START:STOP`` (zero-based, stop exclusive) into a measure window."""
    if window is None:
        return None
    match = _WINDOW_PATTERN.match(window)
    if not match:
        raise click.BadParameter("expected START:STOP, e.g. 4:12", param_hint="--window")
    return int(match.group(1)), int(match.group(2))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _echo_diagnostics(result: LayoutResult) -> None:
    for item in result.diagnostics:
        if item.severity is Severity.INFO:
            continue
        where = f" (measure {item.measure_index + 1})" if item.measure_index is not None else ""
        click.echo(f"  {item.severity.value.upper()}: [{item.code}] {item.message}{where}", err=True)


# ── CLI group ──────────────────────────────────────────────────────────────────

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="engraveplan")
def main() -> None:
    """engraveplan: score layout planning from MusicXML or MIDI."""


# ── layout subcommand ──────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option(
    "--output",
    "-o",
    default=None,
    metavar="PATH",
    help="Destination plan file path. Defaults to extension based on --format.",
)
@click.option(
    "--title",
    default=None,
    metavar="TEXT",
    help="Title recorded in the output. Defaults to the score's own title.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(sorted(SUPPORTED_FORMATS), case_sensitive=False),
    default="json",
    show_default=True,
    help="Plan output format: full JSON plan or an HTML geometry preview.",
)
@click.option("--page-width", type=click.FloatRange(min=100), default=900.0, show_default=True)
@click.option("--page-height", type=click.FloatRange(min=100), default=1270.0, show_default=True)
@click.option(
    "--min-measures",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Minimum measures per system (the last two systems are rebalanced to meet it).",
)
@click.option(
    "--max-measures",
    type=click.IntRange(min=1),
    default=8,
    show_default=True,
    help="Maximum measures per system.",
)
@click.option(
    "--system-gap",
    type=click.FloatRange(min=0),
    default=None,
    metavar="UNITS",
    help="Pin the gap between systems instead of deriving it from text density.",
)
@click.option(
    "--window",
    default=None,
    metavar="START:STOP",
    help="Only emit systems touching this zero-based, stop-exclusive measure range.",
)
@click.option("--measure-numbers", is_flag=True, help="Place measure numbers above each system.")
@click.option("--strict", is_flag=True, help="Treat warnings as errors and exit 1 when any occur.")
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline progress.")
def layout(
    score_file: str,
    output: str | None,
    title: str | None,
    output_format: str,
    page_width: float,
    page_height: float,
    min_measures: int,
    max_measures: int,
    system_gap: float | None,
    window: str | None,
    measure_numbers: bool,
    strict: bool,
    verbose: bool,
) -> None:
    """
    Plan the page layout of a MusicXML or MIDI file.

    SCORE_FILE is the path to an existing score file.
    - json: every page, system, element, lane and spanner path.
    - html: self-contained preview drawing the planned boxes.

    \b
    Examples:
      engraveplan layout song.musicxml
      engraveplan layout song.musicxml --format html -o preview.html
      engraveplan layout song.mid --max-measures 4 --window 0:8 --strict
    """
    _configure_logging(verbose)
    score_path = Path(score_file)
    normalized_format = output_format.lower()
    resolved_output = output if output is not None else str(score_path.with_suffix(f".plan.{normalized_format}"))

    try:
        options = LayoutOptions(
            page_width=page_width,
            page_height=page_height,
            min_measures_per_system=min_measures,
            max_measures_per_system=max_measures,
            system_gap=system_gap,
            measure_window=_parse_window(window),
            measure_numbers=measure_numbers,
            strict=strict,
        )
    except ValueError as exc:
        click.echo(f"  ERROR: {exc}", err=True)
        sys.exit(1)

    click.echo(f"engraveplan v{__version__}")
    click.echo(f"  Score  : {score_file}")
    click.echo(f"  Format : {normalized_format}")
    click.echo(f"  Page   : {page_width:g} x {page_height:g}  |  Measures/system: {min_measures}-{max_measures}")
    click.echo(f"  Output : {resolved_output}")
    click.echo()

    exporter = PlanExporter(title=title or "", output_format=normalized_format, options=options)

    click.echo("[1/3] Parsing score with music21...")
    try:
        score = ScoreLoader().load(score_file)
    except ValueError as exc:
        click.echo(f"  ERROR: Could not read score: {exc}", err=True)
        sys.exit(1)
    click.echo(f"      Parts: {len(score.parts)}  |  Measures: {score.measure_count}")

    click.echo("[2/3] Planning systems and pages...")
    try:
        content, result = exporter.render(score)
    except ValueError as exc:
        click.echo(f"  ERROR: Could not lay out score: {exc}", err=True)
        sys.exit(1)
    systems = sum(len(page.systems) for page in result.pages)
    click.echo(f"      Systems: {systems}  |  Pages: {len(result.pages)}")

    click.echo(f"[3/3] Writing {normalized_format.upper()} file...")
    try:
        exporter.write(content, resolved_output)
    except OSError as exc:
        click.echo(f"  ERROR: Could not write output file: {exc}", err=True)
        sys.exit(1)

    _echo_diagnostics(result)
    click.echo()
    click.echo(f"Done!  {len(result.pages)} page(s) written to '{resolved_output}'.")
    if strict and result.has_errors:
        sys.exit(1)


# ── audit subcommand ───────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline progress.")
def audit(score_file: str, verbose: bool) -> None:
    """
    Lay out SCORE_FILE with default options and report collisions per page.

    Exits with status 1 when any error-severity collision is found.
    """
    _configure_logging(verbose)
    try:
        score = ScoreLoader().load(score_file)
        result = LayoutEngine().layout(score)
    except ValueError as exc:
        click.echo(f"  ERROR: Could not lay out score: {exc}", err=True)
        sys.exit(1)

    failed = False
    for page in result.pages:
        report = page.collision_report
        if report is None:
            continue
        counts = ", ".join(f"{kind}={count}" for kind, count in report.summary().items())
        click.echo(f"Page {page.number}: {report.count()} collision(s)  [{counts}]")
        failed = failed or report.has_errors
    _echo_diagnostics(result)
    if failed:
        click.echo("  ERROR: Collisions with error severity were found.", err=True)
        sys.exit(1)

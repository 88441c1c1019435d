"""Unit tests for canonical score validation and the diagnostic log."""

import pytest

from engraveplan.diagnostics import DiagnosticLog, ScoreValidationError, Severity
from engraveplan.score_models import (
    CanonicalScore,
    DirectionEvent,
    Measure,
    NoteEvent,
    NoteHead,
    Part,
    RestEvent,
    Staff,
    TextCategory,
    Voice,
    validate_score,
)

TPQ = 480


def _sample_score(*events, index: int = 0, tpq: int = TPQ) -> CanonicalScore:
    staff = Staff(number=1, voices=(Voice(id="1", events=tuple(events)),))
    measure = Measure(index=index, duration_ticks=4 * TPQ, staves=(staff,))
    return CanonicalScore(parts=(Part(id="P1", measures=(measure,)),), ticks_per_quarter=tpq)


def test_valid_score_passes() -> None:
    validate_score(
        _sample_score(
            DirectionEvent(0, TextCategory.DYNAMICS, "p"),
            NoteEvent(0, TPQ, (NoteHead(0),)),
            RestEvent(TPQ, TPQ),
            NoteEvent(2 * TPQ, 0, (NoteHead(1),)),
        )
    )


def test_empty_measure_is_valid() -> None:
    validate_score(_sample_score())


def test_negative_tick_is_rejected() -> None:
    with pytest.raises(ScoreValidationError, match="negative tick"):
        validate_score(_sample_score(RestEvent(-1, TPQ)))


def test_non_integer_tick_is_rejected() -> None:
    with pytest.raises(ScoreValidationError, match="integer"):
        validate_score(_sample_score(RestEvent(0.5, TPQ)))


def test_note_without_heads_is_rejected() -> None:
    with pytest.raises(ScoreValidationError, match="no noteheads"):
        validate_score(_sample_score(NoteEvent(0, TPQ, ())))


def test_out_of_sequence_measure_is_rejected() -> None:
    with pytest.raises(ScoreValidationError, match="out of sequence"):
        validate_score(_sample_score(index=3))


def test_ticks_per_quarter_must_be_positive() -> None:
    with pytest.raises(ScoreValidationError):
        validate_score(_sample_score(tpq=0))


def test_validation_error_is_a_value_error() -> None:
    assert issubclass(ScoreValidationError, ValueError)


def test_log_keeps_order_and_codes() -> None:
    log = DiagnosticLog()
    log.info("A", "first")
    log.warning("B", "second", measure_index=2)
    assert log.codes() == ["A", "B"]
    assert len(log) == 2
    assert log.items[1].measure_index == 2
    assert not log.has_errors


def test_strict_log_promotes_warnings_only() -> None:
    log = DiagnosticLog(strict=True)
    log.info("A", "note")
    log.warning("B", "promoted")
    assert [item.severity for item in log.items] == [Severity.INFO, Severity.ERROR]
    assert log.has_errors

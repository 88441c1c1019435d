"""Diagnostics: severity-tagged records accumulated alongside a layout plan."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS: dict[Severity, int] = {
    Severity.INFO: logging.DEBUG,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class ScoreValidationError(ValueError):
    """Raised when canonical input is structurally invalid (e.g. missing timing)."""


@dataclass(frozen=True)
class Diagnostic:
    """
    A single layout diagnostic.

    Attributes:
        code:          Stable machine-readable identifier, e.g. ``EMPTY_MEASURE``.
        severity:      INFO, WARNING or ERROR.
        message:       Human-readable explanation.
        measure_index: Absolute measure index the diagnostic refers to, if any.
    """

    code: str
    severity: Severity
    message: str
    measure_index: int | None = None


class DiagnosticLog:
    """
    Ordered diagnostic accumulator shared by the components of one layout run.

    In strict mode every WARNING is recorded as an ERROR so callers can treat
    unresolved references (e.g. unmatched spanners) as validation failures.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict
        self._items: list[Diagnostic] = []

    def add(
        self,
        code: str,
        severity: Severity,
        message: str,
        measure_index: int | None = None,
    ) -> Diagnostic:
        if self.strict and severity is Severity.WARNING:
            severity = Severity.ERROR
        diagnostic = Diagnostic(code=code, severity=severity, message=message, measure_index=measure_index)
        self._items.append(diagnostic)
        logger.log(_LOG_LEVELS[severity], "%s: %s", code, message)
        return diagnostic

    def info(self, code: str, message: str, measure_index: int | None = None) -> Diagnostic:
        return self.add(code, Severity.INFO, message, measure_index)

    def warning(self, code: str, message: str, measure_index: int | None = None) -> Diagnostic:
        return self.add(code, Severity.WARNING, message, measure_index)

    def error(self, code: str, message: str, measure_index: int | None = None) -> Diagnostic:
        return self.add(code, Severity.ERROR, message, measure_index)

    @property
    def items(self) -> tuple[Diagnostic, ...]:
        return tuple(self._items)

    @property
    def has_errors(self) -> bool:
        return any(item.severity is Severity.ERROR for item in self._items)

    def codes(self) -> list[str]:
        return [item.code for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

"""Structured diagnostics reported back to the orchestrator.

Reconcilers never print or decide presentation. Non-fatal findings
(verification timeouts, drift, skipped steps) are appended to a
Diagnostics collection and logged at the matching level; fatal errors
are raised and turned into an error entry at the operator boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Diagnostic severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Diagnostic:
    """One reported finding."""

    severity: Severity
    summary: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity.value, "summary": self.summary, "detail": self.detail}


@dataclass
class Diagnostics:
    """Ordered collection of findings for one operation."""

    entries: list[Diagnostic] = field(default_factory=list)

    def add(self, severity: Severity, summary: str, detail: str = "", **context: Any) -> None:
        self.entries.append(Diagnostic(severity, summary, detail))
        logger.log(_LOG_LEVELS[severity], summary, extra={"detail": detail, **context})

    def add_info(self, summary: str, detail: str = "", **context: Any) -> None:
        self.add(Severity.INFO, summary, detail, **context)

    def add_warning(self, summary: str, detail: str = "", **context: Any) -> None:
        self.add(Severity.WARNING, summary, detail, **context)

    def add_error(self, summary: str, detail: str = "", **context: Any) -> None:
        self.add(Severity.ERROR, summary, detail, **context)

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.entries if d.severity is Severity.WARNING]

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.entries if d.severity is Severity.ERROR]

    def has_error(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass
class OperationResult:
    """Result of one lifecycle entry point.

    Attributes:
        kind: Resource kind the operation targeted.
        operation: Operation name (create, read, update, delete, ...).
        state: Final observed state, None when the resource is gone or
            the operation failed before it could be read.
        diagnostics: Findings accumulated along the way.
        error: Error message when the operation failed.
    """

    kind: str
    operation: str
    state: Any = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        state = self.state.to_dict() if hasattr(self.state, "to_dict") else self.state
        return {
            "kind": self.kind,
            "operation": self.operation,
            "success": self.success,
            "state": state,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "error": self.error,
        }

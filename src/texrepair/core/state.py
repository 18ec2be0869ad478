from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import CompilationError


class DiagnosticKind(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    ATTEMPTING = "ATTEMPTING"
    SUCCESS = "SUCCESS"
    FAILED_RETRYING = "FAILED_RETRYING"
    FAILED_TERMINAL = "FAILED_TERMINAL"


@dataclass(frozen=True)
class Diagnostic:
    """One condition reported by the compiler, as parsed from a single log."""

    kind: DiagnosticKind
    message: str
    severity: Severity
    fixable: bool
    line: Optional[int] = None
    context: Optional[str] = None
    suggested_fix: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.kind is DiagnosticKind.ERROR

    def to_json(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "fixable": self.fixable,
            "line": self.line,
            "context": self.context,
            "suggested_fix": self.suggested_fix,
        }


@dataclass(frozen=True)
class CompileResult:
    """Raw result of one compiler invocation."""

    success: bool
    log: str
    output_bytes: Optional[bytes] = None
    pdf_path: Optional[Path] = None
    error: Optional[str] = None
    timed_out: bool = False
    duration: float = 0.0


@dataclass(frozen=True)
class CompilationAttempt:
    """One compile-parse cycle.

    ``fixes_applied`` lists the fixes derived from this attempt's diagnostics; they
    produce the source of the following attempt, never this one.
    """

    attempt: int
    source: str
    success: bool
    diagnostics: tuple[Diagnostic, ...] = ()
    warnings: tuple[str, ...] = ()
    output_bytes: Optional[bytes] = None
    log: str = ""
    fixes_applied: tuple[str, ...] = ()
    duration: float = 0.0
    timed_out: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "success": self.success,
            "diagnostics": [diag.to_json() for diag in self.diagnostics],
            "warnings": list(self.warnings),
            "output_size": len(self.output_bytes) if self.output_bytes else 0,
            "fixes_applied": list(self.fixes_applied),
            "duration": round(self.duration, 3),
            "timed_out": self.timed_out,
        }


class RunOptions(BaseModel):
    """Fixed-shape options for one compilation run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(5, ge=1)
    enable_ai_fixes: bool = True
    strict_mode: bool = False
    ai_fix_attempt_window: int = Field(3, ge=1)


@dataclass
class CompilationRun:
    """Mutable aggregate owned by a single orchestrator invocation."""

    source: str
    name: str
    options: RunOptions
    status: RunStatus = RunStatus.PENDING
    attempts: List[CompilationAttempt] = field(default_factory=list)
    success: bool = False
    final_diagnostics: List[Diagnostic] = field(default_factory=list)
    quality_score: float = 0.0
    manual_fixes_needed: List[str] = field(default_factory=list)
    pdf_path: Optional[Path] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_attempt(self) -> Optional[CompilationAttempt]:
        return self.attempts[-1] if self.attempts else None

    def record(self, attempt: CompilationAttempt) -> None:
        expected = self.attempt_count + 1
        if attempt.attempt != expected:
            raise ValueError(f"attempt {attempt.attempt} recorded out of order, expected {expected}")
        self.attempts.append(attempt)


@dataclass
class RunMetadata:
    total_time: float
    auto_fixes_applied: int
    manual_fixes_needed: List[str]
    quality_score: float

    def to_json(self) -> Dict[str, Any]:
        return {
            "total_time": round(self.total_time, 3),
            "auto_fixes_applied": self.auto_fixes_applied,
            "manual_fixes_needed": list(self.manual_fixes_needed),
            "quality_score": self.quality_score,
        }


@dataclass
class CompilationOutcome:
    """What a caller receives once a run has terminated."""

    success: bool
    final_document: str
    attempts: List[CompilationAttempt]
    final_diagnostics: List[Diagnostic]
    metadata: RunMetadata
    status: RunStatus
    output_bytes: Optional[bytes] = None
    pdf_path: Optional[Path] = None

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    def raise_for_status(self) -> "CompilationOutcome":
        if self.success:
            return self
        last_log = self.attempts[-1].log if self.attempts else ""
        summary = "; ".join(self.metadata.manual_fixes_needed) or "compilation did not succeed"
        raise CompilationError(
            f"Compilation failed after {self.total_attempts} attempt(s): {summary}",
            latex_code=self.final_document,
            error_log=last_log,
        )

    def to_json(self, include_output: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "total_attempts": self.total_attempts,
            "pdf_path": str(self.pdf_path) if self.pdf_path else None,
            "output_size": len(self.output_bytes) if self.output_bytes else 0,
            "final_diagnostics": [diag.to_json() for diag in self.final_diagnostics],
            "attempts": [attempt.to_json() for attempt in self.attempts],
            "metadata": self.metadata.to_json(),
            "final_document": self.final_document,
        }
        if include_output and self.output_bytes:
            payload["output_base64"] = base64.b64encode(self.output_bytes).decode("ascii")
        return payload


__all__ = [
    "DiagnosticKind",
    "Severity",
    "RunStatus",
    "Diagnostic",
    "CompileResult",
    "CompilationAttempt",
    "RunOptions",
    "CompilationRun",
    "RunMetadata",
    "CompilationOutcome",
]

"""
Compiler log parsing.

Turns raw pdflatex/latexmk/tectonic log text into typed ``Diagnostic`` records
that drive the rule-based and AI-assisted repair passes.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Pattern, Sequence

from .state import Diagnostic, DiagnosticKind, Severity

LOGGER = logging.getLogger(__name__)

ERROR_SENTINEL = "!"
LATEX_WARNING_RE = re.compile(r"LaTeX Warning: (.+)")
PACKAGE_ERROR_RE = re.compile(r"Package (\S+) Error: (.+)")
LINE_MARKER_RE = re.compile(r"^l\.(\d+)")
LINE_LOOKAHEAD = 4

ASSET_NOT_FOUND = r"file `[^']*\.(?:png|jpe?g|pdf|eps|svg|gif|bmp|tiff?)' not found"

# Checked in order against the lowercased message; the first class that matches wins.
CRITICAL_PATTERNS: Sequence[str] = (
    r"file ended while scanning",
    r"emergency stop",
    r"fatal error",
    r"undefined control sequence",
)
HIGH_PATTERNS: Sequence[str] = (
    r"missing",
    r"undefined",
    r"not found",
    r"invalid",
    r"can be used only in preamble",
    r"option clash",
    r"unknown option",
    ASSET_NOT_FOUND,
    r"image file .* not found",
)
FIXABLE_PATTERNS: Sequence[str] = (
    r"undefined control sequence",
    r"missing",
    r"package",
    r"not found",
    r"overfull",
    r"underfull",
    r"can be used only in preamble",
    r"environment \S+ undefined",
    r"runaway argument",
    r"paragraph ended before",
    r"option clash",
    ASSET_NOT_FOUND,
)
UNFIXABLE_PATTERNS: Sequence[str] = (
    r"emergency stop",
    r"fatal error",
    r"file ended while scanning",
    r"package (?:fontspec|xetex|luatex)\b",
)


def _compile(patterns: Sequence[str]) -> List[Pattern[str]]:
    return [re.compile(pattern) for pattern in patterns]


class LogParser:
    """Stateless parser; each ``parse`` call only looks at the log it is given."""

    def __init__(
        self,
        critical_patterns: Sequence[str] = CRITICAL_PATTERNS,
        high_patterns: Sequence[str] = HIGH_PATTERNS,
        fixable_patterns: Sequence[str] = FIXABLE_PATTERNS,
        unfixable_patterns: Sequence[str] = UNFIXABLE_PATTERNS,
    ) -> None:
        self._critical = _compile(critical_patterns)
        self._high = _compile(high_patterns)
        self._fixable = _compile(fixable_patterns)
        self._unfixable = _compile(unfixable_patterns)

    def classify_severity(self, message: str) -> Severity:
        lowered = message.lower()
        if any(pattern.search(lowered) for pattern in self._critical):
            return Severity.CRITICAL
        if any(pattern.search(lowered) for pattern in self._high):
            return Severity.HIGH
        return Severity.MEDIUM

    def is_fixable(self, message: str) -> bool:
        lowered = message.lower()
        if any(pattern.search(lowered) for pattern in self._unfixable):
            return False
        return any(pattern.search(lowered) for pattern in self._fixable)

    def parse(self, log: str) -> List[Diagnostic]:
        diagnostics: List[Diagnostic] = []
        lines = log.splitlines()
        for idx, raw in enumerate(lines):
            line = raw.strip()
            if line.startswith(ERROR_SENTINEL):
                message = line[len(ERROR_SENTINEL):].strip()
                if not message:
                    continue
                diagnostics.append(self._hard_error(message, lines, idx))
                continue
            warning = LATEX_WARNING_RE.search(line)
            if warning:
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.WARNING,
                        message=warning.group(1).strip(),
                        severity=Severity.LOW,
                        fixable=True,
                    )
                )
                continue
            scoped = PACKAGE_ERROR_RE.search(line)
            if scoped:
                message = f"Package {scoped.group(1)}: {scoped.group(2).strip()}"
                diagnostic = Diagnostic(
                    kind=DiagnosticKind.ERROR,
                    message=message,
                    severity=Severity.HIGH,
                    fixable=self.is_fixable(message),
                )
                LOGGER.info("Parsed package error: %s (fixable=%s)", message, diagnostic.fixable)
                diagnostics.append(diagnostic)
        return diagnostics

    def _hard_error(self, message: str, lines: List[str], idx: int) -> Diagnostic:
        line_number = _find_line_number(lines, idx)
        context: Optional[str] = None
        if idx + 1 < len(lines) and lines[idx + 1].strip():
            context = lines[idx + 1].strip()
        severity = self.classify_severity(message)
        fixable = self.is_fixable(message)
        LOGGER.info(
            "Parsed LaTeX error: %r (severity=%s, fixable=%s, line=%s)",
            message,
            severity.value,
            fixable,
            line_number if line_number is not None else "unknown",
        )
        return Diagnostic(
            kind=DiagnosticKind.ERROR,
            message=message,
            severity=severity,
            fixable=fixable,
            line=line_number,
            context=context,
        )


def _find_line_number(lines: List[str], idx: int) -> Optional[int]:
    inline = re.search(r"\bl\.(\d+)", lines[idx])
    if inline:
        return int(inline.group(1))
    for offset in range(1, LINE_LOOKAHEAD + 1):
        if idx + offset >= len(lines):
            break
        candidate = lines[idx + offset].strip()
        if candidate.startswith(ERROR_SENTINEL):
            break
        match = LINE_MARKER_RE.match(candidate)
        if match:
            return int(match.group(1))
    return None


def parse_warnings(log: str) -> List[str]:
    """Package and font warnings; ``LaTeX Warning:`` lines become diagnostics instead."""
    return [
        line.strip()
        for line in log.splitlines()
        if "Warning:" in line and "LaTeX Warning:" not in line
    ]


_DEFAULT_PARSER = LogParser()


def parse_log(log: str) -> List[Diagnostic]:
    return _DEFAULT_PARSER.parse(log)


__all__ = [
    "LogParser",
    "parse_log",
    "parse_warnings",
    "CRITICAL_PATTERNS",
    "HIGH_PATTERNS",
    "FIXABLE_PATTERNS",
    "UNFIXABLE_PATTERNS",
]

"""Latex repair agent backed by an OpenAI-compatible text-generation service."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from time import perf_counter
from typing import List, Optional, Sequence, Tuple

from ..config.settings import settings
from ..core.llm.client import TextGenerator, get_text_generator
from ..core.state import Diagnostic, Severity

LOGGER = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```[A-Za-z]*[ \t]*\n?")
DOCUMENTCLASS_MARKER = "\\documentclass"
BEGIN_DOCUMENT_MARKER = "\\begin{document}"
AI_FIX_DESCRIPTION = "AI-based error correction"

UNSUPPORTED_PACKAGES: Tuple[str, ...] = (
    "hyperref",
    "booktabs",
    "listings",
    "setspace",
    "infwarerr",
    "kvoptions",
    "natbib",
    "biblatex",
    "xcolor",
    "tikz",
    "pgfplots",
    "fontspec",
    "microtype",
)
SAFE_PACKAGES: Tuple[str, ...] = (
    "inputenc",
    "fontenc",
    "babel",
    "amsmath",
    "amssymb",
    "amsfonts",
    "graphicx",
    "geometry",
    "url",
    "cite",
    "enumitem",
    "array",
    "longtable",
    "caption",
    "float",
    "fancyhdr",
)
COMMAND_RULES: Tuple[str, ...] = (
    "Rewrite lstlisting blocks as \\begin{verbatim}...\\end{verbatim}",
    "Use \\hline instead of \\toprule, \\midrule and \\bottomrule",
    "Rewrite \\href{url}{text} as text (\\url{url})",
    "Drop \\setstretch, \\singlespacing and \\doublespacing",
    "Rewrite \\textcolor{color}{text} as text",
    "Drop \\hypersetup{...}",
)
ESCAPING_RULES: Tuple[str, ...] = (
    "Escape every literal # & % $ _ ^ in running text",
    "Examples: C# -> C\\#, R&D -> R\\&D, 95% -> 95\\%, user_id -> user\\_id",
    "Take care with programming languages, chemical formulas and identifiers",
)
SYNTAX_RULES: Tuple[str, ...] = (
    "Close unbalanced braces",
    "Add missing $ delimiters around math",
    "Keep exactly one \\documentclass",
    "Repair malformed commands and environments and keep environments properly nested",
)
IMAGE_RULES: Tuple[str, ...] = (
    "Remove \\includegraphics for image files that do not exist",
    "Remove figure environments left empty",
)
STRUCTURE_RULES: Tuple[str, ...] = (
    "Do not add another \\documentclass",
    "Do not restructure the document; change only what the errors require",
    "Keep the existing preamble apart from package removals above",
)


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"   - {item}" for item in items)


@dataclass(frozen=True)
class AIFixResult:
    source: str
    applied_fixes: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied_fixes)


@dataclass
class LatexRepairAgent:
    """Whole-document repairs for diagnostics the rule catalog could not resolve."""

    generator: Optional[TextGenerator] = None
    attempt_window: int = field(default_factory=lambda: settings.ai_fix_attempt_window)
    timeout: float = field(default_factory=lambda: settings.llm_timeout_seconds)

    def _generator(self) -> TextGenerator:
        if self.generator is None:
            self.generator = get_text_generator()
        return self.generator

    def eligible(self, diagnostics: Sequence[Diagnostic]) -> List[Diagnostic]:
        return [
            diag
            for diag in diagnostics
            if diag.fixable and diag.severity in (Severity.HIGH, Severity.CRITICAL)
        ]

    def should_attempt(self, diagnostics: Sequence[Diagnostic], attempt: int) -> bool:
        return attempt <= self.attempt_window and bool(self.eligible(diagnostics))

    def build_instruction(self, diagnostics: Sequence[Diagnostic]) -> str:
        errors = "\n".join(
            f"- {diag.message} (Line: {diag.line if diag.line is not None else 'unknown'})"
            for diag in diagnostics
        )
        return (
            "You are a LaTeX expert. Fix ALL compilation errors in the document below "
            "so it compiles with a minimal TeX Live installation.\n\n"
            f"COMPILATION ERRORS TO FIX:\n{errors}\n\n"
            "FIXING RULES:\n\n"
            "1. PACKAGES:\n"
            f"   - REMOVE these unavailable packages: {', '.join(UNSUPPORTED_PACKAGES)}\n"
            f"   - ONLY use these packages: {', '.join(SAFE_PACKAGES)}\n\n"
            f"2. COMMAND SUBSTITUTIONS:\n{_bullets(COMMAND_RULES)}\n\n"
            f"3. SPECIAL CHARACTERS:\n{_bullets(ESCAPING_RULES)}\n\n"
            f"4. SYNTAX:\n{_bullets(SYNTAX_RULES)}\n\n"
            f"5. IMAGES:\n{_bullets(IMAGE_RULES)}\n\n"
            f"6. STRUCTURE:\n{_bullets(STRUCTURE_RULES)}\n\n"
            "Return ONLY the corrected LaTeX document, with no explanations and no markdown formatting."
        )

    def sanitize_response(self, payload: str) -> Optional[str]:
        text = FENCE_RE.sub("", payload).strip()
        if DOCUMENTCLASS_MARKER not in text or BEGIN_DOCUMENT_MARKER not in text:
            LOGGER.warning("AI response is missing \\documentclass or \\begin{document}; discarding")
            return None
        lines = text.split("\n")
        kept: List[str] = []
        seen_class = False
        for line in lines:
            if DOCUMENTCLASS_MARKER in line:
                if seen_class:
                    continue
                seen_class = True
            kept.append(line)
        if len(kept) != len(lines):
            LOGGER.warning("AI response declared \\documentclass more than once; keeping the first")
        return "\n".join(kept)

    async def apply_ai_fix(self, source: str, diagnostics: Sequence[Diagnostic]) -> AIFixResult:
        """Never raises for service or validation failures; the source is returned unchanged."""
        targets = self.eligible(diagnostics)
        if not targets:
            return AIFixResult(source)
        instruction = self.build_instruction(targets)
        start = perf_counter()
        try:
            payload = await asyncio.wait_for(
                self._generator().request_correction(instruction, source),
                timeout=self.timeout,
            )
        except Exception as exc:
            LOGGER.warning("AI-based fix failed after %.2fs: %s", perf_counter() - start, exc)
            return AIFixResult(source)
        if not isinstance(payload, str):
            LOGGER.warning("AI-based fix returned %s instead of text", type(payload).__name__)
            return AIFixResult(source)
        cleaned = self.sanitize_response(payload)
        if cleaned is None or cleaned.strip() == source.strip():
            return AIFixResult(source)
        LOGGER.info("AI-based fix rewrote the document for %d diagnostic(s)", len(targets))
        return AIFixResult(cleaned, [AI_FIX_DESCRIPTION])


__all__ = [
    "LatexRepairAgent",
    "AIFixResult",
    "AI_FIX_DESCRIPTION",
    "UNSUPPORTED_PACKAGES",
    "SAFE_PACKAGES",
]

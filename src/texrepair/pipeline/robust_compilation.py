"""Bounded compile-fix-retry loop with rule-based and AI-assisted recovery."""
from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import structlog
from pydantic import ValidationError

from ..config.settings import settings
from ..core.compiler import SUPPORTED_ENGINES, LatexCompiler, sanitize_document_name
from ..core.logging_setup import get_logger
from ..core.latex_log_parser import LogParser, parse_warnings
from ..core.state import (
    CompilationAttempt,
    CompilationOutcome,
    CompilationRun,
    Diagnostic,
    DiagnosticKind,
    RunMetadata,
    RunOptions,
    RunStatus,
    Severity,
)
from ..core.status_bus import NullProgress, ProgressSink
from ..exceptions import PipelineConfigurationError
from .fix_rules import RULES, FixRule, apply_rule_based_fixes
from .latex_repair_agent import LatexRepairAgent

LOGGER = logging.getLogger(__name__)

START_PROGRESS = 10.0
ATTEMPT_PROGRESS_SPAN = 80.0
FIX_PROGRESS_OFFSET = 5.0
FINALIZE_PROGRESS = 95.0


def calculate_quality_score(success: bool, attempt_count: int, auto_fixes_applied: int) -> float:
    score = 0.0
    if success:
        score += 0.6
    score -= max(0, attempt_count - 1) * 0.1
    score += max(0.0, 0.3 - max(0, auto_fixes_applied) * 0.05)
    if success and attempt_count == 1:
        score += 0.2
    return round(max(0.0, min(1.0, score)), 4)


def build_run_options(
    *,
    max_attempts: Optional[int] = None,
    enable_ai_fixes: Optional[bool] = None,
    strict_mode: Optional[bool] = None,
    ai_fix_attempt_window: Optional[int] = None,
) -> RunOptions:
    """Merge per-run overrides onto the environment defaults."""
    try:
        return RunOptions(
            max_attempts=settings.max_attempts if max_attempts is None else max_attempts,
            enable_ai_fixes=settings.enable_ai_fixes if enable_ai_fixes is None else enable_ai_fixes,
            strict_mode=settings.strict_mode if strict_mode is None else strict_mode,
            ai_fix_attempt_window=(
                settings.ai_fix_attempt_window if ai_fix_attempt_window is None else ai_fix_attempt_window
            ),
        )
    except ValidationError as exc:
        raise PipelineConfigurationError(f"Invalid compilation options: {exc}") from exc


def _synthetic_failure(message: str) -> Diagnostic:
    return Diagnostic(
        kind=DiagnosticKind.ERROR,
        message=message,
        severity=Severity.CRITICAL,
        fixable=False,
    )


class RobustCompiler:
    def __init__(
        self,
        options: Optional[RunOptions] = None,
        *,
        compiler: Optional[LatexCompiler] = None,
        parser: Optional[LogParser] = None,
        repair_agent: Optional[LatexRepairAgent] = None,
        rules: Sequence[FixRule] = RULES,
        progress: Optional[ProgressSink] = None,
    ) -> None:
        self.options = options or build_run_options()
        self.compiler = compiler or LatexCompiler()
        if self.compiler.engine not in SUPPORTED_ENGINES:
            raise PipelineConfigurationError(f"Unsupported LaTeX engine: {self.compiler.engine}")
        self.parser = parser or LogParser()
        self.repair_agent = repair_agent or LatexRepairAgent(attempt_window=self.options.ai_fix_attempt_window)
        self.rules = tuple(rules)
        self.progress = progress or NullProgress()

    async def run(
        self,
        source: str,
        name: str = "document",
        output_dir: Optional[Path] = None,
    ) -> CompilationOutcome:
        if not isinstance(source, str) or not source.strip():
            raise PipelineConfigurationError("LaTeX source must be a non-empty string")
        stem = sanitize_document_name(name)
        if output_dir is not None:
            output_dir = Path(output_dir)
            try:
                output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PipelineConfigurationError(f"Cannot create output directory {output_dir}: {exc}") from exc

        run = CompilationRun(source=source, name=stem, options=self.options)
        log = get_logger(__name__).bind(run_id=uuid.uuid4().hex[:12], document=stem)
        started = time.monotonic()
        log.info("compilation_started", max_attempts=self.options.max_attempts)
        await self._emit(START_PROGRESS, "Starting LaTeX compilation")

        current = source
        try:
            current = await self._loop(run, current, output_dir, log)
        except Exception as exc:
            # Anything escaping the loop is a defect; surface it as data.
            log.exception("compilation_loop_failed", error=str(exc))
            last = run.last_attempt
            if last is not None:
                current = last.source
                run.final_diagnostics = list(last.diagnostics)
            else:
                run.final_diagnostics = []
            run.final_diagnostics.append(_synthetic_failure(f"Compilation loop failed: {exc}"))
            run.status = RunStatus.FAILED_TERMINAL
            run.success = False

        await self._emit(FINALIZE_PROGRESS, "Finalizing compilation results")
        outcome = self._finalize(run, current, time.monotonic() - started)
        log.info(
            "compilation_finished",
            success=outcome.success,
            status=outcome.status.value,
            attempts=outcome.total_attempts,
            auto_fixes=outcome.metadata.auto_fixes_applied,
            quality_score=outcome.metadata.quality_score,
        )
        await self._emit(100.0, "Compilation completed successfully" if outcome.success else "Compilation failed")
        return outcome

    async def _loop(
        self,
        run: CompilationRun,
        current: str,
        output_dir: Optional[Path],
        log: structlog.stdlib.BoundLogger,
    ) -> str:
        max_attempts = self.options.max_attempts
        while run.attempt_count < max_attempts:
            number = run.attempt_count + 1
            run.status = RunStatus.ATTEMPTING
            attempt_progress = START_PROGRESS + (number / max_attempts) * ATTEMPT_PROGRESS_SPAN
            await self._emit(attempt_progress, f"Compilation attempt {number}/{max_attempts}")

            result = await self.compiler.compile(current, run.name, output_dir)
            diagnostics = self.parser.parse(result.log)
            if result.error:
                diagnostics.append(_synthetic_failure(result.error))
            success = result.success
            if success and self.options.strict_mode and any(diag.is_error for diag in diagnostics):
                log.info("strict_mode_rejected_output", attempt=number)
                success = False
            if not success:
                LOGGER.debug("Compiler log for attempt %d:\n%s", number, result.log)
            log.info(
                "attempt_finished",
                attempt=number,
                success=success,
                errors=sum(1 for diag in diagnostics if diag.is_error),
                timed_out=result.timed_out,
                duration=round(result.duration, 3),
            )

            fixed, fixes = current, []
            if not success and number < max_attempts and self.options.enable_ai_fixes:
                await self._emit(
                    attempt_progress + FIX_PROGRESS_OFFSET,
                    f"Analyzing errors and applying fixes (attempt {number})",
                )
                fixed, fixes = await self._apply_fixes(current, diagnostics, number)

            run.record(
                CompilationAttempt(
                    attempt=number,
                    source=current,
                    success=success,
                    diagnostics=tuple(diagnostics),
                    warnings=tuple(parse_warnings(result.log)),
                    output_bytes=result.output_bytes if success else None,
                    log=result.log,
                    fixes_applied=tuple(fixes),
                    duration=result.duration,
                    timed_out=result.timed_out,
                )
            )
            run.final_diagnostics = list(diagnostics)

            if success:
                run.status = RunStatus.SUCCESS
                run.success = True
                run.pdf_path = result.pdf_path
                log.info("compilation_succeeded", attempt=number)
                return current
            if number >= max_attempts:
                run.status = RunStatus.FAILED_TERMINAL
                log.warning("attempts_exhausted", attempts=number)
                return current
            if fixed == current:
                run.status = RunStatus.FAILED_TERMINAL
                log.warning("no_progress", attempt=number)
                return current
            run.status = RunStatus.FAILED_RETRYING
            current = fixed
        run.status = RunStatus.FAILED_TERMINAL
        return current

    async def _apply_fixes(
        self,
        source: str,
        diagnostics: Sequence[Diagnostic],
        attempt: int,
    ) -> Tuple[str, List[str]]:
        updated, fixes, unresolved = apply_rule_based_fixes(source, diagnostics, self.rules)
        if unresolved and self.repair_agent.should_attempt(unresolved, attempt):
            ai_fix = await self.repair_agent.apply_ai_fix(updated, unresolved)
            if ai_fix.changed:
                updated = ai_fix.source
                fixes.extend(ai_fix.applied_fixes)
        if updated != source:
            LOGGER.info("Applied %d fix(es) after attempt %d", len(fixes), attempt)
        else:
            LOGGER.warning("No fixes could be applied after attempt %d", attempt)
        return updated, fixes

    def _finalize(self, run: CompilationRun, current: str, elapsed: float) -> CompilationOutcome:
        auto_fixes = sum(len(attempt.fixes_applied) for attempt in run.attempts)
        manual = [
            diag.message
            for diag in run.final_diagnostics
            if not diag.fixable and diag.severity is not Severity.LOW
        ]
        run.manual_fixes_needed = manual
        run.quality_score = calculate_quality_score(run.success, max(1, run.attempt_count), auto_fixes)
        last = run.last_attempt
        success = run.success and last is not None and last.success
        return CompilationOutcome(
            success=success,
            final_document=last.source if success and last is not None else current,
            attempts=list(run.attempts),
            final_diagnostics=list(run.final_diagnostics),
            metadata=RunMetadata(
                total_time=elapsed,
                auto_fixes_applied=auto_fixes,
                manual_fixes_needed=manual,
                quality_score=run.quality_score,
            ),
            status=run.status,
            output_bytes=last.output_bytes if success and last is not None else None,
            pdf_path=run.pdf_path if success else None,
        )

    async def _emit(self, progress: float, step: str) -> None:
        try:
            await self.progress.emit(progress, step)
        except Exception as exc:
            LOGGER.warning("Progress update failed at %.0f%%: %s", progress, exc)


async def run_robust_compilation(
    source: str,
    *,
    name: str = "document",
    output_dir: Optional[Path] = None,
    max_attempts: Optional[int] = None,
    enable_ai_fixes: Optional[bool] = None,
    strict_mode: Optional[bool] = None,
    compiler: Optional[LatexCompiler] = None,
    repair_agent: Optional[LatexRepairAgent] = None,
    progress: Optional[ProgressSink] = None,
) -> CompilationOutcome:
    options = build_run_options(
        max_attempts=max_attempts,
        enable_ai_fixes=enable_ai_fixes,
        strict_mode=strict_mode,
    )
    robust = RobustCompiler(
        options,
        compiler=compiler,
        repair_agent=repair_agent,
        progress=progress,
    )
    return await robust.run(source, name=name, output_dir=output_dir)


__all__ = [
    "run_robust_compilation",
    "build_run_options",
    "calculate_quality_score",
    "RobustCompiler",
]

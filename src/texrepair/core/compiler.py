from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from ..config.settings import settings
from .state import CompileResult

LOGGER = logging.getLogger(__name__)

CLEANUP_EXTENSIONS: Tuple[str, ...] = (
    ".aux",
    ".log",
    ".toc",
    ".out",
    ".nav",
    ".snm",
    ".vrb",
    ".fls",
    ".fdb_latexmk",
)
SUPPORTED_ENGINES = ("pdflatex", "latexmk", "tectonic")
MAX_NAME_LENGTH = 50


def sanitize_document_name(name: str) -> str:
    """Reduce a logical document name to a filesystem-safe token."""
    token = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    token = token[:MAX_NAME_LENGTH].strip("_")
    return token or "document"


class LatexCompiler:
    def __init__(
        self,
        engine: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        scratch_root: Optional[Path] = None,
    ) -> None:
        """
        Initialize the compiler.
        Args:
            engine: 'pdflatex', 'latexmk' or 'tectonic'
            timeout: seconds allowed for a single compiler pass
            scratch_root: parent directory for scratch dirs created per call
        """
        self.engine = engine or settings.compiler_engine
        self.timeout = timeout if timeout is not None else settings.compile_timeout_seconds
        self.scratch_root = scratch_root if scratch_root is not None else settings.scratch_root

    async def compile(
        self,
        source: str,
        name: str,
        working_dir: Optional[Path] = None,
    ) -> CompileResult:
        """
        Compile LaTeX source.

        The artifact is trusted, not the exit code: success means ``<name>.pdf``
        exists with a non-zero size once the process has exited. Failures are
        always returned as a result; only cancellation propagates.
        """
        started = time.monotonic()
        stem = sanitize_document_name(name)
        owns_dir = working_dir is None
        target_dir: Optional[Path] = None
        try:
            try:
                if owns_dir:
                    if self.scratch_root is not None:
                        Path(self.scratch_root).mkdir(parents=True, exist_ok=True)
                    target_dir = Path(tempfile.mkdtemp(prefix="texrepair_", dir=self.scratch_root))
                else:
                    target_dir = Path(working_dir)
                    target_dir.mkdir(parents=True, exist_ok=True)
                tex_file = target_dir / f"{stem}.tex"
                self._remove_stale_outputs(tex_file)
                tex_file.write_text(source, encoding="utf-8")
            except OSError as exc:
                LOGGER.error("Could not prepare working directory for %s: %s", stem, exc)
                return CompileResult(
                    success=False,
                    log=str(exc),
                    error=f"Failed to write LaTeX source: {exc}",
                    duration=time.monotonic() - started,
                )
            result = await self._compile_in(tex_file, started)
            if owns_dir and result.pdf_path is not None:
                # The scratch directory is removed below, so only the bytes survive.
                result = replace(result, pdf_path=None)
            return result
        finally:
            if owns_dir and target_dir is not None:
                shutil.rmtree(target_dir, ignore_errors=True)

    async def _compile_in(self, tex_file: Path, started: float) -> CompileResult:
        target_dir = tex_file.parent
        pdf_path = tex_file.with_suffix(".pdf")
        cmd = self._build_command(tex_file)
        if cmd is None:
            message = f"{self.engine} not found in PATH"
            LOGGER.error(message)
            return CompileResult(success=False, log=message, error=message, duration=time.monotonic() - started)

        LOGGER.debug("Running %s in %s", " ".join(cmd), target_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(target_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            LOGGER.error("Failed to start %s: %s", self.engine, exc)
            return CompileResult(
                success=False,
                log=str(exc),
                error=f"Failed to start {self.engine}: {exc}",
                duration=time.monotonic() - started,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            LOGGER.warning("%s timed out after %.1fs on %s", self.engine, self.timeout, tex_file.name)
            return CompileResult(
                success=False,
                log=f"Compilation timed out after {self.timeout:.0f} seconds",
                timed_out=True,
                duration=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        log = self._collect_log(tex_file, stdout, stderr)
        if pdf_path.exists() and pdf_path.stat().st_size > 0:
            try:
                output = pdf_path.read_bytes()
            except OSError as exc:
                return CompileResult(
                    success=False,
                    log=log,
                    error=f"Failed to read compiled PDF: {exc}",
                    duration=time.monotonic() - started,
                )
            self._cleanup_intermediates(tex_file)
            LOGGER.info("Compiled %s (%d bytes, exit code %s)", pdf_path.name, len(output), proc.returncode)
            return CompileResult(
                success=True,
                log=log,
                output_bytes=output,
                pdf_path=pdf_path,
                duration=time.monotonic() - started,
            )

        error = None
        if proc.returncode == 0:
            error = f"{self.engine} exited cleanly but produced no PDF"
        LOGGER.info("%s produced no PDF for %s (exit code %s)", self.engine, tex_file.name, proc.returncode)
        return CompileResult(success=False, log=log, error=error, duration=time.monotonic() - started)

    def _build_command(self, tex_file: Path) -> Optional[List[str]]:
        binary = shutil.which(self.engine)
        if not binary:
            return None
        outdir = str(tex_file.parent)
        if self.engine == "tectonic":
            return [binary, "--keep-logs", "--outdir", outdir, tex_file.name]
        if self.engine == "latexmk":
            return [
                binary,
                "-pdf",
                "-interaction=nonstopmode",
                "-halt-on-error",
                f"-output-directory={outdir}",
                tex_file.name,
            ]
        return [
            binary,
            "-interaction=nonstopmode",
            "-halt-on-error",
            f"-output-directory={outdir}",
            tex_file.name,
        ]

    @staticmethod
    def _collect_log(tex_file: Path, stdout: bytes, stderr: bytes) -> str:
        log_path = tex_file.with_suffix(".log")
        if log_path.exists():
            try:
                return log_path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                LOGGER.debug("Could not read %s: %s", log_path, exc)
        text = stdout.decode("utf-8", errors="replace")
        if stderr:
            text += "\n" + stderr.decode("utf-8", errors="replace")
        return text

    @staticmethod
    def _remove_stale_outputs(tex_file: Path) -> None:
        for suffix in (".pdf", ".log"):
            stale = tex_file.with_suffix(suffix)
            if stale.exists():
                stale.unlink()

    @staticmethod
    def _cleanup_intermediates(tex_file: Path) -> None:
        for suffix in CLEANUP_EXTENSIONS:
            path = tex_file.with_suffix(suffix)
            try:
                if path.exists():
                    path.unlink()
            except OSError as exc:
                LOGGER.debug("Could not remove %s: %s", path, exc)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


__all__ = ["LatexCompiler", "sanitize_document_name", "CLEANUP_EXTENSIONS", "SUPPORTED_ENGINES"]

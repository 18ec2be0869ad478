"""Compile LaTeX documents reliably: compile, diagnose, repair and retry."""

from .core.state import CompilationOutcome, Diagnostic, RunOptions
from .exceptions import CompilationError, PipelineConfigurationError, TexRepairError
from .pipeline.robust_compilation import RobustCompiler, run_robust_compilation

__version__ = "0.1.0"

__all__ = [
    "CompilationOutcome",
    "Diagnostic",
    "RunOptions",
    "RobustCompiler",
    "run_robust_compilation",
    "TexRepairError",
    "PipelineConfigurationError",
    "CompilationError",
]

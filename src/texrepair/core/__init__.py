"""Compiler invocation, log parsing and the shared data model."""

from .compiler import LatexCompiler, sanitize_document_name
from .latex_log_parser import LogParser, parse_log, parse_warnings
from .status_bus import ProgressForwarder, StatusBus

__all__ = [
    "LatexCompiler",
    "sanitize_document_name",
    "LogParser",
    "parse_log",
    "parse_warnings",
    "ProgressForwarder",
    "StatusBus",
]

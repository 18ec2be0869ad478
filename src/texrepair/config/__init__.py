"""
Typed configuration package for texrepair.

This package exposes:
- ``Settings`` / ``settings``: environment-driven toggles (pydantic-settings).
- Typed helper literals: ``CompilerEngineChoice``, ``LogFormatChoice``.
"""

from .settings import (
    Settings,
    settings,
    CompilerEngineChoice,
    LogFormatChoice,
)

__all__ = [
    "Settings",
    "settings",
    "CompilerEngineChoice",
    "LogFormatChoice",
]

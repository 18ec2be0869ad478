from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CompilerEngineChoice = Literal["pdflatex", "latexmk", "tectonic"]
LogFormatChoice = Literal["json", "text"]


class Settings(BaseSettings):
    """Environment-driven configuration for the compile-fix-retry loop.

    Values are read from environment variables with prefix ``TEXREPAIR_`` and
    optionally from a local ``.env`` file at the project root.
    """

    model_config = SettingsConfigDict(
        env_prefix="TEXREPAIR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Compiler ---
    compiler_engine: CompilerEngineChoice = Field(
        "pdflatex",
        description="External LaTeX compiler binary.",
    )
    compile_timeout_seconds: float = Field(
        30.0,
        gt=0,
        description="Timeout for a single compiler pass.",
    )
    scratch_root: Optional[Path] = Field(
        None,
        description="Parent directory for per-call scratch directories.",
    )

    # --- Retry loop ---
    max_attempts: int = Field(
        5,
        ge=1,
        description="Default attempt budget for a compilation run.",
    )
    enable_ai_fixes: bool = Field(
        True,
        description="Run the automatic fix pass between attempts.",
    )
    strict_mode: bool = Field(
        False,
        description="Treat a produced artifact with logged errors as a failure.",
    )
    ai_fix_attempt_window: int = Field(
        3,
        ge=1,
        description="Last attempt number on which the AI fixer may be called.",
    )

    # --- Text generation (OpenAI-compatible endpoint) ---
    llm_api_base: str = Field(
        "http://localhost:8000/v1",
        description="Base URL of the OpenAI-compatible completion server.",
    )
    llm_model: str = Field(
        "Qwen/Qwen2.5-7B-Instruct",
        description="Model used for AI-assisted repairs.",
    )
    llm_api_key: Optional[str] = Field(
        None,
        description="API key for the completion server.",
    )
    llm_timeout_seconds: float = Field(
        120.0,
        gt=0,
        description="Timeout for a single correction request.",
    )
    llm_temperature: float = Field(
        0.0,
        description="Sampling temperature for correction requests.",
    )
    llm_max_tokens: int = Field(
        8192,
        ge=1,
        description="Completion token budget for correction requests.",
    )

    # --- Logging ---
    log_level: str = Field(
        "INFO",
        description="Root log level.",
    )
    log_format: LogFormatChoice = Field(
        "text",
        description="Log renderer: JSON lines or console text.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).upper()


# Global singleton used by library code.
settings = Settings()


__all__ = [
    "Settings",
    "settings",
    "CompilerEngineChoice",
    "LogFormatChoice",
]

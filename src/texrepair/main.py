import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from texrepair.config.settings import settings
from texrepair.core.logging_setup import configure_logging
from texrepair.exceptions import TexRepairError
from texrepair.pipeline.robust_compilation import run_robust_compilation

logger = logging.getLogger(__name__)

DEFAULT_BUILD_DIR = "texrepair_build"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compile a LaTeX document, repairing errors between attempts")
    parser.add_argument("tex_path", type=Path, help="Path to the .tex file")
    parser.add_argument("--name", default=None, help="Logical document name (defaults to the file stem)")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help=f"Directory for the PDF (defaults to ./{DEFAULT_BUILD_DIR} next to the input)",
    )
    parser.add_argument("--max-attempts", type=int, default=None, help="Attempt budget for the run")
    parser.add_argument("--no-ai-fixes", action="store_true", help="Disable the automatic fix pass")
    parser.add_argument("--strict", action="store_true", help="Reject PDFs produced despite logged errors")
    parser.add_argument("--json", action="store_true", help="Print the full outcome as JSON")
    parser.add_argument("--log-level", default=None, help="Override TEXREPAIR_LOG_LEVEL")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or settings.log_level, settings.log_format)

    if not args.tex_path.exists():
        logger.error("File not found: %s", args.tex_path)
        return 1

    source = args.tex_path.read_text(encoding="utf-8", errors="replace")
    output_dir = args.output_dir or args.tex_path.parent / DEFAULT_BUILD_DIR
    try:
        outcome = await run_robust_compilation(
            source,
            name=args.name or args.tex_path.stem,
            output_dir=output_dir,
            max_attempts=args.max_attempts,
            enable_ai_fixes=False if args.no_ai_fixes else None,
            strict_mode=True if args.strict else None,
        )
    except TexRepairError as exc:
        logger.error("Compilation could not start: %s", exc)
        return 1

    if args.json:
        print(json.dumps(outcome.to_json(), indent=2))
    else:
        print(f"--- Summary for {args.tex_path.name} ---")
        print(f"Status: {outcome.status.value}")
        print(f"Attempts: {outcome.total_attempts}")
        print(f"Auto fixes applied: {outcome.metadata.auto_fixes_applied}")
        print(f"Quality score: {outcome.metadata.quality_score:.2f}")
        if outcome.pdf_path:
            print(f"PDF: {outcome.pdf_path}")
        for message in outcome.metadata.manual_fixes_needed:
            print(f"Manual fix needed: {message}")
    return 0 if outcome.success else 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

from texrepair.core.compiler import LatexCompiler

# Stand-in for pdflatex: reads the .tex file from the working directory, writes a
# <stem>.log in pdflatex's shape and produces <stem>.pdf only when the source is clean.
FAKE_LATEX = r'''
import re
import sys
import time
from pathlib import Path

tex = Path(sys.argv[1])
source = tex.read_text(encoding="utf-8")
lines = source.splitlines()
log = ["This is fakeTeX, Version 3.141592653", "(" + tex.name]
errors = []


def line_of(needle):
    for number, text in enumerate(lines, start=1):
        if needle in text:
            return number
    return len(lines)


if "SLEEP" in source:
    time.sleep(30)
if source.count("\\documentclass") > 1:
    number = [i for i, text in enumerate(lines, start=1) if "\\documentclass" in text][1]
    errors += [
        "! LaTeX Error: Can be used only in preamble.",
        "",
        "See the LaTeX manual or LaTeX Companion for explanation.",
        "l.%d \\documentclass" % number,
    ]
for name in re.findall(r"\\includegraphics(?:\[[^\]]*\])?\{([^}]*)\}", source):
    if not (tex.parent / name).exists():
        errors += [
            "! LaTeX Error: File `%s' not found." % name,
            "",
            "l.%d \\includegraphics{%s}" % (line_of(name), name),
        ]
if "\\foobar" in source:
    errors += ["! Undefined control sequence.", "l.%d \\foobar" % line_of("\\foobar")]
if "FATAL" in source:
    errors += ["! Fatal error occurred, no output PDF file produced!"]
if "SOFTERROR" in source:
    errors += ["! Undefined control sequence.", "l.%d \\softfail" % line_of("SOFTERROR")]
if source.count("{") > source.count("}"):
    errors += ["! Missing } inserted.", "<inserted text> ", "                }", "l.%d " % len(lines)]
if "WARN" in source:
    log.append("Package hyperref Warning: Token not allowed in a PDF string")
    log.append("LaTeX Warning: Reference `sec:intro' on page 1 undefined on input line 4.")

log += errors
stem = tex.with_suffix("")
if errors and "SOFTERROR" not in source:
    log.append("No pages of output.")
    stem.with_suffix(".log").write_text("\n".join(log), encoding="utf-8")
    print("\n".join(log))
    sys.exit(1)
if "NOPDF" in source:
    stem.with_suffix(".log").write_text("\n".join(log), encoding="utf-8")
    sys.exit(0)
stem.with_suffix(".pdf").write_bytes(b"%PDF-1.4\n% fake output\n%%EOF\n")
stem.with_suffix(".aux").write_text("\\relax\n", encoding="utf-8")
log.append("Output written on %s (1 page, 1024 bytes)." % stem.with_suffix(".pdf").name)
stem.with_suffix(".log").write_text("\n".join(log), encoding="utf-8")
sys.exit(0)
'''

CLEAN_DOCUMENT = "\n".join(
    [
        r"\documentclass{article}",
        r"\usepackage{amsmath}",
        r"\begin{document}",
        r"Hello world.",
        r"\end{document}",
        "",
    ]
)


@pytest.fixture(scope="session")
def fake_latex_script(tmp_path_factory) -> Path:
    script = tmp_path_factory.mktemp("bin") / "fake_latex.py"
    script.write_text(FAKE_LATEX, encoding="utf-8")
    return script


@pytest.fixture
def fake_compiler(monkeypatch, fake_latex_script) -> LatexCompiler:
    def _build_command(self, tex_file: Path) -> List[str]:
        return [sys.executable, str(fake_latex_script), tex_file.name]

    monkeypatch.setattr(LatexCompiler, "_build_command", _build_command)
    return LatexCompiler(engine="pdflatex", timeout=20)


@pytest.fixture
def clean_document() -> str:
    return CLEAN_DOCUMENT


class FakeTextGenerator:
    """In-memory text generator that records every correction request."""

    def __init__(
        self,
        responses: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        transform: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.responses = list(responses or [])
        self.error = error
        self.transform = transform
        self.calls: List[Tuple[str, str]] = []

    async def request_correction(self, instruction: str, document: str) -> str:
        self.calls.append((instruction, document))
        if self.error is not None:
            raise self.error
        if self.transform is not None:
            return self.transform(document)
        if self.responses:
            return self.responses.pop(0)
        return document


@pytest.fixture
def fake_generator() -> FakeTextGenerator:
    return FakeTextGenerator()

import pytest

from texrepair.core.latex_log_parser import LogParser, parse_log, parse_warnings
from texrepair.core.state import DiagnosticKind, Severity

SAMPLE_LOG = """This is pdfTeX, Version 3.141592653-2.6-1.40.25
(./report.tex
LaTeX2e <2023-11-01>
Package hyperref Warning: Token not allowed in a PDF string (Unicode):
! Undefined control sequence.
l.12 \\toprule
              
LaTeX Warning: Citation `knuth84' on page 1 undefined on input line 14.
! LaTeX Error: File `figures/plot.png' not found.

See the LaTeX manual or LaTeX Companion for explanation.
Type  H <return>  for immediate help.
l.20 \\includegraphics{figures/plot.png}
Package natbib Error: Bibliography not compatible with author-year citations.
! Emergency stop.
<*> report.tex
"""


@pytest.fixture
def parser():
    return LogParser()


def test_parse_preserves_log_order(parser):
    diagnostics = parser.parse(SAMPLE_LOG)
    messages = [diag.message for diag in diagnostics]
    assert messages == [
        "Undefined control sequence.",
        "Citation `knuth84' on page 1 undefined on input line 14.",
        "LaTeX Error: File `figures/plot.png' not found.",
        "Package natbib: Bibliography not compatible with author-year citations.",
        "Emergency stop.",
    ]


def test_hard_error_line_number_and_context(parser):
    first = parser.parse(SAMPLE_LOG)[0]
    assert first.kind is DiagnosticKind.ERROR
    assert first.line == 12
    assert first.context == "l.12 \\toprule"
    assert first.severity is Severity.CRITICAL
    assert first.fixable is True


def test_line_marker_found_within_lookahead(parser):
    missing = parser.parse(SAMPLE_LOG)[2]
    assert missing.line == 20
    assert missing.severity is Severity.HIGH
    assert missing.fixable is True


def test_line_marker_beyond_lookahead_is_ignored(parser):
    log = "! Missing $ inserted.\na\nb\nc\nd\nl.9 x"
    (diag,) = parser.parse(log)
    assert diag.line is None
    assert diag.context == "a"


def test_warnings_are_low_and_fixable_without_location(parser):
    warning = parser.parse(SAMPLE_LOG)[1]
    assert warning.kind is DiagnosticKind.WARNING
    assert warning.severity is Severity.LOW
    assert warning.fixable is True
    assert warning.line is None
    assert warning.context is None


def test_scoped_package_error(parser):
    package = parser.parse(SAMPLE_LOG)[3]
    assert package.kind is DiagnosticKind.ERROR
    assert package.severity is Severity.HIGH
    assert package.fixable is True


def test_scoped_engine_package_error_is_unfixable(parser):
    (diag,) = parser.parse("Package fontspec Error: The fontspec package requires XeTeX or LuaTeX.")
    assert diag.message.startswith("Package fontspec:")
    assert diag.fixable is False


def test_emergency_stop_is_critical_and_unfixable(parser):
    stop = parser.parse(SAMPLE_LOG)[-1]
    assert stop.severity is Severity.CRITICAL
    assert stop.fixable is False


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Undefined control sequence while something is missing", Severity.CRITICAL),
        ("Missing number, treated as zero", Severity.HIGH),
        ("Invalid UTF-8 byte sequence", Severity.HIGH),
        ("Extra alignment tab has been changed to \\cr", Severity.MEDIUM),
    ],
)
def test_severity_precedence(parser, message, expected):
    assert parser.classify_severity(message) is expected


def test_unfixable_patterns_take_precedence(parser):
    assert parser.is_fixable("Fatal error: missing file") is False
    assert parser.is_fixable("File ended while scanning use of \\section") is False
    assert parser.is_fixable("Missing } inserted.") is True
    assert parser.is_fixable("Extra alignment tab has been changed to \\cr") is False


def test_parse_warnings_excludes_latex_warnings():
    assert parse_warnings(SAMPLE_LOG) == [
        "Package hyperref Warning: Token not allowed in a PDF string (Unicode):",
    ]


def test_parse_log_on_empty_input():
    assert parse_log("") == []
    assert parse_log("Compilation timed out after 30 seconds") == []

"""Deterministic LaTeX repairs keyed on parsed compiler diagnostics."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from ..core.state import Diagnostic, Severity

LOGGER = logging.getLogger(__name__)

USEPACKAGE_RE = re.compile(r"\\usepackage\s*(\[[^\]]*\])?\s*\{([^}]*)\}[ \t]*")
DOCUMENTCLASS_LINE_RE = re.compile(r"^[ \t]*\\documentclass\b.*(?:\n|$)", re.MULTILINE)
BEGIN_DOCUMENT = "\\begin{document}"
END_DOCUMENT = "\\end{document}"
INCLUDEGRAPHICS_RE = re.compile(r"\\includegraphics\s*\*?\s*(?:\[[^\]]*\])?\s*\{([^}]*)\}")
FIGURE_RE = re.compile(r"\\begin\{(figure\*?)\}(?:\s*\[[^\]]*\])?(.*?)\\end\{\1\}", re.DOTALL)
FILE_NOT_FOUND_RE = re.compile(r"file `([^']+)' not found", re.IGNORECASE)
CONTROL_SEQUENCE_RE = re.compile(r"\\([A-Za-z@]+)")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".pdf", ".eps", ".svg", ".gif", ".bmp", ".tif", ".tiff")
NON_ASSET_EXTENSIONS = (".sty", ".cls", ".tex", ".bst", ".bib", ".def", ".cfg", ".fd", ".clo")

# Support packages that only exist as dependencies of other packages.
DROPPABLE_PACKAGES = frozenset(
    {
        "infwarerr",
        "kvoptions",
        "kvsetkeys",
        "ltxcmds",
        "pdftexcmds",
        "etoolbox",
        "auxhook",
        "hycolor",
        "gettitlestring",
        "letltxmacro",
        "bitset",
        "intcalc",
        "bigintcalc",
        "atbegshi",
        "rerunfilecheck",
        "uniquecounter",
        "refcount",
        "microtype",
        "setspace",
        "hyperref",
        "bookmark",
    }
)
PACKAGE_SUBSTITUTES: Dict[str, str] = {
    "natbib": "cite",
    "biblatex": "cite",
    "mathtools": "amsmath",
    "subcaption": "caption",
    "subfig": "caption",
    "tabularx": "array",
    "xcolor": "color",
    "fontspec": "fontenc",
    "unicode-math": "amsmath",
    "lmodern": "fontenc",
    "minted": "verbatim",
    "listings": "verbatim",
    "booktabs": "array",
    "pgfplots": "graphicx",
    "tikz": "graphicx",
}
PACKAGE_FOR_COMMAND: Dict[str, str] = {
    "includegraphics": "graphicx",
    "graphicspath": "graphicx",
    "color": "color",
    "url": "url",
    "mathbb": "amssymb",
    "mathfrak": "amssymb",
    "checkmark": "amssymb",
    "boldsymbol": "amsmath",
    "text": "amsmath",
    "dfrac": "amsmath",
    "tfrac": "amsmath",
    "eqref": "amsmath",
    "operatorname": "amsmath",
    "DeclareMathOperator": "amsmath",
    "numberwithin": "amsmath",
    "captionof": "caption",
    "captionsetup": "caption",
    "multirow": "multirow",
    "multicolumn": "array",
    "setlist": "enumitem",
    "geometry": "geometry",
    "fancyhf": "fancyhdr",
    "fancyhead": "fancyhdr",
    "fancyfoot": "fancyhdr",
    "pagestyle": "fancyhdr",
}
ENVIRONMENT_PACKAGES: Dict[str, str] = {
    "align": "amsmath",
    "align*": "amsmath",
    "gather": "amsmath",
    "gather*": "amsmath",
    "multline": "amsmath",
    "multline*": "amsmath",
    "split": "amsmath",
    "cases": "amsmath",
    "matrix": "amsmath",
    "pmatrix": "amsmath",
    "bmatrix": "amsmath",
    "equation*": "amsmath",
    "algorithm": "algorithm",
    "algorithmic": "algorithmic",
    "tikzpicture": "tikz",
    "longtable": "longtable",
    "multicols": "multicol",
    "multicols*": "multicol",
    "wrapfigure": "wrapfig",
    "landscape": "pdflscape",
    "subfigure": "caption",
}
VERBATIM_ENVIRONMENTS = ("lstlisting", "minted")
BABEL_LANGUAGES: Dict[str, str] = {
    "en": "english",
    "english": "english",
    "de": "ngerman",
    "german": "ngerman",
    "fr": "french",
    "french": "french",
    "es": "spanish",
    "spanish": "spanish",
}

GREEK_LETTERS = (
    "alpha", "beta", "gamma", "delta", "epsilon", "varepsilon", "zeta", "eta",
    "theta", "vartheta", "iota", "kappa", "lambda", "mu", "nu", "xi", "pi",
    "varpi", "rho", "varrho", "sigma", "varsigma", "tau", "upsilon", "phi",
    "varphi", "chi", "psi", "omega", "Gamma", "Delta", "Theta", "Lambda", "Xi",
    "Pi", "Sigma", "Upsilon", "Phi", "Psi", "Omega",
)
MATH_OPERATORS = ("sum", "prod", "int", "oint", "infty", "partial", "nabla")
_SCRIPTS = r"(?:\s*[_^](?:\{[^{}]*\}|\\[A-Za-z]+|\w))*"
MATH_TOKEN_RE = re.compile(
    r"(?:\\[dt]?frac\s*\{[^{}]*\}\s*\{[^{}]*\}" + _SCRIPTS
    + r"|\\sqrt\s*(?:\[[^\]]*\])?\s*\{[^{}]*\}" + _SCRIPTS
    + r"|\\(?:" + "|".join(GREEK_LETTERS + MATH_OPERATORS) + r")(?![A-Za-z])" + _SCRIPTS
    + r")"
)
INLINE_MATH_RE = re.compile(r"(?<!\\)\$\$.*?(?<!\\)\$\$|(?<!\\)\$.*?(?<!\\)\$|\\\(.*?\\\)|\\\[.*?\\\]")
MATH_ENV_BEGIN_RE = re.compile(
    r"\\begin\{(?:equation|align|gather|multline|eqnarray|displaymath|math|flalign|alignat)\*?\}"
)
MATH_ENV_END_RE = re.compile(
    r"\\end\{(?:equation|align|gather|multline|eqnarray|displaymath|math|flalign|alignat)\*?\}"
)
DISPLAY_OPEN_RE = re.compile(r"(?<!\\)\\\[")
DISPLAY_CLOSE_RE = re.compile(r"(?<!\\)\\\]")


@dataclass(frozen=True)
class FixResult:
    changed: bool
    source: str
    description: str = ""


Transform = Callable[[str, Diagnostic], Optional[Tuple[str, str]]]


@dataclass(frozen=True)
class FixRule:
    """A trigger on the lowercased diagnostic message plus a pure source transform.

    The transform returns ``(new_source, description)`` or ``None`` for a no-op.
    """

    name: str
    trigger: Pattern[str]
    transform: Transform

    def matches(self, diagnostic: Diagnostic) -> bool:
        return bool(self.trigger.search(diagnostic.message.lower()))

    def apply(self, source: str, diagnostic: Diagnostic) -> FixResult:
        outcome = self.transform(source, diagnostic)
        if outcome is None or outcome[0] == source:
            return FixResult(False, source)
        return FixResult(True, outcome[0], outcome[1])


# --------------------------------------------------------------------------- helpers


def _is_escaped(text: str, idx: int) -> bool:
    backslashes = 0
    idx -= 1
    while idx >= 0 and text[idx] == "\\":
        backslashes += 1
        idx -= 1
    return backslashes % 2 == 1


def _strip_comment(line: str) -> str:
    for idx, char in enumerate(line):
        if char == "%" and not _is_escaped(line, idx):
            return line[:idx]
    return line


def _in_comment(text: str, pos: int) -> bool:
    line_start = text.rfind("\n", 0, pos) + 1
    return len(_strip_comment(text[line_start:pos])) < pos - line_start


def _matching_brace(text: str, open_idx: int) -> Optional[int]:
    depth = 0
    for idx in range(open_idx, len(text)):
        char = text[idx]
        if char in "{}" and _is_escaped(text, idx):
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return idx
    return None


def _rewrite_command(
    source: str,
    name: str,
    nargs: int,
    render: Callable[[List[str]], str],
) -> Tuple[str, int]:
    """Replace ``\\name[opt]{a1}...{an}`` using ``render(args)``; brace groups may nest."""
    pattern = re.compile(r"\\" + re.escape(name) + r"(?![A-Za-z@])\*?")
    out: List[str] = []
    pos = 0
    count = 0
    for match in pattern.finditer(source):
        if match.start() < pos or _in_comment(source, match.start()):
            continue
        idx = match.end()
        probe = idx
        while probe < len(source) and source[probe] in " \t":
            probe += 1
        if probe < len(source) and source[probe] == "[":
            close = source.find("]", probe)
            if close != -1:
                idx = close + 1
        args: List[str] = []
        for _ in range(nargs):
            while idx < len(source) and source[idx] in " \t":
                idx += 1
            if idx >= len(source) or source[idx] != "{":
                break
            end = _matching_brace(source, idx)
            if end is None:
                break
            args.append(source[idx + 1:end])
            idx = end + 1
        if len(args) < nargs:
            continue
        out.append(source[pos:match.start()])
        out.append(render(args))
        pos = idx
        count += 1
    out.append(source[pos:])
    return "".join(out), count


def _package_declarations(source: str) -> Iterable[re.Match[str]]:
    for match in USEPACKAGE_RE.finditer(source):
        if not _in_comment(source, match.start()):
            yield match


def _package_names(match: re.Match[str]) -> List[str]:
    return [item.strip() for item in match.group(2).split(",") if item.strip()]


def declared_packages(source: str) -> List[str]:
    names: List[str] = []
    for match in _package_declarations(source):
        names.extend(_package_names(match))
    return names


def _render_declaration(options: Optional[str], names: List[str]) -> str:
    return f"\\usepackage{options or ''}{{{','.join(names)}}}"


def _replace_package(source: str, package: str, replacement: Optional[str]) -> Tuple[str, int]:
    """Drop ``package`` from every declaration, or swap in ``replacement``."""
    already = replacement is not None and replacement in declared_packages(source)
    out: List[str] = []
    pos = 0
    count = 0
    for match in list(_package_declarations(source)):
        names = _package_names(match)
        if package not in names:
            continue
        count += 1
        if replacement is None or already:
            kept = [name for name in names if name != package]
            options = match.group(1)
        else:
            kept = [replacement if name == package else name for name in names]
            options = match.group(1) if len(names) > 1 else None
            already = True
        start, end = match.start(), match.end()
        if kept:
            text = _render_declaration(options, kept)
        else:
            text = ""
            line_start = source.rfind("\n", 0, start) + 1
            if not source[line_start:start].strip() and end < len(source) and source[end] == "\n":
                start, end = line_start, end + 1
        out.append(source[pos:start])
        out.append(text)
        pos = end
    out.append(source[pos:])
    return "".join(out), count


def add_package(source: str, package: str) -> Optional[str]:
    """Declare ``package`` once, right after the last existing declaration."""
    if package in declared_packages(source):
        return None
    declarations = list(_package_declarations(source))
    begin = source.find(BEGIN_DOCUMENT)
    declarations = [match for match in declarations if begin == -1 or match.start() < begin]
    line = f"\\usepackage{{{package}}}"
    if declarations:
        insert_at = source.find("\n", declarations[-1].end())
        if insert_at == -1:
            return source + "\n" + line
        return source[:insert_at + 1] + line + "\n" + source[insert_at + 1:]
    docclass = DOCUMENTCLASS_LINE_RE.search(source)
    if docclass:
        insert_at = docclass.end()
        prefix = source[:insert_at] if source[:insert_at].endswith("\n") else source[:insert_at] + "\n"
        return prefix + line + "\n" + source[insert_at:]
    return line + "\n" + source


def _strip_extension(name: str) -> str:
    lowered = name.lower()
    for ext in IMAGE_EXTENSIONS:
        if lowered.endswith(ext):
            return name[: -len(ext)]
    return name


def _same_asset(reference: str, missing: str) -> bool:
    ref = _strip_extension(reference.strip().strip('"'))
    target = _strip_extension(missing.strip())
    if not ref or not target:
        return False
    return ref == target or ref.endswith("/" + target) or target.endswith("/" + ref)


def _figure_is_only(body: str, missing: str) -> bool:
    remainder = INCLUDEGRAPHICS_RE.sub(
        lambda match: "" if _same_asset(match.group(1), missing) else match.group(0), body
    )
    for command, nargs in (("caption", 1), ("label", 1), ("centering", 0)):
        remainder, _ = _rewrite_command(remainder, command, nargs, lambda args: "")
    remainder = "\n".join(_strip_comment(line) for line in remainder.splitlines())
    return not remainder.strip()


# --------------------------------------------------------------------------- missing assets


def _fix_missing_asset(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    match = FILE_NOT_FOUND_RE.search(diagnostic.message)
    if not match:
        return None
    missing = match.group(1)
    if missing.lower().endswith(NON_ASSET_EXTENSIONS):
        return None
    marker = f"% figure removed: missing file {missing}"

    removed_figures = 0

    def _drop_figure(figure: re.Match[str]) -> str:
        nonlocal removed_figures
        body = figure.group(2)
        if any(_same_asset(ref.group(1), missing) for ref in INCLUDEGRAPHICS_RE.finditer(body)):
            if _figure_is_only(body, missing):
                removed_figures += 1
                return marker + "\n"
        return figure.group(0)

    updated = FIGURE_RE.sub(_drop_figure, source)

    removed_directives = 0

    def _drop_directive(directive: re.Match[str]) -> str:
        nonlocal removed_directives
        if _in_comment(updated, directive.start()) or not _same_asset(directive.group(1), missing):
            return directive.group(0)
        removed_directives += 1
        return f"\n% image removed: missing file {missing}\n"

    updated = INCLUDEGRAPHICS_RE.sub(_drop_directive, updated)
    if not removed_figures and not removed_directives:
        return None
    parts = []
    if removed_figures:
        parts.append(f"{removed_figures} figure block(s)")
    if removed_directives:
        parts.append(f"{removed_directives} image directive(s)")
    return updated, f"Removed {' and '.join(parts)} referencing missing file {missing}"


# --------------------------------------------------------------------------- dependencies


def _booktabs_rules(source: str) -> Tuple[str, int]:
    updated, count = re.subn(
        r"\\(?:toprule|midrule|bottomrule)(?![A-Za-z])(?:\s*\[[^\]]*\])?",
        lambda _match: "\\hline",
        source,
    )
    updated, extra = _rewrite_command(updated, "cmidrule", 1, lambda args: "")
    return updated, count + extra


def _rename(old: str, new: str) -> Callable[[str], Tuple[str, int]]:
    pattern = re.compile(r"\\" + re.escape(old) + r"(?![A-Za-z@])")
    return lambda source: pattern.subn(lambda _match: "\\" + new, source)


def _unwrap(name: str, nargs: int) -> Callable[[str], Tuple[str, int]]:
    return lambda source: _rewrite_command(source, name, nargs, lambda args: args[-1] if args else "")


def _remove(name: str, nargs: int) -> Callable[[str], Tuple[str, int]]:
    return lambda source: _rewrite_command(source, name, nargs, lambda args: "")


def _href(source: str) -> Tuple[str, int]:
    return _rewrite_command(source, "href", 2, lambda args: f"{args[1]} (\\url{{{args[0]}}})")


COMMAND_SUBSTITUTES: Dict[str, Tuple[str, Callable[[str], Tuple[str, int]]]] = {
    "toprule": ("Replaced booktabs rules with \\hline", _booktabs_rules),
    "midrule": ("Replaced booktabs rules with \\hline", _booktabs_rules),
    "bottomrule": ("Replaced booktabs rules with \\hline", _booktabs_rules),
    "cmidrule": ("Replaced booktabs rules with \\hline", _booktabs_rules),
    "textcolor": ("Removed \\textcolor wrappers", _unwrap("textcolor", 2)),
    "colorbox": ("Removed \\colorbox wrappers", _unwrap("colorbox", 2)),
    "href": ("Rewrote \\href links as plain text with \\url", _href),
    "hypersetup": ("Removed \\hypersetup", _remove("hypersetup", 1)),
    "setstretch": ("Removed \\setstretch", _remove("setstretch", 1)),
    "singlespacing": ("Removed \\singlespacing", _remove("singlespacing", 0)),
    "onehalfspacing": ("Removed \\onehalfspacing", _remove("onehalfspacing", 0)),
    "doublespacing": ("Removed \\doublespacing", _remove("doublespacing", 0)),
    "citep": ("Replaced \\citep with \\cite", _rename("citep", "cite")),
    "citet": ("Replaced \\citet with \\cite", _rename("citet", "cite")),
    "autoref": ("Replaced \\autoref with \\ref", _rename("autoref", "ref")),
    "cref": ("Replaced \\cref with \\ref", _rename("cref", "ref")),
    "Cref": ("Replaced \\Cref with \\ref", _rename("Cref", "ref")),
}


def _undefined_command(source: str, diagnostic: Diagnostic) -> Optional[str]:
    if diagnostic.context:
        commands = CONTROL_SEQUENCE_RE.findall(diagnostic.context)
        if commands:
            # TeX breaks the context line right after the offending token.
            return commands[-1]
    if diagnostic.line:
        lines = source.splitlines()
        if 0 < diagnostic.line <= len(lines):
            for command in CONTROL_SEQUENCE_RE.findall(_strip_comment(lines[diagnostic.line - 1])):
                if command in COMMAND_SUBSTITUTES or command in PACKAGE_FOR_COMMAND:
                    return command
    return None


def _fix_missing_package_file(source: str, package: str) -> Optional[Tuple[str, str]]:
    if package in DROPPABLE_PACKAGES:
        updated, count = _replace_package(source, package, None)
        if count:
            return updated, f"Removed unavailable package {package}"
    elif package in PACKAGE_SUBSTITUTES:
        substitute = PACKAGE_SUBSTITUTES[package]
        updated, count = _replace_package(source, package, substitute)
        if count:
            return updated, f"Replaced package {package} with {substitute}"
    return None


def _fix_verbatim_environment(source: str, env: str) -> Optional[Tuple[str, str]]:
    begin = re.compile(
        r"\\begin\{" + re.escape(env) + r"\}(?:\s*\[[^\]]*\])?" + (r"\s*\{[^}]*\}" if env == "minted" else "")
    )
    updated, count = begin.subn(lambda _match: "\\begin{verbatim}", source)
    updated = updated.replace(f"\\end{{{env}}}", "\\end{verbatim}")
    if not count:
        return None
    return updated, f"Converted {env} blocks to verbatim"


def _fix_dependency(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    message = diagnostic.message
    missing_file = FILE_NOT_FOUND_RE.search(message)
    if missing_file and missing_file.group(1).lower().endswith(".sty"):
        return _fix_missing_package_file(source, missing_file.group(1)[:-4])

    environment = re.search(r"environment (\S+?) undefined", message, re.IGNORECASE)
    if environment:
        env = environment.group(1)
        if env in VERBATIM_ENVIRONMENTS:
            return _fix_verbatim_environment(source, env)
        package = ENVIRONMENT_PACKAGES.get(env)
        if package:
            updated = add_package(source, package)
            if updated is not None:
                return updated, f"Added \\usepackage{{{package}}} for environment {env}"
        return None

    if "undefined control sequence" in message.lower():
        command = _undefined_command(source, diagnostic)
        if command is None:
            return None
        if command in COMMAND_SUBSTITUTES:
            description, substitute = COMMAND_SUBSTITUTES[command]
            updated, count = substitute(source)
            if count:
                return updated, description
            return None
        package = PACKAGE_FOR_COMMAND.get(command)
        if package:
            updated = add_package(source, package)
            if updated is not None:
                return updated, f"Added \\usepackage{{{package}}} for \\{command}"
    return None


# --------------------------------------------------------------------------- preamble


def _fix_duplicate_documentclass(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    declarations = list(DOCUMENTCLASS_LINE_RE.finditer(source))
    if len(declarations) > 1:
        out = [source[: declarations[1].start()]]
        pos = declarations[1].start()
        for match in declarations[1:]:
            out.append(source[pos:match.start()])
            pos = match.end()
        out.append(source[pos:])
        removed = len(declarations) - 1
        return "".join(out), f"Removed {removed} duplicate \\documentclass declaration(s)"

    begin = source.find(BEGIN_DOCUMENT)
    if begin == -1:
        return None
    late = [match for match in _package_declarations(source) if match.start() > begin]
    if not late:
        return None
    body = source[begin:]
    offset = begin
    for match in reversed(late):
        start, end = match.start() - offset, match.end() - offset
        if end < len(body) and body[end] == "\n":
            end += 1
        body = body[:start] + body[end:]
    moved = "".join(match.group(0).strip() + "\n" for match in late)
    return source[:begin] + moved + body, f"Moved {len(late)} \\usepackage declaration(s) into the preamble"


def _fix_option_clash(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    match = re.search(r"option clash for package (\S+)", diagnostic.message, re.IGNORECASE)
    if not match:
        return None
    package = match.group(1).rstrip(".")
    seen = False
    out: List[str] = []
    pos = 0
    removed = 0
    for declaration in list(_package_declarations(source)):
        names = _package_names(declaration)
        if package not in names:
            continue
        if not seen:
            seen = True
            continue
        kept = [name for name in names if name != package]
        start, end = declaration.start(), declaration.end()
        replacement = _render_declaration(declaration.group(1), kept) if kept else ""
        if not kept and end < len(source) and source[end] == "\n":
            end += 1
        out.append(source[pos:start])
        out.append(replacement)
        pos = end
        removed += 1
    if not removed:
        return None
    out.append(source[pos:])
    return "".join(out), f"Removed {removed} duplicate declaration(s) of package {package}"


def _fix_babel_option(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    option = re.search(r"unknown option [`']([^'`]+)'", diagnostic.message, re.IGNORECASE)
    bad = option.group(1) if option else ""
    language = BABEL_LANGUAGES.get(bad.lower(), "english")
    for declaration in _package_declarations(source):
        if "babel" not in _package_names(declaration):
            continue
        options = (declaration.group(1) or "[]")[1:-1]
        items = [item.strip() for item in options.split(",") if item.strip()]
        if bad and bad in items:
            items = [language if item == bad else item for item in items]
        else:
            items = [language]
        rewritten = f"\\usepackage[{','.join(dict.fromkeys(items))}]{{{declaration.group(2)}}}"
        if rewritten == declaration.group(0).rstrip():
            return None
        updated = source[: declaration.start()] + rewritten + source[declaration.start() + len(declaration.group(0).rstrip()):]
        return updated, f"Set babel language to {language}"
    return None


# --------------------------------------------------------------------------- math and braces


def _wrap_math_line(line: str) -> str:
    code = _strip_comment(line)
    comment = line[len(code):]
    masked = [False] * len(code)
    for span in INLINE_MATH_RE.finditer(code):
        for idx in range(span.start(), span.end()):
            masked[idx] = True
    out: List[str] = []
    pos = 0
    for token in MATH_TOKEN_RE.finditer(code):
        if masked[token.start()]:
            continue
        out.append(code[pos:token.start()])
        out.append(f"${token.group(0)}$")
        pos = token.end()
    out.append(code[pos:])
    return "".join(out) + comment


def _wrap_math_tokens(source: str, only_line: Optional[int] = None) -> str:
    lines = source.split("\n")
    in_display = False
    in_body = BEGIN_DOCUMENT not in source
    for idx, line in enumerate(lines):
        code = _strip_comment(line)
        if not in_body:
            in_body = BEGIN_DOCUMENT in code
            continue
        if MATH_ENV_BEGIN_RE.search(code):
            in_display = not MATH_ENV_END_RE.search(code)
            continue
        if MATH_ENV_END_RE.search(code):
            in_display = False
            continue
        if in_display:
            if DISPLAY_CLOSE_RE.search(code):
                in_display = False
            continue
        if DISPLAY_OPEN_RE.search(code) and not DISPLAY_CLOSE_RE.search(code):
            in_display = True
            continue
        if only_line is not None and idx + 1 != only_line:
            continue
        lines[idx] = _wrap_math_line(line)
    return "\n".join(lines)


def _fix_math_delimiters(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    updated = source
    if diagnostic.line:
        updated = _wrap_math_tokens(source, only_line=diagnostic.line)
    if updated == source:
        updated = _wrap_math_tokens(source)
    if updated == source:
        return None
    return updated, "Wrapped bare math commands in $...$"


def count_braces(source: str) -> Tuple[int, int]:
    opens = closes = 0
    for line in source.splitlines():
        code = _strip_comment(line)
        for idx, char in enumerate(code):
            if char == "{" and not _is_escaped(code, idx):
                opens += 1
            elif char == "}" and not _is_escaped(code, idx):
                closes += 1
    return opens, closes


def _fix_unbalanced_braces(source: str, diagnostic: Diagnostic) -> Optional[Tuple[str, str]]:
    """Close the brace deficit at the end of the document body.

    The closers go just before the last ``\\end{document}`` so the document
    terminator stays last; sources without one get them appended.
    """
    opens, closes = count_braces(source)
    deficit = opens - closes
    if deficit <= 0:
        return None
    closing = "}" * deficit
    end = source.rfind(END_DOCUMENT)
    if end == -1:
        updated = source + closing
    else:
        updated = source[:end] + closing + "\n" + source[end:]
    return updated, f"Added {deficit} missing closing brace(s)"


RULES: Tuple[FixRule, ...] = (
    FixRule(
        "missing-asset",
        re.compile(r"file `[^']+' not found"),
        _fix_missing_asset,
    ),
    FixRule(
        "dependency",
        re.compile(r"file `[^']+\.sty' not found|undefined control sequence|environment \S+ undefined"),
        _fix_dependency,
    ),
    FixRule(
        "duplicate-documentclass",
        re.compile(r"can be used only in preamble|two \\documentclass"),
        _fix_duplicate_documentclass,
    ),
    FixRule(
        "option-clash",
        re.compile(r"option clash for package"),
        _fix_option_clash,
    ),
    FixRule(
        "babel-option",
        re.compile(r"package babel(?: error)?: unknown option"),
        _fix_babel_option,
    ),
    FixRule(
        "math-delimiters",
        re.compile(r"missing \$ inserted"),
        _fix_math_delimiters,
    ),
    FixRule(
        "unbalanced-braces",
        re.compile(r"missing \} inserted|runaway argument|paragraph ended before"),
        _fix_unbalanced_braces,
    ),
)


def qualifies(diagnostic: Diagnostic) -> bool:
    return diagnostic.fixable and diagnostic.severity is not Severity.LOW


def apply_rule_based_fix(
    source: str,
    diagnostic: Diagnostic,
    rules: Sequence[FixRule] = RULES,
) -> FixResult:
    for rule in rules:
        if not rule.matches(diagnostic):
            continue
        result = rule.apply(source, diagnostic)
        if result.changed:
            LOGGER.info("Rule %s fixed %r: %s", rule.name, diagnostic.message, result.description)
            return result
    return FixResult(False, source)


def apply_rule_based_fixes(
    source: str,
    diagnostics: Sequence[Diagnostic],
    rules: Sequence[FixRule] = RULES,
) -> Tuple[str, List[str], List[Diagnostic]]:
    """Run the catalog over every qualifying diagnostic, accumulating onto ``source``.

    Returns the new source, the descriptions of applied fixes and the
    diagnostics no rule could resolve.
    """
    descriptions: List[str] = []
    unresolved: List[Diagnostic] = []
    resolved_keys = set()
    for diagnostic in diagnostics:
        if not qualifies(diagnostic):
            continue
        key = (diagnostic.message, diagnostic.context)
        if key in resolved_keys:
            continue
        result = apply_rule_based_fix(source, diagnostic, rules)
        if result.changed:
            source = result.source
            descriptions.append(result.description)
            resolved_keys.add(key)
        else:
            unresolved.append(diagnostic)
    return source, descriptions, unresolved


__all__ = [
    "FixRule",
    "FixResult",
    "RULES",
    "COMMAND_SUBSTITUTES",
    "DROPPABLE_PACKAGES",
    "PACKAGE_SUBSTITUTES",
    "PACKAGE_FOR_COMMAND",
    "ENVIRONMENT_PACKAGES",
    "add_package",
    "apply_rule_based_fix",
    "apply_rule_based_fixes",
    "count_braces",
    "declared_packages",
    "qualifies",
]

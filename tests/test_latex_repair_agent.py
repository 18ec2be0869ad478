import asyncio

import pytest

from texrepair.core.state import Diagnostic, DiagnosticKind, Severity
from texrepair.exceptions import TextGenerationError
from texrepair.pipeline.latex_repair_agent import AI_FIX_DESCRIPTION, LatexRepairAgent

SOURCE = "\\documentclass{article}\n\\begin{document}\n\\foobar\n\\end{document}\n"
FIXED = "\\documentclass{article}\n\\begin{document}\nfixed\n\\end{document}"
UNDEFINED = Diagnostic(
    kind=DiagnosticKind.ERROR,
    message="Undefined control sequence.",
    severity=Severity.CRITICAL,
    fixable=True,
    line=3,
    context="l.3 \\foobar",
)


@pytest.fixture
def agent(fake_generator):
    return LatexRepairAgent(generator=fake_generator, attempt_window=3, timeout=5)


@pytest.mark.asyncio
async def test_strips_code_fences(agent, fake_generator):
    fake_generator.responses = [f"```latex\n{FIXED}\n```"]
    result = await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    assert result.source == FIXED
    assert result.applied_fixes == [AI_FIX_DESCRIPTION]


@pytest.mark.asyncio
async def test_rejects_response_without_structure(agent, fake_generator):
    fake_generator.responses = ["Sorry, I cannot help with that."]
    result = await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    assert result.source == SOURCE
    assert result.applied_fixes == []


@pytest.mark.asyncio
async def test_keeps_only_first_documentclass(agent, fake_generator):
    fake_generator.responses = [
        "\\documentclass{article}\n\\documentclass{report}\n\\begin{document}\nx\n\\end{document}"
    ]
    result = await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    assert result.source.count("\\documentclass") == 1
    assert result.source.startswith("\\documentclass{article}")


@pytest.mark.asyncio
async def test_service_error_is_a_noop(agent, fake_generator):
    fake_generator.error = TextGenerationError("connection refused")
    result = await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    assert result.source == SOURCE
    assert result.changed is False


@pytest.mark.asyncio
async def test_timeout_is_a_noop(fake_generator):
    async def _slow(instruction, document):
        await asyncio.sleep(5)
        return FIXED

    fake_generator.request_correction = _slow
    agent = LatexRepairAgent(generator=fake_generator, timeout=0.05)
    result = await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    assert result.source == SOURCE


@pytest.mark.asyncio
async def test_ineligible_diagnostics_skip_the_service(agent, fake_generator):
    medium = Diagnostic(DiagnosticKind.ERROR, "Extra alignment tab", Severity.MEDIUM, True)
    unfixable = Diagnostic(DiagnosticKind.ERROR, "Emergency stop.", Severity.CRITICAL, False)
    result = await agent.apply_ai_fix(SOURCE, [medium, unfixable])
    assert result.source == SOURCE
    assert fake_generator.calls == []


def test_should_attempt_respects_window(agent):
    assert agent.should_attempt([UNDEFINED], 1) is True
    assert agent.should_attempt([UNDEFINED], 3) is True
    assert agent.should_attempt([UNDEFINED], 4) is False
    assert agent.should_attempt([], 1) is False


def test_instruction_lists_errors_and_package_rules(agent):
    instruction = agent.build_instruction([UNDEFINED])
    assert "- Undefined control sequence. (Line: 3)" in instruction
    assert "hyperref" in instruction
    assert "amsmath" in instruction
    assert "Return ONLY the corrected LaTeX document" in instruction


@pytest.mark.asyncio
async def test_document_is_sent_with_instruction(agent, fake_generator):
    fake_generator.responses = [FIXED]
    await agent.apply_ai_fix(SOURCE, [UNDEFINED])
    ((instruction, document),) = fake_generator.calls
    assert document == SOURCE
    assert "COMPILATION ERRORS TO FIX" in instruction

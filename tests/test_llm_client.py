from types import SimpleNamespace

import pytest

from texrepair.core.llm.client import OpenAICompatibleClient, TextGenerator
from texrepair.exceptions import TextGenerationError


class _Completions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.content is None:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def _client(content):
    completions = _Completions(content)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    client = OpenAICompatibleClient(
        api_base="http://localhost:9999/v1",
        model="test-model",
        temperature=0.0,
        max_tokens=256,
        client=fake,
    )
    return client, completions


@pytest.mark.asyncio
async def test_request_correction_sends_instruction_and_document():
    client, completions = _client("\\documentclass{article}")
    text = await client.request_correction("Fix it", "\\documentclass{article}\n")
    assert text == "\\documentclass{article}"
    assert completions.kwargs["model"] == "test-model"
    assert completions.kwargs["max_tokens"] == 256
    user = completions.kwargs["messages"][-1]["content"]
    assert user.startswith("Fix it")
    assert user.endswith("\\documentclass{article}\n")


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "", "   "])
async def test_empty_completion_raises(content):
    client, _ = _client(content)
    with pytest.raises(TextGenerationError):
        await client.request_correction("Fix it", "doc")


def test_client_satisfies_protocol():
    client, _ = _client("x")
    assert isinstance(client, TextGenerator)

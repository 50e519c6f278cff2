"""Tests for the Anthropic provider against a mocked HTTP transport."""

import anthropic
import httpx
import orjson
import pytest

from agentworld.exceptions import DependencyUnavailableError
from agentworld.llm.anthropic import AnthropicProvider
from agentworld.llm.base import LLMMessage


def _client(handler) -> anthropic.AsyncAnthropic:
    return anthropic.AsyncAnthropic(
        api_key="test-key",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_complete_joins_text_blocks():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(orjson.loads(request.content))
        return httpx.Response(200, json={
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": "claude-sonnet-4-20250514",
            "content": [{"type": "text", "text": '{"action": '}, {"type": "text", "text": '"skip"}'}],
            "stop_reason": "end_turn",
            "stop_sequence": None,
            "usage": {"input_tokens": 12, "output_tokens": 5},
        })

    provider = AnthropicProvider("test-key", client=_client(handler))
    response = await provider.complete(
        [LLMMessage(role="user", content="decide")], system="be brief", max_tokens=100,
    )

    assert response.content == '{"action": "skip"}'
    assert response.stop_reason == "end_turn"
    assert response.input_tokens == 12
    assert seen[0]["system"] == "be brief"
    assert seen[0]["max_tokens"] == 100
    assert seen[0]["messages"] == [{"role": "user", "content": "decide"}]


@pytest.mark.asyncio
async def test_rate_limit_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}})

    provider = AnthropicProvider("test-key", client=_client(handler))
    with pytest.raises(DependencyUnavailableError):
        await provider.complete([LLMMessage(role="user", content="decide")])

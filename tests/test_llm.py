"""Tests for the provider layer (LiteLLM mocked, no network)."""

from unittest.mock import MagicMock, patch

import pytest

from aiprogram import (
    AdaptiveRateLimiter,
    CallFailure,
    FunctionProvider,
    LLMResponse,
    ProgramBuilder,
    Provider,
    TokenUsage,
)
from aiprogram.llm import (
    LITELLM_AVAILABLE,
    LiteLLMProvider,
    _extract_headers,
    _get_endpoint,
    as_provider,
    completion_text,
    get_rate_limiter,
)


def mock_response(content="Hello, world!", model="gpt-4", finish_reason="stop"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.choices[0].finish_reason = finish_reason
    response.model = model
    response.usage = MagicMock()
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 5
    response.usage.total_tokens = 15
    response._hidden_params = {}
    response._response_headers = {}
    return response


class TestLLMResponse:
    def test_str(self):
        usage = TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30)
        resp = LLMResponse(content="Test", usage=usage, model="gpt-4", finish_reason="stop")
        assert str(resp) == "Test"

    def test_to_message_carries_metadata(self):
        usage = TokenUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3)
        message = LLMResponse("hi", usage, "gpt-4", "length").to_message()
        assert message["role"] == "assistant"
        assert message["content"] == "hi"
        assert message["usage"] == {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}
        assert message["finish_reason"] == "length"


class TestFunctionProvider:
    def test_string_reply(self):
        provider = FunctionProvider(lambda messages, **kw: "pong")
        out = provider.call([{"role": "user", "content": "ping"}], {})
        assert out == [
            {"role": "user", "content": "ping"},
            {"role": "assistant", "content": "pong"},
        ]

    def test_parameters_are_keyword_arguments(self):
        seen = {}

        def fn(messages, temperature=None):
            seen["temperature"] = temperature
            return {"content": "ok", "model": "local"}

        out = FunctionProvider(fn).call([], {"temperature": 0.3})
        assert seen == {"temperature": 0.3}
        assert out[-1] == {"role": "assistant", "content": "ok", "model": "local"}

    def test_full_conversation_reply(self):
        reply = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
        assert FunctionProvider(lambda m: reply).call([], {}) == reply

    def test_conversation_without_assistant_is_an_error(self):
        provider = FunctionProvider(lambda m: [{"role": "user", "content": "a"}])
        with pytest.raises(CallFailure, match="assistant"):
            provider.call([], {})

    def test_unsupported_reply_type(self):
        with pytest.raises(CallFailure, match="int"):
            FunctionProvider(lambda m: 42).call([], {})

    def test_as_provider(self, echo):
        assert as_provider(echo) is echo
        assert isinstance(as_provider(lambda m: "x"), Provider)
        with pytest.raises(TypeError):
            as_provider(42)

    def test_completion_text(self):
        assert completion_text(lambda m, **kw: m[-1]["content"] * 2, "ab") == "abab"


def test_endpoint_and_headers():
    assert _get_endpoint("anthropic/claude") == "anthropic"
    assert _get_endpoint("gpt-4o-mini") == "gpt"
    response = MagicMock()
    response._hidden_params = {"additional_headers": {"x-ratelimit-remaining-requests": "5"}}
    response._response_headers = {"x-ratelimit-limit-requests": "10"}
    assert _extract_headers(response) == {
        "x-ratelimit-remaining-requests": "5",
        "x-ratelimit-limit-requests": "10",
    }


def test_get_rate_limiter():
    assert isinstance(get_rate_limiter(), AdaptiveRateLimiter)


@pytest.mark.skipif(not LITELLM_AVAILABLE, reason="litellm not installed")
class TestLiteLLMProvider:
    def test_complete(self):
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.return_value = mock_response()
            provider = LiteLLMProvider("gpt-4", rate_limit=False)
            result = provider.complete([{"role": "user", "content": "Hi"}])

        assert isinstance(result, LLMResponse)
        assert result.content == "Hello, world!"
        assert result.usage.total_tokens == 15

    def test_defaults_and_step_parameters(self):
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.return_value = mock_response()
            provider = LiteLLMProvider("gpt-4", rate_limit=False, temperature=0.5, top_p=0.9)
            provider.complete([{"role": "user", "content": "x"}], temperature=0.1, stream=True)

        kwargs = mock_litellm.completion.call_args[1]
        assert kwargs["model"] == "gpt-4"
        assert kwargs["temperature"] == 0.1
        assert kwargs["top_p"] == 0.9
        assert "stream" not in kwargs

    def test_only_role_and_content_go_on_the_wire(self):
        messages = [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b", "usage": {"total_tokens": 3}},
        ]
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.return_value = mock_response()
            LiteLLMProvider("gpt-4", rate_limit=False).complete(messages)

        sent = mock_litellm.completion.call_args[1]["messages"]
        assert sent == [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]

    def test_drives_a_program(self):
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.return_value = mock_response("Paris")
            program = (
                ProgramBuilder("qa", ["q"], provider=LiteLLMProvider("gpt-4", rate_limit=False))
                .step("answer", "{{q}}", max_tokens=5)
                .build()
            )
            output, inv = program.invoke(q="Capital of France?")

        assert output == "Paris"
        record = inv.trace["answer"][0]
        assert record.metadata["model"] == "gpt-4"
        assert record.metadata["usage"]["total_tokens"] == 15
        assert mock_litellm.completion.call_args[1]["max_tokens"] == 5

    def test_rate_limiter_sees_headers_and_429(self):
        limiter = AdaptiveRateLimiter()
        response = mock_response()
        response._hidden_params = {
            "additional_headers": {
                "x-ratelimit-limit-requests": "100",
                "x-ratelimit-remaining-requests": "42",
                "x-ratelimit-reset-requests": "1s",
            }
        }
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.return_value = response
            LiteLLMProvider("openai/gpt-4", limiter=limiter).complete([{"role": "user", "content": "x"}])
        stats = limiter.get_stats("openai")
        assert stats["requests_limit"] == 100
        assert stats["requests_remaining"] == 42

        error = RuntimeError("rate limited")
        error.status_code = 429
        with patch("aiprogram.llm.litellm") as mock_litellm:
            mock_litellm.completion.side_effect = error
            with pytest.raises(RuntimeError):
                LiteLLMProvider("openai/gpt-4", limiter=limiter).complete(
                    [{"role": "user", "content": "x"}]
                )
        assert limiter.get_stats("openai")["consecutive_429s"] == 1

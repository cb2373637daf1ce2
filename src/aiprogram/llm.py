"""Provider capability: the one call the engine makes to a language model.

A provider takes a conversation (a list of ``{"role", "content"}`` dicts)
plus call parameters and returns the conversation with the assistant reply
appended. Any exception counts as a failed call.

``LiteLLMProvider`` wraps litellm.completion() with automatic rate limiting.
``FunctionProvider`` adapts plain callables (stubs, local models).
"""

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable

try:
    import litellm

    # Enable LiteLLM to return response headers for rate limiting
    litellm.return_response_headers = True
    LITELLM_AVAILABLE = True
except ImportError:
    LITELLM_AVAILABLE = False

from .errors import CallFailure
from .rate_limit import AdaptiveRateLimiter

Message = Dict[str, Any]

# Global rate limiter (shared across all providers and threads)
_default_limiter = AdaptiveRateLimiter()


@runtime_checkable
class Provider(Protocol):
    def call(self, messages: List[Message], parameters: Dict[str, Any]) -> List[Message]:
        """Return ``messages`` plus one assistant message; raise on failure."""
        ...


@dataclass
class TokenUsage:
    """Token usage statistics from an LLM response."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class LLMResponse:
    """Response from an LLM completion call."""

    content: str
    usage: TokenUsage
    model: str
    finish_reason: str

    def __str__(self) -> str:
        return self.content

    def to_message(self) -> Message:
        return {
            "role": "assistant",
            "content": self.content,
            "model": self.model,
            "usage": asdict(self.usage),
            "finish_reason": self.finish_reason,
        }


class FunctionProvider:
    """
    Adapt ``fn(messages, **parameters)`` to the Provider protocol.

    ``fn`` may return the reply text, an LLMResponse, a single assistant
    message dict, or the full conversation.
    """

    def __init__(self, fn: Callable[..., Any], name: Optional[str] = None) -> None:
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "provider")

    def call(self, messages: List[Message], parameters: Dict[str, Any]) -> List[Message]:
        result = self.fn(list(messages), **parameters)
        return _append_reply(messages, result)

    def __repr__(self) -> str:
        return f"FunctionProvider({self.name})"


def _append_reply(messages: List[Message], result: Any) -> List[Message]:
    if isinstance(result, LLMResponse):
        return [*messages, result.to_message()]
    if isinstance(result, str):
        return [*messages, {"role": "assistant", "content": result}]
    if isinstance(result, dict):
        return [*messages, {"role": "assistant", **result}]
    if isinstance(result, list):
        if not result or result[-1].get("role") != "assistant":
            raise CallFailure("Provider returned a conversation without an assistant reply")
        return list(result)
    raise CallFailure(f"Unsupported provider result: {type(result).__name__}")


def as_provider(obj: Any) -> Provider:
    """Accept a Provider or a plain callable."""
    if isinstance(obj, Provider):
        return obj
    if callable(obj):
        return FunctionProvider(obj)
    raise TypeError(f"Not a provider: {obj!r}")


def _check_litellm() -> None:
    """Check if litellm is available."""
    if not LITELLM_AVAILABLE:
        raise ImportError(
            "litellm is required for LiteLLMProvider. "
            "Install with: pip install litellm"
        )


def _extract_headers(response: Any) -> Dict[str, Any]:
    """Extract rate limit headers from LiteLLM response."""
    headers: Dict[str, Any] = {}
    if hasattr(response, "_hidden_params") and response._hidden_params:
        headers.update(response._hidden_params.get("additional_headers", {}))
    if hasattr(response, "_response_headers"):
        headers.update(response._response_headers)
    return headers


def _get_endpoint(model: str) -> str:
    """Extract endpoint identifier from model string."""
    if "/" in model:
        return model.split("/")[0]
    return model.split("-")[0]


class LiteLLMProvider:
    """
    Provider backed by litellm.completion().

    Usage:
        provider = LiteLLMProvider("gpt-4o-mini", temperature=0.2)
        program = ProgramBuilder("qa", ["question"], provider=provider)...

    Step parameters override the defaults given here. The shared rate limiter
    is consulted before the request and updated from the response headers
    afterwards; its lock is never held during the request.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        rate_limit: bool = True,
        limiter: Optional[AdaptiveRateLimiter] = None,
        **defaults: Any,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.rate_limit = rate_limit
        self.limiter = limiter
        self.defaults = defaults

    def __repr__(self) -> str:
        return f"LiteLLMProvider(model={self.model!r})"

    def complete(self, messages: List[Message], **parameters: Any) -> LLMResponse:
        _check_litellm()

        kwargs: Dict[str, Any] = {**self.defaults, **parameters}
        model = kwargs.pop("model", self.model)
        if self.api_key is not None:
            kwargs["api_key"] = self.api_key
        if self.base_url is not None:
            kwargs["base_url"] = self.base_url
        # Full responses are needed for parsing and predicates.
        kwargs.pop("stream", None)

        limiter = self.limiter or _default_limiter
        endpoint = _get_endpoint(model)
        if self.rate_limit:
            estimated_tokens = sum(len(str(m.get("content", ""))) // 4 for m in messages)
            limiter.acquire(endpoint, estimated_tokens)

        wire_messages = [{"role": m["role"], "content": m["content"]} for m in messages]
        try:
            response = litellm.completion(model=model, messages=wire_messages, **kwargs)
        except Exception as e:
            if self.rate_limit and getattr(e, "status_code", None) == 429:
                limiter.record_429(endpoint)
            raise

        if self.rate_limit:
            headers = _extract_headers(response)
            if headers:
                limiter.update_from_headers(endpoint, headers)

        if not response.choices:
            raise CallFailure(f"{model} returned no choices")

        return LLMResponse(
            content=response.choices[0].message.content or "",
            usage=TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            ),
            model=response.model,
            finish_reason=response.choices[0].finish_reason or "stop",
        )

    def call(self, messages: List[Message], parameters: Dict[str, Any]) -> List[Message]:
        return _append_reply(messages, self.complete(messages, **parameters))


def get_rate_limiter() -> AdaptiveRateLimiter:
    """Get the global rate limiter instance."""
    return _default_limiter


def completion_text(provider: Union[Provider, Callable[..., Any]], prompt: str, **parameters: Any) -> str:
    """Single-turn helper used by the optimizer's generators."""
    conversation = as_provider(provider).call([{"role": "user", "content": prompt}], parameters)
    return str(conversation[-1].get("content", ""))

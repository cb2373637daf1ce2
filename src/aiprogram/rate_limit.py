"""Adaptive rate limiting for HTTP-backed providers.

The limiter learns each endpoint's budget from ``x-ratelimit-*`` response
headers and spaces requests evenly until the first headers arrive. One
limiter is shared by every thread driving an Invocation: slots are reserved
under a lock, the sleep and the provider call happen outside it.
"""

import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

_DURATION = re.compile(r"^(?:(?P<h>[\d.]+)h)?(?:(?P<m>[\d.]+)m(?!s))?(?:(?P<s>[\d.]+)s)?$")

# header suffix -> (RateLimitState attribute, is a reset duration)
_HEADER_FIELDS = {
    "limit-requests": ("requests_limit", False),
    "remaining-requests": ("requests_remaining", False),
    "reset-requests": ("requests_reset_at", True),
    "limit-tokens": ("tokens_limit", False),
    "remaining-tokens": ("tokens_remaining", False),
    "reset-tokens": ("tokens_reset_at", True),
}


@dataclass
class RateLimitState:
    """What is known about one endpoint. Times are time.monotonic() values."""

    requests_limit: Optional[int] = None
    requests_remaining: Optional[int] = None
    requests_reset_at: Optional[float] = None

    tokens_limit: Optional[int] = None
    tokens_remaining: Optional[int] = None
    tokens_reset_at: Optional[float] = None

    next_request_at: float = 0.0
    consecutive_429s: int = 0
    backoff_until: float = 0.0


@dataclass
class AdaptiveRateLimiter:
    """Per-endpoint request and token budgets with 429 backoff.

        limiter = AdaptiveRateLimiter()
        limiter.acquire("openai", estimated_tokens=1000)   # may sleep
        ...
        limiter.update_from_headers("openai", response_headers)
    """

    default_requests_per_minute: int = 60
    default_tokens_per_minute: int = 90000

    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    backoff_multiplier: float = 2.0

    _endpoints: Dict[str, RateLimitState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _state(self, endpoint: str) -> RateLimitState:
        return self._endpoints.setdefault(endpoint, RateLimitState())

    def acquire(self, endpoint: str, estimated_tokens: int = 0) -> float:
        """Reserve a slot for one request and wait for it. Returns seconds waited."""
        with self._lock:
            wait = self._reserve(self._state(endpoint), estimated_tokens, time.monotonic())
        if wait > 0:
            time.sleep(wait)
        return wait

    def _reserve(self, state: RateLimitState, tokens: int, now: float) -> float:
        start = max(now, state.backoff_until)

        if state.requests_remaining is None or state.requests_reset_at is None:
            start = max(start, state.next_request_at)
            state.next_request_at = start + 60.0 / self.default_requests_per_minute
        elif state.requests_remaining > 1:
            state.requests_remaining -= 1
        else:
            start = max(start, state.requests_reset_at)

        if tokens > 0 and state.tokens_remaining is not None and state.tokens_reset_at is not None:
            if state.tokens_remaining >= tokens:
                state.tokens_remaining -= tokens
            else:
                start = max(start, state.tokens_reset_at)

        return max(0.0, start - now)

    def update_from_headers(self, endpoint: str, headers: Dict[str, Any]) -> None:
        """Apply OpenAI-style ``x-ratelimit-*`` headers; any response clears the 429 streak."""
        now = time.monotonic()
        updates: Dict[str, Any] = {}
        for name, value in headers.items():
            suffix = name.lower().rpartition("x-ratelimit-")[2]
            if not name.lower().startswith("x-ratelimit-") or suffix not in _HEADER_FIELDS:
                continue
            attr, is_reset = _HEADER_FIELDS[suffix]
            updates[attr] = now + self._parse_reset_time(value) if is_reset else int(value)

        with self._lock:
            state = self._state(endpoint)
            for attr, value in updates.items():
                setattr(state, attr, value)
            state.consecutive_429s = 0

    def _parse_reset_time(self, value: Any) -> float:
        """Seconds until reset from "100ms", "1m30s", "1h0m2.4s", plain seconds or a unix timestamp."""
        text = str(value).strip()
        if text.endswith("ms"):
            return float(text[:-2]) / 1000.0
        match = _DURATION.match(text)
        if text.endswith("s") and match:
            parts = {k: float(v) for k, v in match.groupdict().items() if v}
            return parts.get("h", 0.0) * 3600 + parts.get("m", 0.0) * 60 + parts.get("s", 0.0)
        try:
            seconds = float(text)
        except ValueError:
            return 1.0
        if seconds > 1e9:
            return max(0.0, seconds - time.time())
        return seconds

    def record_429(self, endpoint: str) -> float:
        """Register a rate-limited response; returns the backoff now in force."""
        with self._lock:
            state = self._state(endpoint)
            state.consecutive_429s += 1
            backoff = min(
                self.initial_backoff_seconds * self.backoff_multiplier ** (state.consecutive_429s - 1),
                self.max_backoff_seconds,
            )
            state.backoff_until = time.monotonic() + backoff
            return backoff

    def get_stats(self, endpoint: str) -> Dict[str, Any]:
        with self._lock:
            state = self._state(endpoint)
            now = time.monotonic()

            def until(moment: Optional[float]) -> Optional[float]:
                return None if not moment else max(0.0, moment - now)

            return {
                "requests_limit": state.requests_limit,
                "requests_remaining": state.requests_remaining,
                "requests_reset_in": until(state.requests_reset_at),
                "tokens_limit": state.tokens_limit,
                "tokens_remaining": state.tokens_remaining,
                "tokens_reset_in": until(state.tokens_reset_at),
                "consecutive_429s": state.consecutive_429s,
                "in_backoff": state.backoff_until > now,
                "backoff_remaining": until(state.backoff_until) or 0.0,
            }

    def reset(self, endpoint: Optional[str] = None) -> None:
        """Forget what was learned about one endpoint, or all of them."""
        with self._lock:
            if endpoint is None:
                self._endpoints.clear()
            elif endpoint in self._endpoints:
                self._endpoints[endpoint] = RateLimitState()

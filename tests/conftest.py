"""Shared fixtures: scripted providers that never touch the network."""

import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

Reply = Union[str, BaseException, Callable[[List[Dict[str, Any]]], str]]


class ScriptedProvider:
    """
    Returns the scripted replies in order; the last one repeats.

    A reply may be a string, an exception instance (raised) or a callable
    taking the conversation. Every call is recorded for inspection.
    """

    def __init__(self, replies: Sequence[Reply], name: str = "scripted") -> None:
        if not replies:
            raise ValueError("ScriptedProvider needs at least one reply")
        self.replies = list(replies)
        self.name = name
        self.calls: List[List[Dict[str, Any]]] = []
        self.parameters: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def call(self, messages, parameters):
        with self._lock:
            index = min(len(self.calls), len(self.replies) - 1)
            self.calls.append([dict(m) for m in messages])
            self.parameters.append(dict(parameters))
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return [*messages, {"role": "assistant", "content": reply}]

    @property
    def call_count(self) -> int:
        return len(self.calls)


def echo_last_user(messages) -> str:
    """Deterministic reply: the last user message, upper-cased."""
    for message in reversed(messages):
        if message["role"] == "user":
            return message["content"].upper()
    return ""


@pytest.fixture
def scripted() -> Callable[..., ScriptedProvider]:
    def make(*replies: Reply, name: str = "scripted") -> ScriptedProvider:
        return ScriptedProvider(replies, name=name)

    return make


@pytest.fixture
def echo() -> ScriptedProvider:
    return ScriptedProvider([echo_last_user], name="echo")

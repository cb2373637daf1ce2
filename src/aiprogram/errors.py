"""Exceptions and warnings raised while running a Program."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .core import Invocation


class ProgramError(Exception):
    """Base class for every error raised by aiprogram."""


class ProgramDefinitionError(ProgramError, ValueError):
    """A Program was declared or called with invalid arguments."""


class CallFailure(ProgramError):
    """The provider failed outright (transport error, malformed response).

    Providers raise it for replies they cannot turn into a conversation.
    Controllers treat it like any other provider exception: the attempt is
    recorded as failed and retried; it only escapes wrapped in a
    RetriesExhausted.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class TerminalFailure(ProgramError):
    """Stops the whole Invocation. No output is returned."""

    reason = "terminal failure"

    def __init__(
        self,
        step_id: str,
        attempts: int,
        conversation: Optional[List[Dict[str, Any]]] = None,
        detail: str = "",
        cause: Optional[BaseException] = None,
        records: Optional[List[Any]] = None,
    ):
        self.step_id = step_id
        self.attempts = attempts
        self.conversation = list(conversation or [])
        self.detail = detail
        self.cause = cause
        # CallRecords of the failing step, appended to the Trace by the engine.
        self.records: List[Any] = list(records or [])
        # Attached by the engine once the failure unwinds the Invocation.
        self.invocation: Optional["Invocation"] = None
        message = f"Step '{step_id}': {self.reason} after {attempts} attempt(s)"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class RetriesExhausted(TerminalFailure):
    reason = "retries exhausted"


class AssertExhausted(TerminalFailure):
    reason = "assertion never satisfied"


class BudgetExceeded(TerminalFailure):
    """Total provider calls for the Invocation went over max_total_calls."""

    reason = "call budget exceeded"

    def __init__(self, step_id: str, used: int, limit: int, **kwargs: Any):
        self.used = used
        self.limit = limit
        kwargs.setdefault("detail", f"{used} calls used, limit {limit}")
        super().__init__(step_id, used, **kwargs)


class SuggestExhausted(UserWarning):
    """A suggestion was never satisfied; the last result was accepted anyway."""

"""Retry / suggest / assert controllers.

Each controller drives one Step to a result, calling the provider as many
times as its policy allows and producing one CallRecord per attempt:

- RetryController: re-send the same request after a hard failure.
- SuggestController: check a predicate, inject feedback and re-ask; after
  the last allowed attempt accept the result and warn.
- AssertController: like suggest, but exhaustion stops the Invocation.

Hard failures inside a suggest/assert attempt are retried with the retry
budget before the predicate is consulted.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from opentelemetry import trace as _otel_trace

from .budget import BudgetKind
from .core import CallRecord, Policy, Step
from .errors import AssertExhausted, RetriesExhausted, SuggestExhausted
from .llm import Message

if TYPE_CHECKING:
    from .core import Invocation

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    output: Any
    conversation: List[Message]
    records: List[CallRecord] = field(default_factory=list)
    warned: bool = False


def _start_span(step: Step, attempt: int, kind: BudgetKind) -> Any:
    span = _otel_trace.get_tracer("aiprogram").start_span(f"step {step.name}")
    span.set_attribute("aiprogram.step", step.name)
    span.set_attribute("aiprogram.policy", step.policy.value)
    span.set_attribute("aiprogram.attempt", attempt)
    span.set_attribute("aiprogram.kind", kind.value)
    return span


def _end_span(span: Any, record: CallRecord) -> None:
    if record.predicate_passed is not None:
        span.set_attribute("aiprogram.predicate_passed", record.predicate_passed)
    if record.error is not None:
        span.set_attribute("exception.type", type(record.error).__name__)
        span.set_attribute("exception.message", str(record.error))
    span.end()


class RetryController:
    """Invoke once; on hard failure re-send the same request up to max_retries times."""

    def run(self, step: Step, messages: List[Message], invocation: "Invocation") -> StepOutcome:
        records: List[CallRecord] = []
        record = self._call_with_retries(step, messages, invocation, records, BudgetKind.CALL)
        return StepOutcome(record.output, list(record.response or ()), records)

    def max_retries(self, step: Step, invocation: "Invocation") -> int:
        if step.policy is Policy.NONE:
            return 0
        if step.policy is Policy.RETRY and step.limit is not None:
            return step.limit
        return invocation.budget.config.max_retries

    def _call_with_retries(
        self,
        step: Step,
        messages: List[Message],
        invocation: "Invocation",
        records: List[CallRecord],
        kind: BudgetKind,
    ) -> CallRecord:
        """Return the first successful record; raise RetriesExhausted otherwise."""
        retries = self.max_retries(step, invocation)
        for n in range(retries + 1):
            if n > 0:
                kind = BudgetKind.RETRY
                invocation.budget.charge(BudgetKind.RETRY)
            record = self._attempt(step, messages, invocation, len(records) + 1, kind)
            records.append(record)
            if record.success:
                return record
            logger.debug(
                "Step '%s' attempt %d failed: %s", step.name, record.attempt, record.error
            )

        raise RetriesExhausted(
            step.name,
            len(records),
            conversation=messages,
            detail=str(records[-1].error),
            cause=records[-1].error,
            records=records,
        )

    def _attempt(
        self,
        step: Step,
        messages: List[Message],
        invocation: "Invocation",
        attempt: int,
        kind: BudgetKind,
    ) -> CallRecord:
        provider = invocation.program.provider_for(step)
        invocation.budget.charge(BudgetKind.CALL)
        span = _start_span(step, attempt, kind)

        response: Optional[List[Message]] = None
        output: Any = None
        error: Optional[BaseException] = None
        passed: Optional[bool] = None

        start = time.perf_counter()
        try:
            response = provider.call(list(messages), dict(step.parameters))
            content = response[-1].get("content", "")
            output = step.parse(content) if step.parse is not None else content
        except Exception as e:  # noqa: BLE001 - any provider/parse error is a failed call
            error = e
        elapsed = time.perf_counter() - start

        success = error is None
        if success and step.predicate is not None and step.policy in (Policy.SUGGEST, Policy.ASSERT):
            try:
                passed = bool(step.predicate(output))
            except Exception as e:  # noqa: BLE001 - a crashing check counts as unsatisfied
                passed = False
                error = e

        record = CallRecord(
            step_id=step.name,
            attempt=attempt,
            kind=kind,
            policy=step.policy,
            messages=tuple(messages),
            response=tuple(response) if success and response is not None else None,
            output=output,
            success=success,
            predicate_passed=passed,
            error=error,
            elapsed_s=elapsed,
        )
        _end_span(span, record)
        return record


class SuggestController(RetryController):
    """Soft predicate with feedback; exhaustion degrades to a warning."""

    budget_key = "max_suggests"
    kind = BudgetKind.SUGGEST

    def max_checks(self, step: Step, invocation: "Invocation") -> int:
        if step.limit is not None:
            return step.limit
        return getattr(invocation.budget.config, self.budget_key)

    def run(self, step: Step, messages: List[Message], invocation: "Invocation") -> StepOutcome:
        records: List[CallRecord] = []
        limit = self.max_checks(step, invocation)
        conversation = list(messages)
        kind = BudgetKind.CALL

        for check in range(1, limit + 1):
            record = self._call_with_retries(step, conversation, invocation, records, kind)
            response = list(record.response or ())
            if record.predicate_passed:
                return StepOutcome(record.output, response, records)
            if check == limit:
                return self._exhausted(step, record, records, check)

            try:
                feedback = step.feedback_for(record.output, response, record.error)
            except Exception as e:  # noqa: BLE001 - a broken feedback hook falls back to the default text
                logger.warning("Feedback for step '%s' raised %r; using the default message", step.name, e)
                feedback = step.default_feedback(record.error)
            logger.debug("Step '%s' check %d failed, feeding back: %s", step.name, check, feedback)
            conversation = response + [{"role": "user", "content": feedback}]
            invocation.budget.charge(self.kind)
            kind = self.kind

        raise AssertionError("unreachable")  # pragma: no cover

    def _exhausted(
        self,
        step: Step,
        record: CallRecord,
        records: List[CallRecord],
        checks: int,
    ) -> StepOutcome:
        message = (
            f"Suggestion for step '{step.name}' not satisfied after {checks} attempt(s); "
            "continuing with the last result"
        )
        logger.warning(message)
        warnings.warn(message, SuggestExhausted, stacklevel=4)
        return StepOutcome(record.output, list(record.response or ()), records, warned=True)


class AssertController(SuggestController):
    """Hard predicate with feedback; exhaustion stops the Invocation."""

    budget_key = "max_asserts"
    kind = BudgetKind.ASSERT

    def _exhausted(
        self,
        step: Step,
        record: CallRecord,
        records: List[CallRecord],
        checks: int,
    ) -> StepOutcome:
        raise AssertExhausted(
            step.name,
            checks,
            conversation=list(record.response or ()),
            detail=str(record.error) if record.error is not None else "",
            cause=record.error,
            records=records,
        )


_CONTROLLERS: Dict[Policy, RetryController] = {
    Policy.NONE: RetryController(),
    Policy.RETRY: RetryController(),
    Policy.SUGGEST: SuggestController(),
    Policy.ASSERT: AssertController(),
}


def controller_for(step: Step) -> RetryController:
    """Controllers are stateless; one instance per policy is shared."""
    return _CONTROLLERS[step.policy]

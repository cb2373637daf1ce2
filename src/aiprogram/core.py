from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .budget import BudgetConfig, BudgetKind, BudgetTracker
from .errors import BudgetExceeded, ProgramDefinitionError, TerminalFailure
from .llm import Message, Provider, as_provider
from .template import PromptTemplate, render

if TYPE_CHECKING:
    from .controllers import StepOutcome

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
Feedback = Union[str, Callable[[Any, List[Message]], str]]


# ============================================================
# 1. Trace / Stats containers
# ============================================================


class Policy(str, Enum):
    """Control policy attached to a Step."""

    NONE = "none"
    RETRY = "retry"
    SUGGEST = "suggest"
    ASSERT = "assert"


@dataclass(frozen=True)
class CallRecord:
    """
    One attempt at one Step. Immutable once appended to a Trace.

    - kind: why the attempt was made (first CALL, RETRY after a hard failure,
      SUGGEST / ASSERT after a failed predicate with feedback injected)
    - messages: the conversation sent to the provider
    - response: the conversation returned (None on hard failure)
    - predicate_passed: None when the step has no predicate or the call failed
    """

    step_id: str
    attempt: int
    kind: BudgetKind
    policy: Policy
    messages: Tuple[Message, ...]
    response: Optional[Tuple[Message, ...]]
    output: Any
    success: bool
    predicate_passed: Optional[bool]
    error: Optional[BaseException]
    elapsed_s: float
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def content(self) -> Optional[str]:
        """Text of the assistant reply, if any."""
        if not self.response:
            return None
        return self.response[-1].get("content")

    @property
    def metadata(self) -> Dict[str, Any]:
        """Provider metadata (model, usage) attached to the reply."""
        if not self.response:
            return {}
        return {k: v for k, v in self.response[-1].items() if k not in ("role", "content")}


class Trace:
    """Step id -> ordered CallRecords for one Invocation. Append-only."""

    def __init__(self) -> None:
        self._records: Dict[str, List[CallRecord]] = {}

    def append(self, record: CallRecord) -> None:
        records = self._records.setdefault(record.step_id, [])
        if records and record.attempt <= records[-1].attempt:
            raise ValueError(
                f"CallRecord for '{record.step_id}' out of order: "
                f"attempt {record.attempt} after {records[-1].attempt}"
            )
        records.append(record)

    def __getitem__(self, step_id: str) -> Tuple[CallRecord, ...]:
        return tuple(self._records[step_id])

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def steps(self) -> List[str]:
        return list(self._records)

    def records(self) -> List[CallRecord]:
        """All records, step by step in execution order."""
        return [r for records in self._records.values() for r in records]

    def as_dict(self) -> Dict[str, Tuple[CallRecord, ...]]:
        return {step_id: tuple(records) for step_id, records in self._records.items()}


@dataclass
class Stats:
    """Counters derived from a Trace."""

    total_calls: int = 0
    failed_calls: int = 0
    total_retries: int = 0
    suggest_retries: int = 0
    suggest_warnings: int = 0
    assert_retries: int = 0
    assert_failures: int = 0
    elapsed_s: float = 0.0

    def add(self, record: CallRecord) -> None:
        self.total_calls += 1
        self.elapsed_s += record.elapsed_s
        if not record.success:
            self.failed_calls += 1
        if record.kind is BudgetKind.RETRY:
            self.total_retries += 1
        elif record.kind is BudgetKind.SUGGEST:
            self.suggest_retries += 1
        elif record.kind is BudgetKind.ASSERT:
            self.assert_retries += 1
        if record.policy is Policy.ASSERT and record.predicate_passed is False:
            self.assert_failures += 1

    def merge(self, other: "Stats") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


class ProgramStats:
    """
    Aggregate Stats shared by every Invocation of a Program.

    The lock is held only for the increment itself, never across a
    provider call.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats = Stats()
        self.invocations = 0
        self.completed = 0
        self.failed = 0

    def started(self) -> None:
        with self._lock:
            self.invocations += 1

    def record(self, records: Sequence[CallRecord], suggest_warnings: int = 0) -> None:
        with self._lock:
            for record in records:
                self._stats.add(record)
            self._stats.suggest_warnings += suggest_warnings

    def finished(self, ok: bool) -> None:
        with self._lock:
            if ok:
                self.completed += 1
            else:
                self.failed += 1

    def snapshot(self) -> Stats:
        with self._lock:
            return replace(self._stats)


# ============================================================
# 2. Program declaration
# ============================================================


@dataclass(frozen=True)
class Step:
    """
    One declared AI-call site.

    - prompt: plain text or a PromptTemplate; ``{{name}}`` markers are filled
      from the Program arguments and earlier step outputs
    - limit: overrides the budget key of the policy (max_retries for retry,
      max_suggests for suggest, max_asserts for assert); NONE never retries
    - parse: turns the reply text into the bound value; raising here counts
      as a malformed response and is retried
    """

    name: str
    prompt: Union[str, PromptTemplate]
    policy: Policy = Policy.NONE
    predicate: Optional[Predicate] = None
    feedback: Optional[Feedback] = None
    limit: Optional[int] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    parse: Optional[Callable[[str], Any]] = None
    system: Optional[str] = None
    provider: Optional[Provider] = None
    continue_conversation: bool = False

    def prompt_text(self) -> str:
        if isinstance(self.prompt, PromptTemplate):
            return self.prompt.compile()
        return self.prompt

    def build_messages(
        self,
        variables: Mapping[str, Any],
        conversation: Sequence[Message] = (),
    ) -> List[Message]:
        messages: List[Message] = []
        if self.continue_conversation:
            messages.extend(dict(m) for m in conversation)
        if self.system and not messages:
            messages.append({"role": "system", "content": render(self.system, variables)})
        messages.append({"role": "user", "content": render(self.prompt_text(), variables)})
        return messages

    def feedback_for(self, output: Any, conversation: List[Message], error: Optional[BaseException]) -> str:
        if callable(self.feedback):
            return self.feedback(output, conversation)
        if isinstance(self.feedback, str):
            return render(self.feedback, {"output": output, "error": error or ""})
        return self.default_feedback(error)

    @staticmethod
    def default_feedback(error: Optional[BaseException] = None) -> str:
        text = "Your previous answer did not pass the check"
        if error is not None:
            text += f": {error}"
        return text + ". Please try again."


@dataclass(frozen=True)
class Program:
    """
    Immutable ordered sequence of Steps plus default budgets.

    Usage:
        program = (
            ProgramBuilder("qa", params=["question"], provider=provider)
            .retry("answer", "Answer briefly: {{question}}", max_retries=2)
            .assert_("check", "Reply YES or NO: is '{{answer}}' correct?",
                     predicate=lambda out: out.strip() in ("YES", "NO"))
            .returns("answer")
            .build()
        )
        answer = program(question="Capital of France?")
        answer, invocation = program.invoke("Capital of France?", max_total_calls=5)
    """

    name: str
    params: Tuple[str, ...]
    steps: Tuple[Step, ...]
    provider: Optional[Provider] = None
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    returns: Tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    stats: ProgramStats = field(default_factory=ProgramStats, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ProgramDefinitionError(f"Program '{self.name}' has no steps")
        seen = set(self.params)
        for step in self.steps:
            if step.name in seen:
                raise ProgramDefinitionError(
                    f"Duplicate name '{step.name}' in program '{self.name}'"
                )
            seen.add(step.name)
            if step.provider is None and self.provider is None:
                raise ProgramDefinitionError(
                    f"Step '{step.name}' has no provider and the program has no default"
                )
            if step.policy in (Policy.SUGGEST, Policy.ASSERT) and step.predicate is None:
                raise ProgramDefinitionError(
                    f"Step '{step.name}' uses policy '{step.policy.value}' without a predicate"
                )
        clashes = (BudgetConfig.keys() | {"budget"}) & seen
        if clashes:
            raise ProgramDefinitionError(f"Names clash with budget keywords: {sorted(clashes)}")
        for name in self.returns:
            if name not in seen:
                raise ProgramDefinitionError(f"Unknown return name '{name}'")

        parameters = [
            inspect.Parameter(
                p,
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
                default=self.defaults.get(p, inspect.Parameter.empty),
            )
            for p in self.params
        ]
        try:
            signature = inspect.Signature(parameters)
        except ValueError as e:
            raise ProgramDefinitionError(str(e)) from e
        object.__setattr__(self, "_sig", signature)

    # call interface

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        output, _ = self.invoke(*args, **kwargs)
        return output

    def invoke(
        self,
        *args: Any,
        budget: Optional[BudgetConfig] = None,
        **kwargs: Any,
    ) -> Tuple[Any, "Invocation"]:
        overrides = {k: kwargs.pop(k) for k in list(kwargs) if k in BudgetConfig.keys()}
        return invoke(self, self.bind(*args, **kwargs), budget, **overrides)

    def bind(self, *args: Any, **kwargs: Any) -> Dict[str, Any]:
        try:
            bound = self._sig.bind(*args, **kwargs)  # type: ignore[attr-defined]
        except TypeError as e:
            raise ProgramDefinitionError(f"Program '{self.name}': {e}") from e
        bound.apply_defaults()
        return dict(bound.arguments)

    # lookup / immutable updates

    def get_step(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(f"Unknown step: {name}")

    def with_prompt(self, step_name: str, prompt: Union[str, PromptTemplate]) -> "Program":
        """Return a new Program with one step's prompt replaced."""
        self.get_step(step_name)
        steps = tuple(
            replace(s, prompt=prompt) if s.name == step_name else s
            for s in self.steps
        )
        return replace(self, steps=steps, stats=ProgramStats())

    def provider_for(self, step: Step) -> Provider:
        return step.provider or self.provider  # type: ignore[return-value]

    def extract(self, bindings: Mapping[str, Any]) -> Any:
        names = self.returns or (self.steps[-1].name,)
        if len(names) == 1:
            return bindings[names[0]]
        return tuple(bindings[n] for n in names)


class ProgramBuilder:
    """Registers Steps in declaration order and builds an immutable Program."""

    def __init__(
        self,
        name: str,
        params: Sequence[str] = (),
        provider: Any = None,
        budget: Optional[BudgetConfig] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.name = name
        self.params = tuple(params)
        self.provider = as_provider(provider) if provider is not None else None
        self.budget = budget or BudgetConfig()
        self.defaults = dict(defaults or {})
        self._steps: List[Step] = []
        self._returns: Tuple[str, ...] = ()

    def step(
        self,
        name: str,
        prompt: Union[str, PromptTemplate],
        *,
        policy: Union[Policy, str] = Policy.NONE,
        predicate: Optional[Predicate] = None,
        feedback: Optional[Feedback] = None,
        limit: Optional[int] = None,
        parse: Optional[Callable[[str], Any]] = None,
        system: Optional[str] = None,
        provider: Any = None,
        continue_conversation: bool = False,
        **parameters: Any,
    ) -> "ProgramBuilder":
        policy = Policy(policy)
        if limit is not None:
            floor = 1 if policy in (Policy.SUGGEST, Policy.ASSERT) else 0
            if limit < floor:
                raise ProgramDefinitionError(f"Step '{name}': limit must be >= {floor}")
        self._steps.append(
            Step(
                name=name,
                prompt=prompt,
                policy=policy,
                predicate=predicate,
                feedback=feedback,
                limit=limit,
                parameters=dict(parameters),
                parse=parse,
                system=system,
                provider=as_provider(provider) if provider is not None else None,
                continue_conversation=continue_conversation,
            )
        )
        return self

    def retry(self, name: str, prompt: Union[str, PromptTemplate], *, max_retries: Optional[int] = None, **kwargs: Any) -> "ProgramBuilder":
        return self.step(name, prompt, policy=Policy.RETRY, limit=max_retries, **kwargs)

    def suggest(
        self,
        name: str,
        prompt: Union[str, PromptTemplate],
        *,
        predicate: Predicate,
        feedback: Optional[Feedback] = None,
        max_suggests: Optional[int] = None,
        **kwargs: Any,
    ) -> "ProgramBuilder":
        return self.step(
            name, prompt, policy=Policy.SUGGEST, predicate=predicate,
            feedback=feedback, limit=max_suggests, **kwargs,
        )

    def assert_(
        self,
        name: str,
        prompt: Union[str, PromptTemplate],
        *,
        predicate: Predicate,
        feedback: Optional[Feedback] = None,
        max_asserts: Optional[int] = None,
        **kwargs: Any,
    ) -> "ProgramBuilder":
        return self.step(
            name, prompt, policy=Policy.ASSERT, predicate=predicate,
            feedback=feedback, limit=max_asserts, **kwargs,
        )

    def returns(self, *names: str) -> "ProgramBuilder":
        self._returns = tuple(names)
        return self

    def build(self) -> Program:
        return Program(
            name=self.name,
            params=self.params,
            steps=tuple(self._steps),
            provider=self.provider,
            budget=self.budget,
            returns=self._returns,
            defaults=self.defaults,
        )


# ============================================================
# 3. Invocation + execution engine
# ============================================================


class Invocation:
    """Mutable run-time state for one call to a Program."""

    def __init__(self, program: Program, arguments: Dict[str, Any], budget: BudgetConfig) -> None:
        self.program = program
        self.arguments = dict(arguments)
        self.budget = BudgetTracker(budget)
        self.trace = Trace()
        self.stats = Stats()
        self.executed: List[str] = []
        self.bindings: Dict[str, Any] = {}
        self.conversation: List[Message] = []
        self.output: Any = None
        self.error: Optional[BaseException] = None
        self.started_at = time.perf_counter()
        self.elapsed_s = 0.0

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if len(self.executed) == len(self.program.steps):
            return "completed"
        return "running"

    def variables(self) -> Dict[str, Any]:
        return {**self.arguments, **self.bindings}

    def record(self, step: Step, records: Sequence[CallRecord], warned: bool = False) -> None:
        # The per-invocation trace is private to this caller; only the shared
        # program aggregate needs the lock.
        for record in records:
            self.trace.append(record)
            self.stats.add(record)
        if warned:
            self.stats.suggest_warnings += 1
        if step.name not in self.executed and records:
            self.executed.append(step.name)
        self.program.stats.record(records, suggest_warnings=int(warned))

    def bind(self, step: Step, outcome: "StepOutcome") -> None:
        self.bindings[step.name] = outcome.output
        self.conversation = list(outcome.conversation)

    def fail(self, error: BaseException) -> None:
        if isinstance(error, TerminalFailure):
            error.invocation = self
        self.error = error
        self.elapsed_s = time.perf_counter() - self.started_at
        self.program.stats.finished(ok=False)

    def complete(self, output: Any) -> None:
        self.output = output
        self.elapsed_s = time.perf_counter() - self.started_at
        self.program.stats.finished(ok=True)


def invoke(
    program: Program,
    args: Union[Mapping[str, Any], Sequence[Any], None] = None,
    budget_override: Optional[BudgetConfig] = None,
    **overrides: Any,
) -> Tuple[Any, Invocation]:
    """
    Run a Program once and return ``(output, invocation)``.

    ``args`` is either a mapping of parameter names or a positional sequence.
    Steps run in declaration order; the call budget is checked after each
    step, so it never preempts a step's own retry/suggest/assert loop.
    Terminal failures propagate with ``error.invocation`` attached.
    """
    from .controllers import controller_for

    if args is None:
        arguments = program.bind()
    elif isinstance(args, Mapping):
        arguments = program.bind(**args)
    else:
        arguments = program.bind(*args)

    config = (budget_override or program.budget).override(**overrides)
    invocation = Invocation(program, arguments, config)
    program.stats.started()
    logger.debug("Invoking program '%s' with budget %s", program.name, config)

    steps = program.steps
    for index, step in enumerate(steps):
        logger.debug("Step '%s' (%s)", step.name, step.policy.value)
        try:
            messages = step.build_messages(invocation.variables(), invocation.conversation)
            outcome = controller_for(step).run(step, messages, invocation)
        except TerminalFailure as e:
            invocation.record(step, e.records)
            invocation.fail(e)
            logger.info("Program '%s' stopped at step '%s': %s", program.name, step.name, e)
            raise
        except Exception as e:
            invocation.fail(e)
            logger.info("Program '%s' crashed at step '%s': %r", program.name, step.name, e)
            raise

        invocation.record(step, outcome.records, warned=outcome.warned)
        invocation.bind(step, outcome)

        budget = invocation.budget
        steps_left = len(steps) - index - 1
        if budget.exceeded(BudgetKind.CALL) or (steps_left and budget.exhausted(BudgetKind.CALL)):
            error = BudgetExceeded(
                step.name,
                budget.used(BudgetKind.CALL),
                budget.limit(BudgetKind.CALL) or 0,
                conversation=invocation.conversation,
            )
            invocation.fail(error)
            logger.info("Program '%s' over budget after step '%s'", program.name, step.name)
            raise error

    output = program.extract(invocation.bindings)
    invocation.complete(output)
    return output, invocation


def trace(invocation: Invocation) -> Dict[str, Tuple[CallRecord, ...]]:
    """Read-only view of an Invocation's records keyed by step id."""
    return invocation.trace.as_dict()


def stats(invocation: Invocation) -> Stats:
    """Snapshot of an Invocation's counters."""
    return replace(invocation.stats)


@dataclass
class Example:
    """
    One evaluation example.

    - inputs: keyword arguments passed to the Program
    - expected: the reference output handed to the score function
    """

    inputs: Dict[str, Any]
    expected: Any = None

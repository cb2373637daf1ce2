"""Prompt optimization by per-field tree search.

A PromptTemplate is optimized one field at a time. For the field under
search, candidate values are produced by small edits of the current value:

- ParaphraseGenerator: ask a provider to reword the text
- HelpfulPhraseGenerator: insert a reusable phrase ("Think carefully ...")
- ExampleBootstrapGenerator: add worked examples, either bootstrapped from
  training runs that scored well or synthesised by a provider from the
  existing examples
- FlagToggleGenerator: flip a boolean flag

Every candidate is scored by running the Program's forward pass over the
examples and averaging the caller's score function. The search itself is
the generic ``TreeSearch``; only that field changes, all other fields stay
at their committed values. When the field's budget is spent, the candidate
with the best average score is committed and the next field starts.

Example:
    optimizer = TreeSearchOptimizer(provider=provider, per_field_budget=6)
    result = optimizer.optimize(program, train_data, ExactMatch(), step="answer")
    better_program = result.program
"""

from __future__ import annotations

import logging
import math
import random
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union, cast

from .core import Example, Program, ProgramBuilder
from .errors import TerminalFailure
from .eval.scorer import Scorer, ScoreResult
from .llm import Provider, as_provider, completion_text
from .search import Candidate, SearchNode, TreeSearch, best_node
from .template import ExampleTriple, PromptTemplate

logger = logging.getLogger(__name__)

HELPFUL_PHRASES: Tuple[str, ...] = (
    "Take a deep breath and work on this problem step by step.",
    "Read the question carefully before answering.",
    "Be concise and precise.",
    "If the context does not contain the answer, say so.",
    "Double-check your answer before responding.",
)

DEFAULT_FIELD_ORDER: Tuple[str, ...] = (
    "role",
    "task",
    "instructions",
    "examples",
    "motivation",
    "chain_of_thought",
)

_PARAPHRASE_PROMPT = """Rewrite the following text so that it keeps exactly the same meaning but uses different wording.
Return ONLY the rewritten text, with no additional explanation or commentary.

{text}"""

_SYNTHESIZE_PROMPT = """Here are worked examples for a task:

{examples}

Write ONE new, different example for the same task in exactly this format:
Context: <context>
Question: <question>
Answer: <answer>"""

_TRIPLE = re.compile(
    r"Context:\s*(?P<context>.*?)\s*Question:\s*(?P<question>.*?)\s*Answer:\s*(?P<answer>.*)",
    re.DOTALL,
)


# ============================================================
# Candidate generators
# ============================================================


class HelpfulPhraseGenerator:
    """Insert one of a fixed set of reusable phrases."""

    label = "phrase"

    def __init__(self, phrases: Sequence[str] = HELPFUL_PHRASES) -> None:
        self.phrases = tuple(phrases)

    def applies_to(self, name: str, value: Any) -> bool:
        return name in ("role", "task", "motivation", "instructions")

    def __call__(self, name: str, value: Any, rng: random.Random) -> Optional[Any]:
        if name == "instructions":
            unused = [p for p in self.phrases if p not in value]
            if not unused:
                return None
            return tuple(value) + (rng.choice(unused),)
        text = value or ""
        unused = [p for p in self.phrases if p not in text]
        if not unused:
            return None
        phrase = rng.choice(unused)
        return f"{text.rstrip()} {phrase}".strip()


class ParaphraseGenerator:
    """Ask a provider to reword a text field (or one instruction)."""

    label = "paraphrase"

    def __init__(self, provider: Any, **parameters: Any) -> None:
        self.provider = as_provider(provider)
        self.parameters = parameters

    def applies_to(self, name: str, value: Any) -> bool:
        if name == "instructions":
            return bool(value)
        return name in ("role", "task", "motivation") and bool(value)

    def __call__(self, name: str, value: Any, rng: random.Random) -> Optional[Any]:
        if name == "instructions":
            index = rng.randrange(len(value))
            rewritten = self._paraphrase(value[index])
            if not rewritten:
                return None
            items = list(value)
            items[index] = rewritten
            return tuple(items)
        return self._paraphrase(value) or None

    def _paraphrase(self, text: str) -> str:
        prompt = _PARAPHRASE_PROMPT.format(text=text)
        return completion_text(self.provider, prompt, **self.parameters).strip()


class ExampleBootstrapGenerator:
    """
    Grow the examples field.

    Bootstrapped triples (from training runs that scored well) are used
    first; after that, a provider is asked to synthesise a new example from
    the existing ones.
    """

    label = "examples"

    def __init__(self, provider: Optional[Any] = None, pool: Sequence[ExampleTriple] = ()) -> None:
        self.provider = as_provider(provider) if provider is not None else None
        self.pool: List[ExampleTriple] = list(pool)

    def applies_to(self, name: str, value: Any) -> bool:
        return name == "examples" and (bool(self.pool) or (self.provider is not None and bool(value)))

    def __call__(self, name: str, value: Any, rng: random.Random) -> Optional[Any]:
        unused = [t for t in self.pool if t not in value]
        if unused:
            return tuple(value) + (rng.choice(unused),)
        if self.provider is None or not value:
            return None
        triple = self.synthesize(value)
        if triple is None or triple in value:
            return None
        return tuple(value) + (triple,)

    def synthesize(self, examples: Sequence[ExampleTriple]) -> Optional[ExampleTriple]:
        shown = "\n\n".join(
            f"Context: {ex.context}\nQuestion: {ex.question}\nAnswer: {ex.answer}"
            for ex in examples
        )
        text = completion_text(self.provider, _SYNTHESIZE_PROMPT.format(examples=shown))
        match = _TRIPLE.search(text)
        if match is None:
            logger.debug("Could not parse synthesized example: %r", text)
            return None
        return ExampleTriple(
            context=match.group("context").strip(),
            question=match.group("question").strip(),
            answer=match.group("answer").strip(),
        )


class FlagToggleGenerator:
    label = "toggle"

    def applies_to(self, name: str, value: Any) -> bool:
        return isinstance(value, bool)

    def __call__(self, name: str, value: Any, rng: random.Random) -> Optional[Any]:
        return not value


# ============================================================
# Results
# ============================================================


@dataclass
class FieldSearchLog:
    """Search tree and outcome for one optimized field."""

    field_name: str
    root: SearchNode
    rounds: int
    baseline_value: Any
    baseline_score: float
    committed_value: Any
    committed_score: float

    @property
    def changed(self) -> bool:
        return self.committed_value != self.baseline_value

    def candidates(self) -> List[SearchNode]:
        return [n for n in self.root.walk() if n.own_visits]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field_name,
            "rounds": self.rounds,
            "baseline_score": self.baseline_score,
            "committed_score": self.committed_score,
            "changed": self.changed,
            "tree": self.root.to_dict(),
        }


@dataclass
class OptimizationResult:
    template: PromptTemplate
    program: Program
    step: str
    baseline_score: float
    best_score: float
    logs: Dict[str, FieldSearchLog] = field(default_factory=dict)


# ============================================================
# Optimizer
# ============================================================


@dataclass
class TreeSearchOptimizer:
    """Sequential per-field tree search over a PromptTemplate.

    Args:
        provider: Provider used for paraphrasing / example synthesis, and to
            run a bare PromptTemplate when no Program is given.
        per_field_budget: Evaluation rounds per field (default: 8)
        exploration: UCB exploration constant (default: 1.4)
        max_children: Children per search node (default: 3)
        max_depth: Maximum edit depth from the field's baseline (default: 3)
        max_workers: Threads used to run the examples of one round in
            parallel (default: 1)
        failure_score: Score given to an example whose Invocation ends in a
            terminal failure. The default, -inf, ranks any round with a
            failed example below every round without one
        bootstrap_threshold: Minimum example score for a training run to be
            bootstrapped into the examples field (default: 1.0)
        seed: Seed for generator / tie-break randomness
        verbose: Print progress during optimization (default: False)
    """

    provider: Optional[Any] = None
    per_field_budget: int = 8
    exploration: float = 1.4
    max_children: int = 3
    max_depth: int = 3
    max_workers: int = 1
    failure_score: float = -math.inf
    bootstrap_threshold: float = 1.0
    helpful_phrases: Sequence[str] = HELPFUL_PHRASES
    seed: Optional[int] = None
    verbose: bool = False
    generators: Optional[List[Any]] = None

    def __post_init__(self) -> None:
        if self.provider is not None:
            self.provider = as_provider(self.provider)
        self._rng = random.Random(self.seed)

    def optimize(
        self,
        target: Union[Program, PromptTemplate],
        examples: Sequence[Example],
        score_fn: Any,
        field_order: Optional[Sequence[str]] = None,
        per_field_budget: Optional[int] = None,
        step: Optional[str] = None,
    ) -> OptimizationResult:
        """Optimize the template of ``step`` in ``target`` (or a bare template).

        Args:
            target: A Program whose step prompt is a PromptTemplate, or a
                PromptTemplate (run through a one-step Program on ``provider``)
            examples: Evaluation examples
            score_fn: ``(output, expected) -> float`` (any scale, higher is
                better) or a Scorer (scores in [0, 1])
            field_order: Fields to optimize, in order (default: role, task,
                instructions, examples, motivation, chain_of_thought)
            per_field_budget: Overrides the configured rounds per field
            step: Step whose prompt is optimized (default: the only step with
                a PromptTemplate prompt)
        """
        if not examples:
            raise ValueError("optimize() needs at least one example")
        program, step_name = self._resolve(target, examples, step)
        template = cast(PromptTemplate, program.get_step(step_name).prompt)
        budget = per_field_budget or self.per_field_budget
        order = tuple(field_order or DEFAULT_FIELD_ORDER)
        for name in order:
            if name not in PromptTemplate.field_names():
                raise ValueError(f"Unknown PromptTemplate field: {name}")

        scorer = _as_score_fn(score_fn)
        pool: List[ExampleTriple] = []
        baseline_score = self.evaluate(program, examples, scorer, bootstrap=pool)
        generators = self.generators or self._default_generators(pool)

        if self.verbose:
            print(f"Optimizing prompt for step: {step_name}")
            print(f"  Baseline score: {baseline_score:.4f}")

        current = template
        current_score = baseline_score
        logs: Dict[str, FieldSearchLog] = {}

        for name in order:
            log = self._search_field(
                program, step_name, current, current_score, name, examples, scorer, generators, budget
            )
            logs[name] = log
            current = current.with_field(name, log.committed_value)
            current_score = log.committed_score
            logger.info(
                "Field '%s': committed score %.4f (baseline %.4f, changed=%s)",
                name, log.committed_score, log.baseline_score, log.changed,
            )
            if self.verbose:
                status = "changed" if log.changed else "kept"
                print(f"  {name}: score={log.committed_score:.4f} ({status})")

        return OptimizationResult(
            template=current,
            program=program.with_prompt(step_name, current),
            step=step_name,
            baseline_score=baseline_score,
            best_score=current_score,
            logs=logs,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        program: Program,
        examples: Sequence[Example],
        score_fn: Callable[[Any, Example], float],
        bootstrap: Optional[List[ExampleTriple]] = None,
    ) -> float:
        """Mean score of one forward pass over ``examples``."""
        if self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda ex: self._run_example(program, ex, score_fn), examples))
        else:
            results = [self._run_example(program, ex, score_fn) for ex in examples]

        if bootstrap is not None:
            for ex, (output, score) in zip(examples, results):
                if output is not None and score >= self.bootstrap_threshold:
                    bootstrap.append(_triple_from(ex, output))
        return sum(score for _, score in results) / len(results)

    def _run_example(
        self,
        program: Program,
        example: Example,
        score_fn: Callable[[Any, Example], float],
    ) -> Tuple[Any, float]:
        try:
            output, _ = program.invoke(**example.inputs)
        except TerminalFailure as e:
            logger.debug("Example failed during evaluation: %s", e)
            return None, self.failure_score
        return output, score_fn(output, example)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _search_field(
        self,
        program: Program,
        step_name: str,
        template: PromptTemplate,
        template_score: float,
        name: str,
        examples: Sequence[Example],
        score_fn: Callable[[Any, Example], float],
        generators: List[Any],
        budget: int,
    ) -> FieldSearchLog:
        def expand(value: Any, depth: int) -> Optional[Candidate]:
            usable = [g for g in generators if g.applies_to(name, value)]
            self._rng.shuffle(usable)
            for generator in usable:
                try:
                    candidate = generator(name, value, self._rng)
                except Exception as e:  # noqa: BLE001 - one bad candidate never aborts the run
                    logger.warning("Generator %s failed on field '%s': %s", generator.label, name, e)
                    continue
                if candidate is not None:
                    return Candidate(candidate, generator.label)
            return None

        def evaluate(value: Any) -> float:
            candidate = program.with_prompt(step_name, template.with_field(name, value))
            return self.evaluate(candidate, examples, score_fn)

        search = TreeSearch(
            expand_fn=expand,
            evaluate_fn=evaluate,
            budget=budget,
            exploration=self.exploration,
            max_children=self.max_children,
            max_depth=self.max_depth,
            seed=self._rng.randrange(2**32),
        )
        baseline_value = template.get(name)
        root = search.run(baseline_value, prior=template_score)
        best = best_node(root)
        return FieldSearchLog(
            field_name=name,
            root=root,
            rounds=budget,
            baseline_value=baseline_value,
            baseline_score=template_score,
            committed_value=best.value,
            committed_score=best.own_mean if best.own_mean is not None else template_score,
        )

    def _default_generators(self, pool: List[ExampleTriple]) -> List[Any]:
        generators: List[Any] = [
            HelpfulPhraseGenerator(self.helpful_phrases),
            ExampleBootstrapGenerator(self.provider, pool),
            FlagToggleGenerator(),
        ]
        if self.provider is not None:
            generators.append(ParaphraseGenerator(self.provider))
        return generators

    def _resolve(
        self,
        target: Union[Program, PromptTemplate],
        examples: Sequence[Example],
        step: Optional[str],
    ) -> Tuple[Program, str]:
        if isinstance(target, PromptTemplate):
            if self.provider is None:
                raise ValueError("Optimizing a bare PromptTemplate needs a provider")
            params = sorted({k for ex in examples for k in ex.inputs})
            program = (
                ProgramBuilder("template", params=params, provider=self.provider)
                .step("answer", target)
                .build()
            )
            return program, "answer"

        if step is None:
            templated = [s.name for s in target.steps if isinstance(s.prompt, PromptTemplate)]
            if len(templated) != 1:
                raise ValueError(
                    "Pass step= to choose which PromptTemplate to optimize "
                    f"(found {len(templated)})"
                )
            step = templated[0]
        if not isinstance(target.get_step(step).prompt, PromptTemplate):
            raise ValueError(f"Step '{step}' does not use a PromptTemplate")
        return target, step


def _as_score_fn(score_fn: Any) -> Callable[[Any, Example], float]:
    # Plain callables keep their raw scale; only Scorer results live in [0, 1].
    if isinstance(score_fn, Scorer):
        return lambda output, ex: score_fn.score(output, ex.expected, ex.inputs).score
    if not callable(score_fn):
        raise TypeError(f"Not a score function: {score_fn!r}")

    def score(output: Any, example: Example) -> float:
        result = score_fn(output, example.expected)
        if isinstance(result, ScoreResult):
            return result.score
        return float(result)

    return score


def _triple_from(example: Example, output: Any) -> ExampleTriple:
    inputs = example.inputs
    question = inputs.get("question")
    if question is None:
        question = "; ".join(f"{k}={v}" for k, v in inputs.items() if k != "context")
    return ExampleTriple(
        context=str(inputs.get("context", "")),
        question=str(question),
        answer=str(output),
    )


def optimize(
    target: Union[Program, PromptTemplate],
    examples: Sequence[Example],
    score_fn: Any,
    field_order: Optional[Sequence[str]] = None,
    per_field_budget: Optional[int] = None,
    step: Optional[str] = None,
    provider: Optional[Provider] = None,
    **options: Any,
) -> OptimizationResult:
    """Convenience wrapper around ``TreeSearchOptimizer(...).optimize(...)``."""
    optimizer = TreeSearchOptimizer(provider=provider, **options)
    return optimizer.optimize(
        target, examples, score_fn,
        field_order=field_order, per_field_budget=per_field_budget, step=step,
    )

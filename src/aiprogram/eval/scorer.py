"""Scorers used to grade Program outputs during prompt optimization.

Every scorer returns a ScoreResult: a score in [0, 1] plus short feedback
text explaining a miss. The optimizer only reads ``score``; the feedback is
there for reports and for feeding back into suggest/assert steps.

Usage:
    from aiprogram.eval import ExactMatch, NumericDistance, as_scorer

    ExactMatch(strip_whitespace=True).score("Paris ", "Paris").score   # 1.0
    NumericDistance(tolerance=0.5).score("3.2", 3).score               # 1.0

    # plain (output, expected) -> float callables work too
    scorer = as_scorer(lambda out, exp: float(out == exp))
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable


@dataclass
class ScoreResult:
    """Numeric score clamped to [0, 1], feedback text and optional details."""

    score: float
    feedback: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.score = max(0.0, min(1.0, float(self.score)))

    @property
    def passed(self) -> bool:
        return self.score >= 1.0


@runtime_checkable
class Scorer(Protocol):
    def score(
        self,
        output: Any,
        expected: Any,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> ScoreResult:
        """Grade one output against the expected value."""
        ...


class _BatchScoring:
    def score_batch(
        self,
        outputs: Sequence[Any],
        expected: Sequence[Any],
        inputs: Optional[Sequence[Optional[Dict[str, Any]]]] = None,
    ) -> List[ScoreResult]:
        rows = inputs if inputs is not None else [None] * len(outputs)
        return [self.score(o, e, i) for o, e, i in zip(outputs, expected, rows)]  # type: ignore[attr-defined]


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class ExactMatch(_BatchScoring):
    """1.0 when the normalised texts are equal, else 0.0."""

    case_sensitive: bool = True
    strip_whitespace: bool = False

    def _normalise(self, value: Any) -> str:
        text = _text(value)
        if self.strip_whitespace:
            text = text.strip()
        return text if self.case_sensitive else text.lower()

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        if self._normalise(output) == self._normalise(expected):
            return ScoreResult(1.0)
        out, exp = _text(output), _text(expected)
        if max(len(out), len(exp)) > 100:
            return ScoreResult(0.0, f"Answer differs from the reference ({len(out)} vs {len(exp)} chars)")
        return ScoreResult(0.0, f"Expected '{exp}' but got '{out}'")


@dataclass
class ContainsMatch(_BatchScoring):
    """1.0 when the expected text occurs inside the output."""

    case_sensitive: bool = False

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        out, exp = _text(output), _text(expected)
        if not self.case_sensitive:
            out, exp = out.lower(), exp.lower()
        if exp in out:
            return ScoreResult(1.0)
        return ScoreResult(0.0, f"Answer does not mention '{expected}'")


_NUMBER = re.compile(r"[-+]?\d*\.?\d+(?:[eE][-+]?\d+)?")


@dataclass
class NumericDistance(_BatchScoring):
    """
    Closeness of two numbers.

    Within ``tolerance`` scores 1.0; beyond it the score falls linearly to 0
    at ``max_distance`` (default ``|expected| + 1``). Text outputs are
    searched for their first number, since model answers often wrap it.
    """

    tolerance: float = 0.01
    max_distance: Optional[float] = None

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        try:
            exp_val = float(expected)
            out_val = _as_number(output)
        except (TypeError, ValueError) as e:
            return ScoreResult(0.0, f"Not a number: {e}", {"error": str(e)})

        diff = abs(out_val - exp_val)
        if diff <= self.tolerance:
            return ScoreResult(1.0, details={"diff": diff})
        limit = self.max_distance or (abs(exp_val) + 1.0)
        return ScoreResult(
            1.0 - diff / limit,
            f"Off by {diff:.4f} (expected {exp_val}, got {out_val})",
            {"diff": diff},
        )


def _as_number(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER.search(_text(value))
    if match is None:
        raise ValueError(f"no number in {value!r}")
    return float(match.group())


@dataclass
class RegexMatch(_BatchScoring):
    """Match a fixed ``pattern``, or treat ``expected`` as the pattern."""

    pattern: Optional[str] = None
    flags: int = re.IGNORECASE
    full_match: bool = False

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        pattern = self.pattern or _text(expected)
        matcher = re.fullmatch if self.full_match else re.search
        try:
            match = matcher(pattern, _text(output), self.flags)
        except re.error as e:
            return ScoreResult(0.0, f"Invalid regex pattern: {e}", {"error": str(e)})
        if match is None:
            return ScoreResult(0.0, f"Pattern '{pattern}' not found in answer")
        return ScoreResult(1.0, details={"match": match.group()})


@dataclass
class PredicateScorer(_BatchScoring):
    """
    Reuse a step predicate as a scorer: 1.0 when ``predicate(output)`` holds.

    A predicate that raises scores 0.0, the same way a crashing check counts
    as unsatisfied inside a suggest/assert step.
    """

    predicate: Callable[[Any], bool]
    feedback: str = "Answer did not pass the check"

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        try:
            ok = bool(self.predicate(output))
        except Exception as e:  # noqa: BLE001
            return ScoreResult(0.0, f"{self.feedback}: {e}", {"error": str(e)})
        return ScoreResult(1.0) if ok else ScoreResult(0.0, self.feedback)


@dataclass
class FunctionScorer(_BatchScoring):
    """Adapt ``fn(output, expected) -> float | bool | ScoreResult``."""

    fn: Callable[[Any, Any], Any]

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        result = self.fn(output, expected)
        if isinstance(result, ScoreResult):
            return result
        return ScoreResult(float(result))


@dataclass
class CompositeScorer(_BatchScoring):
    """Weighted mean of several scorers; feedback from each miss is joined."""

    scorers: List[Tuple[Any, float]]

    def score(self, output: Any, expected: Any, inputs: Optional[Dict[str, Any]] = None) -> ScoreResult:
        if not self.scorers:
            return ScoreResult(1.0)
        total_weight = sum(w for _, w in self.scorers)
        weighted = 0.0
        parts: List[str] = []
        individual: List[Dict[str, Any]] = []
        for scorer, weight in self.scorers:
            result = scorer.score(output, expected, inputs)
            weighted += result.score * weight
            individual.append({"scorer": type(scorer).__name__, "score": result.score, "weight": weight})
            if result.feedback:
                parts.append(f"[{type(scorer).__name__}] {result.feedback}")
        return ScoreResult(
            weighted / total_weight if total_weight > 0 else 0.0,
            " | ".join(parts),
            {"individual_scores": individual},
        )


def as_scorer(obj: Any) -> Scorer:
    """Accept a Scorer or a plain ``(output, expected)`` callable."""
    if isinstance(obj, Scorer):
        return obj
    if callable(obj):
        return FunctionScorer(obj)
    raise TypeError(f"Not a scorer: {obj!r}")

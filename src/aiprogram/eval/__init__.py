"""Scorers for grading Program outputs.

Usage:
    from aiprogram.eval import ContainsMatch, ExactMatch

    result = ExactMatch().score(output="hello", expected="hello")
    result.score     # 1.0
    result.feedback  # ""
"""

from .scorer import (
    CompositeScorer,
    ContainsMatch,
    ExactMatch,
    FunctionScorer,
    NumericDistance,
    PredicateScorer,
    RegexMatch,
    ScoreResult,
    Scorer,
    as_scorer,
)

__all__ = [
    # Core types
    "ScoreResult",
    "Scorer",
    "as_scorer",
    # Built-in scorers
    "ExactMatch",
    "ContainsMatch",
    "NumericDistance",
    "RegexMatch",
    "PredicateScorer",
    "FunctionScorer",
    "CompositeScorer",
]

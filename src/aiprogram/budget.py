"""Budget configuration and per-Invocation accounting."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Optional


class BudgetKind(str, Enum):
    """What a single charge is spent on."""

    CALL = "call"
    RETRY = "retry"
    SUGGEST = "suggest"
    ASSERT = "assert"


@dataclass(frozen=True)
class BudgetConfig:
    """Limits for one Invocation.

    Attributes:
        max_retries: Extra attempts after a hard provider failure.
        max_suggests: Total predicate-checked attempts for a suggest step.
        max_asserts: Total predicate-checked attempts for an assert step.
        max_total_calls: Provider calls allowed across the whole Invocation
            (None = unlimited).
    """

    max_retries: int = 2
    max_suggests: int = 3
    max_asserts: int = 3
    max_total_calls: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("max_retries", "max_suggests", "max_asserts"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_suggests < 1 or self.max_asserts < 1:
            raise ValueError("max_suggests and max_asserts must be >= 1")
        if self.max_total_calls is not None and self.max_total_calls < 1:
            raise ValueError("max_total_calls must be >= 1")

    @classmethod
    def keys(cls) -> frozenset:
        return frozenset(f.name for f in fields(cls))

    def override(self, **overrides: Any) -> "BudgetConfig":
        """Return a copy with the non-None overrides applied."""
        unknown = set(overrides) - self.keys()
        if unknown:
            raise TypeError(f"Unknown budget keys: {sorted(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self


class BudgetTracker:
    """Cumulative counters for one Invocation.

    Only CALL has a cumulative ceiling; the other kinds are counted so the
    controllers and Stats can report them. Checks may lag by one completed
    call: the engine inspects the tracker after a step, not before each
    sub-attempt.
    """

    def __init__(self, config: BudgetConfig) -> None:
        self.config = config
        self._counts: Dict[BudgetKind, int] = {kind: 0 for kind in BudgetKind}

    def limit(self, kind: BudgetKind) -> Optional[int]:
        if kind is BudgetKind.CALL:
            return self.config.max_total_calls
        return None

    def charge(self, kind: BudgetKind, amount: int = 1) -> bool:
        """Record usage. Returns False once the counter is past its limit."""
        self._counts[kind] += amount
        return not self.exceeded(kind)

    def used(self, kind: BudgetKind) -> int:
        return self._counts[kind]

    def remaining(self, kind: BudgetKind) -> Optional[int]:
        limit = self.limit(kind)
        if limit is None:
            return None
        return max(limit - self._counts[kind], 0)

    def exceeded(self, kind: BudgetKind) -> bool:
        limit = self.limit(kind)
        return limit is not None and self._counts[kind] > limit

    def exhausted(self, kind: BudgetKind) -> bool:
        """True when no further charge of this kind would fit."""
        limit = self.limit(kind)
        return limit is not None and self._counts[kind] >= limit

    def snapshot(self) -> Dict[str, int]:
        return {kind.value: count for kind, count in self._counts.items()}

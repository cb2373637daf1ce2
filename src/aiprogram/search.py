"""Generic Monte-Carlo-flavoured tree search over discrete candidates.

The search knows nothing about prompts. It is parameterised by:

- expand_fn(value, depth) -> Optional[candidate]: propose a child of a node
  (None when the generator has nothing new to offer)
- evaluate_fn(value) -> float: external score, higher is better
- budget: number of evaluation rounds

Each round selects a node by walking down from the root with UCB1, expands
it when it still has room for children, evaluates the chosen node and
backpropagates the score to every ancestor. Every node keeps two running
averages: ``mean`` over its whole subtree (drives selection) and
``own_mean`` over evaluations of its own value (drives the final choice).
The root is the baseline and is always evaluated first (or seeded with a
known score), so the committed candidate never scores below the
baseline's first evaluation.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterator, List, Optional, Set


@dataclass(eq=False)
class SearchNode:
    value: Any
    parent: Optional["SearchNode"] = None
    depth: int = 0
    label: str = "baseline"
    children: List["SearchNode"] = field(default_factory=list)
    visits: int = 0
    total_score: float = 0.0
    own_visits: int = 0
    own_total: float = 0.0
    # Set once the expand function stops producing new children.
    exhausted: bool = False

    @property
    def mean(self) -> float:
        return self.total_score / self.visits if self.visits else 0.0

    @property
    def own_mean(self) -> Optional[float]:
        return self.own_total / self.own_visits if self.own_visits else None

    def ucb(self, exploration: float) -> float:
        if self.visits == 0 or self.parent is None:
            return math.inf
        return self.mean + exploration * math.sqrt(math.log(self.parent.visits) / self.visits)

    def add_child(self, value: Any, label: str) -> "SearchNode":
        child = SearchNode(value=value, parent=self, depth=self.depth + 1, label=label)
        self.children.append(child)
        return child

    def walk(self) -> Iterator["SearchNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "value": self.value,
            "depth": self.depth,
            "visits": self.visits,
            "mean": self.mean,
            "own_visits": self.own_visits,
            "own_mean": self.own_mean,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class Candidate:
    """What an expand function returns: a value plus a short label for logs."""

    value: Any
    label: str = ""


def _key(value: Any) -> Hashable:
    try:
        hash(value)
        return value
    except TypeError:
        return repr(value)


@dataclass
class TreeSearch:
    expand_fn: Callable[[Any, int], Optional[Candidate]]
    evaluate_fn: Callable[[Any], float]
    budget: int = 8
    exploration: float = 1.4
    max_children: int = 3
    max_depth: int = 3
    expand_tries: int = 3
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.budget < 1:
            raise ValueError("budget must be >= 1")
        self._rng = random.Random(self.seed)

    def run(self, baseline: Any, prior: Optional[float] = None) -> SearchNode:
        """Search from ``baseline`` and return the root of the tree.

        ``prior`` is an already known score for the baseline. It is recorded
        as the root's first evaluation without spending a round.
        """
        root = SearchNode(value=baseline)
        seen: Set[Hashable] = {_key(baseline)}
        if prior is not None:
            self.backpropagate(root, prior)
        for _ in range(self.budget):
            node = self.select(root)
            if node.own_visits > 0:
                node = self.expand(node, seen) or node
            score = self.evaluate_fn(node.value)
            self.backpropagate(node, score)
        return root

    def select(self, root: SearchNode) -> SearchNode:
        node = root
        while node.children and self._fully_expanded(node):
            best = max(c.ucb(self.exploration) for c in node.children)
            ties = [c for c in node.children if c.ucb(self.exploration) == best]
            node = self._rng.choice(ties)
        return node

    def expand(self, node: SearchNode, seen: Set[Hashable]) -> Optional[SearchNode]:
        if self._fully_expanded(node):
            return None
        for _ in range(self.expand_tries):
            candidate = self.expand_fn(node.value, node.depth)
            if candidate is None:
                break
            key = _key(candidate.value)
            if key in seen:
                continue
            seen.add(key)
            return node.add_child(candidate.value, candidate.label or "candidate")
        node.exhausted = True
        return None

    def backpropagate(self, node: SearchNode, score: float) -> None:
        node.own_visits += 1
        node.own_total += score
        current: Optional[SearchNode] = node
        while current is not None:
            current.visits += 1
            current.total_score += score
            current = current.parent

    def _fully_expanded(self, node: SearchNode) -> bool:
        return (
            node.exhausted
            or node.depth >= self.max_depth
            or len(node.children) >= self.max_children
        )


def best_node(root: SearchNode) -> SearchNode:
    """Highest own-mean node; earlier (shallower) nodes win ties."""
    best = root
    for node in root.walk():
        if node.own_mean is None:
            continue
        if best.own_mean is None or node.own_mean > best.own_mean:
            best = node
    return best

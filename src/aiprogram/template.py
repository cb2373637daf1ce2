"""Structured prompt templates.

A PromptTemplate keeps a prompt as independent fields so that each field
can be searched over on its own (see ``aiprogram.prompt``). Compiling a
template to text is a pure function of its fields:

    template = PromptTemplate(
        role="You are a careful geography tutor.",
        task="Answer the user's question using the context.",
        instructions=("Answer in one word.",),
        placeholder_context=True,
        placeholder_user_question=True,
    )
    text = compile_template(template)
    prompt = render(text, {"context": "...", "question": "..."})
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Tuple

CONTEXT_PLACEHOLDER = "{{context}}"
QUESTION_PLACEHOLDER = "{{question}}"
CHAIN_OF_THOUGHT_TEXT = "Think step by step before giving your final answer."

_MARKER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class ExampleTriple:
    """One worked example shown in the prompt."""

    context: str
    question: str
    answer: str


@dataclass(frozen=True)
class PromptTemplate:
    role: str = ""
    task: str = ""
    instructions: Tuple[str, ...] = ()
    examples: Tuple[ExampleTriple, ...] = ()
    motivation: Optional[str] = None
    chain_of_thought: bool = False
    placeholder_context: bool = False
    placeholder_user_question: bool = False

    def __post_init__(self) -> None:
        # Accept lists and plain tuples; store immutable sequences.
        object.__setattr__(self, "instructions", tuple(self.instructions))
        object.__setattr__(
            self,
            "examples",
            tuple(
                ex if isinstance(ex, ExampleTriple) else ExampleTriple(*ex)
                for ex in self.examples
            ),
        )

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def get(self, name: str) -> Any:
        if name not in self.field_names():
            raise KeyError(f"Unknown PromptTemplate field: {name}")
        return getattr(self, name)

    def with_field(self, name: str, value: Any) -> "PromptTemplate":
        """Return a new template with a single field replaced."""
        if name not in self.field_names():
            raise KeyError(f"Unknown PromptTemplate field: {name}")
        return replace(self, **{name: value})

    def compile(self) -> str:
        return compile_template(self)

    def __str__(self) -> str:
        return compile_template(self)


def compile_template(template: PromptTemplate) -> str:
    """Render the structured fields to final prompt text."""
    sections = []
    if template.role:
        sections.append(template.role.strip())
    if template.task:
        sections.append(template.task.strip())
    if template.motivation:
        sections.append(f"Why this matters: {template.motivation.strip()}")
    if template.instructions:
        lines = ["Instructions:"]
        lines.extend(f"- {item.strip()}" for item in template.instructions)
        sections.append("\n".join(lines))
    if template.examples:
        blocks = ["Examples:"]
        for i, ex in enumerate(template.examples, start=1):
            blocks.append(
                f"Example {i}\n"
                f"Context: {ex.context}\n"
                f"Question: {ex.question}\n"
                f"Answer: {ex.answer}"
            )
        sections.append("\n\n".join(blocks))
    if template.chain_of_thought:
        sections.append(CHAIN_OF_THOUGHT_TEXT)
    if template.placeholder_context:
        sections.append(f"Context:\n{CONTEXT_PLACEHOLDER}")
    if template.placeholder_user_question:
        sections.append(f"Question:\n{QUESTION_PLACEHOLDER}")
    return "\n\n".join(sections)


def render(text: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` markers with values; unknown markers stay as-is."""

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _MARKER.sub(_sub, text)


def placeholders(text: str) -> Tuple[str, ...]:
    """Names of the ``{{name}}`` markers in order of first appearance."""
    seen = []
    for match in _MARKER.finditer(text):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return tuple(seen)

import pytest

from aiprogram import ExampleTriple, PromptTemplate, compile_template, render
from aiprogram.template import CHAIN_OF_THOUGHT_TEXT, placeholders


def test_empty_template_compiles_to_empty_text():
    assert compile_template(PromptTemplate()) == ""


def test_sections_in_order():
    template = PromptTemplate(
        role="You are a tutor.",
        task="Answer the question.",
        motivation="Students rely on it.",
        instructions=["Be brief.", "Cite the context."],
        examples=[("Sky", "Colour?", "Blue")],
        chain_of_thought=True,
        placeholder_context=True,
        placeholder_user_question=True,
    )
    assert template.compile() == "\n\n".join(
        [
            "You are a tutor.",
            "Answer the question.",
            "Why this matters: Students rely on it.",
            "Instructions:\n- Be brief.\n- Cite the context.",
            "Examples:\n\nExample 1\nContext: Sky\nQuestion: Colour?\nAnswer: Blue",
            CHAIN_OF_THOUGHT_TEXT,
            "Context:\n{{context}}",
            "Question:\n{{question}}",
        ]
    )


def test_sequences_are_normalised():
    template = PromptTemplate(instructions=["a"], examples=[("c", "q", "a")])
    assert template.instructions == ("a",)
    assert template.examples == (ExampleTriple("c", "q", "a"),)
    hash(template)


def test_with_field_is_immutable_update():
    template = PromptTemplate(task="old")
    updated = template.with_field("task", "new")
    assert template.task == "old"
    assert updated.task == "new"
    assert updated.get("task") == "new"
    with pytest.raises(KeyError):
        template.with_field("nope", 1)


def test_str_is_compiled_text():
    template = PromptTemplate(role="r", task="t")
    assert str(template) == "r\n\nt"


class TestRender:
    def test_substitutes_known_names(self):
        assert render("{{a}} and {{ b }}", {"a": 1, "b": "two"}) == "1 and two"

    def test_unknown_markers_stay(self):
        assert render("{{a}} {{missing}}", {"a": "x"}) == "x {{missing}}"

    def test_single_braces_untouched(self):
        assert render('{"json": {a}}', {"a": 1}) == '{"json": {a}}'

    def test_placeholders(self):
        assert placeholders("{{b}} {{a}} {{b}}") == ("b", "a")

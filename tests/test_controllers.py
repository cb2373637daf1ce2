"""Tests for the retry / suggest / assert controllers."""

import warnings

import pytest

from aiprogram import (
    AssertExhausted,
    BudgetConfig,
    BudgetKind,
    CallFailure,
    FunctionProvider,
    ProgramBuilder,
    RetriesExhausted,
    SuggestExhausted,
    controller_for,
    AssertController,
    RetryController,
    SuggestController,
)


def _kinds(records):
    return [r.kind for r in records]


class TestRetry:
    @pytest.mark.parametrize("failures", [0, 1, 2])
    def test_recovers_after_failures(self, scripted, failures):
        errors = [RuntimeError("503"), TimeoutError("slow")][:failures]
        provider = scripted(*errors, "ok")
        program = ProgramBuilder("p", provider=provider).retry("a", "x", max_retries=2).build()

        output, inv = program.invoke()

        assert output == "ok"
        records = inv.trace["a"]
        assert [r.attempt for r in records] == list(range(1, failures + 2))
        assert _kinds(records) == [BudgetKind.CALL] + [BudgetKind.RETRY] * failures
        assert [r.success for r in records] == [False] * failures + [True]
        assert inv.stats.total_retries == failures
        assert inv.stats.failed_calls == failures

    def test_retries_resend_the_same_messages(self, scripted):
        provider = scripted(RuntimeError("x"), "ok")
        program = ProgramBuilder("p", ["q"], provider=provider).retry("a", "{{q}}").build()
        program(q="same")
        assert provider.calls[0] == provider.calls[1]

    def test_exhaustion_is_terminal(self, scripted):
        provider = scripted(RuntimeError("down"))
        program = (
            ProgramBuilder("p", provider=provider)
            .retry("a", "x", max_retries=1)
            .step("b", "never")
            .build()
        )
        with pytest.raises(RetriesExhausted) as excinfo:
            program()
        error = excinfo.value
        assert error.step_id == "a"
        assert error.attempts == 2
        assert isinstance(error.cause, RuntimeError)
        assert len(error.invocation.trace["a"]) == 2
        assert "b" not in error.invocation.trace
        assert provider.call_count == 2

    def test_budget_default_applies_without_step_limit(self, scripted):
        provider = scripted(RuntimeError("down"))
        program = (
            ProgramBuilder("p", provider=provider, budget=BudgetConfig(max_retries=3))
            .retry("a", "x")
            .build()
        )
        with pytest.raises(RetriesExhausted):
            program()
        assert provider.call_count == 4

    def test_parse_error_counts_as_failed_call(self, scripted):
        provider = scripted("not a number", "7")
        program = ProgramBuilder("p", provider=provider).retry("n", "x", parse=int).build()
        output, inv = program.invoke()
        assert output == 7
        assert isinstance(inv.trace["n"][0].error, ValueError)

    def test_malformed_reply_is_retried(self):
        replies = iter([42, "ok"])
        provider = FunctionProvider(lambda messages: next(replies))
        program = ProgramBuilder("p", provider=provider).retry("a", "x").build()
        output, inv = program.invoke()
        assert output == "ok"
        assert isinstance(inv.trace["a"][0].error, CallFailure)

    def test_none_policy_ignores_predicate(self, scripted):
        provider = scripted("whatever")
        program = (
            ProgramBuilder("p", provider=provider)
            .step("a", "x", predicate=lambda out: False)
            .build()
        )
        _, inv = program.invoke()
        assert inv.trace["a"][0].predicate_passed is None


class TestSuggest:
    def test_degrades_to_warning(self, scripted):
        provider = scripted("bad one", "bad two", "next step")
        program = (
            ProgramBuilder("p", provider=provider)
            .suggest("a", "x", predicate=lambda out: out == "good", max_suggests=2)
            .step("b", "{{a}}")
            .build()
        )

        with pytest.warns(SuggestExhausted, match="after 2 attempt"):
            output, inv = program.invoke()

        assert inv.bindings["a"] == "bad two"
        assert output == "next step"
        records = inv.trace["a"]
        assert len(records) == 2
        assert _kinds(records) == [BudgetKind.CALL, BudgetKind.SUGGEST]
        assert [r.predicate_passed for r in records] == [False, False]
        assert inv.stats.suggest_warnings == 1
        assert inv.stats.suggest_retries == 1
        assert program.stats.snapshot().suggest_warnings == 1

    def test_feedback_is_injected(self, scripted):
        provider = scripted("bad", "good")
        program = (
            ProgramBuilder("p", provider=provider)
            .suggest(
                "a", "x",
                predicate=lambda out: out == "good",
                feedback="'{{output}}' is wrong, try harder",
            )
            .build()
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            output, inv = program.invoke()

        assert output == "good"
        assert len(inv.trace["a"]) == 2
        assert inv.stats.suggest_warnings == 0

        second = provider.calls[1]
        assert [m["role"] for m in second] == ["user", "assistant", "user"]
        assert second[1]["content"] == "bad"
        assert second[2]["content"] == "'bad' is wrong, try harder"

    def test_callable_feedback(self, scripted):
        seen = []

        def feedback(output, conversation):
            seen.append((output, len(conversation)))
            return f"not {output}"

        provider = scripted("one", "two")
        program = (
            ProgramBuilder("p", provider=provider)
            .suggest("a", "x", predicate=lambda out: out == "two", feedback=feedback)
            .build()
        )
        assert program() == "two"
        assert seen == [("one", 2)]
        assert provider.calls[1][-1]["content"] == "not one"

    def test_default_feedback(self, scripted):
        provider = scripted("a", "b")
        program = (
            ProgramBuilder("p", provider=provider)
            .suggest("s", "x", predicate=lambda out: out == "b")
            .build()
        )
        program()
        assert provider.calls[1][-1]["content"] == (
            "Your previous answer did not pass the check. Please try again."
        )

    def test_raising_feedback_falls_back_to_default(self, scripted):
        def feedback(output, conversation):
            raise RuntimeError("bad feedback template")

        provider = scripted("no", "yes")
        program = (
            ProgramBuilder("p", provider=provider)
            .assert_("a", "x", predicate=lambda out: out == "yes", feedback=feedback)
            .build()
        )
        output, inv = program.invoke()

        assert output == "yes"
        assert len(inv.trace["a"]) == 2
        assert provider.calls[1][-1]["content"] == (
            "Your previous answer did not pass the check. Please try again."
        )
        assert program.stats.completed == 1
        assert program.stats.failed == 0

    def test_raising_predicate_counts_as_unsatisfied(self, scripted):
        def predicate(out):
            if out == "boom":
                raise KeyError("missing")
            return True

        provider = scripted("boom", "fine")
        program = (
            ProgramBuilder("p", provider=provider)
            .suggest("a", "x", predicate=predicate)
            .build()
        )
        output, inv = program.invoke()
        assert output == "fine"
        first = inv.trace["a"][0]
        assert first.success is True
        assert first.predicate_passed is False
        assert isinstance(first.error, KeyError)
        assert "missing" in provider.calls[1][-1]["content"]

    def test_budget_config_limit(self, scripted):
        provider = scripted("bad")
        program = (
            ProgramBuilder("p", provider=provider, budget=BudgetConfig(max_suggests=4))
            .suggest("a", "x", predicate=lambda out: False)
            .build()
        )
        with pytest.warns(SuggestExhausted):
            program()
        assert provider.call_count == 4


class TestAssert:
    def test_exhaustion_stops_invocation(self, scripted):
        provider = scripted("no")
        program = (
            ProgramBuilder("p", provider=provider)
            .assert_("a", "x", predicate=lambda out: out == "yes", max_asserts=3)
            .step("b", "never")
            .build()
        )
        with pytest.raises(AssertExhausted) as excinfo:
            program()

        error = excinfo.value
        assert error.step_id == "a"
        assert error.attempts == 3
        inv = error.invocation
        assert inv.status == "failed"
        assert len(inv.trace["a"]) == 3
        assert "b" not in inv.trace
        assert inv.stats.assert_failures == 3
        assert inv.stats.assert_retries == 2
        assert error.conversation[-1]["content"] == "no"

    def test_passes_on_first_try(self, scripted):
        provider = scripted("yes")
        program = (
            ProgramBuilder("p", provider=provider)
            .assert_("a", "x", predicate=lambda out: out == "yes")
            .build()
        )
        output, inv = program.invoke()
        assert output == "yes"
        assert len(inv.trace["a"]) == 1
        assert inv.trace["a"][0].predicate_passed is True

    def test_hard_failure_inside_attempt_uses_retry_budget(self, scripted):
        provider = scripted(ConnectionError("reset"), "yes")
        program = (
            ProgramBuilder("p", provider=provider)
            .assert_("a", "x", predicate=lambda out: out == "yes")
            .build()
        )
        output, inv = program.invoke()
        assert output == "yes"
        assert _kinds(inv.trace["a"]) == [BudgetKind.CALL, BudgetKind.RETRY]
        assert inv.budget.used(BudgetKind.RETRY) == 1
        assert inv.budget.used(BudgetKind.ASSERT) == 0

    def test_retries_exhausted_inside_assert(self, scripted):
        provider = scripted(ConnectionError("reset"))
        program = (
            ProgramBuilder("p", provider=provider, budget=BudgetConfig(max_retries=1))
            .assert_("a", "x", predicate=lambda out: True)
            .build()
        )
        with pytest.raises(RetriesExhausted):
            program()
        assert provider.call_count == 2


def test_controller_for_policy(echo):
    program = (
        ProgramBuilder("p", provider=echo)
        .step("n", "x")
        .retry("r", "x")
        .suggest("s", "x", predicate=bool)
        .assert_("a", "x", predicate=bool)
        .build()
    )
    kinds = [type(controller_for(step)) for step in program.steps]
    assert kinds == [RetryController, RetryController, SuggestController, AssertController]

"""Tests for the retry policy state machine."""

from arbiter.models import Deficiency, FailureReason, Verdict
from arbiter.retry import (
    QualityTrigger,
    RetryActionKind,
    RetryState,
    RetryTier,
    RetryTransform,
    ToolErrorType,
    ToolFailureTrigger,
    ValidationTrigger,
    compute_retry_transition,
    create_retry_state,
    is_retryable,
    remaining_attempts,
    remaining_seconds,
    select_alternative_tool,
    should_escalate,
    split_task_description,
)


def _step(state, trigger, now=0.0, **kwargs):
    return compute_retry_transition(state, trigger, now=now, **kwargs)


RETRY = QualityTrigger(Verdict.RETRY)


# ---------------------------------------------------------------------------
# Ladder
# ---------------------------------------------------------------------------


class TestLadder:
    def test_accept_is_a_no_op(self):
        state = create_retry_state()
        t = _step(state, QualityTrigger(Verdict.ACCEPT, score=0.9))
        assert t.action.kind == RetryActionKind.NONE
        assert t.state is state

    def test_climbs_every_tier_then_aborts(self):
        state = create_retry_state()
        seen = []
        for i in range(8):
            t = _step(state, RETRY, now=float(i))
            assert t.action.kind == RetryActionKind.RETRY
            seen.append((t.state.tier, t.action.transform))
            state = t.state
        assert seen == [
            (RetryTier.RETRY_SAME, RetryTransform.RESTATE_CONSTRAINTS),
            (RetryTier.RETRY_SAME, RetryTransform.RESTATE_CONSTRAINTS),
            (RetryTier.RETRY_SIMPLIFIED, RetryTransform.REDUCE_CONTEXT),
            (RetryTier.RETRY_SIMPLIFIED, RetryTransform.REDUCE_CONTEXT),
            (RetryTier.RETRY_DECOMPOSED, RetryTransform.SPLIT_TASK),
            (RetryTier.RETRY_DECOMPOSED, RetryTransform.SPLIT_TASK),
            (RetryTier.RETRY_ALTERNATIVE, RetryTransform.RESTATE_CONSTRAINTS),
            (RetryTier.RETRY_ALTERNATIVE, RetryTransform.RESTATE_CONSTRAINTS),
        ]
        t = _step(state, RETRY, now=9.0)
        assert t.action.kind == RetryActionKind.ABORT
        assert t.action.reason == FailureReason.MAX_TIERS_EXCEEDED
        assert t.state.tier == RetryTier.EXHAUSTED

    def test_attempt_count_never_decreases(self):
        state = create_retry_state()
        counts = []
        for i in range(5):
            state = _step(state, RETRY, now=float(i)).state
            counts.append(state.total_attempts)
        assert counts == [1, 2, 3, 4, 5]
        assert len(state.history) == 5

    def test_reduce_context_targets_half_the_budget(self):
        state = RetryState(tier=RetryTier.RETRY_SAME, tier_attempts=2, start_time=0.0)
        t = _step(state, RETRY, context_budget=1000)
        assert t.action.target_tokens == 500

    def test_decomposed_uses_task_steps(self):
        state = RetryState(tier=RetryTier.RETRY_SIMPLIFIED, tier_attempts=2, start_time=0.0)
        t = _step(
            state, RETRY, task_description="First, read the file. Then, fix the bug"
        )
        assert t.action.subtasks == ("read the file", "fix the bug")

    def test_decomposed_default_subtasks(self):
        state = RetryState(tier=RetryTier.RETRY_SIMPLIFIED, tier_attempts=2, start_time=0.0)
        t = _step(state, RETRY, task_description="fix it")
        assert len(t.action.subtasks) == 3


# ---------------------------------------------------------------------------
# Repetition and verdict rules
# ---------------------------------------------------------------------------


class TestRepetition:
    def test_identical_deficiencies_escalate_on_third(self):
        trigger = QualityTrigger(Verdict.RETRY, frozenset({Deficiency.QUERY_MISMATCH}))
        state = create_retry_state()

        t1 = _step(state, trigger, now=0.0)
        assert (t1.state.tier, t1.action.transform) == (
            RetryTier.RETRY_SAME,
            RetryTransform.RESTATE_CONSTRAINTS,
        )
        assert "QUERY_MISMATCH" in t1.action.instructions

        t2 = _step(t1.state, trigger, now=1.0)
        assert (t2.state.tier, t2.action.transform) == (
            RetryTier.RETRY_SIMPLIFIED,
            RetryTransform.REDUCE_CONTEXT,
        )

        t3 = _step(t2.state, trigger, now=2.0)
        assert t3.action.kind == RetryActionKind.ESCALATE
        assert t3.action.reason == FailureReason.ESCALATED
        assert t3.action.question
        assert t3.action.suggested_actions

    def test_changing_deficiencies_do_not_escalate(self):
        state = create_retry_state()
        for i, tag in enumerate([Deficiency.TRUNCATED, Deficiency.QUERY_MISMATCH] * 2):
            t = _step(state, QualityTrigger(Verdict.RETRY, frozenset({tag})), now=float(i))
            assert t.action.kind == RetryActionKind.RETRY
            state = t.state

    def test_abort_twice_aborts(self):
        state = create_retry_state()
        t1 = _step(state, QualityTrigger(Verdict.ABORT), now=0.0)
        assert t1.action.kind == RetryActionKind.RETRY
        t2 = _step(t1.state, QualityTrigger(Verdict.ABORT), now=1.0)
        assert t2.action.kind == RetryActionKind.ABORT
        assert t2.action.reason == FailureReason.QUALITY_ABORT

    def test_low_verdicts_twice_escalate(self):
        state = create_retry_state()
        t1 = _step(state, QualityTrigger(Verdict.ESCALATE), now=0.0)
        t2 = _step(t1.state, QualityTrigger(Verdict.ABORT), now=1.0)
        assert t2.action.kind == RetryActionKind.ESCALATE


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


class TestBudgets:
    def test_max_attempts(self):
        state = create_retry_state(max_total_attempts=2, max_per_tier=10)
        state = _step(state, RETRY, now=0.0).state
        state = _step(state, RETRY, now=1.0).state
        t = _step(state, RETRY, now=2.0)
        assert t.action.kind == RetryActionKind.ABORT
        assert t.action.reason == FailureReason.MAX_ATTEMPTS_EXCEEDED

    def test_time_budget_starts_at_first_rejection(self):
        state = create_retry_state(time_budget=60)
        t1 = _step(state, RETRY, now=100.0)
        assert t1.state.start_time == 100.0
        t2 = _step(t1.state, RETRY, now=161.0)
        assert t2.action.kind == RetryActionKind.ABORT
        assert t2.action.reason == FailureReason.TIME_BUDGET_EXCEEDED

    def test_remaining(self):
        state = create_retry_state(time_budget=60)
        assert is_retryable(state)
        state = _step(state, RETRY, now=10.0).state
        assert remaining_attempts(state) == 11
        assert remaining_seconds(state, now=40.0) == 30.0
        assert not is_retryable(RetryState(tier=RetryTier.EXHAUSTED))


# ---------------------------------------------------------------------------
# Tool failures and validation
# ---------------------------------------------------------------------------


class TestToolFailures:
    def test_alternative_tool_selected(self):
        state = RetryState(tier=RetryTier.RETRY_DECOMPOSED, tier_attempts=2, start_time=0.0)
        trigger = ToolFailureTrigger("write", ToolErrorType.EXECUTION_ERROR, "disk full")
        t = _step(state, trigger, available_tools=["read", "edit"])
        assert t.action.transform == RetryTransform.SELECT_ALTERNATIVE
        assert t.action.alternative_tool == "edit"

    def test_permission_denied_escalates_when_exhausted(self):
        state = RetryState(tier=RetryTier.RETRY_ALTERNATIVE, tier_attempts=2, start_time=0.0)
        trigger = ToolFailureTrigger("bash", ToolErrorType.PERMISSION_DENIED, "denied")
        t = _step(state, trigger)
        assert t.action.kind == RetryActionKind.ESCALATE
        assert "Grant the required permission" in t.action.suggested_actions

    def test_first_tool_failure_retries_same(self):
        trigger = ToolFailureTrigger("read", ToolErrorType.TIMEOUT, "timed out")
        t = _step(create_retry_state(), trigger)
        assert t.action.kind == RetryActionKind.RETRY
        assert "timed out" in t.action.instructions

    def test_validation_failure_restates(self):
        t = _step(create_retry_state(), ValidationTrigger(("tests failed",)))
        assert t.action.transform == RetryTransform.RESTATE_CONSTRAINTS
        assert "tests failed" in t.action.instructions

    def test_should_escalate(self):
        assert should_escalate(
            QualityTrigger(Verdict.RETRY, frozenset({Deficiency.HALLUCINATION_MARKER}))
        )
        assert not should_escalate(QualityTrigger(Verdict.RETRY))
        assert not should_escalate(ValidationTrigger())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_split_numbered(self):
        assert split_task_description("1. read config 2. update parser 3. run tests") == [
            "read config",
            "update parser",
            "run tests",
        ]

    def test_split_bullets(self):
        assert split_task_description("- add flag\n- write docs") == [
            "add flag",
            "write docs",
        ]

    def test_split_single(self):
        assert split_task_description("fix the bug") == ["fix the bug"]
        assert split_task_description("   ") == []

    def test_select_alternative_tool(self):
        assert select_alternative_tool("read", ["grep"]) == "grep"
        assert select_alternative_tool("read", ["bash"]) is None
        assert select_alternative_tool("mystery", ["read"]) is None

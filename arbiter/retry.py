"""Retry policy: decide how to react to a rejected response.

The policy climbs a ladder of retry tiers, each with its own way of
reframing the next request::

    INITIAL -> RETRY_SAME -> RETRY_SIMPLIFIED -> RETRY_DECOMPOSED
            -> RETRY_ALTERNATIVE -> EXHAUSTED

Every tier allows ``max_per_tier`` attempts. Seeing the same deficiencies
twice in a row skips the rest of the current tier, and seeing them three
times escalates to the user instead of retrying blindly. The attempt
counter only ever grows.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import StrEnum

from .constants import (
    DEFAULT_AVAILABLE_TOOLS,
    DEFAULT_TOKEN_BUDGET,
    MAX_ATTEMPTS_PER_TIER,
    MAX_TOTAL_ATTEMPTS,
    REPEATED_DEFICIENCY_ESCALATION,
    RETRY_TIME_BUDGET_SECONDS,
    TASK_SEGMENT_PATTERNS,
    TOOL_ALTERNATIVES,
)
from .models import AttemptRecord, Deficiency, FailureReason, Verdict
from .utils import now as _now

logger = logging.getLogger(__name__)


class RetryTier(StrEnum):
    INITIAL = "INITIAL"
    RETRY_SAME = "RETRY_SAME"
    RETRY_SIMPLIFIED = "RETRY_SIMPLIFIED"
    RETRY_DECOMPOSED = "RETRY_DECOMPOSED"
    RETRY_ALTERNATIVE = "RETRY_ALTERNATIVE"
    EXHAUSTED = "EXHAUSTED"


TIER_ORDER = list(RetryTier)


class RetryActionKind(StrEnum):
    NONE = "NONE"
    RETRY = "RETRY"
    ESCALATE = "ESCALATE"
    ABORT = "ABORT"


class RetryTransform(StrEnum):
    NONE = "NONE"
    RESTATE_CONSTRAINTS = "RESTATE_CONSTRAINTS"
    REDUCE_CONTEXT = "REDUCE_CONTEXT"
    SPLIT_TASK = "SPLIT_TASK"
    SELECT_ALTERNATIVE = "SELECT_ALTERNATIVE"


class ToolErrorType(StrEnum):
    TIMEOUT = "TIMEOUT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_ARGS = "INVALID_ARGS"
    EXECUTION_ERROR = "EXECUTION_ERROR"


CRITICAL_DEFICIENCIES = frozenset(
    {Deficiency.QUERY_MISMATCH, Deficiency.HALLUCINATION_MARKER}
)

DEFAULT_SUBTASKS = (
    "Understand the current state",
    "Make the required change",
    "Verify the change",
)

_SUGGESTIONS_BY_ERROR = {
    ToolErrorType.PERMISSION_DENIED: [
        "Grant the required permission",
        "Use a different approach that doesn't require this permission",
    ],
    ToolErrorType.TIMEOUT: ["Increase the timeout", "Simplify the operation"],
    ToolErrorType.INVALID_ARGS: [
        "Review the command arguments",
        "Check file paths and names",
    ],
    ToolErrorType.EXECUTION_ERROR: [
        "Check the system state",
        "Try an alternative command",
    ],
}


# -- Triggers ----------------------------------------------------------------


@dataclass(frozen=True)
class QualityTrigger:
    verdict: Verdict
    deficiencies: frozenset[Deficiency] = frozenset()
    score: float | None = None


@dataclass(frozen=True)
class ToolFailureTrigger:
    tool_name: str
    error_type: ToolErrorType
    message: str = ""


@dataclass(frozen=True)
class ValidationTrigger:
    failures: tuple[str, ...] = ()


RetryTrigger = QualityTrigger | ToolFailureTrigger | ValidationTrigger


# -- State and actions -------------------------------------------------------


@dataclass(frozen=True)
class RetryState:
    tier: RetryTier = RetryTier.INITIAL
    total_attempts: int = 0
    tier_attempts: int = 0
    history: tuple[AttemptRecord, ...] = ()
    start_time: float | None = None
    max_total_attempts: int = MAX_TOTAL_ATTEMPTS
    max_per_tier: int = MAX_ATTEMPTS_PER_TIER
    time_budget: float = RETRY_TIME_BUDGET_SECONDS


@dataclass(frozen=True)
class RetryAction:
    kind: RetryActionKind
    transform: RetryTransform = RetryTransform.NONE
    instructions: str = ""
    subtasks: tuple[str, ...] = ()
    alternative_tool: str | None = None
    target_tokens: int | None = None
    reason: FailureReason | None = None
    question: str | None = None
    suggested_actions: tuple[str, ...] = ()


@dataclass(frozen=True)
class RetryTransition:
    action: RetryAction
    state: RetryState


def create_retry_state(
    *,
    max_total_attempts: int = MAX_TOTAL_ATTEMPTS,
    max_per_tier: int = MAX_ATTEMPTS_PER_TIER,
    time_budget: float = RETRY_TIME_BUDGET_SECONDS,
    start_time: float | None = None,
) -> RetryState:
    return RetryState(
        start_time=start_time,
        max_total_attempts=max_total_attempts,
        max_per_tier=max_per_tier,
        time_budget=time_budget,
    )


# -- Transition --------------------------------------------------------------


def compute_retry_transition(
    state: RetryState,
    trigger: RetryTrigger,
    available_tools: Sequence[str] = DEFAULT_AVAILABLE_TOOLS,
    context_budget: int = DEFAULT_TOKEN_BUDGET,
    *,
    task_description: str = "",
    now: float | None = None,
) -> RetryTransition:
    """Return the action to take for *trigger* and the state that follows."""
    now = _now() if now is None else now

    if isinstance(trigger, QualityTrigger) and trigger.verdict == Verdict.ACCEPT:
        return RetryTransition(RetryAction(RetryActionKind.NONE), state)

    # The time budget starts with the first rejected response.
    if state.start_time is None:
        state = replace(state, start_time=now)

    record = _attempt_record(trigger, state, now)
    state = replace(
        state,
        total_attempts=record.attempt,
        history=state.history + (record,),
    )

    reason = _exhaustion_reason(state, now)
    if reason is not None:
        logger.debug("retry budget exhausted: %s", reason)
        return _abort(replace(state, tier=RetryTier.EXHAUSTED), reason)

    previous = state.history[-2] if len(state.history) > 1 else None
    verdict = record.verdict
    if previous is not None and verdict is not None and previous.verdict is not None:
        if verdict == Verdict.ABORT and previous.verdict == Verdict.ABORT:
            return _abort(
                replace(state, tier=RetryTier.EXHAUSTED), FailureReason.QUALITY_ABORT
            )
        low = (Verdict.ESCALATE, Verdict.ABORT)
        if verdict in low and previous.verdict in low:
            return _escalate(state, trigger, "response quality stayed too low")

    repeats = _repeated_deficiency_run(state.history)
    if repeats >= REPEATED_DEFICIENCY_ESCALATION:
        return _escalate(
            state, trigger, f"the same problems came back {repeats} times in a row"
        )

    if state.tier == RetryTier.INITIAL:
        state = replace(state, tier=RetryTier.RETRY_SAME, tier_attempts=1)
    elif state.tier_attempts + 1 > state.max_per_tier or repeats >= 2:
        state = _advance_tier(state)
    else:
        state = replace(state, tier_attempts=state.tier_attempts + 1)

    if state.tier == RetryTier.EXHAUSTED:
        if should_escalate(trigger):
            return _escalate(state, trigger, "every retry strategy was tried")
        return _abort(state, FailureReason.MAX_TIERS_EXCEEDED)

    action = _retry_action(
        state, trigger, available_tools, context_budget, task_description
    )
    logger.debug(
        "retry attempt %d in tier %s: %s",
        state.total_attempts,
        state.tier,
        action.transform,
    )
    return RetryTransition(action, state)


def _attempt_record(
    trigger: RetryTrigger, state: RetryState, now: float
) -> AttemptRecord:
    verdict = None
    score = None
    deficiencies: frozenset[Deficiency] = frozenset()
    if isinstance(trigger, QualityTrigger):
        verdict, score = trigger.verdict, trigger.score
        deficiencies = frozenset(trigger.deficiencies)
    return AttemptRecord(
        attempt=state.total_attempts + 1,
        verdict=verdict,
        deficiencies=deficiencies,
        score=score,
        timestamp=now,
        tier=str(state.tier),
    )


def _exhaustion_reason(state: RetryState, now: float) -> FailureReason | None:
    if state.total_attempts > state.max_total_attempts:
        return FailureReason.MAX_ATTEMPTS_EXCEEDED
    if now - state.start_time > state.time_budget:
        return FailureReason.TIME_BUDGET_EXCEEDED
    if state.tier == RetryTier.EXHAUSTED:
        return FailureReason.MAX_TIERS_EXCEEDED
    return None


def _repeated_deficiency_run(history: Sequence[AttemptRecord]) -> int:
    """Length of the trailing run of identical, non-empty deficiency sets."""
    if not history or not history[-1].deficiencies:
        return 0
    last = history[-1].deficiencies
    run = 0
    for record in reversed(history):
        if record.deficiencies != last:
            break
        run += 1
    return run


def _advance_tier(state: RetryState) -> RetryState:
    index = TIER_ORDER.index(state.tier)
    return replace(state, tier=TIER_ORDER[index + 1], tier_attempts=1)


def _retry_action(
    state: RetryState,
    trigger: RetryTrigger,
    available_tools: Sequence[str],
    context_budget: int,
    task_description: str,
) -> RetryAction:
    match state.tier:
        case RetryTier.RETRY_SAME:
            if isinstance(trigger, ToolFailureTrigger):
                return RetryAction(
                    RetryActionKind.RETRY,
                    instructions=f"Retry {trigger.tool_name}: {trigger.message}",
                )
            return RetryAction(
                RetryActionKind.RETRY,
                RetryTransform.RESTATE_CONSTRAINTS,
                instructions=_restate(trigger),
            )
        case RetryTier.RETRY_SIMPLIFIED:
            return RetryAction(
                RetryActionKind.RETRY,
                RetryTransform.REDUCE_CONTEXT,
                instructions="Focus only on the essential part of the request.",
                target_tokens=max(1, context_budget // 2),
            )
        case RetryTier.RETRY_DECOMPOSED:
            subtasks = _subtasks(trigger, task_description)
            return RetryAction(
                RetryActionKind.RETRY,
                RetryTransform.SPLIT_TASK,
                instructions="Work through the task one step at a time.",
                subtasks=subtasks,
            )
        case RetryTier.RETRY_ALTERNATIVE:
            tool = None
            if isinstance(trigger, ToolFailureTrigger):
                tool = select_alternative_tool(trigger.tool_name, available_tools)
            if tool is not None:
                return RetryAction(
                    RetryActionKind.RETRY,
                    RetryTransform.SELECT_ALTERNATIVE,
                    instructions=f"Use the {tool} tool instead of {trigger.tool_name}.",
                    alternative_tool=tool,
                )
            return RetryAction(
                RetryActionKind.RETRY,
                RetryTransform.RESTATE_CONSTRAINTS,
                instructions=_restate(trigger) + " Try a different approach.",
            )
    raise ValueError(f"no retry action for tier {state.tier}")


def _restate(trigger: RetryTrigger) -> str:
    if isinstance(trigger, QualityTrigger):
        if not trigger.deficiencies:
            return "The previous response was not good enough."
        problems = ", ".join(sorted(trigger.deficiencies))
        return f"The previous response had these problems: {problems}."
    if isinstance(trigger, ToolFailureTrigger):
        return f"Tool {trigger.tool_name} failed: {trigger.message}"
    return "Validation failed: " + "; ".join(trigger.failures)


def _subtasks(trigger: RetryTrigger, task_description: str) -> tuple[str, ...]:
    if isinstance(trigger, ToolFailureTrigger):
        return (
            f"Investigate tool failure: {trigger.message}",
            "Retry original task with alternative approach",
        )
    segments = split_task_description(task_description)
    if len(segments) > 1:
        return tuple(segments)
    return DEFAULT_SUBTASKS


def _abort(state: RetryState, reason: FailureReason) -> RetryTransition:
    return RetryTransition(RetryAction(RetryActionKind.ABORT, reason=reason), state)


def _escalate(state: RetryState, trigger: RetryTrigger, why: str) -> RetryTransition:
    if isinstance(trigger, QualityTrigger):
        detail = "Response quality issues: " + (
            ", ".join(sorted(trigger.deficiencies)) or "low score"
        )
        suggestions = [
            "Provide more specific requirements",
            "Break the task into smaller steps",
            "Specify expected output format",
        ]
    elif isinstance(trigger, ToolFailureTrigger):
        detail = f"Tool execution failed: {trigger.message}"
        suggestions = _SUGGESTIONS_BY_ERROR[trigger.error_type]
    else:
        detail = "Validation failed"
        suggestions = ["Review the validation failures", "Adjust the approach"]
    question = f"I need help to continue: {why}. {detail}."
    return RetryTransition(
        RetryAction(
            RetryActionKind.ESCALATE,
            reason=FailureReason.ESCALATED,
            question=question,
            suggested_actions=tuple(suggestions),
        ),
        state,
    )


def should_escalate(trigger: RetryTrigger) -> bool:
    """Whether an exhausted retry ladder should hand over to the user."""
    if isinstance(trigger, QualityTrigger):
        return bool(CRITICAL_DEFICIENCIES & trigger.deficiencies)
    if isinstance(trigger, ToolFailureTrigger):
        return trigger.error_type == ToolErrorType.PERMISSION_DENIED
    return False


# -- Helpers -----------------------------------------------------------------


def split_task_description(description: str) -> list[str]:
    """Split a multi-step request into its steps, or return it whole."""
    for pattern in TASK_SEGMENT_PATTERNS:
        if pattern.groups > 1:
            m = pattern.search(description)
            segments = list(m.groups()) if m else []
        else:
            segments = pattern.findall(description)
        segments = [s.strip().rstrip(".").strip() for s in segments]
        segments = [s for s in segments if s]
        if len(segments) > 1:
            return segments
    return [description.strip()] if description.strip() else []


def select_alternative_tool(
    failed_tool: str, available_tools: Sequence[str]
) -> str | None:
    for candidate in TOOL_ALTERNATIVES.get(failed_tool, []):
        if candidate in available_tools:
            return candidate
    return None


def is_retryable(state: RetryState, now: float | None = None) -> bool:
    return (
        state.tier != RetryTier.EXHAUSTED
        and remaining_attempts(state) > 0
        and remaining_seconds(state, now) > 0
    )


def remaining_attempts(state: RetryState) -> int:
    return max(0, state.max_total_attempts - state.total_attempts)


def elapsed_seconds(state: RetryState, now: float | None = None) -> float:
    if state.start_time is None:
        return 0.0
    now = _now() if now is None else now
    return now - state.start_time


def remaining_seconds(state: RetryState, now: float | None = None) -> float:
    return max(0.0, state.time_budget - elapsed_seconds(state, now))

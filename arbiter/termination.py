"""Termination detection: decide when a task is really finished.

Completion signals (model statements, tool successes, user acceptance) and
validation results are folded into one confidence score, which drives the
status machine::

    RUNNING -> POTENTIALLY_COMPLETE -> AWAITING_VALIDATION -> CONFIRMED_COMPLETE

``FAILED`` is entered when a validation check fails in a way that retrying
cannot fix. ``CONFIRMED_COMPLETE`` and ``FAILED`` absorb every further
trigger except explicit user acceptance.
"""

import ast
import concurrent.futures
import json
import logging
import shlex
import subprocess
import time
import tomllib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path

from .constants import (
    COMPLETION_STATEMENT_PATTERNS,
    CONFIRMED_COMPLETE_THRESHOLD,
    MAX_SIGNAL_CONTRIBUTION,
    NON_RECOVERABLE_PATTERNS,
    OPTIONAL_CHECK_WEIGHT,
    POTENTIALLY_COMPLETE_THRESHOLD,
    REQUIRED_CHECK_WEIGHT,
    SIGNAL_CONFIDENCES,
    SIGNAL_WEIGHT_FACTOR,
    VALIDATION_CHECK_CONFIGS,
)
from .models import (
    CheckType,
    CompletionSignal,
    SignalSource,
    TerminationState,
    TerminationStatus,
    ValidationCheck,
    ValidationResult,
)
from .utils import now as _now

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {TerminationStatus.CONFIRMED_COMPLETE, TerminationStatus.FAILED}
)


# -- Triggers ----------------------------------------------------------------


@dataclass(frozen=True)
class ModelOutputTrigger:
    text: str
    has_tool_calls: bool


@dataclass(frozen=True)
class ToolCompletedTrigger:
    tool_name: str
    success: bool
    produced_output: str | None = None


@dataclass(frozen=True)
class UserInputTrigger:
    is_acceptance: bool


@dataclass(frozen=True)
class ValidationResultTrigger:
    result: ValidationResult


TerminationTrigger = (
    ModelOutputTrigger | ToolCompletedTrigger | UserInputTrigger | ValidationResultTrigger
)


# -- Decisions ---------------------------------------------------------------


class DecisionKind(StrEnum):
    CONTINUE = "CONTINUE"
    VALIDATE = "VALIDATE"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"


@dataclass(frozen=True)
class TerminationDecision:
    kind: DecisionKind
    reason: str = ""
    checks: tuple[ValidationCheck, ...] = ()
    recoverable: bool = True


@dataclass(frozen=True)
class TerminationOutput:
    status: TerminationStatus
    confidence: float
    decision: TerminationDecision
    state: TerminationState
    evidence: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


def create_termination_state() -> TerminationState:
    return TerminationState()


def process_termination_trigger(
    state: TerminationState, trigger: TerminationTrigger, now: float | None = None
) -> TerminationOutput:
    """Fold *trigger* into *state* and return the new status and decision."""
    now = _now() if now is None else now
    signals = state.signals + _signals_for(trigger, now)
    results = dict(state.validation_results)
    if isinstance(trigger, ValidationResultTrigger):
        results[trigger.result.check_id] = trigger.result

    confidence = compute_confidence(signals, results.values())
    status = _next_status(state.status, trigger, confidence)
    decision = _decide(status, confidence, results)

    if status in (
        TerminationStatus.POTENTIALLY_COMPLETE,
        TerminationStatus.AWAITING_VALIDATION,
    ):
        pending_checks = pending_checks_for(results)
    else:
        pending_checks = []

    if status != state.status:
        logger.debug(
            "termination %s -> %s (confidence %.3f)", state.status, status, confidence
        )

    new_state = replace(
        state,
        status=status,
        signals=signals,
        validation_results=results,
        confidence=confidence,
        pending_validations=pending_checks,
    )
    return TerminationOutput(
        status=status,
        confidence=confidence,
        decision=decision,
        state=new_state,
        evidence=[s.evidence for s in signals],
        pending=[f"Validation: {c.type}" for c in pending_checks],
    )


def _signal(source: SignalSource, evidence: str, now: float) -> CompletionSignal:
    return CompletionSignal(source, SIGNAL_CONFIDENCES[source], evidence, now)


def _signals_for(trigger: TerminationTrigger, now: float) -> list[CompletionSignal]:
    match trigger:
        case ModelOutputTrigger(text=text, has_tool_calls=has_tool_calls):
            signals = []
            for pattern in COMPLETION_STATEMENT_PATTERNS:
                if pattern.search(text):
                    signals.append(
                        _signal(
                            SignalSource.MODEL_STATEMENT,
                            f"Matched pattern: {pattern.pattern}",
                            now,
                        )
                    )
                    break
            if not has_tool_calls:
                signals.append(
                    _signal(
                        SignalSource.NO_PENDING_ACTIONS, "No tool calls in response", now
                    )
                )
            return signals
        case ToolCompletedTrigger(tool_name=name, success=True, produced_output=out):
            signals = [
                _signal(
                    SignalSource.TOOL_SUCCESS, f"Tool {name} completed successfully", now
                )
            ]
            if out:
                signals.append(
                    _signal(SignalSource.OUTPUT_PRESENT, f"Tool {name} produced {out}", now)
                )
            return signals
        case UserInputTrigger(is_acceptance=True):
            return [_signal(SignalSource.USER_ACCEPT, "User accepted the result", now)]
    return []


# -- Confidence --------------------------------------------------------------


def is_required_check(check_id: str) -> bool:
    """Required flag of the check type named in *check_id*; unknown ids count."""
    lowered = check_id.lower()
    for type_name, (required, _timeout) in VALIDATION_CHECK_CONFIGS.items():
        if type_name.lower() in lowered:
            return required
    return True


def _pass_rate(results: list[ValidationResult]) -> float:
    if not results:
        return 1.0
    return sum(1 for r in results if r.passed) / len(results)


def compute_confidence(signals, results) -> float:
    results = list(results)
    signal_score = min(
        MAX_SIGNAL_CONTRIBUTION,
        sum(s.confidence for s in signals) * SIGNAL_WEIGHT_FACTOR,
    )
    if not results:
        return min(1.0, signal_score)
    required = [r for r in results if is_required_check(r.check_id)]
    optional = [r for r in results if not is_required_check(r.check_id)]
    validation_score = (
        REQUIRED_CHECK_WEIGHT * _pass_rate(required)
        + OPTIONAL_CHECK_WEIGHT * _pass_rate(optional)
    )
    return min(1.0, signal_score + validation_score)


# -- Status machine ----------------------------------------------------------


def is_recoverable(result: ValidationResult) -> bool:
    return not any(p.search(result.details) for p in NON_RECOVERABLE_PATTERNS)


def _next_status(
    current: TerminationStatus, trigger: TerminationTrigger, confidence: float
) -> TerminationStatus:
    if isinstance(trigger, UserInputTrigger) and trigger.is_acceptance:
        return TerminationStatus.CONFIRMED_COMPLETE
    if current in TERMINAL_STATUSES:
        return current
    if (
        isinstance(trigger, ValidationResultTrigger)
        and not trigger.result.passed
        and not is_recoverable(trigger.result)
    ):
        return TerminationStatus.FAILED

    match current:
        case TerminationStatus.RUNNING:
            if confidence >= POTENTIALLY_COMPLETE_THRESHOLD:
                return TerminationStatus.POTENTIALLY_COMPLETE
            return TerminationStatus.RUNNING
        case TerminationStatus.POTENTIALLY_COMPLETE:
            return TerminationStatus.AWAITING_VALIDATION
        case TerminationStatus.AWAITING_VALIDATION:
            if confidence >= CONFIRMED_COMPLETE_THRESHOLD:
                return TerminationStatus.CONFIRMED_COMPLETE
            if confidence < POTENTIALLY_COMPLETE_THRESHOLD:
                return TerminationStatus.RUNNING
            return TerminationStatus.AWAITING_VALIDATION
    raise ValueError(f"unknown termination status {current!r}")


def _decide(
    status: TerminationStatus, confidence: float, results: dict[str, ValidationResult]
) -> TerminationDecision:
    match status:
        case TerminationStatus.RUNNING:
            return TerminationDecision(
                DecisionKind.CONTINUE,
                reason=f"Confidence {confidence * 100:.1f}% below threshold",
            )
        case TerminationStatus.POTENTIALLY_COMPLETE:
            return TerminationDecision(
                DecisionKind.VALIDATE, checks=tuple(pending_checks_for(results))
            )
        case TerminationStatus.AWAITING_VALIDATION:
            failed = [r for r in results.values() if not r.passed]
            if failed:
                return TerminationDecision(
                    DecisionKind.FAIL,
                    reason="Validation failed: " + "; ".join(r.details for r in failed),
                    recoverable=all(is_recoverable(r) for r in failed),
                )
            return TerminationDecision(
                DecisionKind.VALIDATE, checks=tuple(pending_checks_for(results))
            )
        case TerminationStatus.CONFIRMED_COMPLETE:
            return TerminationDecision(
                DecisionKind.COMPLETE,
                reason=f"Task completed with {confidence * 100:.1f}% confidence",
            )
        case TerminationStatus.FAILED:
            failed = [r for r in results.values() if not r.passed]
            reason = "; ".join(r.details for r in failed) or "Task failed"
            return TerminationDecision(
                DecisionKind.FAIL, reason=reason, recoverable=False
            )
    raise ValueError(f"unknown termination status {status!r}")


# -- Validation checks -------------------------------------------------------


def create_validation_check(check_type: CheckType) -> ValidationCheck:
    required, timeout = VALIDATION_CHECK_CONFIGS[check_type]
    return ValidationCheck(
        id=f"{check_type.lower()}_check",
        type=CheckType(check_type),
        required=required,
        timeout=timeout,
    )


def pending_checks_for(results: dict[str, ValidationResult]) -> list[ValidationCheck]:
    """Every configured check that has not reported a result yet."""
    checks = [create_validation_check(CheckType(t)) for t in VALIDATION_CHECK_CONFIGS]
    return [c for c in checks if c.id not in results]


@dataclass
class ValidationContext:
    expected_outputs: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    task_type: str = "EDIT"
    has_tests: bool = False
    test_command: str | None = None


@dataclass
class ValidationCollaborators:
    file_exists: Callable[[str], bool]
    validate_syntax: Callable[[str], tuple[bool, str | None]]
    run_command: Callable[[str, float], tuple[int, str]]


def run_validation_check(
    check: ValidationCheck,
    context: ValidationContext,
    collaborators: ValidationCollaborators,
) -> ValidationResult:
    """Run one check, bounded by its own timeout.

    A timeout or an exception raised by a collaborator is reported as a
    failed result instead of propagating.
    """
    start = time.monotonic()
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(_execute_check, check, context, collaborators)
    try:
        passed, details = future.result(timeout=check.timeout)
    except concurrent.futures.TimeoutError:
        passed, details = False, f"{check.type} timed out after {check.timeout:g}s"
    except Exception as e:
        passed, details = False, f"{check.type} raised {type(e).__name__}: {e}"
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return ValidationResult(
        check_id=check.id,
        passed=passed,
        details=details,
        duration=time.monotonic() - start,
    )


def _execute_check(
    check: ValidationCheck,
    context: ValidationContext,
    collaborators: ValidationCollaborators,
) -> tuple[bool, str]:
    match check.type:
        case CheckType.FILE_EXISTS:
            missing = [
                f for f in context.expected_outputs if not collaborators.file_exists(f)
            ]
            total = len(context.expected_outputs)
            details = f"{total - len(missing)}/{total} files exist"
            if missing:
                details += " (missing: " + ", ".join(missing) + ")"
            return not missing, details
        case CheckType.SYNTAX_VALID:
            errors = []
            for f in context.modified_files:
                valid, error = collaborators.validate_syntax(f)
                if not valid:
                    errors.append(error or f"{f}: invalid syntax")
            if errors:
                return False, "; ".join(errors)
            return True, "All files have valid syntax"
        case CheckType.DIFF_NONEMPTY:
            if context.task_type != "EDIT":
                return True, "N/A for non-edit tasks"
            n = len(context.modified_files)
            return n > 0, f"{n} files modified"
        case CheckType.TESTS_PASS:
            if not context.has_tests or not context.test_command:
                return True, "No tests configured"
            exit_code, output = collaborators.run_command(
                context.test_command, check.timeout
            )
            if exit_code == 0:
                return True, "Tests passed"
            return False, f"Tests failed: {output[:200]}"
        case CheckType.SCHEMA_VALID:
            return True, "No schema configured"
        case CheckType.NO_REGRESSIONS:
            return True, "No regression baseline configured"
    raise ValueError(f"unknown check type {check.type!r}")


def default_collaborators(base_dir: str = ".") -> ValidationCollaborators:
    """Collaborators backed by the local file system and subprocess."""
    root = Path(base_dir)

    def file_exists(path: str) -> bool:
        return (root / path).exists()

    def validate_syntax(path: str) -> tuple[bool, str | None]:
        target = root / path
        try:
            source = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False, f"{path}: file not found"
        except (OSError, UnicodeDecodeError) as e:
            return False, f"{path}: {e}"
        suffix = target.suffix.lower()
        try:
            if suffix == ".py":
                ast.parse(source, filename=path)
            elif suffix == ".json":
                json.loads(source)
            elif suffix == ".toml":
                tomllib.loads(source)
        except SyntaxError as e:
            return False, f"{path}:{e.lineno}: {e.msg}"
        except (ValueError, tomllib.TOMLDecodeError) as e:
            return False, f"{path}: {e}"
        return True, None

    def run_command(command: str, timeout: float) -> tuple[int, str]:
        try:
            proc = subprocess.run(
                shlex.split(command),
                cwd=root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return 124, f"command timed out after {timeout:g}s"
        return proc.returncode, (proc.stdout or "") + (proc.stderr or "")

    return ValidationCollaborators(file_exists, validate_syntax, run_command)


# -- Queries -----------------------------------------------------------------


def validation_failures(state: TerminationState) -> list[ValidationResult]:
    return [r for r in state.validation_results.values() if not r.passed]


def is_complete(state: TerminationState) -> bool:
    return state.status == TerminationStatus.CONFIRMED_COMPLETE


def is_failed(state: TerminationState) -> bool:
    return state.status == TerminationStatus.FAILED


def is_terminal(state: TerminationState) -> bool:
    return state.status in TERMINAL_STATUSES


def requires_validation(state: TerminationState) -> bool:
    return state.status in (
        TerminationStatus.POTENTIALLY_COMPLETE,
        TerminationStatus.AWAITING_VALIDATION,
    )


def confidence_percentage(state: TerminationState) -> str:
    return f"{state.confidence * 100:.1f}%"


def select_checks(
    checks: Sequence[ValidationCheck], context: ValidationContext
) -> list[ValidationCheck]:
    """Drop checks that cannot say anything for *context*."""
    selected = []
    for check in checks:
        if check.type == CheckType.FILE_EXISTS and not context.expected_outputs:
            continue
        if check.type == CheckType.SYNTAX_VALID and not context.modified_files:
            continue
        selected.append(check)
    return selected

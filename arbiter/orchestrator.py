"""The reasoning control loop: one task cycle wrapped around the model.

Each iteration runs, in order:

1. context preparation: memory selection and buffer compression
2. the model call, with thinking tags stripped from the reply
3. quality evaluation
4. on a rejected response, the retry policy (retry, escalate or abort)
5. otherwise sequential tool execution, recording every result as memory
6. the termination check, plus validation once the model gives a final answer

The model and the tools are collaborators passed in by the caller. Only
quality problems are retried here. A context overflow is retried once at
minimal compression; any other model-call exception propagates.
"""

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace

from . import fmt
from .compression import (
    CompressionInput,
    CompressionOutput,
    compress_context,
    mark_message_ages,
    preservation_candidates,
)
from .constants import (
    DEFAULT_AVAILABLE_TOOLS,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOKEN_BUDGET,
    MEMORY_BUDGET_SHARE,
)
from .memory import (
    MemoryStore,
    compute_mandatory_items,
    create_memory_item,
    create_query_context,
    select_relevant_memories,
)
from .models import (
    CheckType,
    CompressibleMessage,
    CompressionLevel,
    CycleMetrics,
    EntityTable,
    EntityType,
    ExecutionPhase,
    FailureReason,
    MemorySelectionResult,
    MemoryType,
    ModelResponse,
    QualityEvalInput,
    QualityEvalOutput,
    ReasoningTaskResult,
    ResponseType,
    TaskConstraints,
    TaskStatus,
    TerminationState,
    TerminationStatus,
    ToolCall,
    Verdict,
)
from .quality import evaluate_quality
from .report import ContextOverflowError, ReportCollector
from .retry import (
    QualityTrigger,
    RetryAction,
    RetryActionKind,
    RetryState,
    RetryTransform,
    ValidationTrigger,
    compute_retry_transition,
    create_retry_state,
)
from .termination import (
    ModelOutputTrigger,
    ToolCompletedTrigger,
    ValidationCollaborators,
    ValidationContext,
    ValidationResultTrigger,
    compute_confidence,
    create_termination_state,
    create_validation_check,
    default_collaborators,
    is_complete,
    is_failed,
    is_recoverable,
    process_termination_trigger,
    run_validation_check,
    select_checks,
)
from .thinking import strip_thinking
from .utils import (
    count_message_tokens,
    create_entity_table,
    estimate_tokens,
    extract_entities,
    generate_id,
    now as _now,
    tokenize,
)

logger = logging.getLogger(__name__)

ModelCall = Callable[[list[dict]], ModelResponse]
ToolExecutor = Callable[[str, dict], object]

PATH_ARGUMENT_KEYS = ("path", "file_path", "file", "filename")
MODIFYING_TOOLS = frozenset({"write", "edit"})
MEMORY_PREVIEW_CHARS = 500
THINKING_PREVIEW_CHARS = 200


@dataclass
class OrchestratorConfig:
    token_budget: int = DEFAULT_TOKEN_BUDGET
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    available_tools: tuple[str, ...] = DEFAULT_AVAILABLE_TOOLS
    auto_validate: bool = True
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    @property
    def context_limit(self) -> int:
        """Token limit the conversation buffer is compressed against."""
        return min(self.token_budget, self.max_context_tokens)


@dataclass(frozen=True)
class ToolOutcome:
    success: bool
    output: str = ""

    @classmethod
    def coerce(cls, value) -> "ToolOutcome":
        """Accept the shapes tool executors commonly return."""
        if isinstance(value, ToolOutcome):
            return value
        if isinstance(value, dict) and "success" in value:
            output = value.get("output")
            return cls(bool(value["success"]), "" if output is None else str(output))
        if isinstance(value, tuple) and len(value) == 2:
            return cls(bool(value[0]), str(value[1]))
        if isinstance(value, str):
            return cls(not value.startswith("error:"), value)
        return cls(False, f"error: unexpected tool result {value!r}")


@dataclass
class ReasoningControlState:
    retry: RetryState = field(default_factory=create_retry_state)
    termination: TerminationState = field(default_factory=create_termination_state)
    compression_level: CompressionLevel = CompressionLevel.FULL
    entity_table: EntityTable = field(default_factory=create_entity_table)
    phase: ExecutionPhase = ExecutionPhase.CONTEXT_PREPARATION
    metrics: CycleMetrics = field(default_factory=CycleMetrics)


@dataclass
class CycleOutcome:
    result: ReasoningTaskResult
    memory_store: MemoryStore
    state: ReasoningControlState
    messages: list[dict] = field(default_factory=list)


@dataclass
class PreparedContext:
    messages: list[dict]
    buffer: list[CompressibleMessage]
    selection: MemorySelectionResult
    compression: CompressionOutput
    token_usage: int


# -- Message conversion ------------------------------------------------------


def to_compressible(messages: Iterable) -> list[CompressibleMessage]:
    """Turn chat dicts into buffer messages; system messages are preserved."""
    out = []
    for m in messages:
        if isinstance(m, CompressibleMessage):
            out.append(m)
            continue
        content = m.get("content") or ""
        metadata = {k: m[k] for k in ("tool_calls", "tool_call_id") if k in m}
        out.append(
            CompressibleMessage(
                id=generate_id("msg"),
                role=m["role"],
                content=content,
                token_count=estimate_tokens(content),
                preserved=m["role"] == "system",
                metadata=metadata,
            )
        )
    return out


def to_chat_messages(buffer: Sequence[CompressibleMessage]) -> list[dict]:
    out = []
    for m in buffer:
        msg: dict = {"role": m.role, "content": m.content}
        if m.metadata.get("tool_calls"):
            msg["tool_calls"] = m.metadata["tool_calls"]
        if m.role == "tool":
            msg["tool_call_id"] = m.metadata.get("tool_call_id", m.id)
        out.append(msg)
    return out


def _memory_message(selection: MemorySelectionResult) -> dict | None:
    if not selection.selected:
        return None
    lines = ["Relevant context from earlier in this task:"]
    for item in selection.selected:
        content = item.content
        if len(content) > MEMORY_PREVIEW_CHARS:
            content = content[:MEMORY_PREVIEW_CHARS] + "..."
        lines.append(f"- [{item.type}] {content}")
    return {"role": "system", "content": "\n".join(lines)}


def _with_memories(messages: list[dict], memory_msg: dict | None) -> list[dict]:
    if memory_msg is None:
        return messages
    i = 0
    while i < len(messages) and messages[i]["role"] == "system":
        i += 1
    return messages[:i] + [memory_msg] + messages[i:]


# -- Phases ------------------------------------------------------------------


def infer_expected_type(
    constraints: TaskConstraints, tool_calls: Sequence[ToolCall]
) -> ResponseType:
    if constraints.expected_tool_calls:
        return ResponseType.TOOL_CALL
    if constraints.requires_code:
        return ResponseType.CODE
    if tool_calls:
        return ResponseType.MIXED
    return ResponseType.TEXT


def prepare_context(
    query: str,
    memory_store: MemoryStore,
    buffer: Sequence[CompressibleMessage],
    state: ReasoningControlState,
    config: OrchestratorConfig,
    *,
    active_memory_ids: Iterable[str] = (),
    active_paths: Iterable[str] = (),
    force_level: CompressionLevel | None = None,
    now: float | None = None,
) -> PreparedContext:
    """Select memories and compress the buffer into the next model request."""
    now = _now() if now is None else now
    items = list(memory_store)
    query_ctx = create_query_context(
        query,
        active_memory_ids=active_memory_ids,
        active_file_paths=active_paths,
        timestamp=now,
    )
    selection = select_relevant_memories(
        items,
        query_ctx,
        int(config.token_budget * MEMORY_BUDGET_SHARE),
        compute_mandatory_items(items, now),
        now,
    )

    aged = mark_message_ages(buffer)
    current = sum(m.token_count for m in aged)
    compression = compress_context(
        CompressionInput(
            messages=aged,
            current_token_count=current,
            token_limit=config.context_limit,
            entity_table=state.entity_table,
            preserve_ids=frozenset(preservation_candidates(aged)),
            force_level=force_level,
        )
    )
    messages = _with_memories(
        to_chat_messages(compression.messages), _memory_message(selection)
    )
    return PreparedContext(
        messages=messages,
        buffer=compression.messages,
        selection=selection,
        compression=compression,
        token_usage=selection.total_tokens + current - compression.tokens_saved,
    )


def _path_argument(arguments: dict) -> str | None:
    for key in PATH_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _restate_constraints(constraints: TaskConstraints) -> list[str]:
    lines = []
    if constraints.required_outputs:
        lines.append("The answer must mention: " + ", ".join(constraints.required_outputs))
    if constraints.expected_tool_calls:
        lines.append("Call these tools: " + ", ".join(constraints.expected_tool_calls))
    if constraints.requires_code:
        lang = constraints.code_language or "code"
        lines.append(f"Include a fenced {lang} block.")
    if constraints.max_response_tokens is not None:
        lines.append(f"Keep the answer under {constraints.max_response_tokens} tokens.")
    return lines


def _one_line(text: str, limit: int) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    return text[:limit]


class _Cycle:
    """Mutable bookkeeping for one ``execute_reasoning_cycle`` call."""

    def __init__(
        self,
        query: str,
        memory_store: MemoryStore,
        messages,
        constraints: TaskConstraints,
        call_model: ModelCall,
        execute_tool: ToolExecutor,
        config: OrchestratorConfig,
        abort_event: threading.Event | None,
        validation_context: ValidationContext | None,
        collaborators: ValidationCollaborators | None,
        report: ReportCollector | None,
        verbose: bool,
    ):
        self.query = query
        self.memory_store = memory_store
        self.constraints = constraints
        self.call_model = call_model
        self.execute_tool = execute_tool
        self.config = config
        self.abort_event = abort_event
        self.report = report
        self.verbose = verbose

        self.validation_context = None
        if validation_context is not None:
            self.validation_context = replace(
                validation_context,
                expected_outputs=list(validation_context.expected_outputs),
                modified_files=list(validation_context.modified_files),
            )
            if collaborators is None:
                collaborators = default_collaborators()
        self.collaborators = collaborators

        self.state = ReasoningControlState()
        self.state.metrics.start_time = _now()
        self.buffer = to_compressible(messages)
        self.buffer.append(
            CompressibleMessage(
                id=generate_id("msg"),
                role="user",
                content=query,
                token_count=estimate_tokens(query),
                preserved=True,
            )
        )
        self.query_tokens = tuple(tokenize(query))
        self.query_entities = tuple(extract_entities(query))

        self.iteration = 0
        self.last_response = ""
        self.outputs: list[str] = []
        self.active_memory_ids: list[str] = []
        self.active_paths: list[str] = []
        self.force_level: CompressionLevel | None = None
        self.retry_reason: str | None = None
        self.validation_failed = False

    @contextmanager
    def _phase(self, phase: ExecutionPhase):
        self.state.phase = phase
        start = time.monotonic()
        try:
            yield
        finally:
            self.state.metrics.phase_timings[phase] += time.monotonic() - start

    # -- loop ---------------------------------------------------------------

    def run(self) -> CycleOutcome:
        for iteration in range(1, self.config.max_iterations + 1):
            self.iteration = iteration
            if self.abort_event is not None and self.abort_event.is_set():
                logger.info("reasoning cycle aborted before iteration %d", iteration)
                return self._finish(TaskStatus.FAILED, FailureReason.ABORTED)

            with self._phase(ExecutionPhase.CONTEXT_PREPARATION):
                prepared = self._prepare()
            with self._phase(ExecutionPhase.LLM_INTERACTION):
                try:
                    response, visible = self._call_model(prepared)
                except ContextOverflowError:
                    if prepared.compression.level == CompressionLevel.MINIMAL:
                        raise
                    if self.verbose:
                        fmt.warning("context window exceeded, compressing to minimal...")
                    self.force_level = CompressionLevel.MINIMAL
                    continue
            with self._phase(ExecutionPhase.QUALITY_EVALUATION):
                quality = self._evaluate(visible, response.tool_calls)

            if quality.verdict != Verdict.ACCEPT:
                with self._phase(ExecutionPhase.RETRY_DECISION):
                    outcome = self._handle_rejection(quality, visible, response)
                if outcome is not None:
                    return outcome
                continue

            self._supersede_failed_attempts()
            with self._phase(ExecutionPhase.EXECUTION):
                results = self._execute_tools(visible, response.tool_calls)
            with self._phase(ExecutionPhase.TERMINATION_CHECK):
                self._check_termination(visible, response.tool_calls, results)

            termination = self.state.termination
            if is_failed(termination):
                return self._finish(
                    TaskStatus.FAILED, FailureReason.NON_RECOVERABLE_VALIDATION_FAILURE
                )
            if is_complete(termination) and not self.validation_failed:
                return self._finish(TaskStatus.COMPLETE)

            if not response.tool_calls:
                if not self._validation_enabled():
                    return self._finish(TaskStatus.COMPLETE)
                with self._phase(ExecutionPhase.VALIDATION):
                    outcome = self._validate(visible)
                if outcome is not None:
                    return outcome
                continue

            self._append_exchange(visible, response.tool_calls, results)

        return self._finish(TaskStatus.FAILED, FailureReason.MAX_ITERATIONS_EXCEEDED)

    # -- phases -------------------------------------------------------------

    def _prepare(self) -> PreparedContext:
        prepared = prepare_context(
            self.query,
            self.memory_store,
            self.buffer,
            self.state,
            self.config,
            active_memory_ids=self.active_memory_ids,
            active_paths=self.active_paths,
            force_level=self.force_level,
        )
        self.force_level = None
        self.buffer = prepared.buffer
        compression = prepared.compression
        self.state.entity_table = compression.entity_table
        self.state.compression_level = compression.level

        if compression.level != CompressionLevel.FULL:
            before = sum(m.token_count for m in self.buffer) + compression.tokens_saved
            if self.report is not None:
                self.report.record_compression(
                    self.iteration,
                    compression.level,
                    before,
                    before - compression.tokens_saved,
                    compression.applied_rules,
                )
            if self.verbose:
                fmt.compression(
                    compression.level, compression.tokens_saved, compression.applied_rules
                )
        if self.verbose and prepared.selection.selected:
            fmt.context_stats(
                f"{len(prepared.selection.selected)} memories",
                prepared.selection.total_tokens,
            )
        return prepared

    def _call_model(self, prepared: PreparedContext) -> tuple[ModelResponse, str]:
        if self.verbose:
            fmt.iteration_header(
                self.iteration,
                self.config.max_iterations,
                count_message_tokens(prepared.messages),
            )
        start = time.monotonic()
        try:
            response = self.call_model(prepared.messages)
        except ContextOverflowError:
            logger.info("context overflow at ~%d tokens", prepared.token_usage)
            if self.report is not None:
                self.report.record_llm_call(
                    self.iteration,
                    time.monotonic() - start,
                    prepared.token_usage,
                    "context_overflow",
                )
            raise
        elapsed = time.monotonic() - start

        raw = response.text or ""
        visible, thought = strip_thinking(raw)
        self.last_response = visible
        metrics = self.state.metrics
        metrics.llm_calls += 1
        metrics.tokens_used += prepared.token_usage + estimate_tokens(raw)

        if self.report is not None:
            self.report.record_llm_call(
                self.iteration,
                elapsed,
                prepared.token_usage,
                response.finish_reason,
                is_retry=self.retry_reason is not None,
                retry_reason=self.retry_reason,
            )
        self.retry_reason = None
        if self.verbose:
            fmt.llm_timing(elapsed, response.finish_reason)
            if thought:
                fmt.thinking(_one_line(thought, THINKING_PREVIEW_CHARS))
            if visible:
                fmt.assistant_text(visible)
        return response, visible

    def _evaluate(self, visible: str, tool_calls: list[ToolCall]) -> QualityEvalOutput:
        quality = evaluate_quality(
            QualityEvalInput(
                response=visible,
                tool_calls=list(tool_calls),
                expected_type=infer_expected_type(self.constraints, tool_calls),
                query_tokens=self.query_tokens,
                query_entities=self.query_entities,
                previous_attempts=list(self.state.retry.history),
                constraints=self.constraints,
            )
        )
        if self.report is not None:
            self.report.record_quality(
                self.iteration, quality.score, quality.verdict, quality.deficiencies
            )
        if self.verbose:
            fmt.quality_verdict(quality.verdict, quality.score, quality.deficiencies)
        return quality

    def _handle_rejection(
        self, quality: QualityEvalOutput, visible: str, response: ModelResponse
    ) -> CycleOutcome | None:
        trigger = QualityTrigger(quality.verdict, quality.deficiencies, quality.score)
        action = self._consult_retry_policy(trigger)
        if action.kind != RetryActionKind.RETRY:
            return self._stop_for(action)

        reason = ", ".join(sorted(quality.deficiencies)) or (
            f"{quality.verdict} at score {quality.score:.2f}"
        )
        content = visible or _describe_tool_calls(response.tool_calls)
        self._append(
            "assistant",
            content,
            metadata={"attempt_failed": True, "failure_reason": reason},
        )
        self._apply_retry(action, reason)
        return None

    def _consult_retry_policy(self, trigger) -> RetryAction:
        transition = compute_retry_transition(
            self.state.retry,
            trigger,
            self.config.available_tools,
            self.config.token_budget,
            task_description=self.query,
        )
        self.state.retry = transition.state
        action = transition.action
        if action.kind == RetryActionKind.RETRY:
            self.state.metrics.retries += 1
        if self.report is not None:
            self.report.record_retry(
                self.iteration,
                transition.state.tier,
                action.kind,
                action.transform,
                action.reason,
            )
        if self.verbose:
            fmt.retry_decision(
                transition.state.tier,
                action.kind,
                action.transform,
                action.reason or "",
            )
        return action

    def _stop_for(self, action: RetryAction) -> CycleOutcome:
        match action.kind:
            case RetryActionKind.ESCALATE:
                if self.verbose and action.question:
                    fmt.escalation(action.question, action.suggested_actions)
                return self._finish(
                    TaskStatus.ESCALATED,
                    action.reason or FailureReason.ESCALATED,
                    question=action.question,
                )
            case RetryActionKind.ABORT:
                return self._finish(
                    TaskStatus.FAILED, action.reason or FailureReason.QUALITY_ABORT
                )
        raise ValueError(f"retry action {action.kind} does not stop the cycle")

    def _apply_retry(self, action: RetryAction, reason: str) -> None:
        lines = [action.instructions] if action.instructions else []
        match action.transform:
            case RetryTransform.RESTATE_CONSTRAINTS:
                lines.extend(_restate_constraints(self.constraints))
            case RetryTransform.REDUCE_CONTEXT:
                self.force_level = CompressionLevel.MINIMAL
            case RetryTransform.SPLIT_TASK:
                lines.extend(f"{i}. {s}" for i, s in enumerate(action.subtasks, 1))
            case RetryTransform.SELECT_ALTERNATIVE | RetryTransform.NONE:
                pass
        if not lines:
            lines.append("Please try again.")
        self._append("user", "\n".join(lines), metadata={"retry_instruction": True})
        self.retry_reason = reason

    def _execute_tools(
        self, visible: str, tool_calls: list[ToolCall]
    ) -> list[tuple[ToolCall, ToolOutcome, str | None]]:
        """Run tool calls in order, recording each result before the next call."""
        causal = list(self.active_memory_ids)
        new_ids = []
        if visible:
            paths = [
                e.value for e in extract_entities(visible) if e.type == EntityType.FILE
            ]
            item = create_memory_item(
                visible,
                MemoryType.CONVERSATION,
                causal_links=causal,
                file_paths=paths,
            )
            self.memory_store.add(item)
            causal = [item.id]
            new_ids.append(item.id)

        results = []
        for tc in tool_calls:
            args = tc.arguments if isinstance(tc.arguments, dict) else {}
            if self.verbose:
                fmt.tool_call(tc.name, json.dumps(args, indent=2, default=str))
            start = time.monotonic()
            try:
                outcome = ToolOutcome.coerce(self.execute_tool(tc.name, args))
            except Exception as e:
                logger.debug("tool %s raised", tc.name, exc_info=True)
                outcome = ToolOutcome(False, f"error: {e}")
            elapsed = time.monotonic() - start
            self.state.metrics.tool_executions += 1

            path = _path_argument(args)
            if path and path not in self.active_paths:
                self.active_paths.append(path)
            if outcome.success and path and tc.name in MODIFYING_TOOLS:
                if path not in self.outputs:
                    self.outputs.append(path)
                ctx = self.validation_context
                if ctx is not None and path not in ctx.modified_files:
                    ctx.modified_files.append(path)

            item = create_memory_item(
                f"{tc.name}: {outcome.output}",
                MemoryType.TOOL_RESULT,
                causal_links=causal,
                file_paths=[path] if path else [],
            )
            self.memory_store.add(item)
            new_ids.append(item.id)

            if self.report is not None:
                self.report.record_tool_call(
                    self.iteration,
                    tc.name,
                    args,
                    outcome.success,
                    elapsed,
                    len(outcome.output),
                    error=None if outcome.success else outcome.output[:200],
                )
            if self.verbose:
                if outcome.success:
                    fmt.tool_result(tc.name, elapsed, _one_line(outcome.output, 120))
                else:
                    fmt.tool_error(tc.name, _one_line(outcome.output, 200))
            results.append((tc, outcome, path))

        if new_ids:
            self.active_memory_ids = new_ids
        return results

    def _check_termination(self, visible: str, tool_calls, results) -> None:
        out = process_termination_trigger(
            self.state.termination, ModelOutputTrigger(visible, bool(tool_calls))
        )
        expected = self.validation_context.expected_outputs if self.validation_context else []
        for tc, outcome, path in results:
            produced = path if outcome.success and path in expected else None
            out = process_termination_trigger(
                out.state, ToolCompletedTrigger(tc.name, outcome.success, produced)
            )
        self.state.termination = out.state
        if self.report is not None:
            self.report.record_termination(self.iteration, out.status, out.confidence)
        if self.verbose:
            fmt.termination(out.status, out.confidence)

    def _validation_enabled(self) -> bool:
        return (
            self.config.auto_validate
            and self.validation_context is not None
            and self.collaborators is not None
        )

    def _validate(self, visible: str) -> CycleOutcome | None:
        """Run the checks on a final answer; None means feed failures back.

        Every selected check runs before any result reaches the termination
        state. A recoverable failure reopens termination and holds off
        completion until a later validation passes.
        """
        checks = select_checks(
            [create_validation_check(t) for t in CheckType], self.validation_context
        )
        results = []
        for check in checks:
            result = run_validation_check(
                check, self.validation_context, self.collaborators
            )
            results.append(result)
            if self.report is not None:
                self.report.record_validation(
                    self.iteration,
                    result.check_id,
                    result.passed,
                    result.details,
                    result.duration,
                )
            if self.verbose:
                fmt.validation_result(result.check_id, result.passed, result.details)

        failures = [r for r in results if not r.passed]
        if not failures:
            self.validation_failed = False
            self._fold_validation(self.state.termination, results)
            return self._finish(TaskStatus.COMPLETE)

        previous = self.state.termination
        reopened = replace(previous, status=TerminationStatus.RUNNING)
        if not all(is_recoverable(r) for r in failures):
            self._fold_validation(reopened, results)
            return self._finish(
                TaskStatus.FAILED, FailureReason.NON_RECOVERABLE_VALIDATION_FAILURE
            )

        self.state.termination = replace(
            reopened,
            validation_results={r.check_id: r for r in results},
            confidence=compute_confidence(previous.signals, results),
            pending_validations=[],
        )
        self.validation_failed = True
        logger.debug(
            "validation failed (%s), termination reopened",
            ", ".join(r.check_id for r in failures),
        )

        trigger = ValidationTrigger(
            tuple(f"{r.check_id}: {r.details}" for r in failures)
        )
        action = self._consult_retry_policy(trigger)
        if action.kind != RetryActionKind.RETRY:
            return self._stop_for(action)
        self._append("assistant", visible)
        self._apply_retry(action, "validation failed")
        return None

    def _fold_validation(self, state: TerminationState, results) -> None:
        for result in results:
            state = process_termination_trigger(
                state, ValidationResultTrigger(result)
            ).state
        self.state.termination = state

    # -- buffer -------------------------------------------------------------

    def _append(
        self, role: str, content: str, metadata: dict | None = None
    ) -> CompressibleMessage:
        message = CompressibleMessage(
            id=generate_id("msg"),
            role=role,
            content=content,
            token_count=estimate_tokens(content),
            metadata=metadata or {},
        )
        self.buffer.append(message)
        return message

    def _append_exchange(self, visible: str, tool_calls, results) -> None:
        self._append(
            "assistant",
            visible,
            metadata={
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(
                                tc.arguments if isinstance(tc.arguments, dict) else {}
                            ),
                        },
                    }
                    for tc in tool_calls
                ]
            },
        )
        for tc, outcome, _path in results:
            self._append("tool", outcome.output, metadata={"tool_call_id": tc.id})

    def _supersede_failed_attempts(self) -> None:
        self.buffer = [
            replace(m, metadata={**m.metadata, "is_superseded": True})
            if m.metadata.get("attempt_failed")
            else m
            for m in self.buffer
        ]

    def _finish(
        self,
        status: TaskStatus,
        reason: FailureReason | None = None,
        *,
        question: str | None = None,
    ) -> CycleOutcome:
        termination = self.state.termination
        result = ReasoningTaskResult(
            status=status,
            confidence=termination.confidence,
            final_response=self.last_response,
            metrics=self.state.metrics,
            history=list(self.state.retry.history),
            outputs=list(self.outputs),
            reason=reason,
            escalation_question=question,
            iterations=self.iteration,
        )
        logger.debug(
            "reasoning cycle finished: %s (%s) after %d iterations",
            status,
            reason,
            self.iteration,
        )
        if self.verbose:
            fmt.completion(self.iteration, status, termination.confidence)
        messages = to_chat_messages(self.buffer)
        if status == TaskStatus.COMPLETE and self.last_response:
            messages.append({"role": "assistant", "content": self.last_response})
        return CycleOutcome(result, self.memory_store, self.state, messages)


def _describe_tool_calls(tool_calls: Sequence[ToolCall]) -> str:
    if not tool_calls:
        return "(empty response)"
    return "(tool calls: " + ", ".join(tc.name or "?" for tc in tool_calls) + ")"


def execute_reasoning_cycle(
    query: str,
    memory_store: MemoryStore,
    messages,
    constraints: TaskConstraints | None,
    call_model: ModelCall,
    execute_tool: ToolExecutor,
    *,
    config: OrchestratorConfig | None = None,
    abort_event: threading.Event | None = None,
    validation_context: ValidationContext | None = None,
    collaborators: ValidationCollaborators | None = None,
    report: ReportCollector | None = None,
    verbose: bool = False,
) -> CycleOutcome:
    """Run one bounded task cycle for *query*.

    *messages* is the prior conversation as chat dicts (or buffer messages);
    the query is appended as the final user message. The memory store is
    updated in place and returned with the result. Validation runs only when
    ``config.auto_validate`` is set and a *validation_context* is given.
    """
    cycle = _Cycle(
        query,
        memory_store,
        messages,
        constraints or TaskConstraints(),
        call_model,
        execute_tool,
        config or OrchestratorConfig(),
        abort_event,
        validation_context,
        collaborators,
        report,
        verbose,
    )
    return cycle.run()

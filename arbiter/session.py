"""Public library API for arbiter: Session class and Result dataclass."""

import copy
import threading
from dataclasses import dataclass

from .constants import (
    DEFAULT_AVAILABLE_TOOLS,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MEMORY_CAPACITY,
    DEFAULT_TOKEN_BUDGET,
)
from .memory import MemoryStore, create_memory_item
from .models import (
    FailureReason,
    MemoryType,
    ReasoningTaskResult,
    TaskConstraints,
    TaskStatus,
)
from .orchestrator import (
    CycleOutcome,
    ModelCall,
    OrchestratorConfig,
    ToolExecutor,
    ToolOutcome,
    execute_reasoning_cycle,
)
from .report import ConfigError, ReportCollector
from .termination import ValidationContext, default_collaborators

DECISION_PREVIEW_CHARS = 300


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    status: TaskStatus
    result: ReasoningTaskResult
    messages: list[dict]
    report: dict | None

    @property
    def exhausted(self) -> bool:
        return self.result.reason == FailureReason.MAX_ITERATIONS_EXCEEDED


def _unavailable_tool(name: str, arguments: dict) -> ToolOutcome:
    return ToolOutcome(False, f"error: tool {name!r} is not available")


class Session:
    """Programmatic interface to the reasoning control loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    tasks or .ask() for multi-turn work that shares conversation and memory.

    ``call_model`` and ``execute_tool`` may be supplied directly; otherwise
    the model is reached through LiteLLM using the provider settings, and
    every tool call fails as unavailable.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 4096,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        temperature: float | None = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        available_tools: list[str] | None = None,
        auto_validate: bool = True,
        memory_capacity: int = DEFAULT_MEMORY_CAPACITY,
        system_prompt: str | None = None,
        test_command: str | None = None,
        tools: list[dict] | None = None,
        call_model: ModelCall | None = None,
        execute_tool: ToolExecutor | None = None,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.token_budget = token_budget
        self.max_iterations = max_iterations
        self.available_tools = list(
            available_tools if available_tools is not None else DEFAULT_AVAILABLE_TOOLS
        )
        self.auto_validate = auto_validate
        self.memory_capacity = memory_capacity
        self.system_prompt = system_prompt
        self.test_command = test_command
        self.tools = tools or []
        self.execute_tool = execute_tool or _unavailable_tool
        self.verbose = verbose

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._call_model = call_model
        self._model_str: str | None = None

        # Per-conversation state (for ask() mode)
        self._conv_messages: list[dict] | None = None
        self._conv_memory: MemoryStore | None = None

    @property
    def model_string(self) -> str:
        return self._model_str or self.model or "unknown"

    def _setup(self) -> None:
        """Perform one-time setup: resolve the provider into a model call."""
        if self._setup_done:
            return

        if self.token_budget < 1 or self.max_iterations < 1:
            raise ConfigError("token_budget and max_iterations must be positive")

        if self._call_model is None:
            from .agent import make_model_call, resolve_provider

            self._model_str, llm_kwargs = resolve_provider(
                self.provider, self.model, self.api_key, self.base_url
            )
            self._call_model = make_model_call(
                self._model_str,
                llm_kwargs,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                tools=self.tools or None,
                verbose=self.verbose,
            )

        self._setup_done = True

    def _make_initial_messages(self) -> list[dict]:
        """Create the initial messages list with the system prompt, if any.

        ``system_prompt=None`` means the built-in prompt; an empty string
        omits the system message.
        """
        from .agent import DEFAULT_SYSTEM_PROMPT

        content = DEFAULT_SYSTEM_PROMPT if self.system_prompt is None else self.system_prompt
        if not content:
            return []
        return [{"role": "system", "content": content}]

    def _orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            token_budget=self.token_budget,
            max_context_tokens=self.max_context_tokens,
            available_tools=tuple(self.available_tools),
            auto_validate=self.auto_validate,
            max_iterations=self.max_iterations,
        )

    def _validation_context(self, expected_outputs) -> ValidationContext | None:
        """Checks apply only when there is something to check against."""
        if not self.auto_validate:
            return None
        expected = [str(p) for p in expected_outputs]
        if not expected and not self.test_command:
            return None
        return ValidationContext(
            expected_outputs=expected,
            modified_files=[],
            task_type="EDIT" if expected and self.tools else "ANSWER",
            has_tests=bool(self.test_command),
            test_command=self.test_command,
        )

    def _cycle(
        self,
        question: str,
        memory: MemoryStore,
        messages: list[dict],
        *,
        constraints: TaskConstraints | None,
        expected_outputs,
        collector: ReportCollector | None,
        abort_event: threading.Event | None,
    ) -> CycleOutcome:
        validation_context = self._validation_context(expected_outputs)
        return execute_reasoning_cycle(
            question,
            memory,
            messages,
            constraints,
            self._call_model,
            self.execute_tool,
            config=self._orchestrator_config(),
            abort_event=abort_event,
            validation_context=validation_context,
            collaborators=(
                default_collaborators(self.base_dir) if validation_context else None
            ),
            report=collector,
            verbose=self.verbose,
        )

    def run(
        self,
        question: str,
        *,
        constraints: TaskConstraints | None = None,
        expected_outputs=(),
        report: bool = False,
        collector: ReportCollector | None = None,
        abort_event: threading.Event | None = None,
    ) -> Result:
        """Single-shot: run a task with fresh state. Each call is independent.

        Pass ``report=True`` to get the JSON report dict on the result, or a
        ``collector`` to accumulate events into a caller-owned report.
        """
        self._setup()

        if collector is None and report:
            collector = ReportCollector()

        outcome = self._cycle(
            question,
            MemoryStore(self.memory_capacity),
            self._make_initial_messages(),
            constraints=constraints,
            expected_outputs=expected_outputs,
            collector=collector,
            abort_event=abort_event,
        )
        task = outcome.result

        report_dict = None
        if report:
            report_dict = collector.build_report(
                task=question,
                model=self.model_string,
                provider=self.provider,
                settings={
                    "token_budget": self.token_budget,
                    "max_context_tokens": self.max_context_tokens,
                    "max_iterations": self.max_iterations,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "auto_validate": self.auto_validate,
                },
                outcome=task.status.lower(),
                answer=task.final_response or None,
                exit_code=0 if task.status == TaskStatus.COMPLETE else 2,
                iterations=task.iterations,
                reason=task.reason,
                confidence=task.confidence,
                escalation_question=task.escalation_question,
            )

        return self._result(outcome, report_dict)

    def ask(
        self,
        question: str,
        *,
        constraints: TaskConstraints | None = None,
        expected_outputs=(),
    ) -> Result:
        """Conversational: share messages and memories across questions."""
        self._setup()

        if self._conv_messages is None:
            self._conv_messages = self._make_initial_messages()
            self._conv_memory = MemoryStore(self.memory_capacity)

        outcome = self._cycle(
            question,
            self._conv_memory,
            self._conv_messages,
            constraints=constraints,
            expected_outputs=expected_outputs,
            collector=None,
            abort_event=None,
        )
        self._conv_messages = outcome.messages

        task = outcome.result
        if task.status == TaskStatus.COMPLETE and task.final_response:
            self._conv_memory.add(
                create_memory_item(
                    f"Answered: {question}\n{task.final_response[:DECISION_PREVIEW_CHARS]}",
                    MemoryType.DECISION,
                    file_paths=task.outputs,
                )
            )
        return self._result(outcome, None)

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_messages = None
        self._conv_memory = None

    @property
    def memory(self) -> MemoryStore | None:
        """The memory store shared by ask() calls, if a conversation is active."""
        return self._conv_memory

    def _result(self, outcome: CycleOutcome, report_dict: dict | None) -> Result:
        task = outcome.result
        answer = task.final_response if task.status == TaskStatus.COMPLETE else None
        return Result(
            answer=answer or None,
            status=task.status,
            result=task,
            messages=copy.deepcopy(outcome.messages),
            report=report_dict,
        )

"""Records and closed value sets shared by the reasoning components."""

from dataclasses import dataclass, field, asdict
from enum import StrEnum
from typing import Any


class MemoryType(StrEnum):
    CONVERSATION = "CONVERSATION"
    ERROR = "ERROR"
    DECISION = "DECISION"
    TOOL_RESULT = "TOOL_RESULT"
    FILE_CONTENT = "FILE_CONTENT"


class EntityType(StrEnum):
    FILE = "FILE"
    FUNCTION = "FUNCTION"
    VARIABLE = "VARIABLE"
    CLASS = "CLASS"
    URL = "URL"
    ERROR_CODE = "ERROR_CODE"


class ExclusionReason(StrEnum):
    LOW_RELEVANCE = "LOW_RELEVANCE"
    TOKEN_BUDGET_EXCEEDED = "TOKEN_BUDGET_EXCEEDED"
    DUPLICATE = "DUPLICATE"


class Verdict(StrEnum):
    ACCEPT = "ACCEPT"
    RETRY = "RETRY"
    ESCALATE = "ESCALATE"
    ABORT = "ABORT"

    @property
    def rank(self) -> int:
        """Ordering ABORT < ESCALATE < RETRY < ACCEPT."""
        return _VERDICT_RANK[self]


_VERDICT_RANK = {
    Verdict.ABORT: 0,
    Verdict.ESCALATE: 1,
    Verdict.RETRY: 2,
    Verdict.ACCEPT: 3,
}


class Deficiency(StrEnum):
    PARSE_FAILURE = "PARSE_FAILURE"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    MISSING_TOOL_CALL = "MISSING_TOOL_CALL"
    QUERY_MISMATCH = "QUERY_MISMATCH"
    TRUNCATED = "TRUNCATED"
    HALLUCINATION_MARKER = "HALLUCINATION_MARKER"
    SELF_CONTRADICTION = "SELF_CONTRADICTION"
    INCOMPLETE_CODE = "INCOMPLETE_CODE"
    WRONG_LANGUAGE = "WRONG_LANGUAGE"
    MISSING_REQUIRED_OUTPUT = "MISSING_REQUIRED_OUTPUT"
    MALFORMED_TOOL_CALL = "MALFORMED_TOOL_CALL"


class ResponseType(StrEnum):
    TOOL_CALL = "tool_call"
    TEXT = "text"
    CODE = "code"
    MIXED = "mixed"


class CompressionLevel(StrEnum):
    FULL = "FULL"
    COMPRESSED = "COMPRESSED"
    MINIMAL = "MINIMAL"


class CompressionTrigger(StrEnum):
    TOKEN_THRESHOLD_EXCEEDED = "TOKEN_THRESHOLD_EXCEEDED"
    RETRY_POLICY_REQUEST = "RETRY_POLICY_REQUEST"
    EXPLICIT = "EXPLICIT"


class TerminationStatus(StrEnum):
    RUNNING = "RUNNING"
    POTENTIALLY_COMPLETE = "POTENTIALLY_COMPLETE"
    AWAITING_VALIDATION = "AWAITING_VALIDATION"
    CONFIRMED_COMPLETE = "CONFIRMED_COMPLETE"
    FAILED = "FAILED"


class SignalSource(StrEnum):
    MODEL_STATEMENT = "MODEL_STATEMENT"
    TOOL_SUCCESS = "TOOL_SUCCESS"
    OUTPUT_PRESENT = "OUTPUT_PRESENT"
    NO_PENDING_ACTIONS = "NO_PENDING_ACTIONS"
    USER_ACCEPT = "USER_ACCEPT"


class CheckType(StrEnum):
    FILE_EXISTS = "FILE_EXISTS"
    SYNTAX_VALID = "SYNTAX_VALID"
    DIFF_NONEMPTY = "DIFF_NONEMPTY"
    TESTS_PASS = "TESTS_PASS"
    SCHEMA_VALID = "SCHEMA_VALID"
    NO_REGRESSIONS = "NO_REGRESSIONS"


class ExecutionPhase(StrEnum):
    CONTEXT_PREPARATION = "CONTEXT_PREPARATION"
    LLM_INTERACTION = "LLM_INTERACTION"
    QUALITY_EVALUATION = "QUALITY_EVALUATION"
    RETRY_DECISION = "RETRY_DECISION"
    EXECUTION = "EXECUTION"
    TERMINATION_CHECK = "TERMINATION_CHECK"
    VALIDATION = "VALIDATION"


class TaskStatus(StrEnum):
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    ESCALATED = "ESCALATED"


class FailureReason(StrEnum):
    QUALITY_ABORT = "QUALITY_ABORT"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    TIME_BUDGET_EXCEEDED = "TIME_BUDGET_EXCEEDED"
    MAX_TIERS_EXCEEDED = "MAX_TIERS_EXCEEDED"
    ESCALATED = "ESCALATED"
    MAX_ITERATIONS_EXCEEDED = "MAX_ITERATIONS_EXCEEDED"
    NON_RECOVERABLE_VALIDATION_FAILURE = "NON_RECOVERABLE_VALIDATION_FAILURE"
    ABORTED = "ABORTED"


# -- Entities ----------------------------------------------------------------


@dataclass(frozen=True)
class Entity:
    type: EntityType
    value: str
    source_message_id: str | None = None
    frequency: int = 1

    @property
    def key(self) -> str:
        return f"{self.type}:{self.value}"


@dataclass
class EntityTable:
    """Entities indexed by key, by type and by source message id."""

    entities: dict[str, Entity] = field(default_factory=dict)
    by_type: dict[EntityType, list[str]] = field(
        default_factory=lambda: {t: [] for t in EntityType}
    )
    by_source: dict[str, list[str]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entities)


# -- Memory ------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryItem:
    id: str
    content: str
    tokens: tuple[str, ...]
    entities: tuple[Entity, ...]
    timestamp: float
    type: MemoryType
    causal_links: tuple[str, ...] = ()
    token_count: int = 0
    file_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class QueryContext:
    tokens: tuple[str, ...]
    entities: tuple[Entity, ...]
    timestamp: float
    active_memory_ids: frozenset[str] = frozenset()
    active_file_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class RelevanceBreakdown:
    keyword_overlap: float = 0.0
    entity_overlap: float = 0.0
    recency: float = 0.0
    causal_link: float = 0.0
    path_overlap: float = 0.0
    type_bonus: float = 0.0


@dataclass(frozen=True)
class RelevanceScore:
    item_id: str
    total: float
    breakdown: RelevanceBreakdown


@dataclass
class MemorySelectionResult:
    selected: list[MemoryItem]
    scores: dict[str, RelevanceScore]
    total_tokens: int
    excluded: dict[str, ExclusionReason]
    mandatory_over_budget: bool = False

    @property
    def selected_ids(self) -> list[str]:
        return [item.id for item in self.selected]


# -- Quality -----------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass
class ModelResponse:
    """What the model-call collaborator returns for one request."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass(frozen=True)
class TaskConstraints:
    required_outputs: tuple[str, ...] = ()
    expected_tool_calls: tuple[str, ...] = ()
    max_response_tokens: int | None = None
    requires_code: bool = False
    code_language: str | None = None


@dataclass(frozen=True)
class QualityMetrics:
    structural: float
    relevance: float
    completeness: float
    coherence: float


@dataclass
class QualityEvalInput:
    response: str
    tool_calls: list[ToolCall]
    expected_type: ResponseType
    query_tokens: tuple[str, ...] = ()
    query_entities: tuple[Entity, ...] = ()
    previous_attempts: list["AttemptRecord"] = field(default_factory=list)
    constraints: TaskConstraints = field(default_factory=TaskConstraints)


@dataclass(frozen=True)
class QualityEvalOutput:
    score: float
    verdict: Verdict
    deficiencies: frozenset[Deficiency]
    metrics: QualityMetrics


# -- Retry -------------------------------------------------------------------


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    verdict: Verdict | None
    deficiencies: frozenset[Deficiency]
    score: float | None
    timestamp: float
    tier: str


# -- Compression -------------------------------------------------------------


@dataclass(frozen=True)
class CompressibleMessage:
    id: str
    role: str
    content: str
    token_count: int
    age: int = 0
    preserved: bool = False
    metadata: dict = field(default_factory=dict)


# -- Termination -------------------------------------------------------------


@dataclass(frozen=True)
class CompletionSignal:
    source: SignalSource
    confidence: float
    evidence: str
    timestamp: float


@dataclass(frozen=True)
class ValidationCheck:
    id: str
    type: CheckType
    required: bool
    timeout: float


@dataclass(frozen=True)
class ValidationResult:
    check_id: str
    passed: bool
    details: str = ""
    duration: float = 0.0


@dataclass
class TerminationState:
    status: TerminationStatus = TerminationStatus.RUNNING
    signals: list[CompletionSignal] = field(default_factory=list)
    validation_results: dict[str, ValidationResult] = field(default_factory=dict)
    confidence: float = 0.0
    pending_validations: list[ValidationCheck] = field(default_factory=list)


# -- Orchestrator ------------------------------------------------------------


@dataclass
class CycleMetrics:
    llm_calls: int = 0
    tool_executions: int = 0
    retries: int = 0
    tokens_used: int = 0
    start_time: float = 0.0
    phase_timings: dict[ExecutionPhase, float] = field(
        default_factory=lambda: {p: 0.0 for p in ExecutionPhase}
    )


@dataclass
class ReasoningTaskResult:
    status: TaskStatus
    confidence: float
    final_response: str
    metrics: CycleMetrics
    history: list[AttemptRecord]
    outputs: list[str] = field(default_factory=list)
    reason: FailureReason | None = None
    escalation_question: str | None = None
    iterations: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["metrics"]["phase_timings"] = {
            str(k): round(v, 3) for k, v in self.metrics.phase_timings.items()
        }
        data["history"] = [
            {
                "attempt": r.attempt,
                "tier": r.tier,
                "verdict": r.verdict,
                "score": r.score,
                "deficiencies": sorted(r.deficiencies),
                "timestamp": r.timestamp,
            }
            for r in self.history
        ]
        return data

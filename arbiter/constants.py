"""Thresholds, weights, limits and patterns for the reasoning control layer.

These values are fixed at import time. Per-run knobs (token budget, max
iterations, tool list) live in ``OrchestratorConfig`` instead.
"""

import re

# -- Quality evaluation ------------------------------------------------------

ACCEPT_THRESHOLD = 0.7
RETRY_THRESHOLD = 0.4
ESCALATE_THRESHOLD = 0.2

QUALITY_WEIGHTS = {
    "structural": 0.3,
    "relevance": 0.25,
    "completeness": 0.25,
    "coherence": 0.2,
}

STRUCTURAL_CHECK_WEIGHTS = {
    "parse_succeeds": 0.4,
    "has_expected_format": 0.3,
    "within_length_bounds": 0.15,
    "no_malformed_blocks": 0.15,
}

DEFAULT_MAX_RESPONSE_TOKENS = 4000
QUERY_MISMATCH_THRESHOLD = 0.3
SUBSTANTIAL_RESPONSE_CHARS = 50

COHERENCE_PENALTIES = {
    "hallucination": 0.4,
    "contradiction": 0.3,
    "incomplete": 0.2,
    "broken_reference": 0.1,
}

HALLUCINATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"I don't have access to .* but",
        r"I cannot .* however",
        r"assuming .* exists",
        r"\[placeholder\]",
        r"TODO:.*implement",
        r"file:///[a-z]:",
        r"I'll need to .* first, but",
        r"I'm not able to verify",
        r"hypothetically",
        r"in theory",
    )
]

CONTRADICTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"but actually|actually, no",
        r"wait,? (?:no|I was wrong)",
        r"on second thought",
        r"correction:",
        r"I misspoke",
    )
]

INCOMPLETE_STATEMENT_PATTERNS = [
    re.compile(r"\.{3,}$"),
    re.compile(r"\b(?:and|or|but|if|when|while)\s*$", re.IGNORECASE),
]

REFERENCE_RE = re.compile(r"\[(\d+)\]")
REFERENCE_DEFINITION_RE = re.compile(r"^\[\d+\]:", re.MULTILINE)

# -- Retry policy ------------------------------------------------------------

MAX_TOTAL_ATTEMPTS = 12
MAX_ATTEMPTS_PER_TIER = 2
RETRY_TIME_BUDGET_SECONDS = 60.0

# Identical deficiency sets on this many consecutive attempts escalate.
REPEATED_DEFICIENCY_ESCALATION = 3

TOOL_ALTERNATIVES = {
    "write": ["edit"],
    "edit": ["write"],
    "read": ["glob", "grep"],
    "glob": ["grep", "bash"],
    "grep": ["glob", "bash"],
}

TASK_SEGMENT_PATTERNS = [
    re.compile(r"first,?\s+(.+?)\.\s*then,?\s+(.+)", re.IGNORECASE),
    re.compile(r"(.+?)\s+and\s+(?:also|then)\s+(.+)", re.IGNORECASE),
    re.compile(
        r"step\s*\d+[:.]\s*(.+?)(?=\s*step\s*\d+[:.]|$)", re.IGNORECASE | re.DOTALL
    ),
    re.compile(r"(?:^|\s)\d+[.)]\s+(.+?)(?=\s+\d+[.)]\s|$)", re.MULTILINE),
    re.compile(r"^\s*[-•*]\s*(.+)$", re.MULTILINE),
]

# -- Context compression -----------------------------------------------------

COMPRESS_AT = 0.8
MINIMAL_AT = 0.95

MAX_TOOL_RESULT_TOKENS = 1000
TRUNCATE_HEAD_TOKENS = 500
TRUNCATE_TAIL_TOKENS = 500
CHARS_PER_TOKEN = 4
MAX_CODE_BLOCK_LINES = 30
KEEP_CODE_HEAD_LINES = 10
KEEP_CODE_TAIL_LINES = 5
MAX_MESSAGE_AGE = 10
PRESERVE_RECENT_MESSAGES = 3

PRESERVATION_PRIORITIES = {
    "context_file": 1.0,
    "image": 1.0,
    "recent_message": 0.8,
    "error": 0.7,
    "decision": 0.6,
    "tool_result": 0.4,
    "old_message": 0.2,
}

# -- Memory selection --------------------------------------------------------

MEMORY_WEIGHTS = {
    "keyword_overlap": 0.25,
    "entity_overlap": 0.25,
    "recency": 0.2,
    "causal_link": 0.15,
    "path_overlap": 0.1,
    "type_bonus": 0.05,
}

RECENCY_HALF_LIFE_MINUTES = 30.0
RELEVANCE_THRESHOLD = 0.15
MANDATORY_MEMORY_AGE_MINUTES = 3.0
ERROR_MEMORY_AGE_MINUTES = 10.0
MANDATORY_DECISION_COUNT = 3
CONTENT_HASH_LENGTH = 200
DEFAULT_MEMORY_CAPACITY = 1000

MEMORY_TYPE_BONUSES = {
    "ERROR": 0.8,
    "DECISION": 0.6,
    "TOOL_RESULT": 0.4,
    "FILE_CONTENT": 0.3,
    "CONVERSATION": 0.2,
}

# -- Termination -------------------------------------------------------------

CONFIRMED_COMPLETE_THRESHOLD = 0.85
POTENTIALLY_COMPLETE_THRESHOLD = 0.5

SIGNAL_WEIGHT_FACTOR = 0.15
MAX_SIGNAL_CONTRIBUTION = 0.4
REQUIRED_CHECK_WEIGHT = 0.5
OPTIONAL_CHECK_WEIGHT = 0.1

COMPLETION_STATEMENT_CONFIDENCE = 0.3
COMPLETION_STATEMENT_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.MULTILINE)
    for p in (
        r"^(?:I've|I have) (?:completed|finished|done)",
        r"^(?:The|Your) (?:task|request|change) (?:is|has been) (?:complete|done)",
        r"^All (?:changes|modifications) (?:have been|are) (?:made|applied)",
        r"^(?:Done|Finished|Complete)[.!]?$",
        r"successfully (?:created|modified|updated|deleted)",
    )
]

SIGNAL_CONFIDENCES = {
    "MODEL_STATEMENT": COMPLETION_STATEMENT_CONFIDENCE,
    "TOOL_SUCCESS": 0.5,
    "OUTPUT_PRESENT": 0.7,
    "NO_PENDING_ACTIONS": 0.4,
    "USER_ACCEPT": 1.0,
}

# check type -> (required, timeout seconds)
VALIDATION_CHECK_CONFIGS = {
    "FILE_EXISTS": (True, 5.0),
    "SYNTAX_VALID": (True, 10.0),
    "DIFF_NONEMPTY": (True, 5.0),
    "TESTS_PASS": (False, 60.0),
    "SCHEMA_VALID": (False, 5.0),
    "NO_REGRESSIONS": (False, 30.0),
}
VALIDATION_TIMEOUT_SECONDS = 60.0

NON_RECOVERABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"permission denied", r"access denied", r"not found", r"does not exist")
]

# -- Entities ----------------------------------------------------------------

ENTITY_PATTERNS = {
    "FILE": re.compile(
        r"""(?:^|\s|["'`])([\w\-./]+\.[a-z]{1,4})(?=\s|$|:|[()\[\]"'`])""",
        re.MULTILINE,
    ),
    "FUNCTION": re.compile(r"(?:function|def|fn|func|const|let|var)\s+(\w+)\s*[=(]"),
    "VARIABLE": re.compile(r"(?:const|let|var|val)\s+(\w+)\s*[=:]"),
    "CLASS": re.compile(r"(?:class|struct|interface|type|enum)\s+(\w+)"),
    "URL": re.compile(r"""https?://[^\s<>"']+"""),
    "ERROR_CODE": re.compile(r"(?:error|err|E|errno)\s*[:=]?\s*(\d{3,5})", re.IGNORECASE),
}

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were been
    be have has had do does did will would could should may might must shall can
    need this that these those it its i you he she we they what which who whom
    when where why how all each every both few more most other some such no not
    only same so than too very just also now here there then once
    """.split()
)

TOKENS_PER_CHAR_ESTIMATE = 0.25

# -- Orchestrator ------------------------------------------------------------

DEFAULT_TOKEN_BUDGET = 8000
DEFAULT_MAX_CONTEXT_TOKENS = 128_000
DEFAULT_MAX_ITERATIONS = 20
DEFAULT_AVAILABLE_TOOLS = ("read", "write", "edit", "bash", "glob", "grep")
MEMORY_BUDGET_SHARE = 0.6

"""Context compression: shrink the conversation buffer under token pressure.

Five lossy rules are applied in priority order. ``COMPRESSED`` runs the
first three and ``MINIMAL`` runs all five. Messages on the preserve list
are never touched, and a replacement is only kept when it is smaller than
the message it replaces.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace

from .constants import (
    CHARS_PER_TOKEN,
    COMPRESS_AT,
    KEEP_CODE_HEAD_LINES,
    KEEP_CODE_TAIL_LINES,
    MAX_CODE_BLOCK_LINES,
    MAX_MESSAGE_AGE,
    MAX_TOOL_RESULT_TOKENS,
    MINIMAL_AT,
    PRESERVATION_PRIORITIES,
    PRESERVE_RECENT_MESSAGES,
    TRUNCATE_HEAD_TOKENS,
    TRUNCATE_TAIL_TOKENS,
)
from .models import (
    CompressibleMessage,
    CompressionLevel,
    CompressionTrigger,
    EntityTable,
)
from .utils import (
    create_entity_table,
    estimate_tokens,
    extract_code_blocks,
    extract_entities,
    fold_code,
    merge_entity_tables,
    truncate_middle,
    unique,
)

logger = logging.getLogger(__name__)

TRUNCATE_LARGE_TOOL_RESULTS = "TRUNCATE_LARGE_TOOL_RESULTS"
FOLD_CODE_BLOCKS = "FOLD_CODE_BLOCKS"
REMOVE_REDUNDANT_MESSAGES = "REMOVE_REDUNDANT_MESSAGES"
EXTRACT_ENTITIES_FROM_OLD_MESSAGES = "EXTRACT_ENTITIES_FROM_OLD_MESSAGES"
COLLAPSE_FAILED_ATTEMPTS = "COLLAPSE_FAILED_ATTEMPTS"

RULE_ORDER = [
    TRUNCATE_LARGE_TOOL_RESULTS,
    FOLD_CODE_BLOCKS,
    REMOVE_REDUNDANT_MESSAGES,
    EXTRACT_ENTITIES_FROM_OLD_MESSAGES,
    COLLAPSE_FAILED_ATTEMPTS,
]
COMPRESSED_RULE_COUNT = 3


@dataclass(frozen=True)
class PendingToolResult:
    """A tool result not yet appended to the conversation."""

    tool_call_id: str
    tool_name: str
    content: str
    token_count: int


@dataclass
class CompressionInput:
    messages: list[CompressibleMessage]
    current_token_count: int
    token_limit: int
    tool_results: list[PendingToolResult] = field(default_factory=list)
    entity_table: EntityTable = field(default_factory=create_entity_table)
    preserve_ids: frozenset[str] = frozenset()
    force_level: CompressionLevel | None = None


@dataclass
class CompressionOutput:
    messages: list[CompressibleMessage]
    entity_table: EntityTable
    tokens_saved: int
    compression_ratio: float
    level: CompressionLevel
    applied_rules: list[str]
    tool_results: list[PendingToolResult] = field(default_factory=list)


@dataclass
class _RuleResult:
    messages: list[CompressibleMessage]
    tokens_saved: int = 0
    matched: bool = False
    entities: list = field(default_factory=list)


# -- Level selection ---------------------------------------------------------


def determine_compression_level(
    current_token_count: int, token_limit: int
) -> CompressionLevel:
    if token_limit <= 0:
        return CompressionLevel.MINIMAL
    usage = current_token_count / token_limit
    if usage >= MINIMAL_AT:
        return CompressionLevel.MINIMAL
    if usage >= COMPRESS_AT:
        return CompressionLevel.COMPRESSED
    return CompressionLevel.FULL


def should_compress(
    trigger: CompressionTrigger, current_token_count: int = 0, token_limit: int = 0
) -> bool:
    match trigger:
        case CompressionTrigger.TOKEN_THRESHOLD_EXCEEDED:
            return (
                determine_compression_level(current_token_count, token_limit)
                != CompressionLevel.FULL
            )
        case CompressionTrigger.RETRY_POLICY_REQUEST | CompressionTrigger.EXPLICIT:
            return True
    raise ValueError(f"unknown compression trigger {trigger!r}")


def rules_for_level(level: CompressionLevel) -> list[str]:
    match level:
        case CompressionLevel.FULL:
            return []
        case CompressionLevel.COMPRESSED:
            return RULE_ORDER[:COMPRESSED_RULE_COUNT]
        case CompressionLevel.MINIMAL:
            return list(RULE_ORDER)
    raise ValueError(f"unknown compression level {level!r}")


# -- Entry point -------------------------------------------------------------


def compress_context(inp: CompressionInput) -> CompressionOutput:
    """Shrink the message buffer according to the current token pressure."""
    level = inp.force_level or determine_compression_level(
        inp.current_token_count, inp.token_limit
    )
    if level == CompressionLevel.FULL:
        return CompressionOutput(
            messages=list(inp.messages),
            entity_table=inp.entity_table,
            tokens_saved=0,
            compression_ratio=1.0,
            level=level,
            applied_rules=[],
            tool_results=list(inp.tool_results),
        )

    messages = list(inp.messages)
    tool_results = list(inp.tool_results)
    entity_table = inp.entity_table
    saved = 0
    applied: list[str] = []

    for rule in rules_for_level(level):
        result = _apply_rule(messages, inp.preserve_ids, _RULES[rule])
        if rule == TRUNCATE_LARGE_TOOL_RESULTS:
            if any(r.token_count > MAX_TOOL_RESULT_TOKENS for r in tool_results):
                tool_results, pending_saved = _truncate_pending(tool_results)
                result.matched = True
                result.tokens_saved += pending_saved
        messages = result.messages
        saved += result.tokens_saved
        if result.entities:
            entity_table = merge_entity_tables(
                entity_table, create_entity_table(result.entities)
            )
        if result.matched:
            applied.append(rule)

    current = inp.current_token_count
    if current > 0:
        ratio = max(0, current - saved) / current
    else:
        ratio = 1.0
    logger.debug(
        "compressed at %s: saved %d tokens, rules=%s", level, saved, applied
    )
    return CompressionOutput(
        messages=messages,
        entity_table=entity_table,
        tokens_saved=saved,
        compression_ratio=min(1.0, ratio),
        level=level,
        applied_rules=applied,
        tool_results=tool_results,
    )


def compress_incrementally(
    messages: Sequence[CompressibleMessage],
    target_reduction: int,
    preserve_ids: Iterable[str] = (),
) -> tuple[list[CompressibleMessage], int]:
    """Run message rules in order until *target_reduction* tokens are saved."""
    preserve = frozenset(preserve_ids)
    current = list(messages)
    total = 0
    for rule in RULE_ORDER:
        if total >= target_reduction:
            break
        result = _apply_rule(current, preserve, _RULES[rule])
        current = result.messages
        total += result.tokens_saved
    return current, total


# -- Rules -------------------------------------------------------------------

# A rule transform returns None when the message is not eligible, or a
# (replacement, entities) pair where replacement None drops the message.
_Transform = Callable[[CompressibleMessage], tuple | None]


def _apply_rule(
    messages: list[CompressibleMessage],
    preserve_ids: frozenset[str],
    transform: _Transform,
) -> _RuleResult:
    result = _RuleResult(messages=[])
    for message in messages:
        if message.preserved or message.id in preserve_ids:
            result.messages.append(message)
            continue
        outcome = transform(message)
        if outcome is None:
            result.messages.append(message)
            continue
        result.matched = True
        replacement, entities = outcome
        result.entities.extend(entities)
        if replacement is None:
            result.tokens_saved += message.token_count
        elif replacement.token_count < message.token_count:
            result.tokens_saved += message.token_count - replacement.token_count
            result.messages.append(replacement)
        else:
            result.messages.append(message)
    return result


def _shrink(message: CompressibleMessage, content: str) -> CompressibleMessage:
    return replace(message, content=content, token_count=estimate_tokens(content))


def _truncate_text(content: str) -> str:
    return truncate_middle(
        content,
        TRUNCATE_HEAD_TOKENS * CHARS_PER_TOKEN,
        TRUNCATE_TAIL_TOKENS * CHARS_PER_TOKEN,
    )


def _truncate_tool_message(message: CompressibleMessage):
    if message.role != "tool" or message.token_count <= MAX_TOOL_RESULT_TOKENS:
        return None
    return _shrink(message, _truncate_text(message.content)), []


def _truncate_pending(
    results: list[PendingToolResult],
) -> tuple[list[PendingToolResult], int]:
    out = []
    saved = 0
    for r in results:
        if r.token_count > MAX_TOOL_RESULT_TOKENS:
            content = _truncate_text(r.content)
            tokens = estimate_tokens(content)
            if tokens < r.token_count:
                saved += r.token_count - tokens
                r = replace(r, content=content, token_count=tokens)
        out.append(r)
    return out, saved


def _fold_code_blocks(message: CompressibleMessage):
    blocks = [
        b
        for b in extract_code_blocks(message.content)
        if len(b["content"].rstrip("\n").split("\n")) > MAX_CODE_BLOCK_LINES
    ]
    if not blocks:
        return None
    content = message.content
    # Replace back to front so earlier offsets stay valid.
    for b in reversed(blocks):
        folded = fold_code(
            b["content"].rstrip("\n"), KEEP_CODE_HEAD_LINES, KEEP_CODE_TAIL_LINES
        )
        lang = "" if b["language"] == "unknown" else b["language"]
        block = f"```{lang}\n{folded}\n```"
        content = content[: b["start"]] + block + content[b["end"] :]
    return _shrink(message, content), []


def _remove_superseded(message: CompressibleMessage):
    if message.role == "assistant" and message.metadata.get("is_superseded"):
        return None, []
    return None


def _summarize_old(message: CompressibleMessage):
    if message.age <= MAX_MESSAGE_AGE:
        return None
    entities = extract_entities(message.content, message.id)
    mentions = ", ".join(f"{e.type}:{e.value}" for e in entities)
    summary = f"[Message {message.id} mentioned {len(entities)} entities: {mentions}]"
    return _shrink(message, summary), entities


def _collapse_failed(message: CompressibleMessage):
    if not message.metadata.get("attempt_failed"):
        return None
    reason = message.metadata.get("failure_reason") or "unknown"
    return _shrink(message, f"[Failed attempt: {reason}]"), []


_RULES: dict[str, _Transform] = {
    TRUNCATE_LARGE_TOOL_RESULTS: _truncate_tool_message,
    FOLD_CODE_BLOCKS: _fold_code_blocks,
    REMOVE_REDUNDANT_MESSAGES: _remove_superseded,
    EXTRACT_ENTITIES_FROM_OLD_MESSAGES: _summarize_old,
    COLLAPSE_FAILED_ATTEMPTS: _collapse_failed,
}


# -- Buffer helpers ----------------------------------------------------------


def mark_message_ages(
    messages: Sequence[CompressibleMessage], current_turn: int | None = None
) -> list[CompressibleMessage]:
    """Set each message's age to the number of turns since it was added."""
    if current_turn is None:
        current_turn = len(messages) - 1
    return [
        replace(m, age=max(0, current_turn - i)) for i, m in enumerate(messages)
    ]


def preservation_candidates(messages: Sequence[CompressibleMessage]) -> list[str]:
    """Ids that should stay verbatim: context files, images, recent, errors."""
    context_files = [m.id for m in messages if m.metadata.get("is_context_file")]
    images = [m.id for m in messages if m.metadata.get("is_image")]
    recent = [m.id for m in messages[-PRESERVE_RECENT_MESSAGES:]]
    errors = [m.id for m in messages if "error" in m.content.lower()]
    return unique(context_files + images + recent + errors)


def message_priority(message: CompressibleMessage) -> float:
    if message.metadata.get("is_context_file"):
        return PRESERVATION_PRIORITIES["context_file"]
    if message.metadata.get("is_image"):
        return PRESERVATION_PRIORITIES["image"]
    if "error" in message.content.lower():
        return PRESERVATION_PRIORITIES["error"]
    if message.age <= PRESERVE_RECENT_MESSAGES:
        return PRESERVATION_PRIORITIES["recent_message"]
    if message.metadata.get("is_decision"):
        return PRESERVATION_PRIORITIES["decision"]
    if message.role == "tool":
        return PRESERVATION_PRIORITIES["tool_result"]
    return PRESERVATION_PRIORITIES["old_message"]


def should_preserve(message: CompressibleMessage) -> bool:
    return message_priority(message) >= PRESERVATION_PRIORITIES["recent_message"]

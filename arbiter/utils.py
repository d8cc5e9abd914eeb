"""Text utilities: tokenization, token estimates, similarity, entities, code blocks."""

import functools
import json
import math
import re
import secrets
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace

import tiktoken

from .constants import (
    ENTITY_PATTERNS,
    STOP_WORDS,
    TOKENS_PER_CHAR_ESTIMATE,
)
from .models import Entity, EntityTable, EntityType

_NON_WORD_RE = re.compile(r"[^\w\s]")
_CODE_BLOCK_RE = re.compile(r"```(\w*)\n(.*?)```", re.DOTALL)
_BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}


# -- Tokens ------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """Lowercased content words of *text*, stop words and short tokens removed."""
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2 and t not in STOP_WORDS]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) * TOKENS_PER_CHAR_ESTIMATE)


def estimate_object_tokens(obj) -> int:
    return estimate_tokens(json.dumps(obj, default=str))


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Exact cl100k token count, for reporting rather than budgeting."""
    if not text:
        return 0
    return len(_encoder().encode(text, disallowed_special=()))


def count_message_tokens(messages: list[dict]) -> int:
    """Token count of a chat transcript, ~4 tokens overhead per message."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += count_tokens(content)
    return total + 4 * len(messages)


# -- Similarity --------------------------------------------------------------


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def weighted_sum(values: Sequence[float], weights: Sequence[float]) -> float:
    if len(values) != len(weights):
        raise ValueError("values and weights must have the same length")
    return sum(v * w for v, w in zip(values, weights))


# -- Entities ----------------------------------------------------------------


def extract_entities(text: str, source_message_id: str | None = None) -> list[Entity]:
    """Find file names, identifiers, URLs and error codes mentioned in *text*."""
    entities: list[Entity] = []
    seen: set[str] = set()
    for type_name, pattern in ENTITY_PATTERNS.items():
        entity_type = EntityType(type_name)
        for match in pattern.finditer(text):
            value = match.group(1) if pattern.groups else match.group(0)
            if not value:
                continue
            key = f"{entity_type}:{value}"
            if key in seen:
                continue
            seen.add(key)
            entities.append(Entity(entity_type, value, source_message_id))
    return entities


def create_entity_table(entities: Iterable[Entity] = ()) -> EntityTable:
    table = EntityTable()
    for entity in entities:
        _add_to_table(table, entity)
    return table


def _add_to_table(table: EntityTable, entity: Entity) -> None:
    key = entity.key
    existing = table.entities.get(key)
    if existing is not None:
        table.entities[key] = replace(existing, frequency=existing.frequency + 1)
        return
    table.entities[key] = entity
    table.by_type[entity.type].append(key)
    if entity.source_message_id:
        table.by_source.setdefault(entity.source_message_id, []).append(key)


def merge_entity_tables(a: EntityTable, b: EntityTable) -> EntityTable:
    """Return a new table holding both inputs; shared keys add frequencies."""
    merged = create_entity_table(a.entities.values())
    for entity in b.entities.values():
        existing = merged.entities.get(entity.key)
        if existing is None:
            _add_to_table(merged, entity)
        else:
            merged.entities[entity.key] = replace(
                existing, frequency=existing.frequency + entity.frequency
            )
    return merged


# -- Text shaping ------------------------------------------------------------


def truncate_middle(text: str, head_chars: int, tail_chars: int) -> str:
    if len(text) <= head_chars + tail_chars:
        return text
    dropped = len(text) - head_chars - tail_chars
    head = text[:head_chars]
    tail = text[len(text) - tail_chars :] if tail_chars else ""
    return f"{head}\n\n... [{dropped} characters truncated] ...\n\n{tail}"


def fold_code(code: str, head_lines: int, tail_lines: int) -> str:
    lines = code.split("\n")
    if len(lines) <= head_lines + tail_lines:
        return code
    folded = len(lines) - head_lines - tail_lines
    tail = lines[len(lines) - tail_lines :] if tail_lines else []
    return "\n".join(
        lines[:head_lines] + [f"// ... [{folded} lines folded] ..."] + tail
    )


def extract_code_blocks(text: str) -> list[dict]:
    """Fenced code blocks as dicts with language, content, start and end."""
    return [
        {
            "language": m.group(1) or "unknown",
            "content": m.group(2),
            "start": m.start(),
            "end": m.end(),
        }
        for m in _CODE_BLOCK_RE.finditer(text)
    ]


# -- Structure checks --------------------------------------------------------


def is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except (ValueError, TypeError):
        return False
    return True


def has_balanced_braces(text: str) -> bool:
    stack: list[str] = []
    for ch in text:
        if ch in "([{":
            stack.append(ch)
        elif ch in _BRACKET_PAIRS:
            if not stack or stack.pop() != _BRACKET_PAIRS[ch]:
                return False
    return not stack


def count_matches(text: str, pattern: re.Pattern) -> int:
    return sum(1 for _ in pattern.finditer(text))


# -- Collections -------------------------------------------------------------


def unique(items: Iterable) -> list:
    """Deduplicate, keeping first occurrences in order."""
    return list(dict.fromkeys(items))


def group_by(items: Iterable, key: Callable) -> dict:
    groups: dict = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


# -- Time and ids ------------------------------------------------------------


def now() -> float:
    return time.time()


def minutes_between(earlier: float, later: float) -> float:
    return (later - earlier) / 60.0


def recency_decay(age_minutes: float, half_life_minutes: float) -> float:
    return 0.5 ** (max(0.0, age_minutes) / half_life_minutes)


def generate_id(prefix: str) -> str:
    stamp = _base36(int(time.time() * 1000))
    return f"{prefix}_{stamp}_{secrets.token_hex(4)}"


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"

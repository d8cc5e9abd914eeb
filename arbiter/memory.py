"""Memory store and relevance-based memory selection.

The selector ranks stored items against the current query and admits them
into the model context under a token budget. Some items are mandatory and
are admitted before any budget accounting takes place.
"""

import logging
import os
import re
from collections.abc import Iterable, Sequence

from .constants import (
    CONTENT_HASH_LENGTH,
    DEFAULT_MEMORY_CAPACITY,
    ERROR_MEMORY_AGE_MINUTES,
    MANDATORY_DECISION_COUNT,
    MANDATORY_MEMORY_AGE_MINUTES,
    MEMORY_TYPE_BONUSES,
    MEMORY_WEIGHTS,
    RECENCY_HALF_LIFE_MINUTES,
    RELEVANCE_THRESHOLD,
)
from .models import (
    ExclusionReason,
    MemoryItem,
    MemorySelectionResult,
    MemoryType,
    QueryContext,
    RelevanceBreakdown,
    RelevanceScore,
)
from .utils import (
    estimate_tokens,
    extract_entities,
    generate_id,
    jaccard_similarity,
    minutes_between,
    now as _now,
    recency_decay,
    tokenize,
    unique,
    weighted_sum,
)

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def create_memory_item(
    content: str,
    type: MemoryType,
    *,
    causal_links: Iterable[str] = (),
    file_paths: Iterable[str] = (),
    item_id: str | None = None,
    timestamp: float | None = None,
) -> MemoryItem:
    item_id = item_id or generate_id("mem")
    return MemoryItem(
        id=item_id,
        content=content,
        tokens=tuple(tokenize(content)),
        entities=tuple(extract_entities(content, item_id)),
        timestamp=_now() if timestamp is None else timestamp,
        type=MemoryType(type),
        causal_links=tuple(causal_links),
        token_count=estimate_tokens(content),
        file_paths=tuple(file_paths),
    )


def create_query_context(
    query: str,
    *,
    active_memory_ids: Iterable[str] = (),
    active_file_paths: Iterable[str] = (),
    timestamp: float | None = None,
) -> QueryContext:
    return QueryContext(
        tokens=tuple(tokenize(query)),
        entities=tuple(extract_entities(query)),
        timestamp=_now() if timestamp is None else timestamp,
        active_memory_ids=frozenset(active_memory_ids),
        active_file_paths=tuple(active_file_paths),
    )


# -- Scoring -----------------------------------------------------------------


def _entity_keys(entities) -> set[str]:
    return {f"{e.type}:{e.value.lower()}" for e in entities}


def _normalize_path(path: str) -> str:
    return path.lower().replace("\\", "/")


def _paths_match(a: str, b: str) -> bool:
    if a == b or a in b or b in a:
        return True
    return os.path.basename(a) == os.path.basename(b)


def path_overlap(item_paths: Sequence[str], active_paths: Sequence[str]) -> float:
    """Fraction of *item_paths* that match one of *active_paths*."""
    if not item_paths or not active_paths:
        return 0.0
    active = [_normalize_path(p) for p in active_paths]
    matched = sum(
        1
        for p in item_paths
        if any(_paths_match(_normalize_path(p), a) for a in active)
    )
    return matched / len(item_paths)


def compute_relevance(
    item: MemoryItem, query: QueryContext, now: float | None = None
) -> RelevanceScore:
    now = query.timestamp if now is None else now

    item_entities = _entity_keys(item.entities)
    query_entities = _entity_keys(query.entities)
    if item_entities and query_entities:
        entity_overlap = jaccard_similarity(item_entities, query_entities)
    else:
        entity_overlap = 0.0

    breakdown = RelevanceBreakdown(
        keyword_overlap=jaccard_similarity(item.tokens, query.tokens),
        entity_overlap=entity_overlap,
        recency=recency_decay(
            minutes_between(item.timestamp, now), RECENCY_HALF_LIFE_MINUTES
        ),
        causal_link=(
            1.0 if any(c in query.active_memory_ids for c in item.causal_links) else 0.0
        ),
        path_overlap=path_overlap(item.file_paths, query.active_file_paths),
        type_bonus=MEMORY_TYPE_BONUSES.get(item.type, 0.0),
    )
    total = weighted_sum(
        [getattr(breakdown, k) for k in MEMORY_WEIGHTS],
        list(MEMORY_WEIGHTS.values()),
    )
    return RelevanceScore(item_id=item.id, total=total, breakdown=breakdown)


def content_hash(content: str) -> str:
    """Normalized prefix used to spot duplicate memories."""
    return _WHITESPACE_RE.sub(" ", content.lower()).strip()[:CONTENT_HASH_LENGTH]


# -- Selection ---------------------------------------------------------------


def select_relevant_memories(
    candidates: Sequence[MemoryItem],
    query: QueryContext,
    token_budget: int,
    mandatory_items: Iterable[str] = (),
    now: float | None = None,
) -> MemorySelectionResult:
    """Pick the memories to surface for *query* within *token_budget*.

    Mandatory ids are admitted first and never dropped, even when they alone
    exceed the budget; ``mandatory_over_budget`` reports that case. The
    remaining items are admitted by descending score until the budget runs
    out, skipping anything below the relevance threshold.
    """
    scores = {item.id: compute_relevance(item, query, now) for item in candidates}
    ranked = sorted(candidates, key=lambda item: scores[item.id].total, reverse=True)

    mandatory = set(mandatory_items)
    selected: list[MemoryItem] = []
    excluded: dict[str, ExclusionReason] = {}
    total_tokens = 0
    seen: set[str] = set()

    for item in ranked:
        if item.id in mandatory:
            selected.append(item)
            seen.add(content_hash(item.content))
            total_tokens += item.token_count

    # Mandatory items win over duplicates of themselves.
    remaining = []
    for item in ranked:
        if item.id in mandatory:
            continue
        h = content_hash(item.content)
        if h in seen:
            excluded[item.id] = ExclusionReason.DUPLICATE
            continue
        seen.add(h)
        remaining.append(item)

    mandatory_over_budget = total_tokens > token_budget
    if mandatory_over_budget:
        logger.debug(
            "mandatory memories use %d tokens, over the %d budget",
            total_tokens,
            token_budget,
        )

    for item in remaining:
        if scores[item.id].total < RELEVANCE_THRESHOLD:
            excluded[item.id] = ExclusionReason.LOW_RELEVANCE
        elif total_tokens + item.token_count > token_budget:
            excluded[item.id] = ExclusionReason.TOKEN_BUDGET_EXCEEDED
        else:
            selected.append(item)
            total_tokens += item.token_count

    return MemorySelectionResult(
        selected=selected,
        scores=scores,
        total_tokens=total_tokens,
        excluded=excluded,
        mandatory_over_budget=mandatory_over_budget,
    )


def compute_mandatory_items(
    items: Sequence[MemoryItem], now: float | None = None
) -> list[str]:
    """Ids that must always be surfaced, oldest rule first, without repeats."""
    now = _now() if now is None else now
    recent = [
        i.id
        for i in items
        if minutes_between(i.timestamp, now) <= MANDATORY_MEMORY_AGE_MINUTES
    ]
    errors = [
        i.id
        for i in items
        if i.type == MemoryType.ERROR
        and minutes_between(i.timestamp, now) <= ERROR_MEMORY_AGE_MINUTES
    ]
    decisions = sorted(
        (i for i in items if i.type == MemoryType.DECISION),
        key=lambda i: i.timestamp,
        reverse=True,
    )[:MANDATORY_DECISION_COUNT]
    return unique(recent + errors + [i.id for i in decisions])


# -- Store -------------------------------------------------------------------


class MemoryStore:
    """Bounded, ordered collection of memory items.

    Once full, each insertion evicts the lowest-priority items, where
    priority is the type bonus minus the item's age in hours.
    """

    def __init__(self, max_items: int = DEFAULT_MEMORY_CAPACITY):
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self.items: list[MemoryItem] = []

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def get(self, item_id: str) -> MemoryItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def add(self, item: MemoryItem, now: float | None = None) -> None:
        self.items.append(item)
        if len(self.items) > self.max_items:
            self._evict(len(self.items) - self.max_items, now)

    def _evict(self, count: int, now: float | None) -> None:
        now = _now() if now is None else now

        def priority(item: MemoryItem) -> float:
            age_hours = (now - item.timestamp) / 3600.0
            return MEMORY_TYPE_BONUSES.get(item.type, 0.0) - age_hours

        victims = {item.id for item in sorted(self.items, key=priority)[:count]}
        logger.debug("evicting %d memories: %s", len(victims), sorted(victims))
        self.items = [item for item in self.items if item.id not in victims]

    def find_by_type(self, type: MemoryType) -> list[MemoryItem]:
        return [item for item in self.items if item.type == type]

    def find_by_path(self, path: str) -> list[MemoryItem]:
        target = _normalize_path(path)
        return [
            item
            for item in self.items
            if any(target in _normalize_path(p) for p in item.file_paths)
        ]

    def prune(self, max_age_minutes: float, now: float | None = None) -> int:
        """Drop items older than *max_age_minutes*; return how many went."""
        now = _now() if now is None else now
        before = len(self.items)
        self.items = [
            item
            for item in self.items
            if minutes_between(item.timestamp, now) <= max_age_minutes
        ]
        return before - len(self.items)

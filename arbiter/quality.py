"""Response quality evaluation.

A response is scored on four dimensions (structural, relevance,
completeness, coherence), each in [0, 1]. The dimensions are combined into
one score that maps onto a verdict band. Deficiency tags are detected
independently of the score, so an ACCEPT can still carry tags.
"""

import json

from .constants import (
    ACCEPT_THRESHOLD,
    COHERENCE_PENALTIES,
    CONTRADICTION_PATTERNS,
    DEFAULT_MAX_RESPONSE_TOKENS,
    ESCALATE_THRESHOLD,
    HALLUCINATION_PATTERNS,
    INCOMPLETE_STATEMENT_PATTERNS,
    QUALITY_WEIGHTS,
    QUERY_MISMATCH_THRESHOLD,
    REFERENCE_DEFINITION_RE,
    REFERENCE_RE,
    RETRY_THRESHOLD,
    STRUCTURAL_CHECK_WEIGHTS,
    SUBSTANTIAL_RESPONSE_CHARS,
    TOKENS_PER_CHAR_ESTIMATE,
)
from .models import (
    Deficiency,
    QualityEvalInput,
    QualityEvalOutput,
    QualityMetrics,
    ResponseType,
    Verdict,
)
from .utils import (
    extract_code_blocks,
    has_balanced_braces,
    jaccard_similarity,
    tokenize,
    weighted_sum,
)


def evaluate_quality(inp: QualityEvalInput) -> QualityEvalOutput:
    metrics = compute_quality_metrics(inp)
    score = weighted_sum(
        [getattr(metrics, k) for k in QUALITY_WEIGHTS],
        list(QUALITY_WEIGHTS.values()),
    )
    score = min(1.0, max(0.0, score))
    return QualityEvalOutput(
        score=score,
        verdict=determine_verdict(score),
        deficiencies=detect_deficiencies(inp, metrics),
        metrics=metrics,
    )


def compute_quality_metrics(inp: QualityEvalInput) -> QualityMetrics:
    return QualityMetrics(
        structural=compute_structural_score(inp),
        relevance=compute_relevance_score(inp),
        completeness=compute_completeness_score(inp),
        coherence=compute_coherence_score(inp.response),
    )


def determine_verdict(score: float) -> Verdict:
    """Map a score onto its verdict band; lower bounds are inclusive."""
    if score >= ACCEPT_THRESHOLD:
        return Verdict.ACCEPT
    if score >= RETRY_THRESHOLD:
        return Verdict.RETRY
    if score >= ESCALATE_THRESHOLD:
        return Verdict.ESCALATE
    return Verdict.ABORT


# -- Structural --------------------------------------------------------------


def parse_succeeds(inp: QualityEvalInput) -> bool:
    if not inp.response and not inp.tool_calls:
        return False
    return all(tc.name and isinstance(tc.arguments, dict) for tc in inp.tool_calls)


def has_expected_format(inp: QualityEvalInput) -> bool:
    match inp.expected_type:
        case ResponseType.TOOL_CALL:
            return bool(inp.tool_calls)
        case ResponseType.TEXT:
            return bool(inp.response) and not inp.tool_calls
        case ResponseType.CODE:
            return bool(extract_code_blocks(inp.response))
        case ResponseType.MIXED:
            return True
    raise ValueError(f"unknown response type {inp.expected_type!r}")


def within_length_bounds(inp: QualityEvalInput) -> bool:
    max_tokens = inp.constraints.max_response_tokens
    if max_tokens is None:
        max_tokens = DEFAULT_MAX_RESPONSE_TOKENS
    return len(inp.response) * TOKENS_PER_CHAR_ESTIMATE <= max_tokens


def no_malformed_blocks(text: str) -> bool:
    return has_balanced_braces(text) and text.count("```") % 2 == 0


def compute_structural_score(inp: QualityEvalInput) -> float:
    checks = {
        "parse_succeeds": parse_succeeds(inp),
        "has_expected_format": has_expected_format(inp),
        "within_length_bounds": within_length_bounds(inp),
        "no_malformed_blocks": no_malformed_blocks(inp.response),
    }
    return weighted_sum(
        [1.0 if checks[k] else 0.0 for k in STRUCTURAL_CHECK_WEIGHTS],
        list(STRUCTURAL_CHECK_WEIGHTS.values()),
    )


# -- Relevance ---------------------------------------------------------------


def _response_haystack(inp: QualityEvalInput) -> str:
    """Response text plus tool-call arguments, where a query can be echoed."""
    parts = [inp.response]
    for tc in inp.tool_calls:
        parts.append(json.dumps(tc.arguments, default=str))
    return " ".join(parts)


def compute_relevance_score(inp: QualityEvalInput) -> float:
    haystack = _response_haystack(inp)
    overlap = jaccard_similarity(inp.query_tokens, tokenize(haystack))
    if inp.query_entities:
        lowered = haystack.lower()
        hits = sum(1 for e in inp.query_entities if e.value.lower() in lowered)
        entity_ratio = hits / len(inp.query_entities)
    else:
        entity_ratio = 1.0
    return 0.5 * overlap + 0.5 * entity_ratio


# -- Completeness ------------------------------------------------------------


def _has_language(blocks: list[dict], language: str | None) -> bool:
    if not language:
        return True
    return any(b["language"].lower() == language.lower() for b in blocks)


def compute_completeness_score(inp: QualityEvalInput) -> float:
    """Average over the constraints that apply to this task."""
    c = inp.constraints
    scores = []
    lowered = inp.response.lower()

    if c.required_outputs:
        present = sum(1 for o in c.required_outputs if o.lower() in lowered)
        scores.append(present / len(c.required_outputs))

    if c.expected_tool_calls:
        names = {tc.name for tc in inp.tool_calls}
        present = sum(1 for name in c.expected_tool_calls if name in names)
        scores.append(present / len(c.expected_tool_calls))

    if c.requires_code:
        blocks = extract_code_blocks(inp.response)
        ok = bool(blocks) and _has_language(blocks, c.code_language)
        scores.append(1.0 if ok else 0.0)

    if not scores:
        return 1.0 if len(inp.response) > SUBSTANTIAL_RESPONSE_CHARS else 0.5
    return sum(scores) / len(scores)


# -- Coherence ---------------------------------------------------------------


def has_hallucination_markers(text: str) -> bool:
    return any(p.search(text) for p in HALLUCINATION_PATTERNS)


def has_contradiction(text: str) -> bool:
    return any(p.search(text) for p in CONTRADICTION_PATTERNS)


def has_incomplete_statement(text: str) -> bool:
    trimmed = text.strip()
    if not trimmed:
        return False
    return any(p.search(trimmed) for p in INCOMPLETE_STATEMENT_PATTERNS)


def has_broken_reference(text: str) -> bool:
    """A ``[n]`` citation points past the ``[n]:`` definitions that exist."""
    cited = [int(n) for n in REFERENCE_RE.findall(text)]
    if not cited:
        return False
    defined = len(REFERENCE_DEFINITION_RE.findall(text))
    return defined > 0 and max(cited) > defined


def compute_coherence_score(text: str) -> float:
    penalty = 0.0
    if has_hallucination_markers(text):
        penalty += COHERENCE_PENALTIES["hallucination"]
    if has_contradiction(text):
        penalty += COHERENCE_PENALTIES["contradiction"]
    if has_incomplete_statement(text):
        penalty += COHERENCE_PENALTIES["incomplete"]
    if has_broken_reference(text):
        penalty += COHERENCE_PENALTIES["broken_reference"]
    return max(0.0, 1.0 - penalty)


# -- Deficiencies ------------------------------------------------------------


def detect_deficiencies(
    inp: QualityEvalInput, metrics: QualityMetrics
) -> frozenset[Deficiency]:
    found: set[Deficiency] = set()
    text, calls, c = inp.response, inp.tool_calls, inp.constraints

    if not parse_succeeds(inp):
        found.add(Deficiency.PARSE_FAILURE)
    if not text and not calls:
        found.add(Deficiency.EMPTY_RESPONSE)
    if inp.expected_type == ResponseType.TOOL_CALL and not calls:
        found.add(Deficiency.MISSING_TOOL_CALL)
    if metrics.relevance < QUERY_MISMATCH_THRESHOLD:
        found.add(Deficiency.QUERY_MISMATCH)
    if not within_length_bounds(inp):
        found.add(Deficiency.TRUNCATED)
    if has_hallucination_markers(text):
        found.add(Deficiency.HALLUCINATION_MARKER)
    if has_contradiction(text):
        found.add(Deficiency.SELF_CONTRADICTION)

    if c.requires_code:
        blocks = extract_code_blocks(text)
        if not blocks:
            found.add(Deficiency.INCOMPLETE_CODE)
        elif not _has_language(blocks, c.code_language):
            found.add(Deficiency.WRONG_LANGUAGE)

    lowered = text.lower()
    if any(o.lower() not in lowered for o in c.required_outputs):
        found.add(Deficiency.MISSING_REQUIRED_OUTPUT)

    if any(
        not tc.id or not tc.name or not isinstance(tc.arguments, dict) for tc in calls
    ):
        found.add(Deficiency.MALFORMED_TOOL_CALL)

    return frozenset(found)

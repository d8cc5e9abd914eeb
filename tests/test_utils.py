"""Tests for the text utility layer."""

import re

import pytest

from arbiter.models import Entity, EntityType
from arbiter.utils import (
    count_matches,
    create_entity_table,
    estimate_object_tokens,
    estimate_tokens,
    extract_code_blocks,
    extract_entities,
    fold_code,
    generate_id,
    group_by,
    has_balanced_braces,
    is_valid_json,
    jaccard_similarity,
    merge_entity_tables,
    minutes_between,
    recency_decay,
    tokenize,
    truncate_middle,
    unique,
    weighted_sum,
)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokenize:
    def test_drops_stop_words_and_short_tokens(self):
        assert tokenize("The parser is in a bad state") == ["parser", "bad", "state"]

    def test_punctuation_splits_words(self):
        assert tokenize("fix utils.py: read_file()") == ["fix", "utils", "read_file"]

    def test_lowercases(self):
        assert tokenize("Refactor CONFIG Loader") == ["refactor", "config", "loader"]

    def test_empty(self):
        assert tokenize("") == []


class TestEstimateTokens:
    def test_quarter_of_chars_rounded_up(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0

    def test_object_uses_json(self):
        assert estimate_object_tokens({"a": 1}) == estimate_tokens('{"a": 1}')


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


class TestJaccard:
    def test_identical(self):
        assert jaccard_similarity(["a", "b"], ["b", "a"]) == 1.0

    def test_partial(self):
        assert jaccard_similarity(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)

    def test_both_empty_is_zero(self):
        assert jaccard_similarity([], []) == 0.0


class TestWeightedSum:
    def test_sum(self):
        assert weighted_sum([1.0, 0.5], [0.5, 0.5]) == pytest.approx(0.75)

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            weighted_sum([1.0], [0.5, 0.5])


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class TestExtractEntities:
    def test_file_and_function(self):
        entities = extract_entities("Edit src/app.py and update def load_config(path)")
        keys = {e.key for e in entities}
        assert "FILE:src/app.py" in keys
        assert "FUNCTION:load_config" in keys

    def test_url_and_error_code(self):
        entities = extract_entities("See https://example.com/docs for error 4040")
        keys = {e.key for e in entities}
        assert "URL:https://example.com/docs" in keys
        assert "ERROR_CODE:4040" in keys

    def test_class(self):
        entities = extract_entities("class MemoryStore:")
        assert Entity(EntityType.CLASS, "MemoryStore") in entities

    def test_deduplicates(self):
        entities = extract_entities("open main.py then close main.py")
        assert [e.value for e in entities if e.type == EntityType.FILE] == ["main.py"]

    def test_source_id_recorded(self):
        entities = extract_entities("read notes.md", "msg_1")
        assert entities[0].source_message_id == "msg_1"


class TestEntityTables:
    def test_create_indexes_by_type_and_source(self):
        table = create_entity_table(
            [Entity(EntityType.FILE, "a.py", "m1"), Entity(EntityType.URL, "http://x")]
        )
        assert len(table) == 2
        assert table.by_type[EntityType.FILE] == ["FILE:a.py"]
        assert table.by_source == {"m1": ["FILE:a.py"]}
        assert set(table.by_type) == set(EntityType)

    def test_merge_adds_frequencies(self):
        a = create_entity_table([Entity(EntityType.FILE, "a.py")])
        b = create_entity_table(
            [Entity(EntityType.FILE, "a.py"), Entity(EntityType.FILE, "b.py")]
        )
        merged = merge_entity_tables(a, b)
        assert merged.entities["FILE:a.py"].frequency == 2
        assert "FILE:b.py" in merged.entities
        assert a.entities["FILE:a.py"].frequency == 1


# ---------------------------------------------------------------------------
# Text shaping
# ---------------------------------------------------------------------------


class TestTruncateMiddle:
    def test_short_text_unchanged(self):
        assert truncate_middle("hello", 3, 3) == "hello"

    def test_marker(self):
        out = truncate_middle("a" * 10 + "b" * 10 + "c" * 10, 10, 10)
        assert out == "a" * 10 + "\n\n... [10 characters truncated] ...\n\n" + "c" * 10


class TestFoldCode:
    def test_short_code_unchanged(self):
        assert fold_code("a\nb", 1, 1) == "a\nb"

    def test_folds_middle(self):
        code = "\n".join(str(i) for i in range(10))
        assert fold_code(code, 2, 1) == "0\n1\n// ... [7 lines folded] ...\n9"


class TestExtractCodeBlocks:
    def test_language_and_offsets(self):
        text = "before\n```python\nx = 1\n```\nafter"
        [block] = extract_code_blocks(text)
        assert block["language"] == "python"
        assert block["content"] == "x = 1\n"
        assert text[block["start"] : block["end"]].startswith("```python")

    def test_unknown_language(self):
        [block] = extract_code_blocks("```\nplain\n```")
        assert block["language"] == "unknown"


# ---------------------------------------------------------------------------
# Structure checks and collections
# ---------------------------------------------------------------------------


class TestStructureChecks:
    def test_is_valid_json(self):
        assert is_valid_json('{"a": [1, 2]}')
        assert not is_valid_json("{a: 1}")

    @pytest.mark.parametrize("text", ["", "f(a[0]) {}", "{[()]}"])
    def test_balanced(self, text):
        assert has_balanced_braces(text)

    @pytest.mark.parametrize("text", ["(", "(]", "}{", "{[}]"])
    def test_unbalanced(self, text):
        assert not has_balanced_braces(text)

    def test_count_matches(self):
        assert count_matches("a1 b2 c3", re.compile(r"\d")) == 3


class TestCollections:
    def test_unique_keeps_order(self):
        assert unique([3, 1, 3, 2, 1]) == [3, 1, 2]

    def test_group_by(self):
        assert group_by(["ab", "cd", "e"], len) == {2: ["ab", "cd"], 1: ["e"]}


class TestTime:
    def test_minutes_between(self):
        assert minutes_between(0.0, 90.0) == 1.5

    def test_recency_half_life(self):
        assert recency_decay(0, 30) == 1.0
        assert recency_decay(30, 30) == pytest.approx(0.5)
        assert recency_decay(-5, 30) == 1.0

    def test_generate_id_prefix_and_uniqueness(self):
        ids = {generate_id("mem") for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("mem_") for i in ids)

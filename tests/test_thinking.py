"""Tests for the thinking-tag parser."""

from arbiter.thinking import ThinkingParser, strip_thinking


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestThinkingParser:
    def test_single_chunk(self):
        parser = ThinkingParser()
        assert parser.feed("Hello <think>secret</think>world") == "Hello world"
        assert parser.blocks == ["secret"]

    def test_tags_split_across_chunks(self):
        parser = ThinkingParser()
        out = parser.feed("a <thi")
        assert out == "a "
        out += parser.feed("nk>x</th")
        assert parser.inside_tag
        out += parser.feed("ink> b")
        out += parser.flush()
        assert out == "a  b"
        assert parser.blocks == ["x"]
        assert not parser.inside_tag

    def test_plain_angle_bracket_passes_through(self):
        parser = ThinkingParser()
        assert parser.feed("if a < b and c <d>") == "if a < b and c <d>"

    def test_trailing_bracket_held_until_flush(self):
        parser = ThinkingParser()
        assert parser.feed("x <") == "x "
        assert parser.flush() == "<"

    def test_unclosed_block_stays_hidden(self):
        parser = ThinkingParser()
        assert parser.feed("<reasoning>abc") == ""
        assert parser.flush() == ""
        assert parser.thinking == "abc"

    def test_every_tag_name(self):
        parser = ThinkingParser()
        text = "<thinking>1</thinking>A<think>2</think>B<reasoning>3</reasoning>C"
        assert parser.feed(text) == "ABC"
        assert parser.thinking == "1\n2\n3"

    def test_reset(self):
        parser = ThinkingParser()
        parser.feed("<think>half")
        parser.reset()
        assert parser.blocks == []
        assert not parser.inside_tag
        assert parser.feed("clean") == "clean"


# ---------------------------------------------------------------------------
# Whole responses
# ---------------------------------------------------------------------------


class TestStripThinking:
    def test_strips_and_trims(self):
        assert strip_thinking("<think>plan</think>\n\nAnswer") == ("Answer", "plan")

    def test_untouched_without_tags(self):
        assert strip_thinking("no tags ") == ("no tags ", "")

"""Streaming parser that strips thinking tags from model output.

Models that reason out loud wrap it in ``<thinking>``, ``<think>`` or
``<reasoning>`` tags. The parser removes those blocks from the visible
text and keeps their content in ``blocks``. Chunks may split a tag
anywhere; partial tags are held back until the next chunk decides them.
"""

THINKING_TAGS = ("thinking", "think", "reasoning")


def _match_open(text: str) -> str | None:
    for tag in THINKING_TAGS:
        if text.startswith(f"<{tag}>"):
            return tag
    return None


def _could_be_open(text: str) -> bool:
    return any(f"<{tag}>".startswith(text) for tag in THINKING_TAGS)


def _partial_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of *text* that starts *tag*."""
    for k in range(min(len(text), len(tag) - 1), 0, -1):
        if tag.startswith(text[-k:]):
            return k
    return 0


class ThinkingParser:
    def __init__(self):
        self.blocks: list[str] = []
        self._buffer = ""
        self._tag: str | None = None
        self._current = ""

    @property
    def thinking(self) -> str:
        return "\n".join(self.blocks)

    @property
    def inside_tag(self) -> bool:
        return self._tag is not None

    def feed(self, chunk: str) -> str:
        """Consume *chunk* and return the text that is safe to show."""
        text = self._buffer + chunk
        self._buffer = ""
        visible = []
        i = 0
        while i < len(text):
            if self._tag is not None:
                close = f"</{self._tag}>"
                j = text.find(close, i)
                if j == -1:
                    held = _partial_suffix(text[i:], close)
                    end = len(text) - held
                    self._current += text[i:end]
                    self._buffer = text[end:]
                    break
                self._current += text[i:j]
                self.blocks.append(self._current)
                self._current = ""
                self._tag = None
                i = j + len(close)
                continue

            j = text.find("<", i)
            if j == -1:
                visible.append(text[i:])
                break
            visible.append(text[i:j])
            rest = text[j:]
            tag = _match_open(rest)
            if tag is not None:
                self._tag = tag
                i = j + len(tag) + 2
            elif _could_be_open(rest):
                self._buffer = rest
                break
            else:
                visible.append("<")
                i = j + 1
        return "".join(visible)

    def flush(self) -> str:
        """Release held-back text at end of stream.

        An unclosed thinking block is kept as thinking, never shown.
        """
        out = ""
        if self._tag is not None:
            self.blocks.append(self._current + self._buffer)
        else:
            out = self._buffer
        self._buffer = ""
        self._current = ""
        self._tag = None
        return out

    def reset(self) -> None:
        self.blocks = []
        self._buffer = ""
        self._current = ""
        self._tag = None


def strip_thinking(text: str) -> tuple[str, str]:
    """Return ``(visible, thinking)`` for a complete response."""
    parser = ThinkingParser()
    visible = parser.feed(text) + parser.flush()
    if parser.blocks:
        visible = visible.strip()
    return visible, parser.thinking

"""Token usage extraction from upstream responses.

Non-streaming responses carry a ``usage`` object in the JSON body. Streaming
responses are Server-Sent-Events; ``message_start`` carries the input-side
counts and ``message_delta`` the output count. ``StreamUsageExtractor`` reads
those frames as the bytes go by, without holding back any of them.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from tollgate.metering.pricing import effective_input_tokens

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return 0


@dataclass
class TokenUsage:
    """Raw token counts as reported by the upstream provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def effective_input_tokens(self) -> int:
        return effective_input_tokens(
            self.input_tokens,
            self.cache_creation_input_tokens,
            self.cache_read_input_tokens,
        )

    @property
    def is_empty(self) -> bool:
        return self.effective_input_tokens == 0 and self.output_tokens == 0

    @classmethod
    def from_dict(cls, d: dict) -> TokenUsage:
        return cls(
            input_tokens=_count(d.get("input_tokens")),
            output_tokens=_count(d.get("output_tokens")),
            cache_creation_input_tokens=_count(d.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_count(d.get("cache_read_input_tokens")),
        )

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


def usage_from_body(body: object) -> TokenUsage | None:
    """Usage from a non-streaming Messages response, or None when absent."""
    if not isinstance(body, dict):
        return None
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenUsage.from_dict(usage)


class StreamUsageExtractor:
    """Per-request SSE parser that accumulates token usage.

    Chunks may split lines (and JSON payloads, and multi-byte UTF-8
    sequences) anywhere; the trailing partial line is kept until the next
    chunk. Frames that fail to parse are ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False
        self.usage = TokenUsage()
        self.events_seen = 0

    def feed(self, chunk: bytes) -> None:
        """Parse whatever complete lines ``chunk`` completes."""
        if self._finished or not chunk:
            return
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._handle_line(line)

    def finish(self) -> TokenUsage:
        """Flush the decoder and any unterminated last line; return the totals."""
        if not self._finished:
            self._buffer += self._decoder.decode(b"", final=True)
            if self._buffer:
                self._handle_line(self._buffer)
                self._buffer = ""
            self._finished = True
        return self.usage

    def passthrough(
        self,
        chunks: Iterable[bytes],
        on_complete: Callable[[TokenUsage], None] | None = None,
    ) -> Iterator[bytes]:
        """Yield every chunk unchanged, parsing each one after it is handed on.

        ``on_complete`` runs exactly once with the final usage, whether the
        source is exhausted, fails, or the consumer stops early.
        """
        try:
            for chunk in chunks:
                yield chunk
                self.feed(chunk)
        finally:
            usage = self.finish()
            if on_complete is not None:
                on_complete(usage)

    def _handle_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return
        data = line[len(DATA_PREFIX):].strip()
        if not data or data == DONE_SENTINEL:
            return
        try:
            event = json.loads(data)
        except ValueError:
            return
        if not isinstance(event, dict):
            return
        self.events_seen += 1

        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                self.usage.input_tokens = _count(usage.get("input_tokens"))
                self.usage.cache_creation_input_tokens = _count(usage.get("cache_creation_input_tokens"))
                self.usage.cache_read_input_tokens = _count(usage.get("cache_read_input_tokens"))
        elif event_type == "message_delta":
            usage = event.get("usage")
            if isinstance(usage, dict):
                self.usage.output_tokens = _count(usage.get("output_tokens"))
                # Later cache counts win when present
                cache_creation = _count(usage.get("cache_creation_input_tokens"))
                if cache_creation:
                    self.usage.cache_creation_input_tokens = cache_creation
                cache_read = _count(usage.get("cache_read_input_tokens"))
                if cache_read:
                    self.usage.cache_read_input_tokens = cache_read

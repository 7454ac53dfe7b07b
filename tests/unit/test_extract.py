from __future__ import annotations

import json

import pytest

from tollgate.metering.extract import StreamUsageExtractor, TokenUsage, usage_from_body


def sse(event: dict) -> bytes:
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n".encode()


MESSAGE_START = {
    "type": "message_start",
    "message": {
        "id": "msg_1",
        "model": "claude-opus-4-6",
        "usage": {
            "input_tokens": 120,
            "cache_creation_input_tokens": 40,
            "cache_read_input_tokens": 1000,
            "output_tokens": 1,
        },
    },
}
TEXT_DELTA = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "héllo ✓"}}
MESSAGE_DELTA = {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 77}}
MESSAGE_STOP = {"type": "message_stop"}

STREAM = sse(MESSAGE_START) + sse(TEXT_DELTA) + sse(MESSAGE_DELTA) + sse(MESSAGE_STOP)


class TestUsageFromBody:
    def test_reads_usage(self):
        usage = usage_from_body({"usage": {"input_tokens": 10, "output_tokens": 5}})
        assert usage == TokenUsage(input_tokens=10, output_tokens=5)

    def test_missing_usage(self):
        assert usage_from_body({"content": []}) is None
        assert usage_from_body({"usage": None}) is None
        assert usage_from_body(["not", "a", "dict"]) is None

    def test_bad_counts_treated_as_zero(self):
        usage = usage_from_body({"usage": {"input_tokens": "many", "output_tokens": -3}})
        assert usage.is_empty

    def test_effective_input(self):
        usage = TokenUsage(input_tokens=100, cache_creation_input_tokens=100, cache_read_input_tokens=100)
        assert usage.effective_input_tokens == 235


class TestStreamUsageExtractor:
    def test_whole_stream(self):
        ex = StreamUsageExtractor()
        ex.feed(STREAM)
        usage = ex.finish()
        assert usage.input_tokens == 120
        assert usage.cache_creation_input_tokens == 40
        assert usage.cache_read_input_tokens == 1000
        assert usage.output_tokens == 77
        assert ex.events_seen == 4

    def test_split_mid_json_across_three_chunks(self):
        start = sse(MESSAGE_START)
        delta = sse(MESSAGE_DELTA)
        payload = start + delta
        # cut inside the message_start JSON and inside the message_delta JSON
        cut1 = start.index(b'"cache_creation')
        cut2 = len(start) + delta.index(b"77") + 1
        chunks = [payload[:cut1], payload[cut1:cut2], payload[cut2:]]
        assert len(chunks) == 3 and all(chunks)

        ex = StreamUsageExtractor()
        forwarded = list(ex.passthrough(chunks))
        assert forwarded == chunks
        assert b"".join(forwarded) == payload
        usage = ex.usage
        assert (usage.input_tokens, usage.output_tokens) == (120, 77)
        assert usage.cache_read_input_tokens == 1000

    def test_byte_at_a_time(self):
        ex = StreamUsageExtractor()
        chunks = [STREAM[i:i + 1] for i in range(len(STREAM))]
        forwarded = b"".join(ex.passthrough(chunks))
        assert forwarded == STREAM
        assert ex.usage.output_tokens == 77
        assert ex.usage.input_tokens == 120

    def test_split_inside_multibyte_character(self):
        data = sse(TEXT_DELTA) + sse(MESSAGE_DELTA)
        cut = data.index("✓".encode()) + 1
        ex = StreamUsageExtractor()
        ex.feed(data[:cut])
        ex.feed(data[cut:])
        assert ex.finish().output_tokens == 77

    def test_crlf_lines(self):
        data = sse(MESSAGE_START).replace(b"\n", b"\r\n")
        ex = StreamUsageExtractor()
        ex.feed(data)
        assert ex.finish().input_tokens == 120

    def test_malformed_frames_ignored(self):
        ex = StreamUsageExtractor()
        ex.feed(b"data: {not json\n\ndata: [DONE]\n\ndata: 42\n\n: comment\n\n")
        ex.feed(sse(MESSAGE_DELTA))
        usage = ex.finish()
        assert usage.output_tokens == 77
        assert ex.events_seen == 1

    def test_no_usage_frames(self):
        ex = StreamUsageExtractor()
        ex.feed(sse(TEXT_DELTA) + sse(MESSAGE_STOP))
        assert ex.finish().is_empty

    def test_delta_cache_counts_override(self):
        later = {
            "type": "message_delta",
            "usage": {"output_tokens": 5, "cache_read_input_tokens": 9, "cache_creation_input_tokens": 0},
        }
        ex = StreamUsageExtractor()
        ex.feed(sse(MESSAGE_START) + sse(later))
        usage = ex.finish()
        assert usage.cache_read_input_tokens == 9
        # zero in the delta does not clear the earlier value
        assert usage.cache_creation_input_tokens == 40

    def test_last_delta_wins(self):
        first = {"type": "message_delta", "usage": {"output_tokens": 10}}
        second = {"type": "message_delta", "usage": {"output_tokens": 25}}
        ex = StreamUsageExtractor()
        ex.feed(sse(first) + sse(second))
        assert ex.finish().output_tokens == 25

    def test_unterminated_final_line_parsed_on_finish(self):
        ex = StreamUsageExtractor()
        ex.feed(b"data: " + json.dumps(MESSAGE_DELTA).encode())
        assert ex.usage.output_tokens == 0
        assert ex.finish().output_tokens == 77

    def test_on_complete_called_once(self):
        calls = []
        ex = StreamUsageExtractor()
        for _ in ex.passthrough([STREAM[:50], STREAM[50:]], on_complete=calls.append):
            pass
        assert len(calls) == 1
        assert calls[0].output_tokens == 77
        ex.finish()
        assert len(calls) == 1

    def test_on_complete_called_when_consumer_stops_early(self):
        calls = []
        ex = StreamUsageExtractor()
        chunks = [sse(MESSAGE_START), sse(TEXT_DELTA), sse(MESSAGE_DELTA)]
        gen = ex.passthrough(chunks, on_complete=calls.append)
        next(gen)
        next(gen)
        gen.close()
        assert len(calls) == 1
        assert calls[0].input_tokens == 120
        assert calls[0].output_tokens == 0

    def test_on_complete_called_when_source_fails(self):
        def source():
            yield sse(MESSAGE_START)
            raise OSError("upstream reset")

        calls = []
        ex = StreamUsageExtractor()
        gen = ex.passthrough(source(), on_complete=calls.append)
        assert next(gen) == sse(MESSAGE_START)
        with pytest.raises(OSError):
            next(gen)
        assert len(calls) == 1
        assert calls[0].input_tokens == 120

    def test_extractors_are_independent(self):
        a = StreamUsageExtractor()
        b = StreamUsageExtractor()
        a.feed(sse(MESSAGE_START)[:30])
        b.feed(sse(MESSAGE_DELTA))
        a.feed(sse(MESSAGE_START)[30:])
        assert a.finish().output_tokens == 0
        assert b.finish().input_tokens == 0
        assert a.usage.input_tokens == 120

"""Relay of Messages requests to the upstream provider."""

from __future__ import annotations

import io
import json
import logging
import urllib.error
import urllib.request
import uuid
from collections.abc import Iterator
from email.message import Message
from typing import IO

from tollgate.core.config import UpstreamConfig
from tollgate.core.errors import UpstreamError

logger = logging.getLogger(__name__)


class UpstreamResponse:
    """Status, headers and an incrementally readable body."""

    def __init__(self, status: int, headers: Message, body: IO[bytes]) -> None:
        self.status = status
        self.headers = headers
        self._body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "application/json")

    def read(self) -> bytes:
        try:
            return self._body.read()
        finally:
            self.close()

    def iter_chunks(self, size: int = 8192) -> Iterator[bytes]:
        """Yield body bytes as they arrive, without waiting to fill ``size``."""
        read = getattr(self._body, "read1", self._body.read)
        try:
            while True:
                chunk = read(size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        self._body.close()


class UpstreamForwarder:
    """POSTs request bodies to the upstream Messages endpoint.

    Non-2xx responses are returned as-is for the caller to pass through.
    Transport failures raise ``UpstreamError``. Nothing is retried.
    """

    def __init__(self, config: UpstreamConfig) -> None:
        if not config.api_key:
            raise UpstreamError("Upstream API key not configured")
        self.url = config.url
        self._api_key = config.api_key
        self.version = config.version
        self.timeout = config.timeout

    def send(self, body: dict) -> UpstreamResponse:
        req = urllib.request.Request(
            self.url,
            data=json.dumps(body).encode(),
            method="POST",
        )
        req.add_header("Content-Type", "application/json")
        req.add_header("x-api-key", self._api_key)
        req.add_header("anthropic-version", self.version)

        kwargs: dict = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        try:
            resp = urllib.request.urlopen(req, **kwargs)  # noqa: S310
        except urllib.error.HTTPError as e:
            logger.info("Upstream returned %d for model %s", e.code, body.get("model"))
            return UpstreamResponse(e.code, e.headers, e)
        except (urllib.error.URLError, OSError) as e:
            logger.error("Failed to reach upstream %s: %s", self.url, e)
            raise UpstreamError(f"Failed to reach upstream: {e}") from e
        return UpstreamResponse(resp.status, resp.headers, resp)


MOCK_USAGE = {"input_tokens": 100, "output_tokens": 50}
MOCK_TEXT = "[MOCK RESPONSE] This is a test response from the tollgate proxy."


class MockForwarder:
    """Answers locally with a canned message, for development without an API key."""

    def send(self, body: dict) -> UpstreamResponse:
        model = body.get("model", "unknown")
        message_id = f"msg_mock_{uuid.uuid4().hex[:24]}"
        headers = Message()
        if body.get("stream") is True:
            headers["Content-Type"] = "text/event-stream"
            payload = b"".join(_sse(e) for e in _mock_events(message_id, model))
        else:
            headers["Content-Type"] = "application/json"
            payload = json.dumps({
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "content": [{"type": "text", "text": MOCK_TEXT}],
                "model": model,
                "stop_reason": "end_turn",
                "stop_sequence": None,
                "usage": dict(MOCK_USAGE),
            }).encode()
        return UpstreamResponse(200, headers, io.BytesIO(payload))


def _sse(event: dict) -> bytes:
    return f"event: {event['type']}\ndata: {json.dumps(event)}\n\n".encode()


def _mock_events(message_id: str, model: str) -> list[dict]:
    return [
        {
            "type": "message_start",
            "message": {
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": model,
                "usage": {"input_tokens": MOCK_USAGE["input_tokens"], "output_tokens": 1},
            },
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": MOCK_TEXT}},
        {"type": "content_block_stop", "index": 0},
        {
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn", "stop_sequence": None},
            "usage": {"output_tokens": MOCK_USAGE["output_tokens"]},
        },
        {"type": "message_stop"},
    ]

"""HTTP proxy that meters Messages API calls against prepaid balances.

Instances call ``POST /v1/messages`` (or ``/proxy/v1/messages``) with their
proxy secret in ``x-api-key``. Requests are gated, relayed upstream, and the
usage is charged to the owning account once the response (or stream) is
complete.
"""

from __future__ import annotations

import datetime as _dt
import http.client
import json
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

from tollgate.core.config import ProxyConfig
from tollgate.core.errors import LedgerError, ProxyRejection, UpstreamError
from tollgate.metering.committer import BillingCommitter
from tollgate.metering.extract import StreamUsageExtractor, usage_from_body
from tollgate.metering.gate import Admission, RequestGate
from tollgate.metering.ledger import Ledger
from tollgate.metering.pricing import PricingTable
from tollgate.metering.topup import AutoTopup, ChargeFn
from tollgate.metering.upstream import MockForwarder, UpstreamForwarder, UpstreamResponse

logger = logging.getLogger(__name__)

MESSAGES_PATHS = ("/v1/messages", "/proxy/v1/messages")
DOWNGRADE_HEADER = "x-tollgate-model-downgraded-from"
MOCK_HEADER = "x-tollgate-mock"


class ProxyApp:
    """The wired-up components one server instance uses."""

    def __init__(
        self,
        config: ProxyConfig,
        ledger: Ledger,
        charge: ChargeFn | None = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.pricing = PricingTable(markup=config.billing.markup)
        self.gate = RequestGate(ledger, config.billing)
        self._topup_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="auto-topup")
        self.committer = BillingCommitter(
            ledger,
            self.pricing,
            topup=AutoTopup(ledger, charge=charge, executor=self._topup_pool),
            strict_floor=config.billing.strict_floor,
        )
        self.forwarder: UpstreamForwarder | MockForwarder | None
        if config.upstream.api_key:
            self.forwarder = UpstreamForwarder(config.upstream)
        elif config.mock_upstream:
            logger.warning("No upstream API key; answering with mock responses")
            self.forwarder = MockForwarder()
        else:
            self.forwarder = None

    @property
    def is_mock(self) -> bool:
        return isinstance(self.forwarder, MockForwarder)

    def health(self) -> tuple[int, dict]:
        checks: dict = {
            "status": "ok",
            "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
            "services": {"database": "unknown", "anthropic": "unknown"},
        }
        if self.ledger.ping():
            checks["services"]["database"] = "ok"
        else:
            checks["services"]["database"] = "error"
            checks["status"] = "degraded"

        if self.forwarder is None:
            checks["services"]["anthropic"] = "not_configured"
            checks["status"] = "degraded"
        else:
            checks["services"]["anthropic"] = "mock" if self.is_mock else "ok"

        return (200 if checks["status"] == "ok" else 503), checks

    def close(self) -> None:
        self._topup_pool.shutdown(wait=True)


def _read_upstream(resp: UpstreamResponse) -> bytes:
    """Read a whole upstream body; a transfer that breaks off is a 502."""
    try:
        return resp.read()
    except (OSError, http.client.HTTPException) as e:
        logger.error("Upstream body read failed: %s", e)
        raise ProxyRejection(
            502, "Failed to reach Anthropic API", "UPSTREAM_UNREACHABLE"
        ) from None


def _make_handler_class(app: ProxyApp) -> type:
    """Create a request handler class bound to the given app."""

    class MeteringHandler(BaseHTTPRequestHandler):
        """Gates, forwards and meters Messages requests."""

        protocol_version = "HTTP/1.1"

        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            logger.debug(format, *args)

        def do_GET(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            if path in ("/health", "/proxy/health"):
                status, body = app.health()
                self._send_json(status, body)
            else:
                self._send_json(404, {"error": "not found"})

        def do_POST(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            try:
                raw = self._read_body()
            except ProxyRejection as e:
                self._send_json(e.status, e.to_body())
                return
            if path in MESSAGES_PATHS:
                try:
                    self._proxy_messages(raw)
                except ProxyRejection as e:
                    self._send_json(e.status, e.to_body())
                except (LedgerError, sqlite3.Error):
                    logger.exception("Ledger unavailable while handling %s", path)
                    self._send_json(500, {"error": "Internal error", "code": "LEDGER_UNAVAILABLE"})
            else:
                self._send_json(404, {"error": "not found"})

        # -- helpers -------------------------------------------------------------

        def _read_body(self) -> bytes:
            try:
                content_length = int(self.headers.get("Content-Length", 0) or 0)
            except ValueError:
                # body length unknown: close after replying
                self.close_connection = True
                raise ProxyRejection(400, "Invalid Content-Length", "INVALID_JSON") from None
            return self.rfile.read(content_length) if content_length > 0 else b""

        def _send_json(self, status: int, body: dict, headers: dict | None = None) -> None:
            self._send_bytes(status, json.dumps(body).encode(), "application/json", headers)

        def _send_bytes(
            self,
            status: int,
            payload: bytes,
            content_type: str,
            headers: dict | None = None,
        ) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(payload)))
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(payload)

        def _write_chunk(self, chunk: bytes) -> None:
            self.wfile.write(f"{len(chunk):X}\r\n".encode() + chunk + b"\r\n")
            self.wfile.flush()

        # -- /v1/messages --------------------------------------------------------

        def _proxy_messages(self, raw: bytes) -> None:
            try:
                request_body = json.loads(raw) if raw else None
            except ValueError:
                request_body = None
            requested_model = None
            if isinstance(request_body, dict) and isinstance(request_body.get("model"), str):
                requested_model = request_body["model"]

            admission = app.gate.admit(self.headers.get("x-api-key"), requested_model)

            if not isinstance(request_body, dict):
                raise ProxyRejection(400, "Invalid JSON body", "INVALID_JSON")

            if app.forwarder is None:
                raise ProxyRejection(
                    500, "Anthropic API key not configured", "UPSTREAM_NOT_CONFIGURED"
                )

            request_body["model"] = admission.model
            is_streaming = request_body.get("stream") is True

            extra_headers: dict = {}
            if admission.downgraded:
                extra_headers[DOWNGRADE_HEADER] = admission.downgraded_from
            if app.is_mock:
                extra_headers[MOCK_HEADER] = "true"

            try:
                resp = app.forwarder.send(request_body)
            except UpstreamError:
                raise ProxyRejection(
                    502, "Failed to reach Anthropic API", "UPSTREAM_UNREACHABLE"
                ) from None

            if not resp.ok:
                # Failed upstream calls are passed through and never charged
                self._send_bytes(resp.status, _read_upstream(resp), resp.content_type, extra_headers)
                return

            if is_streaming:
                self._relay_stream(resp, admission, extra_headers)
            else:
                self._relay_json(resp, admission, extra_headers)

        def _relay_json(self, resp: UpstreamResponse, admission: Admission, extra_headers: dict) -> None:
            payload = _read_upstream(resp)
            try:
                data = json.loads(payload)
            except ValueError:
                raise ProxyRejection(
                    502, "Invalid response from Anthropic", "INVALID_UPSTREAM_RESPONSE"
                ) from None

            usage = usage_from_body(data)
            if usage is None:
                logger.warning("No usage data in response for instance %s", admission.instance.id)
            else:
                app.committer.bill(admission.instance, admission.model, usage)

            self._send_bytes(200, payload, resp.content_type, extra_headers)

        def _relay_stream(self, resp: UpstreamResponse, admission: Admission, extra_headers: dict) -> None:
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Transfer-Encoding", "chunked")
            for name, value in extra_headers.items():
                self.send_header(name, value)
            self.end_headers()

            extractor = StreamUsageExtractor()
            chunks = extractor.passthrough(
                resp.iter_chunks(),
                on_complete=lambda usage: app.committer.bill(admission.instance, admission.model, usage),
            )
            try:
                for chunk in chunks:
                    self._write_chunk(chunk)
                self._write_chunk(b"")
            except (OSError, http.client.HTTPException) as e:
                # Client went away or upstream broke off; bill what was seen
                logger.warning("Stream for instance %s ended early: %s", admission.instance.id, e)
                self.close_connection = True
            finally:
                chunks.close()
                resp.close()

    return MeteringHandler


def create_proxy_server(
    config: ProxyConfig,
    ledger: Ledger,
    charge: ChargeFn | None = None,
) -> ThreadingHTTPServer:
    """Create a threaded HTTP server for ``config.host``/``config.port`` (0 = auto-assign)."""
    app = ProxyApp(config, ledger, charge=charge)
    handler_cls = _make_handler_class(app)
    server = ThreadingHTTPServer((config.host, config.port), handler_cls)
    server.daemon_threads = True
    server.app = app  # type: ignore[attr-defined]
    return server

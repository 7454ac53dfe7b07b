"""Tests for the metering proxy lifecycle and its mock-upstream mode."""
from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.request

import pytest

from tollgate.core.config import ProxyConfig
from tollgate.core.models import InstanceStatus
from tollgate.metering.manager import MeteringManager
from tollgate.metering.proxy import DOWNGRADE_HEADER, MOCK_HEADER


def post(url: str, body, key: str | None = None, raw: bytes | None = None):
    data = raw if raw is not None else json.dumps(body).encode()
    req = urllib.request.Request(f"{url}/v1/messages", data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    if key is not None:
        req.add_header("x-api-key", key)
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            return resp.status, resp.headers, resp.read()
    except urllib.error.HTTPError as e:
        with e:
            return e.code, e.headers, e.read()


@pytest.fixture
def mock_proxy(ledger):
    mgr = MeteringManager(ledger)
    url = mgr.start(ProxyConfig(mock_upstream=True))
    yield url
    mgr.stop()


class TestMeteringManager:
    def test_start_and_stop(self, ledger):
        mgr = MeteringManager(ledger)
        url = mgr.start()
        assert url.startswith("http://127.0.0.1:")
        assert mgr.is_running
        assert mgr.app is not None
        mgr.stop()
        assert not mgr.is_running
        assert mgr.app is None

    def test_double_start_rejected(self, ledger):
        mgr = MeteringManager(ledger)
        mgr.start()
        try:
            with pytest.raises(RuntimeError):
                mgr.start()
        finally:
            mgr.stop()

    def test_stop_when_not_running(self, ledger):
        MeteringManager(ledger).stop()

    def test_health_without_upstream_is_degraded(self, ledger):
        mgr = MeteringManager(ledger)
        url = mgr.start()
        try:
            with pytest.raises(urllib.error.HTTPError) as exc:
                urllib.request.urlopen(f"{url}/health", timeout=5)
            assert exc.value.code == 503
            data = json.loads(exc.value.read())
            assert data["status"] == "degraded"
            assert data["services"] == {"database": "ok", "anthropic": "not_configured"}
        finally:
            mgr.stop()

    def test_unknown_path(self, mock_proxy):
        with pytest.raises(urllib.error.HTTPError) as exc:
            urllib.request.urlopen(f"{mock_proxy}/v1/models", timeout=5)
        assert exc.value.code == 404

    def test_no_upstream_key(self, ledger, make_instance):
        inst = make_instance()
        mgr = MeteringManager(ledger)
        url = mgr.start()
        try:
            status, _, body = post(url, {"model": "claude-haiku-4-5", "messages": []}, inst.proxy_secret)
            assert status == 500
            assert json.loads(body)["code"] == "UPSTREAM_NOT_CONFIGURED"
        finally:
            mgr.stop()


class TestMockUpstream:
    def test_health(self, mock_proxy):
        with urllib.request.urlopen(f"{mock_proxy}/proxy/health", timeout=5) as resp:
            data = json.loads(resp.read())
        assert data["status"] == "ok"
        assert data["services"]["anthropic"] == "mock"

    def test_json_response_is_billed(self, mock_proxy, ledger, make_instance):
        inst = make_instance(credits=5000)
        status, headers, body = post(
            mock_proxy, {"model": "claude-haiku-4-5", "messages": [{"role": "user", "content": "hi"}]},
            inst.proxy_secret,
        )
        assert status == 200
        assert headers[MOCK_HEADER] == "true"
        data = json.loads(body)
        assert data["content"][0]["text"].startswith("[MOCK RESPONSE]")
        assert data["model"] == "claude-haiku-4-5"

        logs = ledger.usage_logs(inst.id)
        assert [(log.tokens_in, log.tokens_out) for log in logs] == [(100, 50)]
        # haiku x2: 100 * $2/1M + 50 * $10/1M rounds up to 1c
        assert ledger.get_balance(inst.account_id).credits_cents == 4999

    def test_streaming_response_is_billed(self, mock_proxy, ledger, make_instance):
        inst = make_instance(credits=5000)
        status, headers, body = post(
            mock_proxy, {"model": "claude-opus-4-6", "stream": True, "messages": []}, inst.proxy_secret,
        )
        assert status == 200
        assert headers["Content-Type"] == "text/event-stream"
        assert b"event: message_stop" in body
        logs = ledger.usage_logs(inst.id)
        assert len(logs) == 1
        assert (logs[0].model, logs[0].tokens_in, logs[0].tokens_out) == ("claude-opus-4-6", 100, 50)

    def test_secret_on_proxy_prefix(self, mock_proxy, make_instance):
        inst = make_instance()
        req = urllib.request.Request(
            f"{mock_proxy}/proxy/v1/messages",
            data=json.dumps({"model": "claude-haiku-4-5", "messages": []}).encode(),
            method="POST",
            headers={"x-api-key": inst.proxy_secret},
        )
        with urllib.request.urlopen(req, timeout=5) as resp:
            assert resp.status == 200

    def test_missing_key(self, mock_proxy):
        status, _, body = post(mock_proxy, {"model": "claude-haiku-4-5"})
        assert status == 401
        assert json.loads(body)["code"] == "MISSING_API_KEY"

    def test_invalid_json_after_auth(self, mock_proxy, make_instance):
        inst = make_instance()
        status, _, body = post(mock_proxy, None, inst.proxy_secret, raw=b"{not json")
        assert status == 400
        assert json.loads(body)["code"] == "INVALID_JSON"

    def test_invalid_json_with_bad_key_is_404(self, mock_proxy):
        status, _, _ = post(mock_proxy, None, "nope", raw=b"{not json")
        assert status == 404

    def test_paused_rejected(self, mock_proxy, make_instance):
        inst = make_instance(status=InstanceStatus.PAUSED)
        status, _, body = post(mock_proxy, {"model": "claude-haiku-4-5"}, inst.proxy_secret)
        assert status == 402
        data = json.loads(body)
        assert data["code"] == "BALANCE_DEPLETED"
        assert data["topUpUrl"]

    def test_downgrade_header(self, mock_proxy, ledger, make_instance):
        inst = make_instance(credits=50)
        status, headers, body = post(mock_proxy, {"model": "claude-opus-4-6"}, inst.proxy_secret)
        assert status == 200
        assert headers[DOWNGRADE_HEADER] == "claude-opus-4-6"
        assert json.loads(body)["model"] == "claude-haiku-4-5"
        assert ledger.usage_logs(inst.id)[0].model == "claude-haiku-4-5"

    def test_malformed_content_length(self, mock_proxy, make_instance):
        inst = make_instance()
        host, port = mock_proxy.removeprefix("http://").split(":")
        conn = http.client.HTTPConnection(host, int(port), timeout=5)
        try:
            conn.putrequest("POST", "/v1/messages")
            conn.putheader("x-api-key", inst.proxy_secret)
            conn.putheader("Content-Length", "lots")
            conn.endheaders()
            resp = conn.getresponse()
            assert resp.status == 400
            assert json.loads(resp.read())["code"] == "INVALID_JSON"
        finally:
            conn.close()

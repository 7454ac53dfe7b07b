"""Test ProxyConfig / BillingPolicy from_dict, to_dict and env overrides."""
from __future__ import annotations

import pytest

from tollgate.core.config import BillingPolicy, ProxyConfig, UpstreamConfig
from tollgate.core.errors import ConfigError

ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "TOLLGATE_UPSTREAM_URL",
    "TOLLGATE_UPSTREAM_VERSION",
    "TOLLGATE_UPSTREAM_TIMEOUT",
    "TOLLGATE_MARKUP",
    "TOLLGATE_LOW_BALANCE_CENTS",
    "TOLLGATE_DOWNGRADE_MODEL",
    "TOLLGATE_DEFAULT_MODEL",
    "TOLLGATE_DAILY_LIMIT_CENTS",
    "TOLLGATE_TOP_UP_URL",
    "TOLLGATE_STRICT_FLOOR",
    "TOLLGATE_HOST",
    "TOLLGATE_PORT",
    "TOLLGATE_DB_PATH",
    "TOLLGATE_MOCK_UPSTREAM",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestProxyConfig:
    def test_defaults(self):
        config = ProxyConfig()
        assert config.port == 8787
        assert config.upstream.url == "https://api.anthropic.com/v1/messages"
        assert config.upstream.timeout is None
        assert config.billing.markup == 2.0
        assert config.billing.daily_limit_cents == 20000
        assert config.billing.low_balance_cents == 100
        assert not config.billing.strict_floor

    def test_roundtrip(self):
        config = ProxyConfig(
            port=9000,
            db_path="/tmp/t.db",
            mock_upstream=True,
            upstream=UpstreamConfig(url="http://localhost:1/v1/messages", timeout=30.0),
            billing=BillingPolicy(markup=1.5, daily_limit_cents=1000, strict_floor=True),
        )
        restored = ProxyConfig.from_dict(config.to_dict())
        assert restored.port == 9000
        assert restored.db_path == "/tmp/t.db"
        assert restored.mock_upstream
        assert restored.upstream.url == "http://localhost:1/v1/messages"
        assert restored.upstream.timeout == 30.0
        assert restored.billing.markup == 1.5
        assert restored.billing.daily_limit_cents == 1000
        assert restored.billing.strict_floor

    def test_api_key_not_serialized(self):
        config = ProxyConfig(upstream=UpstreamConfig(api_key="sk-secret"))
        assert "api_key" not in config.to_dict()["upstream"]
        assert "sk-secret" not in repr(config.to_dict())

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        monkeypatch.setenv("TOLLGATE_MARKUP", "3")
        monkeypatch.setenv("TOLLGATE_DAILY_LIMIT_CENTS", "500")
        monkeypatch.setenv("TOLLGATE_STRICT_FLOOR", "true")
        monkeypatch.setenv("TOLLGATE_DB_PATH", "/var/lib/tollgate.db")
        config = ProxyConfig().resolve_env()
        assert config.upstream.api_key == "sk-env"
        assert config.billing.markup == 3.0
        assert config.billing.daily_limit_cents == 500
        assert config.billing.strict_floor
        assert config.db_path == "/var/lib/tollgate.db"

    def test_from_dict_picks_up_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        config = ProxyConfig.from_dict({"upstream": {"url": "http://x/v1/messages"}})
        assert config.upstream.api_key == "sk-env"
        assert config.upstream.url == "http://x/v1/messages"

    def test_bad_env_value(self, monkeypatch):
        monkeypatch.setenv("TOLLGATE_DAILY_LIMIT_CENTS", "lots")
        with pytest.raises(ConfigError, match="TOLLGATE_DAILY_LIMIT_CENTS"):
            ProxyConfig().resolve_env()


class TestBillingPolicy:
    def test_unknown_keys_ignored(self):
        policy = BillingPolicy.from_dict({"markup": 1.2, "surge_pricing": True})
        assert policy.markup == 1.2

    @pytest.mark.parametrize(
        "kwargs",
        [{"markup": 0}, {"markup": -1.0}, {"daily_limit_cents": 0}, {"low_balance_cents": -1}],
    )
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ConfigError):
            BillingPolicy(**kwargs).validate()

    def test_roundtrip(self):
        policy = BillingPolicy(downgrade_model="claude-sonnet-4-5", top_up_url="https://pay.example/top-up")
        restored = BillingPolicy.from_dict(policy.to_dict())
        assert restored == policy

"""Configuration for the tollgate proxy.

Everything the proxy needs (upstream credentials, billing policy, storage
location) is carried in these dataclasses and handed to the components at
construction time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from tollgate.core.errors import ConfigError

DEFAULT_UPSTREAM_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_TOP_UP_URL = "/dashboard/billing"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class UpstreamConfig:
    """Where and how requests are forwarded."""

    url: str = DEFAULT_UPSTREAM_URL
    api_key: str | None = None
    version: str = "2023-06-01"
    timeout: float | None = None  # None = wait for upstream indefinitely

    @classmethod
    def from_dict(cls, d: dict) -> UpstreamConfig:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})

    def resolve_env(self) -> UpstreamConfig:
        """Override fields from environment variables."""
        return UpstreamConfig(
            url=os.environ.get("TOLLGATE_UPSTREAM_URL", self.url),
            api_key=os.environ.get("ANTHROPIC_API_KEY", self.api_key),
            version=os.environ.get("TOLLGATE_UPSTREAM_VERSION", self.version),
            timeout=_env_float("TOLLGATE_UPSTREAM_TIMEOUT", self.timeout),
        )

    def to_dict(self) -> dict:
        # api_key is never serialized
        d: dict = {"url": self.url, "version": self.version}
        if self.timeout is not None:
            d["timeout"] = self.timeout
        return d


@dataclass
class BillingPolicy:
    """Balance and spend rules applied by the request gate and committer."""

    markup: float = 2.0
    low_balance_cents: int = 100  # below this, requests are downgraded
    downgrade_model: str = "claude-haiku-4-5"
    default_model: str = "claude-opus-4-6"
    daily_limit_cents: int = 20000  # per account, across all instances
    top_up_url: str = DEFAULT_TOP_UP_URL
    strict_floor: bool = False  # conditional decrement instead of pause-after

    @classmethod
    def from_dict(cls, d: dict) -> BillingPolicy:
        policy = cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})
        policy.validate()
        return policy

    def validate(self) -> None:
        if self.markup <= 0:
            raise ConfigError(f"markup must be positive, got {self.markup}")
        if self.daily_limit_cents <= 0:
            raise ConfigError(f"daily_limit_cents must be positive, got {self.daily_limit_cents}")
        if self.low_balance_cents < 0:
            raise ConfigError(f"low_balance_cents must be >= 0, got {self.low_balance_cents}")

    def resolve_env(self) -> BillingPolicy:
        """Override fields from environment variables."""
        policy = BillingPolicy(
            markup=_env_float("TOLLGATE_MARKUP", self.markup),
            low_balance_cents=_env_int("TOLLGATE_LOW_BALANCE_CENTS", self.low_balance_cents),
            downgrade_model=os.environ.get("TOLLGATE_DOWNGRADE_MODEL", self.downgrade_model),
            default_model=os.environ.get("TOLLGATE_DEFAULT_MODEL", self.default_model),
            daily_limit_cents=_env_int("TOLLGATE_DAILY_LIMIT_CENTS", self.daily_limit_cents),
            top_up_url=os.environ.get("TOLLGATE_TOP_UP_URL", self.top_up_url),
            strict_floor=_env_bool("TOLLGATE_STRICT_FLOOR", self.strict_floor),
        )
        policy.validate()
        return policy

    def to_dict(self) -> dict:
        return {
            "markup": self.markup,
            "low_balance_cents": self.low_balance_cents,
            "downgrade_model": self.downgrade_model,
            "default_model": self.default_model,
            "daily_limit_cents": self.daily_limit_cents,
            "top_up_url": self.top_up_url,
            "strict_floor": self.strict_floor,
        }


@dataclass
class ProxyConfig:
    """Top-level proxy configuration."""

    host: str = "127.0.0.1"
    port: int = 8787
    db_path: str = "tollgate.db"
    mock_upstream: bool = False  # answer with a canned message when no API key is set
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    billing: BillingPolicy = field(default_factory=BillingPolicy)

    @classmethod
    def from_dict(cls, d: dict) -> ProxyConfig:
        upstream = UpstreamConfig.from_dict(d["upstream"]) if "upstream" in d else UpstreamConfig()
        billing = BillingPolicy.from_dict(d["billing"]) if "billing" in d else BillingPolicy()
        return cls(
            host=d.get("host", "127.0.0.1"),
            port=d.get("port", 8787),
            db_path=d.get("db_path", "tollgate.db"),
            mock_upstream=d.get("mock_upstream", False),
            upstream=upstream.resolve_env(),
            billing=billing.resolve_env(),
        )

    def resolve_env(self) -> ProxyConfig:
        """Override fields from environment variables."""
        return ProxyConfig(
            host=os.environ.get("TOLLGATE_HOST", self.host),
            port=_env_int("TOLLGATE_PORT", self.port),
            db_path=os.environ.get("TOLLGATE_DB_PATH", self.db_path),
            mock_upstream=_env_bool("TOLLGATE_MOCK_UPSTREAM", self.mock_upstream),
            upstream=self.upstream.resolve_env(),
            billing=self.billing.resolve_env(),
        )

    def to_dict(self) -> dict:
        d: dict = {
            "host": self.host,
            "port": self.port,
            "db_path": self.db_path,
            "upstream": self.upstream.to_dict(),
            "billing": self.billing.to_dict(),
        }
        if self.mock_upstream:
            d["mock_upstream"] = True
        return d

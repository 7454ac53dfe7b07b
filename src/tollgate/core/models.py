"""Data models shared by the ledger, gate and committer.

These are plain records. Persistence lives in ``tollgate.metering.ledger``;
nothing here talks to the database.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum


class InstanceStatus(str, Enum):
    """Lifecycle status of a provisioned assistant instance."""

    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"

    @property
    def can_proxy(self) -> bool:
        return self in (InstanceStatus.ACTIVE, InstanceStatus.PROVISIONING)


class BillingMode(str, Enum):
    MANAGED = "managed"  # platform-funded, metered against balance
    BYOK = "byok"  # bring your own key


# ---------------------------------------------------------------------------
# Accounts and instances
# ---------------------------------------------------------------------------


@dataclass
class Account:
    id: str
    email: str | None = None


@dataclass
class Instance:
    """One user-provisioned assistant deployment."""

    id: str
    account_id: str
    proxy_secret: str
    status: InstanceStatus = InstanceStatus.PENDING
    model: str | None = None  # assigned model; overrides the caller's
    channel_type: str = "TELEGRAM"
    billing_mode: BillingMode = BillingMode.MANAGED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "status": self.status.value,
            "model": self.model,
            "channel_type": self.channel_type,
            "billing_mode": self.billing_mode.value,
        }


@dataclass
class Balance:
    """Prepaid credit for one account, in integer cents (may be negative)."""

    account_id: str
    credits_cents: int = 0
    auto_topup_enabled: bool = False
    topup_threshold_cents: int = 500
    topup_amount_cents: int = 2000

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "credits_cents": self.credits_cents,
            "credits_dollars": f"{self.credits_cents / 100:.2f}",
            "auto_topup_enabled": self.auto_topup_enabled,
            "topup_threshold_cents": self.topup_threshold_cents,
            "topup_amount_cents": self.topup_amount_cents,
        }


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageLog:
    """Immutable billing record, one per billed request or completed stream."""

    id: int
    instance_id: str
    model: str
    tokens_in: int  # cache-adjusted
    tokens_out: int
    cost_cents: int
    timestamp: _dt.datetime


@dataclass
class CommitResult:
    """Outcome of one ledger commit."""

    usage_id: int
    balance_cents: int
    paused: bool = False


@dataclass
class ModelUsage:
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost_cents: int = 0

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost_cents": self.cost_cents,
            "cost_dollars": f"{self.cost_cents / 100:.2f}",
        }


@dataclass
class UsageReport:
    """Aggregated usage for one account over a time range."""

    account_id: str
    start: _dt.datetime
    end: _dt.datetime
    total_cost_cents: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    by_model: list[ModelUsage] = field(default_factory=list)
    instances: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "total_cost_cents": self.total_cost_cents,
            "total_cost_dollars": f"{self.total_cost_cents / 100:.2f}",
            "total_tokens_in": self.total_tokens_in,
            "total_tokens_out": self.total_tokens_out,
            "by_model": [m.to_dict() for m in self.by_model],
            "instances": list(self.instances),
        }

"""Admission control for proxied requests.

The gate authenticates the calling instance by its proxy secret, enforces
the instance status and account balance rules, applies the low-balance model
downgrade and the daily spend cap. It never talks to the upstream API; a
rejected request costs nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tollgate.core.config import BillingPolicy
from tollgate.core.errors import ProxyRejection
from tollgate.core.models import Instance, InstanceStatus
from tollgate.metering.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    """An admitted request: who is calling and which model to bill."""

    instance: Instance
    balance_cents: int
    model: str
    downgraded_from: str | None = None

    @property
    def downgraded(self) -> bool:
        return self.downgraded_from is not None


class RequestGate:
    """Decides whether a request is admitted, downgraded or rejected."""

    def __init__(self, ledger: Ledger, policy: BillingPolicy) -> None:
        self.ledger = ledger
        self.policy = policy

    def authenticate(self, proxy_secret: str | None) -> Instance:
        """Resolve the instance and check its status (401/404/402/400)."""
        if not proxy_secret:
            raise ProxyRejection(401, "Missing x-api-key header", "MISSING_API_KEY")

        instance = self.ledger.find_instance_by_secret(proxy_secret)
        if instance is None:
            raise ProxyRejection(404, "Instance not found", "INSTANCE_NOT_FOUND")

        if instance.status is InstanceStatus.PAUSED:
            raise ProxyRejection(
                402,
                "Instance paused due to insufficient balance",
                "BALANCE_DEPLETED",
                "Please top up your account to continue using this instance.",
                topUpUrl=self.policy.top_up_url,
            )
        if not instance.status.can_proxy:
            raise ProxyRejection(
                400,
                f"Instance is {instance.status.value.lower()}",
                "INSTANCE_NOT_ACTIVE",
            )
        return instance

    def resolve_model(self, instance: Instance, requested_model: str | None, balance_cents: int) -> tuple[str, str | None]:
        """(model to use, model it replaced or None)."""
        model = instance.model or requested_model or self.policy.default_model
        if balance_cents < self.policy.low_balance_cents and model != self.policy.downgrade_model:
            logger.info(
                "Downgrading %s -> %s for instance %s (balance: %dc)",
                model, self.policy.downgrade_model, instance.id, balance_cents,
            )
            return self.policy.downgrade_model, model
        return model, None

    def admit(self, proxy_secret: str | None, requested_model: str | None = None) -> Admission:
        """Run every check in order; raise ``ProxyRejection`` on the first failure."""
        instance = self.authenticate(proxy_secret)

        balance_cents = self.ledger.get_balance(instance.account_id).credits_cents
        if balance_cents <= 0:
            raise ProxyRejection(
                402,
                "Balance depleted",
                "BALANCE_DEPLETED",
                "Your balance is empty. Please top up to continue using your assistant.",
                currentBalance=balance_cents,
                requiredBalance=1,
                topUpUrl=self.policy.top_up_url,
            )

        model, downgraded_from = self.resolve_model(instance, requested_model, balance_cents)

        today_spend = self.ledger.today_spend_cents(instance.account_id)
        if today_spend >= self.policy.daily_limit_cents:
            logger.warning(
                "Daily limit reached for account %s: %dc >= %dc",
                instance.account_id, today_spend, self.policy.daily_limit_cents,
            )
            raise ProxyRejection(
                429,
                "Daily limit reached",
                "DAILY_LIMIT_EXCEEDED",
                f"Daily spend limit of ${self.policy.daily_limit_cents / 100:.2f} reached. "
                "Limit resets at midnight.",
                todaySpend=today_spend,
                dailyLimit=self.policy.daily_limit_cents,
            )

        return Admission(
            instance=instance,
            balance_cents=balance_cents,
            model=model,
            downgraded_from=downgraded_from,
        )

"""Turns extracted usage into a charge against the account balance."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from tollgate.core.errors import InsufficientCreditError, LedgerError
from tollgate.core.models import Instance, InstanceStatus
from tollgate.metering.extract import TokenUsage
from tollgate.metering.ledger import Ledger
from tollgate.metering.pricing import PricingTable
from tollgate.metering.topup import AutoTopup

logger = logging.getLogger(__name__)


@dataclass
class BillingOutcome:
    usage_id: int
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: int
    balance_cents: int
    paused: bool = False


class BillingCommitter:
    """Prices usage and commits it to the ledger.

    ``bill`` never raises: the upstream answer has already been produced, so
    billing problems are logged for reconciliation and the caller still gets
    its response.
    """

    def __init__(
        self,
        ledger: Ledger,
        pricing: PricingTable,
        topup: AutoTopup | None = None,
        strict_floor: bool = False,
    ) -> None:
        self.ledger = ledger
        self.pricing = pricing
        self.topup = topup
        self.strict_floor = strict_floor

    def bill(self, instance: Instance, model: str, usage: TokenUsage | None) -> BillingOutcome | None:
        if usage is None or usage.is_empty:
            logger.debug("No usage to bill for instance %s", instance.id)
            return None

        tokens_in = usage.effective_input_tokens
        cost_cents = self.pricing.cost_cents(model, tokens_in, usage.output_tokens)
        if cost_cents is None:
            logger.warning("Unknown model %s, skipping billing for instance %s", model, instance.id)
            return None

        logger.info(
            "Usage for %s: in=%d cache_create=%d cache_read=%d out=%d effective_in=%d cost=%dc",
            instance.id,
            usage.input_tokens,
            usage.cache_creation_input_tokens,
            usage.cache_read_input_tokens,
            usage.output_tokens,
            tokens_in,
            cost_cents,
        )
        try:
            result = self.ledger.commit_usage(
                instance,
                model,
                tokens_in,
                usage.output_tokens,
                cost_cents,
                strict_floor=self.strict_floor,
            )
        except InsufficientCreditError as e:
            logger.warning("%s; pausing instance %s, usage left unbilled", e, instance.id)
            self._pause(instance)
            return None
        except (LedgerError, sqlite3.Error):
            logger.exception("Failed to log usage for instance %s", instance.id)
            return None

        if result.paused:
            logger.warning(
                "Instance %s balance depleted (%dc), paused", instance.id, result.balance_cents
            )
        elif self.topup is not None:
            try:
                threshold = self.ledger.get_balance(instance.account_id).topup_threshold_cents
                if result.balance_cents < threshold:
                    self.topup.submit(instance)
            except (LedgerError, sqlite3.Error):
                logger.exception("Auto top-up check failed for %s", instance.account_id)

        return BillingOutcome(
            usage_id=result.usage_id,
            model=model,
            tokens_in=tokens_in,
            tokens_out=usage.output_tokens,
            cost_cents=cost_cents,
            balance_cents=result.balance_cents,
            paused=result.paused,
        )

    def _pause(self, instance: Instance) -> None:
        try:
            self.ledger.set_instance_status(instance.id, InstanceStatus.PAUSED)
        except (LedgerError, sqlite3.Error):
            logger.exception("Failed to pause instance %s", instance.id)

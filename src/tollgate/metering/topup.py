"""Automatic balance top-up after a charge leaves an account running low."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from concurrent.futures import Executor, Future
from dataclasses import dataclass

from tollgate.core.errors import LedgerError
from tollgate.core.models import BillingMode, Instance
from tollgate.metering.ledger import Ledger

logger = logging.getLogger(__name__)

# (account_id, amount_cents) -> True when the payment went through
ChargeFn = Callable[[str, int], bool]


@dataclass
class TopupResult:
    success: bool
    skipped: bool = False
    charged_cents: int = 0
    error: str | None = None


class AutoTopup:
    """Charges the account's saved payment method and credits the ledger.

    ``charge`` is the payments collaborator. Without one, enabled accounts
    report an error instead of being charged.
    """

    def __init__(
        self,
        ledger: Ledger,
        charge: ChargeFn | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.ledger = ledger
        self.charge = charge
        self.executor = executor

    def check(self, instance: Instance) -> TopupResult:
        if instance.billing_mode is BillingMode.BYOK:
            return TopupResult(success=True, skipped=True)

        balance = self.ledger.get_balance(instance.account_id)
        if balance.credits_cents >= balance.topup_threshold_cents:
            return TopupResult(success=True)
        if not balance.auto_topup_enabled:
            return TopupResult(success=False, error="Auto top-up disabled")
        if self.charge is None:
            return TopupResult(success=False, error="No payment method configured")

        amount = balance.topup_amount_cents
        try:
            paid = self.charge(instance.account_id, amount)
        except Exception as e:  # noqa: BLE001
            logger.exception("Auto top-up charge failed for %s", instance.account_id)
            return TopupResult(success=False, error=f"Charge failed: {e}")
        if not paid:
            return TopupResult(success=False, error="Charge declined")

        try:
            self.ledger.credit(instance.account_id, amount)
        except (LedgerError, sqlite3.Error) as e:
            logger.exception("Auto top-up charged %s but crediting failed", instance.account_id)
            return TopupResult(success=False, error=str(e))
        logger.info("Auto top-up of %dc for %s", amount, instance.account_id)
        return TopupResult(success=True, charged_cents=amount)

    def submit(self, instance: Instance) -> Future | TopupResult:
        """Run ``check`` on the executor when there is one, inline otherwise."""
        if self.executor is None:
            return self._check_logged(instance)
        return self.executor.submit(self._check_logged, instance)

    def _check_logged(self, instance: Instance) -> TopupResult:
        try:
            result = self.check(instance)
        except Exception as e:  # noqa: BLE001
            logger.exception("Auto top-up check failed for %s", instance.account_id)
            return TopupResult(success=False, error=str(e))
        if not result.success and not result.skipped:
            logger.warning("Auto top-up not performed for %s: %s", instance.account_id, result.error)
        return result

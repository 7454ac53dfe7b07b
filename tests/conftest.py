from __future__ import annotations

import pytest

from tollgate.core.models import InstanceStatus
from tollgate.metering.ledger import Ledger


@pytest.fixture
def ledger():
    led = Ledger(":memory:")
    yield led
    led.close()


@pytest.fixture
def make_instance(ledger):
    """Create (or reuse) an account with ``credits`` cents and add one instance to it."""

    def _make(
        credits: int = 5000,
        account_id: str = "acct-1",
        status: InstanceStatus = InstanceStatus.ACTIVE,
        model: str | None = None,
        **kwargs,
    ):
        if ledger.get_account(account_id) is None:
            ledger.create_account(account_id, credits_cents=credits)
        return ledger.create_instance(account_id, model=model, status=status, **kwargs)

    return _make

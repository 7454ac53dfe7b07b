"""Token metering: pricing, ledger, admission, extraction and billing."""

from __future__ import annotations

from tollgate.metering.committer import BillingCommitter, BillingOutcome
from tollgate.metering.extract import StreamUsageExtractor, TokenUsage, usage_from_body
from tollgate.metering.gate import Admission, RequestGate
from tollgate.metering.ledger import Ledger
from tollgate.metering.pricing import PricingTable, effective_input_tokens

__all__ = [
    "Admission",
    "BillingCommitter",
    "BillingOutcome",
    "Ledger",
    "PricingTable",
    "RequestGate",
    "StreamUsageExtractor",
    "TokenUsage",
    "effective_input_tokens",
    "usage_from_body",
]

"""Verify all major modules are importable."""
from __future__ import annotations


def test_core_models():
    from tollgate.core.models import Account, Balance, Instance, InstanceStatus, UsageLog, UsageReport


def test_core_config():
    from tollgate.core.config import BillingPolicy, ProxyConfig, UpstreamConfig


def test_core_errors():
    from tollgate.core.errors import ConfigError, InsufficientCreditError, LedgerError, ProxyRejection, TollgateError


def test_metering_package():
    from tollgate.metering import (
        Admission,
        BillingCommitter,
        Ledger,
        PricingTable,
        RequestGate,
        StreamUsageExtractor,
        TokenUsage,
        effective_input_tokens,
        usage_from_body,
    )


def test_metering_proxy():
    from tollgate.metering.manager import MeteringManager
    from tollgate.metering.proxy import ProxyApp, create_proxy_server
    from tollgate.metering.topup import AutoTopup
    from tollgate.metering.upstream import MockForwarder, UpstreamForwarder


def test_cli():
    from tollgate.cli.main import cli

    assert "serve" in cli.commands
    assert "usage" in cli.commands

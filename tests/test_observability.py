"""Tests for log correlation binding and the startup config summary."""

import logging

from routepay.common.logging import ContextFilter, gateway_code_ctx, log_context, transaction_id_ctx
from routepay.common.startup import effective_config


def test_log_context_binds_and_restores():
    with log_context(transaction_id="tx_1", gateway_code="stripe_main"):
        assert transaction_id_ctx.get() == "tx_1"
        with log_context(transaction_id="tx_2"):
            assert transaction_id_ctx.get() == "tx_2"
            assert gateway_code_ctx.get() == "stripe_main"
        assert transaction_id_ctx.get() == "tx_1"
    assert transaction_id_ctx.get() == ""
    assert gateway_code_ctx.get() == ""


def test_context_filter_stamps_record():
    record = logging.LogRecord("routepay", logging.INFO, __file__, 1, "hello", None, None)
    with log_context(webhook_id="wh_9"):
        ContextFilter().filter(record)
    assert record.webhook_id == "wh_9"
    assert record.transaction_id == ""


def test_effective_config_redacts_secrets():
    config = effective_config(["gateway_timeout_seconds", "postgres_dsn", "no_such_field"])

    assert isinstance(config["gateway_timeout_seconds"], float)
    assert config["postgres_dsn"] == "<redacted>"
    assert config["no_such_field"] == "<unknown>"

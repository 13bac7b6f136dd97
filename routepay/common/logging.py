"""Structured JSON logging with transaction/webhook correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from routepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
webhook_id_ctx: ContextVar[str] = ContextVar("webhook_id", default="")
transaction_id_ctx: ContextVar[str] = ContextVar("transaction_id", default="")
gateway_code_ctx: ContextVar[str] = ContextVar("gateway_code", default="")

_CONTEXT = {
    "trace_id": trace_id_ctx,
    "webhook_id": webhook_id_ctx,
    "transaction_id": transaction_id_ctx,
    "gateway_code": gateway_code_ctx,
}


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**values: str):
    """Bind correlation ids (`transaction_id=...`, `gateway_code=...`) for the block."""

    tokens = [(_CONTEXT[field], _CONTEXT[field].set(value or "")) for field, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(transaction_id)s "
        "%(webhook_id)s %(gateway_code)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # Per-request access lines duplicate the metrics middleware.
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("routepay")

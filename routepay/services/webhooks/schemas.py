"""Result schema returned to webhook callers."""

from pydantic import BaseModel


class HandleResult(BaseModel):
    """`success` tells the gateway whether to stop redelivering."""

    success: bool
    processed: bool
    webhook_id: str | None = None
    transaction_id: str | None = None
    status: str | None = None
    error: str | None = None

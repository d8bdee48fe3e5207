"""Utility modules for the escrow kernel."""

from escrow_kernel.utils.idempotency import (
    connection_fee_key,
    generate_idempotency_key,
    parse_idempotency_key,
    reversal_key,
)

__all__ = [
    "connection_fee_key",
    "generate_idempotency_key",
    "parse_idempotency_key",
    "reversal_key",
]

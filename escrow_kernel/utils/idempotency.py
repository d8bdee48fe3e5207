"""
Idempotency key generation utilities.

Keys derived inside the kernel (ledger entries written on behalf of a
milestone, a dispute, a connection fee) are deterministic functions of the
owning entity, so a retried operation lands on the same key and the
ledger turns it into a replay instead of a second movement.
"""

from uuid import UUID


def generate_idempotency_key(
    scope: str,
    entity_id: UUID | str,
    action: str,
    attempt: int | None = None,
) -> str:
    """
    Generate a ledger idempotency key.

    Format: scope:entity_id:action[:attempt]

    Example:
        >>> generate_idempotency_key("milestone", uuid, "release", 1)
        "milestone:550e8400-e29b-41d4-a716-446655440000:release:1"
    """
    key = f"{scope}:{entity_id}:{action}"
    if attempt is not None:
        key = f"{key}:{attempt}"
    return key


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Split a kernel-generated key into (scope, entity_id, action).

    Any attempt suffix stays on the action.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]


def connection_fee_key(bid_acceptance_id: UUID | str) -> str:
    return f"connection_fee:{bid_acceptance_id}"


def reversal_key(entry_id: UUID | str) -> str:
    return f"reversal:{entry_id}"

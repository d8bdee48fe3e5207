"""
Fallback bid ranking.

When an acceptance expires, the next bid on the card is chosen by a total
order so every run of the sweep picks the same bid:

    1. highest amount
    2. earliest submitted_at
    3. lowest id (string order), as a final tie-break
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID


class RankableBid(Protocol):
    id: UUID
    amount: Decimal
    submitted_at: datetime


def ranking_key(bid: RankableBid) -> tuple:
    return (-bid.amount, bid.submitted_at, str(bid.id))


def rank_bids(bids: Iterable[RankableBid]) -> list[RankableBid]:
    return sorted(bids, key=ranking_key)


def select_fallback_bid(
    candidates: Iterable[RankableBid],
    exclude: set[UUID] | frozenset[UUID] = frozenset(),
) -> RankableBid | None:
    """Return the best-ranked candidate not in ``exclude``, or None."""
    ranked = [b for b in rank_bids(candidates) if b.id not in exclude]
    return ranked[0] if ranked else None

"""
Hypothesis-based property tests for fees and the escrow ledger.

Properties checked:
- Every default-policy fee lies in [10.00, 500.00] and has two decimals
- The fee is monotone in the bid amount
- Fallback ranking is independent of input order
- Any sequence of ledger operations leaves both buckets non-negative and
  the snapshot equal to the sum of the chain
"""

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from escrow_kernel.domain.fee_policy import default_fee_policy
from escrow_kernel.domain.ranking import rank_bids
from escrow_kernel.exceptions import InsufficientFundsError

amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("999999.99"), places=2,
    allow_nan=False, allow_infinity=False,
)

ledger_ops = st.lists(
    st.tuples(
        st.sampled_from(["deposit", "hold", "release", "refund"]),
        st.decimals(min_value=Decimal("0.01"), max_value=Decimal("500.00"), places=2),
    ),
    min_size=1,
    max_size=25,
)


class _Bid:
    def __init__(self, n, amount, minutes):
        self.id = UUID(int=n)
        self.amount = amount
        self.submitted_at = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)


class TestFeeProperties:
    @given(bid=amounts)
    def test_fee_within_bounds(self, bid):
        fee = default_fee_policy().quote(bid).amount
        assert Decimal("10.00") <= fee <= Decimal("500.00")
        assert fee.as_tuple().exponent == -2

    @given(a=amounts, b=amounts)
    def test_fee_monotone(self, a, b):
        policy = default_fee_policy()
        low, high = sorted((a, b))
        assert policy.quote(low).amount <= policy.quote(high).amount


class TestRankingProperties:
    @given(
        specs=st.lists(
            st.tuples(st.integers(1, 5), st.integers(0, 3)), min_size=1, max_size=8
        ),
        seed=st.integers(0, 1000),
    )
    def test_order_independent(self, specs, seed):
        bids = [_Bid(n, Decimal(f"{a}00.00"), m) for n, (a, m) in enumerate(specs)]
        shuffled = list(bids)
        random.Random(seed).shuffle(shuffled)
        assert [b.id for b in rank_bids(bids)] == [b.id for b in rank_bids(shuffled)]


class TestLedgerProperties:
    @settings(
        max_examples=30,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(ops=ledger_ops)
    def test_buckets_stay_non_negative_and_reconcile(self, escrow_manager, ledger_selector, ops):
        account = escrow_manager.open_account(uuid4(), "USD")
        for i, (op, amount) in enumerate(ops):
            try:
                getattr(escrow_manager, op)(account.id, amount, f"prop-{account.id}-{i}")
            except InsufficientFundsError:
                pass

        balance = escrow_manager.get_balance(account.id)
        assert balance.available >= 0
        assert balance.pending >= 0
        assert ledger_selector.derived_balance(account.id) == (balance.available, balance.pending)
        assert ledger_selector.verify_account(account.id).ok

"""
Interest Conformance Tests

INVARIANT: The amount due is bounded, monotonic and capped.

    ∀ disbursed loan L, ∀ t1 <= t2:
        loan_amount <= due(t1) <= due(t2) <= loan_amount + full_term_interest
        t >= loan_end_time ⟹ due(t) = loan_amount + loan_amount * rate // 10000

Interest never accrues past the loan duration.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import timedelta

from p2ploan import calculate_amount_due, BASIS_POINTS, MAX_INTEREST_RATE
from tests.conftest import standard_terms, disbursed_snapshot, START


amounts = st.integers(min_value=1, max_value=10**30)
rates = st.integers(min_value=0, max_value=MAX_INTEREST_RATE)
durations = st.integers(min_value=1, max_value=10 * 365 * 86400)


def _loan(loan_amount, rate, duration):
    terms = standard_terms(loan_amount=loan_amount, interest_rate=rate, loan_duration=duration)
    return terms, disbursed_snapshot(duration=duration)


class TestInterestProperties:
    """Property-based interest tests."""

    @given(amounts, rates, durations,
           st.integers(min_value=0, max_value=20 * 365 * 86400),
           st.integers(min_value=0, max_value=20 * 365 * 86400))
    @settings(max_examples=200)
    def test_monotonic_in_time(self, loan_amount, rate, duration, a, b):
        """
        PROPERTY: Later queries never owe less.
        """
        terms, snapshot = _loan(loan_amount, rate, duration)
        t1, t2 = sorted((a, b))
        due1 = calculate_amount_due(terms, snapshot, START + timedelta(seconds=t1))
        due2 = calculate_amount_due(terms, snapshot, START + timedelta(seconds=t2))
        assert loan_amount <= due1 <= due2

    @given(amounts, rates, durations, st.integers(min_value=0, max_value=20 * 365 * 86400))
    @settings(max_examples=200)
    def test_capped_at_full_term(self, loan_amount, rate, duration, offset):
        """
        PROPERTY: The amount due never exceeds principal plus full-term interest.
        """
        terms, snapshot = _loan(loan_amount, rate, duration)
        cap = loan_amount + loan_amount * rate // BASIS_POINTS
        due = calculate_amount_due(terms, snapshot, START + timedelta(seconds=offset))
        assert due <= cap
        if offset >= duration:
            assert due == cap

    @given(amounts, durations, st.integers(min_value=0, max_value=20 * 365 * 86400))
    @settings(max_examples=100)
    def test_zero_rate_is_principal(self, loan_amount, duration, offset):
        """
        PROPERTY: A zero rate loan always owes exactly its principal.
        """
        terms, snapshot = _loan(loan_amount, 0, duration)
        assert calculate_amount_due(terms, snapshot, START + timedelta(seconds=offset)) == loan_amount

    @given(amounts, rates, durations)
    @settings(max_examples=100)
    def test_nothing_owed_at_start(self, loan_amount, rate, duration):
        """
        PROPERTY: No interest is owed at the disbursement instant.
        """
        terms, snapshot = _loan(loan_amount, rate, duration)
        assert calculate_amount_due(terms, snapshot, START) == loan_amount

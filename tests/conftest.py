"""
conftest.py - Shared pytest fixtures for loan tests

Provides common fixtures used across unit and conformance tests:
- Basic ledgers (empty, funded parties)
- Loans at each lifecycle stage (created, collateralized, disbursed)
- FakeView states for builder tests

Amounts in the scenario fixtures are small raw integers (100 principal,
1 collateral) so interest truncation is visible: 100 at 500bp for half of
a 30 day term accrues 2.5, truncated to 2.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from p2ploan import (
    Ledger, native_token, fund_wallet, create_loan,
    LoanState, LoanTerms, LoanSnapshot, to_state_dict, custody_wallet_for,
    SWEEP_POLICY_ADMIN, SECONDS_PER_DAY,
)

from tests.fake_view import FakeView


START = datetime(2025, 1, 1, 9, 0, 0)

LOAN_AMOUNT = 100
COLLATERAL_AMOUNT = 1
INTEREST_RATE = 500
LOAN_DURATION = 30 * SECONDS_PER_DAY

LENDER_FUNDS = 1_000
BORROWER_FUNDS = 50


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_ledger(name: str = "test") -> Ledger:
    """Ledger with ETH and funded lender, borrower and outsider wallets."""
    ledger = Ledger(name, START, verbose=False, test_mode=True)
    ledger.register_unit(native_token("ETH"))
    for wallet in ("lender", "borrower", "outsider"):
        ledger.register_wallet(wallet)
    fund_wallet(ledger, "lender", LENDER_FUNDS)
    fund_wallet(ledger, "borrower", BORROWER_FUNDS)
    fund_wallet(ledger, "outsider", 10)
    return ledger


def make_loan(ledger: Ledger, **kwargs):
    """Create the standard 100/1/500bp/30 day loan, overridable by keyword."""
    params = dict(
        lender="lender",
        borrower="borrower",
        loan_amount=LOAN_AMOUNT,
        collateral_amount=COLLATERAL_AMOUNT,
        interest_rate=INTEREST_RATE,
        loan_duration=LOAN_DURATION,
        loan_asset="DAI",
        collateral_asset="WETH",
    )
    params.update(kwargs)
    return create_loan(ledger, **params)


def eth(ledger: Ledger, wallet: str) -> int:
    return int(ledger.get_balance(wallet, "ETH"))


def standard_terms(**overrides) -> LoanTerms:
    fields = dict(
        lender="lender",
        borrower="borrower",
        loan_amount=LOAN_AMOUNT,
        collateral_amount=COLLATERAL_AMOUNT,
        interest_rate=INTEREST_RATE,
        loan_duration=LOAN_DURATION,
        loan_asset="DAI",
        collateral_asset="WETH",
        currency="ETH",
        custody_wallet=custody_wallet_for("P2PLOAN"),
        admin_wallet="lender",
        sweep_policy=SWEEP_POLICY_ADMIN,
    )
    fields.update(overrides)
    return LoanTerms(**fields)


def disbursed_snapshot(start: datetime = START, duration: int = LOAN_DURATION) -> LoanSnapshot:
    return LoanSnapshot(
        state=LoanState.DISBURSED,
        loan_start_time=start,
        loan_end_time=start + timedelta(seconds=duration),
    )


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", verbose=False, test_mode=True)


@pytest.fixture
def basic_ledger():
    """Ledger with ETH and two unfunded wallets."""
    ledger = Ledger("test", START, verbose=False, test_mode=True)
    ledger.register_unit(native_token("ETH"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger(basic_ledger):
    """Basic ledger with alice holding 10,000 wei."""
    basic_ledger.set_balance("alice", "ETH", Decimal("10000"))
    return basic_ledger


@pytest.fixture
def loan_ledger():
    """Ledger with funded lender, borrower and outsider."""
    return make_ledger()


# =============================================================================
# LOAN FIXTURES
# =============================================================================

@pytest.fixture
def loan(loan_ledger):
    """Standard loan in CREATED."""
    return make_loan(loan_ledger)


@pytest.fixture
def collateralized_loan(loan):
    """Standard loan in COLLATERAL_PROVIDED."""
    loan.provide_collateral("borrower", COLLATERAL_AMOUNT)
    return loan


@pytest.fixture
def disbursed_loan(collateralized_loan):
    """Standard loan in DISBURSED, started at START."""
    collateralized_loan.disburse("lender", LOAN_AMOUNT)
    return collateralized_loan


@pytest.fixture
def repaid_loan(disbursed_loan):
    """Standard loan repaid at day 15."""
    ledger = disbursed_loan.ledger
    ledger.advance_time(START + timedelta(days=15))
    disbursed_loan.repay("borrower", disbursed_loan.calculate_amount_due())
    return disbursed_loan


@pytest.fixture
def liquidated_loan(disbursed_loan):
    """Standard loan liquidated one second after its end time."""
    ledger = disbursed_loan.ledger
    ledger.advance_time(disbursed_loan.loan_end_time + timedelta(seconds=1))
    disbursed_loan.liquidate("lender")
    return disbursed_loan


# =============================================================================
# FAKE VIEW FIXTURES
# =============================================================================

@pytest.fixture
def created_view():
    """FakeView of a loan in CREATED."""
    return FakeView(
        balances={
            "lender": {"ETH": LENDER_FUNDS},
            "borrower": {"ETH": BORROWER_FUNDS},
        },
        states={
            "P2PLOAN": to_state_dict(standard_terms(), LoanSnapshot(LoanState.CREATED)),
        },
        time=START,
    )


@pytest.fixture
def disbursed_view():
    """FakeView of a loan in DISBURSED, 15 days after the start."""
    return FakeView(
        balances={
            "lender": {"ETH": LENDER_FUNDS - LOAN_AMOUNT},
            "borrower": {"ETH": BORROWER_FUNDS - COLLATERAL_AMOUNT + LOAN_AMOUNT},
            "P2PLOAN.custody": {"ETH": COLLATERAL_AMOUNT},
        },
        states={
            "P2PLOAN": to_state_dict(standard_terms(), disbursed_snapshot()),
        },
        time=START + timedelta(days=15),
    )

"""
test_loan_creation.py - Unit tests for loan creation

Tests:
- create_loan_unit() factory validation
- create_loan() registration against a ledger
- Parameter boundaries (rate 0 and 10000)
- Rejected creation leaves the ledger untouched
- Read-only accessors on a fresh loan
"""

import pytest
from decimal import Decimal

from p2ploan import (
    Ledger, native_token, create_loan_unit, load_loan,
    LoanState, LoanRequested, InvalidParameters,
    UNIT_TYPE_P2P_LOAN, SWEEP_POLICY_ADMIN, SWEEP_POLICY_OPEN,
    parse_units, MAX_UINT256,
)
from tests.conftest import (
    make_loan, eth, START, LOAN_AMOUNT, COLLATERAL_AMOUNT, INTEREST_RATE,
    LOAN_DURATION,
)


def _unit(**overrides):
    params = dict(
        symbol="P2PLOAN",
        lender="lender",
        borrower="borrower",
        loan_amount=LOAN_AMOUNT,
        collateral_amount=COLLATERAL_AMOUNT,
        interest_rate=INTEREST_RATE,
        loan_duration=LOAN_DURATION,
        loan_asset="DAI",
        collateral_asset="WETH",
    )
    params.update(overrides)
    return create_loan_unit(**params)


# ============================================================================
# CREATE LOAN UNIT TESTS
# ============================================================================

class TestCreateLoanUnit:
    """Tests for the create_loan_unit factory function."""

    def test_create_basic_loan_unit(self):
        unit = _unit()

        assert unit.symbol == "P2PLOAN"
        assert unit.unit_type == UNIT_TYPE_P2P_LOAN
        assert unit.max_balance == Decimal("0")

        state = unit.state
        assert state["status"] == "CREATED"
        assert state["lender_wallet"] == "lender"
        assert state["borrower_wallet"] == "borrower"
        assert state["loan_amount"] == 100
        assert state["collateral_amount"] == 1
        assert state["interest_rate"] == 500
        assert state["loan_duration"] == 30 * 86400
        assert state["custody_wallet"] == "P2PLOAN.custody"
        assert state["admin_wallet"] == "lender"
        assert state["sweep_policy"] == SWEEP_POLICY_ADMIN
        assert state["loan_start_time"] is None
        assert state["loan_end_time"] is None
        assert state["total_swept"] == 0

    def test_custom_admin_and_policy(self):
        unit = _unit(admin_wallet="treasury", sweep_policy=SWEEP_POLICY_OPEN)
        assert unit.state["admin_wallet"] == "treasury"
        assert unit.state["sweep_policy"] == SWEEP_POLICY_OPEN

    def test_uint256_amounts_accepted(self):
        unit = _unit(loan_amount=MAX_UINT256, collateral_amount=MAX_UINT256)
        assert unit.state["loan_amount"] == MAX_UINT256
        assert unit.state["collateral_amount"] == MAX_UINT256

    @pytest.mark.parametrize("rate", [0, 1, 9999, 10000])
    def test_rate_boundaries_accepted(self, rate):
        assert _unit(interest_rate=rate).state["interest_rate"] == rate

    @pytest.mark.parametrize("overrides", [
        {"loan_amount": 0},
        {"loan_amount": -100},
        {"collateral_amount": 0},
        {"collateral_amount": -1},
        {"interest_rate": -1},
        {"interest_rate": 10001},
        {"loan_duration": 0},
        {"loan_duration": -86400},
        {"loan_amount": MAX_UINT256 + 1},
        {"collateral_amount": MAX_UINT256 + 1},
    ])
    def test_out_of_range_values_rejected(self, overrides):
        with pytest.raises(InvalidParameters):
            _unit(**overrides)

    @pytest.mark.parametrize("overrides", [
        {"loan_amount": 100.0},
        {"loan_amount": Decimal("100")},
        {"collateral_amount": "1"},
        {"interest_rate": True},
        {"loan_duration": 86400.5},
    ])
    def test_non_integer_values_rejected(self, overrides):
        with pytest.raises(InvalidParameters, match="integer"):
            _unit(**overrides)

    @pytest.mark.parametrize("overrides", [
        {"lender": ""},
        {"borrower": "   "},
        {"loan_asset": ""},
        {"collateral_asset": ""},
        {"symbol": ""},
        {"currency": ""},
    ])
    def test_empty_names_rejected(self, overrides):
        with pytest.raises(InvalidParameters, match="empty"):
            _unit(**overrides)

    def test_lender_equal_to_borrower_rejected(self):
        with pytest.raises(InvalidParameters, match="different"):
            _unit(lender="alice", borrower="alice")

    def test_unknown_sweep_policy_rejected(self):
        with pytest.raises(InvalidParameters, match="sweep_policy"):
            _unit(sweep_policy="ANYONE")

    def test_invalid_parameters_is_value_error(self):
        with pytest.raises(ValueError):
            _unit(loan_amount=0)


# ============================================================================
# CREATE LOAN (LEDGER) TESTS
# ============================================================================

class TestCreateLoan:
    """Tests for create_loan against a ledger."""

    def test_loan_starts_created(self, loan):
        assert loan.state == LoanState.CREATED
        assert loan.loan_start_time is None
        assert loan.loan_end_time is None
        assert loan.is_overdue() is False

    def test_registers_custody_wallet(self, loan, loan_ledger):
        assert loan_ledger.is_registered("P2PLOAN.custody")
        assert eth(loan_ledger, "P2PLOAN.custody") == 0

    def test_creation_is_logged(self, loan, loan_ledger):
        tx = loan_ledger.transaction_log[-1]
        assert [u.symbol for u in tx.units_to_create] == ["P2PLOAN"]
        assert tx.moves == ()
        assert tx.origin.event_type == "CREATE"

    def test_terms_round_trip(self, loan):
        terms = loan.terms
        assert terms.lender == "lender"
        assert terms.borrower == "borrower"
        assert terms.loan_amount == LOAN_AMOUNT
        assert terms.collateral_amount == COLLATERAL_AMOUNT
        assert terms.interest_rate == INTEREST_RATE
        assert terms.loan_duration == LOAN_DURATION
        assert terms.loan_asset == "DAI"
        assert terms.collateral_asset == "WETH"
        assert terms.full_term_interest == 5

    def test_emits_loan_requested(self, loan):
        (event,) = loan.events
        assert isinstance(event, LoanRequested)
        assert event.loan == "P2PLOAN"
        assert event.timestamp == START
        assert event.borrower == "borrower"
        assert event.loan_amount == LOAN_AMOUNT
        assert event.collateral_amount == COLLATERAL_AMOUNT
        assert event.duration == LOAN_DURATION
        assert event.interest_rate == INTEREST_RATE

    def test_observers_receive_loan_requested(self, loan_ledger):
        received = []
        make_loan(loan_ledger, observers=[received.append])
        assert [e.name for e in received] == ["LoanRequested"]

    def test_two_loans_coexist(self, loan_ledger):
        first = make_loan(loan_ledger, symbol="LOAN_A")
        second = make_loan(loan_ledger, symbol="LOAN_B", loan_amount=50)

        assert first.terms.custody_wallet == "LOAN_A.custody"
        assert second.terms.custody_wallet == "LOAN_B.custody"
        assert second.terms.loan_amount == 50
        assert len(first.events) == 1
        assert len(second.events) == 1

    def test_duplicate_symbol_rejected(self, loan, loan_ledger):
        wallets_before = loan_ledger.list_wallets()
        with pytest.raises(InvalidParameters, match="already registered"):
            make_loan(loan_ledger)
        assert loan_ledger.list_wallets() == wallets_before

    def test_unregistered_party_rejected(self, loan_ledger):
        with pytest.raises(InvalidParameters, match="not registered"):
            make_loan(loan_ledger, borrower="stranger")
        assert "P2PLOAN" not in loan_ledger.units
        assert not loan_ledger.is_registered("P2PLOAN.custody")

    def test_unregistered_currency_rejected(self, loan_ledger):
        with pytest.raises(InvalidParameters, match="currency"):
            make_loan(loan_ledger, currency="USDC")

    def test_loan_unit_cannot_be_currency(self, loan, loan_ledger):
        with pytest.raises(InvalidParameters, match="currency"):
            make_loan(loan_ledger, symbol="OTHER", currency="P2PLOAN")

    def test_invalid_terms_leave_ledger_untouched(self, loan_ledger):
        log_size = len(loan_ledger.transaction_log)
        with pytest.raises(InvalidParameters):
            make_loan(loan_ledger, interest_rate=20000)
        assert len(loan_ledger.transaction_log) == log_size
        assert "P2PLOAN" not in loan_ledger.units

    def test_deployment_parameters(self):
        """The 100 token / 1 token / 5% / 30 day deployment."""
        ledger = Ledger("deploy", START, verbose=False)
        ledger.register_unit(native_token("ETH"))
        ledger.register_wallet("deployer")
        ledger.register_wallet("borrower")

        loan = make_loan(
            ledger,
            lender="deployer",
            loan_amount=parse_units("100"),
            collateral_amount=parse_units("1"),
            loan_asset="0x7a30364177d61184918f03a6202f58e454b5258e",
            collateral_asset="0x8e870d67f660d95d5415bc866504be09f3e82efc",
        )

        assert loan.summary() == {
            'loan': "P2PLOAN",
            'lender': "deployer",
            'borrower': "borrower",
            'loan_amount': "100.0",
            'collateral_amount': "1.0",
            'interest_rate': "5%",
            'loan_duration': "2592000",
            'loan_asset': "0x7a30364177d61184918f03a6202f58e454b5258e",
            'collateral_asset': "0x8e870d67f660d95d5415bc866504be09f3e82efc",
            'state': "CREATED",
        }

    def test_load_loan_matches_handle(self, loan, loan_ledger):
        terms, snapshot = load_loan(loan_ledger, "P2PLOAN")
        assert terms == loan.terms
        assert snapshot == loan.snapshot
        assert snapshot.state == LoanState.CREATED

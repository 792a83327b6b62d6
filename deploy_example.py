#!/usr/bin/env python3
"""
deploy_example.py - Deploy a Loan and Walk Through Its Lifecycle

Creates the example loan (100 tokens against 1 token of collateral, 5% for
30 days), prints its deployment summary, then runs two scenarios on separate
ledgers:

  1. Happy path   - collateral, disbursement, repayment at day 15
  2. Default      - collateral, disbursement, liquidation after the term

Run:
    python deploy_example.py           # Interactive mode (press Enter between steps)
    python deploy_example.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import sys

from p2ploan import (
    Ledger, native_token, fund_wallet,
    create_loan, Loan, LoanEvent,
    parse_units, format_units, count_by_name,
    NotYetDue, SECONDS_PER_DAY,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DeployConfig:
    """Deployment parameters. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    # Parties (the deployer is the lender)
    lender: str = "deployer"
    borrower: str = "borrower"

    # Loan terms
    loan_amount: int = parse_units("100")
    collateral_amount: int = parse_units("1")
    interest_rate: int = 500                       # 500 = 5%
    loan_duration: int = 30 * SECONDS_PER_DAY      # 30 days in seconds

    # Placeholder asset identifiers (mock DAI / mock WETH)
    loan_asset: str = "0x7a30364177d61184918f03a6202f58e454b5258e"
    collateral_asset: str = "0x8e870d67f660d95d5415bc866504be09f3e82efc"

    # Initial funding
    lender_funds: int = parse_units("1000")
    borrower_funds: int = parse_units("10")


CONFIG = DeployConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}\n")


def print_event(event: LoanEvent):
    """Observer: print each committed loan event."""
    print(f"  >> {event.name} at {event.timestamp}")


def print_balances(ledger: Ledger, loan: Loan):
    terms = loan.terms
    for wallet in (terms.lender, terms.borrower, terms.custody_wallet):
        balance = int(ledger.get_balance(wallet, terms.currency))
        print(f"  {wallet:<20} {format_units(balance):>26} {terms.currency}")


# ============================================================================
# DEPLOYMENT
# ============================================================================

def deploy(ledger_name: str) -> Loan:
    """Set up a ledger with funded parties and deploy the example loan."""
    ledger = Ledger(ledger_name, initial_time=CONFIG.start_time, verbose=not QUICK_MODE)
    ledger.register_unit(native_token("ETH"))
    ledger.register_wallet(CONFIG.lender)
    ledger.register_wallet(CONFIG.borrower)
    fund_wallet(ledger, CONFIG.lender, CONFIG.lender_funds)
    fund_wallet(ledger, CONFIG.borrower, CONFIG.borrower_funds)

    print(f"Deploying loan with the account (Lender): {CONFIG.lender}")
    print(f"Using Borrower account: {CONFIG.borrower}")

    loan = create_loan(
        ledger,
        CONFIG.lender,
        CONFIG.borrower,
        CONFIG.loan_amount,
        CONFIG.collateral_amount,
        CONFIG.interest_rate,
        CONFIG.loan_duration,
        CONFIG.loan_asset,
        CONFIG.collateral_asset,
        observers=[print_event],
    )

    summary = loan.summary()
    print(f"\nP2PLoan deployed to: {summary['loan']} (ledger {ledger.name})")
    print(f"Lender Address: {summary['lender']}")
    print(f"Borrower Address: {summary['borrower']}")
    print(f"Loan Amount: {summary['loan_amount']}")
    print(f"Collateral Amount: {summary['collateral_amount']}")
    print(f"Interest Rate: {summary['interest_rate']}")
    print(f"Loan Duration (seconds): {summary['loan_duration']}")
    print(f"Loan Asset Address: {summary['loan_asset']}")
    print(f"Collateral Asset Address: {summary['collateral_asset']}")
    return loan


def fund(loan: Loan):
    """Collateral in, principal out."""
    terms = loan.terms
    loan.provide_collateral(terms.borrower, terms.collateral_amount)
    loan.disburse(terms.lender, terms.loan_amount)
    print(f"\nState: {loan.state.value}")
    print(f"Loan start: {loan.loan_start_time}")
    print(f"Loan end:   {loan.loan_end_time}")


# ============================================================================
# SCENARIOS
# ============================================================================

def happy_path():
    step_header(1, "Happy Path: Repay at Day 15")
    loan = deploy("happy_path")
    ledger = loan.ledger
    fund(loan)
    wait_for_enter()

    ledger.advance_time(loan.loan_start_time + timedelta(days=15))
    due = loan.calculate_amount_due()
    print(f"\nAmount due at day 15: {format_units(due)}")
    loan.repay(CONFIG.borrower, due)

    print(f"\nState: {loan.state.value}")
    print_balances(ledger, loan)
    print(f"\nEvents: {count_by_name(loan.events)}")
    check = ledger.verify_double_entry()
    print(f"Supply conserved: {check['supplies']['ETH'] == 0}")
    wait_for_enter()


def default_path():
    step_header(2, "Default: Liquidate After the Term")
    loan = deploy("default_path")
    ledger = loan.ledger
    fund(loan)
    wait_for_enter()

    ledger.advance_time(loan.loan_end_time)
    try:
        loan.liquidate(CONFIG.lender)
    except NotYetDue as e:
        print(f"\nAt the end instant: {e}")

    ledger.advance_time(loan.loan_end_time + timedelta(seconds=1))
    print(f"Overdue: {loan.is_overdue()}")
    loan.liquidate(CONFIG.lender)

    print(f"\nState: {loan.state.value}")
    print_balances(ledger, loan)
    print(f"\nEvents: {count_by_name(loan.events)}")


def main():
    print("=" * 70)
    print("    P2P LOAN DEPLOYMENT")
    print("=" * 70)
    happy_path()
    default_path()


if __name__ == "__main__":
    main()

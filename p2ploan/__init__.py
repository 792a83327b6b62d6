"""
p2ploan - Bilateral Collateralized Loan Ledger

A single-lender, single-borrower loan that runs on an atomic value-transfer
ledger: collateral escrow, disbursement, linear simple interest, full
repayment and liquidation after the term.

Usage:
    from datetime import timedelta
    from p2ploan import Ledger, native_token, create_loan, parse_units, fund_wallet

    ledger = Ledger("main")
    ledger.register_unit(native_token("ETH"))
    ledger.register_wallet("lender")
    ledger.register_wallet("borrower")
    fund_wallet(ledger, "lender", parse_units("1000"))
    fund_wallet(ledger, "borrower", parse_units("10"))

    loan = create_loan(ledger, "lender", "borrower",
                       loan_amount=parse_units("100"),
                       collateral_amount=parse_units("1"),
                       interest_rate=500,
                       loan_duration=30 * 86400,
                       loan_asset="DAI", collateral_asset="WETH")

    loan.provide_collateral("borrower", parse_units("1"))
    loan.disburse("lender", parse_units("100"))
    ledger.advance_time(ledger.current_time + timedelta(days=15))
    loan.repay("borrower", loan.calculate_amount_due())
"""

from decimal import Decimal

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    LoanError,
    InvalidParameters,
    Unauthorized,
    InvalidState,
    InsufficientValue,
    NotYetDue,
    TransferFailed,
    native_token,
    SYSTEM_WALLET,
    UNIT_TYPE_NATIVE,
    UNIT_TYPE_P2P_LOAN,
)

# Ledger
from .ledger import Ledger

# Amounts
from .amounts import (
    TOKEN_DECIMALS,
    BASIS_POINTS,
    MAX_INTEREST_RATE,
    MAX_UINT256,
    SECONDS_PER_DAY,
    parse_units,
    format_units,
    format_rate,
)

# Events
from .events import (
    LoanEvent,
    LoanRequested,
    CollateralProvided,
    LoanDisbursed,
    RepaymentMade,
    CollateralReleased,
    CollateralLiquidated,
    ResidualSwept,
    EventDispatcher,
    EventObserver,
    count_by_name,
)

# Loan
from .loan import (
    LoanState,
    LoanTerms,
    LoanSnapshot,
    Loan,
    create_loan,
    create_loan_unit,
    load_loan,
    to_state_dict,
    custody_wallet_for,
    calculate_elapsed_seconds,
    calculate_amount_due,
    calculate_escrowed_collateral,
    is_liquidatable,
    compute_provide_collateral,
    compute_disbursement,
    compute_amount_due,
    compute_repayment,
    compute_liquidation,
    compute_residual_sweep,
    transact,
    derive_events,
    loan_history,
    TERMINAL_STATES,
    ACTION_PROVIDE_COLLATERAL,
    ACTION_DISBURSE,
    ACTION_REPAY,
    ACTION_LIQUIDATE,
    ACTION_SWEEP_RESIDUAL,
    REASON_COLLATERAL_ALREADY_PROVIDED,
    REASON_COLLATERAL_NOT_PROVIDED,
    REASON_ALREADY_DISBURSED,
    REASON_NOT_DISBURSED,
    REASON_ALREADY_REPAID,
    REASON_ALREADY_LIQUIDATED,
    SWEEP_POLICY_ADMIN,
    SWEEP_POLICY_OPEN,
    DEFAULT_LOAN_SYMBOL,
    DEFAULT_CURRENCY,
)


def fund_wallet(ledger: Ledger, wallet: str, amount: int, currency: str = DEFAULT_CURRENCY) -> ExecuteResult:
    """Issue `amount` base units of `currency` to a wallet from SYSTEM_WALLET."""
    # Sequence in the contract id keeps repeated identical issuances distinct
    contract_id = f"issue_{wallet}_{len(ledger.transaction_log)}"
    pending = build_transaction(ledger, [
        Move(Decimal(amount), currency, SYSTEM_WALLET, wallet, contract_id)
    ])
    return ledger.execute(pending)


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult',
    'LedgerError', 'UnitNotRegistered', 'WalletNotRegistered',
    'LoanError', 'InvalidParameters', 'Unauthorized', 'InvalidState',
    'InsufficientValue', 'NotYetDue', 'TransferFailed',
    'native_token', 'SYSTEM_WALLET', 'UNIT_TYPE_NATIVE', 'UNIT_TYPE_P2P_LOAN',
    # Ledger
    'Ledger', 'fund_wallet',
    # Amounts
    'TOKEN_DECIMALS', 'BASIS_POINTS', 'MAX_INTEREST_RATE', 'MAX_UINT256', 'SECONDS_PER_DAY',
    'parse_units', 'format_units', 'format_rate',
    # Events
    'LoanEvent', 'LoanRequested', 'CollateralProvided', 'LoanDisbursed',
    'RepaymentMade', 'CollateralReleased', 'CollateralLiquidated',
    'ResidualSwept', 'EventDispatcher', 'EventObserver', 'count_by_name',
    # Loan
    'LoanState', 'LoanTerms', 'LoanSnapshot', 'Loan',
    'create_loan', 'create_loan_unit', 'load_loan', 'to_state_dict',
    'custody_wallet_for', 'calculate_elapsed_seconds', 'calculate_amount_due',
    'calculate_escrowed_collateral', 'is_liquidatable',
    'compute_provide_collateral', 'compute_disbursement', 'compute_amount_due',
    'compute_repayment', 'compute_liquidation', 'compute_residual_sweep',
    'transact', 'derive_events', 'loan_history', 'TERMINAL_STATES',
    'ACTION_PROVIDE_COLLATERAL', 'ACTION_DISBURSE', 'ACTION_REPAY',
    'ACTION_LIQUIDATE', 'ACTION_SWEEP_RESIDUAL',
    'REASON_COLLATERAL_ALREADY_PROVIDED', 'REASON_COLLATERAL_NOT_PROVIDED',
    'REASON_ALREADY_DISBURSED', 'REASON_NOT_DISBURSED',
    'REASON_ALREADY_REPAID', 'REASON_ALREADY_LIQUIDATED',
    'SWEEP_POLICY_ADMIN', 'SWEEP_POLICY_OPEN',
    'DEFAULT_LOAN_SYMBOL', 'DEFAULT_CURRENCY',
]

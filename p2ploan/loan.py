"""
loan.py - Bilateral Collateralized Loan

One lender, one borrower, fixed rate, fixed term. The borrower deposits
collateral, the lender disburses principal, simple interest accrues linearly
until the term ends, and the loan finishes either repaid (collateral returned)
or liquidated (collateral seized by the lender after the end time).

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - LoanTerms: immutable agreement (set at creation, never changes)
   - LoanSnapshot: lifecycle state at a point in time

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - All inputs explicit, no LedgerView
   - calculate_amount_due(terms, snapshot, now) -> int

3. ADAPTER FUNCTIONS (load_loan, to_state_dict):
   - The only place that translates between the ledger's state dict
     and the typed dataclasses

4. TRANSACTION BUILDERS (compute_*):
   - Take (view, symbol, caller, ...) and return a PendingTransaction whose
     moves and state change commit together in Ledger.execute()
   - Raise a LoanError before anything is built if a precondition fails

5. HANDLE (Loan, create_loan):
   - Binds a ledger and a loan symbol, executes the builders, derives the
     lifecycle events from the committed transaction and notifies observers

State machine:
    CREATED --provide_collateral(borrower)--> COLLATERAL_PROVIDED
    COLLATERAL_PROVIDED --disburse(lender)--> DISBURSED
    DISBURSED --repay(borrower)--> REPAID
    DISBURSED --liquidate(lender), now > loan_end_time--> LIQUIDATED

Preconditions are checked in a fixed order: lifecycle state, then caller,
then transferred value or time.

Key Formula:
    elapsed = min(now - loan_start_time, loan_duration)        (whole seconds)
    amount_due = loan_amount
                 + loan_amount * interest_rate * elapsed // (10000 * loan_duration)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from .amounts import BASIS_POINTS, MAX_INTEREST_RATE, MAX_UINT256, format_rate, format_units
from .core import (
    LedgerView, Move, PendingTransaction, Transaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType, ExecuteResult,
    UNIT_TYPE_NATIVE, UNIT_TYPE_P2P_LOAN,
    InvalidParameters, Unauthorized, InvalidState, InsufficientValue,
    NotYetDue, TransferFailed, UnitNotRegistered,
    build_transaction, _freeze_state,
)
from .events import (
    EventDispatcher, EventObserver, LoanEvent,
    LoanRequested, CollateralProvided, LoanDisbursed, RepaymentMade,
    CollateralReleased, CollateralLiquidated, ResidualSwept,
)
from .ledger import Ledger


# ============================================================================
# CONSTANTS
# ============================================================================

class LoanState(Enum):
    """Lifecycle state of a loan. REPAID and LIQUIDATED are terminal."""
    CREATED = "CREATED"
    COLLATERAL_PROVIDED = "COLLATERAL_PROVIDED"
    DISBURSED = "DISBURSED"
    REPAID = "REPAID"
    LIQUIDATED = "LIQUIDATED"


TERMINAL_STATES = frozenset({LoanState.REPAID, LoanState.LIQUIDATED})

# Position of each non-terminal state along the only forward path
_STATE_ORDER = {
    LoanState.CREATED: 0,
    LoanState.COLLATERAL_PROVIDED: 1,
    LoanState.DISBURSED: 2,
}

# Actions
ACTION_PROVIDE_COLLATERAL = "PROVIDE_COLLATERAL"
ACTION_DISBURSE = "DISBURSE"
ACTION_REPAY = "REPAY"
ACTION_LIQUIDATE = "LIQUIDATE"
ACTION_SWEEP_RESIDUAL = "SWEEP_RESIDUAL"

# InvalidState reason codes
REASON_COLLATERAL_ALREADY_PROVIDED = "COLLATERAL_ALREADY_PROVIDED"
REASON_COLLATERAL_NOT_PROVIDED = "COLLATERAL_NOT_PROVIDED"
REASON_ALREADY_DISBURSED = "ALREADY_DISBURSED"
REASON_NOT_DISBURSED = "NOT_DISBURSED"
REASON_ALREADY_REPAID = "ALREADY_REPAID"
REASON_ALREADY_LIQUIDATED = "ALREADY_LIQUIDATED"

# Who may call sweep_residual, and what it may take.
# ADMIN: only the admin wallet, and never the escrowed collateral.
# OPEN: anyone, the whole custody balance.
SWEEP_POLICY_ADMIN = "ADMIN"
SWEEP_POLICY_OPEN = "OPEN"
SWEEP_POLICIES = frozenset({SWEEP_POLICY_ADMIN, SWEEP_POLICY_OPEN})

DEFAULT_LOAN_SYMBOL = "P2PLOAN"
DEFAULT_CURRENCY = "ETH"

_ONE_SECOND = timedelta(seconds=1)


def custody_wallet_for(symbol: str) -> str:
    """Wallet that holds the value escrowed by a loan."""
    return f"{symbol}.custody"


# ============================================================================
# FROZEN DATACLASSES - Explicit Inputs for Pure Functions
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanTerms:
    """
    Immutable loan agreement - set at creation, never changes.

    Amounts are integers in base units (18 implied decimals), the rate is
    annual basis points and the duration is whole seconds.
    """
    lender: str
    borrower: str
    loan_amount: int
    collateral_amount: int
    interest_rate: int
    loan_duration: int
    loan_asset: str
    collateral_asset: str
    currency: str
    custody_wallet: str
    admin_wallet: str
    sweep_policy: str

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.loan_duration)

    @property
    def full_term_interest(self) -> int:
        """Interest owed once the whole duration has elapsed."""
        return self.loan_amount * self.interest_rate // BASIS_POINTS


@dataclass(frozen=True, slots=True)
class LoanSnapshot:
    """
    Lifecycle state of a loan at one point in time.

    Each transition produces a NEW instance; loan_start_time and
    loan_end_time stay None until disbursement.
    """
    state: LoanState
    loan_start_time: Optional[datetime] = None
    loan_end_time: Optional[datetime] = None
    amount_repaid: Optional[int] = None
    closed_time: Optional[datetime] = None
    total_swept: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# ============================================================================
# ADAPTER FUNCTIONS - Bridge Between LedgerView and Pure Functions
# ============================================================================

def _from_state_dict(raw: Dict[str, Any]) -> Tuple[LoanTerms, LoanSnapshot]:
    terms = LoanTerms(
        lender=raw['lender_wallet'],
        borrower=raw['borrower_wallet'],
        loan_amount=raw['loan_amount'],
        collateral_amount=raw['collateral_amount'],
        interest_rate=raw['interest_rate'],
        loan_duration=raw['loan_duration'],
        loan_asset=raw['loan_asset'],
        collateral_asset=raw['collateral_asset'],
        currency=raw['currency'],
        custody_wallet=raw['custody_wallet'],
        admin_wallet=raw['admin_wallet'],
        sweep_policy=raw['sweep_policy'],
    )
    snapshot = LoanSnapshot(
        state=LoanState(raw['status']),
        loan_start_time=raw.get('loan_start_time'),
        loan_end_time=raw.get('loan_end_time'),
        amount_repaid=raw.get('amount_repaid'),
        closed_time=raw.get('closed_time'),
        total_swept=raw.get('total_swept', 0),
    )
    return terms, snapshot


def load_loan(view: LedgerView, symbol: str) -> Tuple[LoanTerms, LoanSnapshot]:
    """
    Load a loan from ledger state as typed frozen dataclasses.

    Raises:
        UnitNotRegistered: If the symbol is unknown to the view
        ValueError: If the unit is not a loan
    """
    raw = view.get_unit_state(symbol)
    if raw.get('unit_type') != UNIT_TYPE_P2P_LOAN:
        raise ValueError(f"{symbol} is not a {UNIT_TYPE_P2P_LOAN} unit")
    return _from_state_dict(raw)


def to_state_dict(terms: LoanTerms, snapshot: LoanSnapshot) -> Dict[str, Any]:
    """Inverse of load_loan(): the dict stored as the loan unit's state."""
    return {
        'unit_type': UNIT_TYPE_P2P_LOAN,
        'lender_wallet': terms.lender,
        'borrower_wallet': terms.borrower,
        'loan_amount': terms.loan_amount,
        'collateral_amount': terms.collateral_amount,
        'interest_rate': terms.interest_rate,
        'loan_duration': terms.loan_duration,
        'loan_asset': terms.loan_asset,
        'collateral_asset': terms.collateral_asset,
        'currency': terms.currency,
        'custody_wallet': terms.custody_wallet,
        'admin_wallet': terms.admin_wallet,
        'sweep_policy': terms.sweep_policy,
        'status': snapshot.state.value,
        'loan_start_time': snapshot.loan_start_time,
        'loan_end_time': snapshot.loan_end_time,
        'amount_repaid': snapshot.amount_repaid,
        'closed_time': snapshot.closed_time,
        'total_swept': snapshot.total_swept,
    }


# ============================================================================
# PURE CALCULATION FUNCTIONS - No LedgerView, All Inputs Explicit
# ============================================================================

def calculate_elapsed_seconds(
    loan_start_time: datetime,
    now: datetime,
    loan_duration: int,
) -> int:
    """
    Whole seconds of interest-bearing time, capped at the loan duration.

    Sub-second remainders are dropped, and a clock reading before the start
    counts as zero.
    """
    elapsed = (now - loan_start_time) // _ONE_SECOND
    return max(0, min(elapsed, loan_duration))


def calculate_amount_due(terms: LoanTerms, snapshot: LoanSnapshot, now: datetime) -> int:
    """
    Amount the borrower must transfer to repay at time `now`.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Outside DISBURSED (not yet funded, or already closed) no interest is
    owed and the principal is returned unchanged. While DISBURSED, simple
    interest accrues linearly and stops once the full duration has elapsed,
    even if the loan is still unpaid. Integer division truncates, matching
    on-chain arithmetic exactly.

    Example:
        # 100 units, 500bp, 30 days: 15 days in -> 100 + floor(2.5) = 102
        calculate_amount_due(terms, snapshot, start + timedelta(days=15))
    """
    if snapshot.state != LoanState.DISBURSED:
        return terms.loan_amount
    elapsed = calculate_elapsed_seconds(snapshot.loan_start_time, now, terms.loan_duration)
    interest = (terms.loan_amount * terms.interest_rate * elapsed) // (
        BASIS_POINTS * terms.loan_duration
    )
    return terms.loan_amount + interest


def calculate_escrowed_collateral(terms: LoanTerms, snapshot: LoanSnapshot) -> int:
    """Collateral the custody wallet must keep for the current state."""
    if snapshot.state in (LoanState.COLLATERAL_PROVIDED, LoanState.DISBURSED):
        return terms.collateral_amount
    return 0


def is_liquidatable(snapshot: LoanSnapshot, now: datetime) -> bool:
    """True strictly after the end time of a disbursed loan."""
    return (
        snapshot.state == LoanState.DISBURSED
        and snapshot.loan_end_time is not None
        and now > snapshot.loan_end_time
    )


# ============================================================================
# LOAN CREATION
# ============================================================================

def _require_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameters(f"{name} must be an integer, got {type(value).__name__}")


def _require_name(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameters(f"{name} cannot be empty")


def create_loan_unit(
    symbol: str,
    lender: str,
    borrower: str,
    loan_amount: int,
    collateral_amount: int,
    interest_rate: int,
    loan_duration: int,
    loan_asset: str,
    collateral_asset: str,
    currency: str = DEFAULT_CURRENCY,
    admin_wallet: Optional[str] = None,
    sweep_policy: str = SWEEP_POLICY_ADMIN,
) -> Unit:
    """
    Create the ledger unit that stores a loan's terms and lifecycle state.

    Args:
        symbol: Unique loan identifier (e.g. "P2PLOAN")
        lender: Wallet that funds the loan and may liquidate it
        borrower: Wallet that posts collateral and repays
        loan_amount: Principal in base units, 1..MAX_UINT256
        collateral_amount: Required collateral in base units, 1..MAX_UINT256
        interest_rate: Annual rate in basis points, 0..10000
        loan_duration: Term in seconds (must be positive)
        loan_asset: Opaque identifier of the loan asset
        collateral_asset: Opaque identifier of the collateral asset
        currency: Ledger unit that carries all value transfers
        admin_wallet: Wallet allowed to sweep residual value (default: lender)
        sweep_policy: SWEEP_POLICY_ADMIN or SWEEP_POLICY_OPEN

    Returns:
        Unit of type P2P_LOAN in state CREATED. Loan units hold no balances.

    Raises:
        InvalidParameters: If any parameter is out of range, wallets are
                           empty or identical, or amounts are not integers.
    """
    _require_name("symbol", symbol)
    _require_name("lender", lender)
    _require_name("borrower", borrower)
    if lender == borrower:
        raise InvalidParameters("lender and borrower must be different")

    _require_int("loan_amount", loan_amount)
    if loan_amount <= 0:
        raise InvalidParameters(f"loan_amount must be positive, got {loan_amount}")
    if loan_amount > MAX_UINT256:
        raise InvalidParameters(f"loan_amount exceeds uint256, got {loan_amount}")
    _require_int("collateral_amount", collateral_amount)
    if collateral_amount <= 0:
        raise InvalidParameters(f"collateral_amount must be positive, got {collateral_amount}")
    if collateral_amount > MAX_UINT256:
        raise InvalidParameters(f"collateral_amount exceeds uint256, got {collateral_amount}")
    _require_int("interest_rate", interest_rate)
    if not 0 <= interest_rate <= MAX_INTEREST_RATE:
        raise InvalidParameters(
            f"interest_rate must be in [0, {MAX_INTEREST_RATE}], got {interest_rate}"
        )
    _require_int("loan_duration", loan_duration)
    if loan_duration <= 0:
        raise InvalidParameters(f"loan_duration must be positive, got {loan_duration}")

    _require_name("loan_asset", loan_asset)
    _require_name("collateral_asset", collateral_asset)
    _require_name("currency", currency)

    if admin_wallet is None:
        admin_wallet = lender
    _require_name("admin_wallet", admin_wallet)
    if sweep_policy not in SWEEP_POLICIES:
        raise InvalidParameters(
            f"sweep_policy must be one of {sorted(SWEEP_POLICIES)}, got {sweep_policy!r}"
        )

    terms = LoanTerms(
        lender=lender,
        borrower=borrower,
        loan_amount=loan_amount,
        collateral_amount=collateral_amount,
        interest_rate=interest_rate,
        loan_duration=loan_duration,
        loan_asset=loan_asset,
        collateral_asset=collateral_asset,
        currency=currency,
        custody_wallet=custody_wallet_for(symbol),
        admin_wallet=admin_wallet,
        sweep_policy=sweep_policy,
    )
    return Unit(
        symbol=symbol,
        name=f"P2P Loan {format_units(loan_amount)} {currency} @ {format_rate(interest_rate)}",
        unit_type=UNIT_TYPE_P2P_LOAN,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        decimal_places=0,
        _frozen_state=_freeze_state(to_state_dict(terms, LoanSnapshot(LoanState.CREATED))),
    )


# ============================================================================
# PRECONDITIONS
# ============================================================================

def _state_reason(current: LoanState, required: LoanState) -> str:
    """Reason code for being in `current` when `required` was needed."""
    if current == LoanState.REPAID:
        return REASON_ALREADY_REPAID
    if current == LoanState.LIQUIDATED:
        return REASON_ALREADY_LIQUIDATED
    if _STATE_ORDER[current] < _STATE_ORDER[required]:
        if required == LoanState.COLLATERAL_PROVIDED:
            return REASON_COLLATERAL_NOT_PROVIDED
        return REASON_NOT_DISBURSED
    if required == LoanState.CREATED:
        return REASON_COLLATERAL_ALREADY_PROVIDED
    return REASON_ALREADY_DISBURSED


def _require_state(action: str, snapshot: LoanSnapshot, required: LoanState) -> None:
    if snapshot.state != required:
        raise InvalidState(action, _state_reason(snapshot.state, required), snapshot.state.value)


def _require_caller(action: str, caller: str, expected: str) -> None:
    if caller != expected:
        raise Unauthorized(action, caller, expected)


def _require_value(action: str, transferred_value: int, required: int) -> None:
    if isinstance(transferred_value, bool) or not isinstance(transferred_value, int):
        raise TypeError(
            f"transferred_value must be int, got {type(transferred_value).__name__}"
        )
    if transferred_value < required:
        raise InsufficientValue(action, required, transferred_value)


def _build(
    view: LedgerView,
    symbol: str,
    action: str,
    caller: str,
    old_state: Dict[str, Any],
    terms: LoanTerms,
    new_snapshot: LoanSnapshot,
    moves: List[Move],
    now: datetime,
) -> PendingTransaction:
    new_state = to_state_dict(terms, new_snapshot)
    return build_transaction(
        view,
        moves,
        [UnitStateChange(unit=symbol, old_state=old_state, new_state=new_state)],
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, symbol, action),
        timestamp=now,
    )


def _value(amount: int) -> Decimal:
    return Decimal(amount)


# ============================================================================
# PROVIDE COLLATERAL
# ============================================================================

def compute_provide_collateral(
    view: LedgerView,
    symbol: str,
    caller: str,
    transferred_value: int,
) -> PendingTransaction:
    """
    Borrower deposits collateral into the loan's custody wallet.

    The whole transferred value moves to custody; anything above
    collateral_amount stays there as residual.

    Raises:
        InvalidState: If the loan is not CREATED
        Unauthorized: If caller is not the borrower
        InsufficientValue: If transferred_value < collateral_amount
    """
    old_state = view.get_unit_state(symbol)
    terms, snapshot = _from_state_dict(old_state)
    _require_state(ACTION_PROVIDE_COLLATERAL, snapshot, LoanState.CREATED)
    _require_caller(ACTION_PROVIDE_COLLATERAL, caller, terms.borrower)
    _require_value(ACTION_PROVIDE_COLLATERAL, transferred_value, terms.collateral_amount)
    now = view.current_time

    moves = [Move(
        quantity=_value(transferred_value),
        unit_symbol=terms.currency,
        source=caller,
        dest=terms.custody_wallet,
        contract_id=f'collateral_{symbol}',
    )]
    new_snapshot = replace(snapshot, state=LoanState.COLLATERAL_PROVIDED)
    return _build(view, symbol, ACTION_PROVIDE_COLLATERAL, caller,
                  old_state, terms, new_snapshot, moves, now)


# ============================================================================
# DISBURSEMENT
# ============================================================================

def compute_disbursement(
    view: LedgerView,
    symbol: str,
    caller: str,
    transferred_value: int,
) -> PendingTransaction:
    """
    Lender funds the loan; principal goes to the borrower and the clock starts.

    Moves, in order:
        lender -> custody     transferred_value
        custody -> borrower   loan_amount

    Raises:
        InvalidState: COLLATERAL_NOT_PROVIDED from CREATED,
                      ALREADY_DISBURSED (or a terminal reason) afterwards
        Unauthorized: If caller is not the lender
        InsufficientValue: If transferred_value < loan_amount
    """
    old_state = view.get_unit_state(symbol)
    terms, snapshot = _from_state_dict(old_state)
    _require_state(ACTION_DISBURSE, snapshot, LoanState.COLLATERAL_PROVIDED)
    _require_caller(ACTION_DISBURSE, caller, terms.lender)
    _require_value(ACTION_DISBURSE, transferred_value, terms.loan_amount)
    now = view.current_time

    moves = [
        Move(
            quantity=_value(transferred_value),
            unit_symbol=terms.currency,
            source=caller,
            dest=terms.custody_wallet,
            contract_id=f'funding_{symbol}',
        ),
        Move(
            quantity=_value(terms.loan_amount),
            unit_symbol=terms.currency,
            source=terms.custody_wallet,
            dest=terms.borrower,
            contract_id=f'disbursement_{symbol}',
        ),
    ]
    new_snapshot = replace(
        snapshot,
        state=LoanState.DISBURSED,
        loan_start_time=now,
        loan_end_time=now + terms.duration,
    )
    return _build(view, symbol, ACTION_DISBURSE, caller,
                  old_state, terms, new_snapshot, moves, now)


# ============================================================================
# AMOUNT DUE
# ============================================================================

def compute_amount_due(view: LedgerView, symbol: str) -> int:
    """Amount due at the view's current time. Read-only, callable by anyone."""
    terms, snapshot = load_loan(view, symbol)
    return calculate_amount_due(terms, snapshot, view.current_time)


# ============================================================================
# REPAYMENT
# ============================================================================

def compute_repayment(
    view: LedgerView,
    symbol: str,
    caller: str,
    transferred_value: int,
) -> PendingTransaction:
    """
    Borrower repays in full and gets the collateral back.

    The amount due is recomputed from the clock reading taken here, so a
    quote obtained earlier may be stale; callers should requery first.

    Moves, in order:
        borrower -> custody   transferred_value
        custody -> lender     amount_due
        custody -> borrower   collateral_amount

    Raises:
        InvalidState: If the loan is not DISBURSED
        Unauthorized: If caller is not the borrower
        InsufficientValue: If transferred_value < amount due now
    """
    old_state = view.get_unit_state(symbol)
    terms, snapshot = _from_state_dict(old_state)
    _require_state(ACTION_REPAY, snapshot, LoanState.DISBURSED)
    _require_caller(ACTION_REPAY, caller, terms.borrower)
    now = view.current_time
    amount_due = calculate_amount_due(terms, snapshot, now)
    _require_value(ACTION_REPAY, transferred_value, amount_due)

    moves = [
        Move(
            quantity=_value(transferred_value),
            unit_symbol=terms.currency,
            source=caller,
            dest=terms.custody_wallet,
            contract_id=f'repayment_in_{symbol}',
        ),
        Move(
            quantity=_value(amount_due),
            unit_symbol=terms.currency,
            source=terms.custody_wallet,
            dest=terms.lender,
            contract_id=f'repayment_{symbol}',
        ),
        Move(
            quantity=_value(terms.collateral_amount),
            unit_symbol=terms.currency,
            source=terms.custody_wallet,
            dest=terms.borrower,
            contract_id=f'collateral_release_{symbol}',
        ),
    ]
    new_snapshot = replace(
        snapshot,
        state=LoanState.REPAID,
        amount_repaid=amount_due,
        closed_time=now,
    )
    return _build(view, symbol, ACTION_REPAY, caller,
                  old_state, terms, new_snapshot, moves, now)


# ============================================================================
# LIQUIDATION
# ============================================================================

def compute_liquidation(
    view: LedgerView,
    symbol: str,
    caller: str,
) -> PendingTransaction:
    """
    Lender seizes the collateral of an overdue, unpaid loan.

    Only strictly after loan_end_time: at the exact end instant the
    borrower can still repay and the lender cannot liquidate.

    Raises:
        InvalidState: If the loan is not DISBURSED
        Unauthorized: If caller is not the lender
        NotYetDue: If now <= loan_end_time
    """
    old_state = view.get_unit_state(symbol)
    terms, snapshot = _from_state_dict(old_state)
    _require_state(ACTION_LIQUIDATE, snapshot, LoanState.DISBURSED)
    _require_caller(ACTION_LIQUIDATE, caller, terms.lender)
    now = view.current_time
    if not is_liquidatable(snapshot, now):
        raise NotYetDue(snapshot.loan_end_time, now)

    moves = [Move(
        quantity=_value(terms.collateral_amount),
        unit_symbol=terms.currency,
        source=terms.custody_wallet,
        dest=terms.lender,
        contract_id=f'liquidation_{symbol}',
    )]
    new_snapshot = replace(snapshot, state=LoanState.LIQUIDATED, closed_time=now)
    return _build(view, symbol, ACTION_LIQUIDATE, caller,
                  old_state, terms, new_snapshot, moves, now)


# ============================================================================
# RESIDUAL SWEEP
# ============================================================================

def compute_residual_sweep(
    view: LedgerView,
    symbol: str,
    caller: str,
) -> PendingTransaction:
    """
    Send value left in the custody wallet to the caller.

    Residual value comes from overpayment: anything transferred above the
    collateral, principal or amount due stays in custody.

    Under SWEEP_POLICY_ADMIN only the admin wallet may sweep and the
    collateral still escrowed for the current state is left in place.
    Under SWEEP_POLICY_OPEN any caller takes the whole custody balance,
    escrow included, which can leave a later repayment or liquidation
    unable to complete.

    Returns:
        PendingTransaction moving the residual to the caller, or an empty
        one when there is nothing to sweep.

    Raises:
        Unauthorized: If the policy restricts the caller, or the caller is
                      the custody wallet itself
    """
    old_state = view.get_unit_state(symbol)
    terms, snapshot = _from_state_dict(old_state)
    if caller == terms.custody_wallet:
        raise Unauthorized(ACTION_SWEEP_RESIDUAL, caller)
    if terms.sweep_policy == SWEEP_POLICY_ADMIN:
        _require_caller(ACTION_SWEEP_RESIDUAL, caller, terms.admin_wallet)
        reserved = calculate_escrowed_collateral(terms, snapshot)
    else:
        reserved = 0
    now = view.current_time

    balance = int(view.get_balance(terms.custody_wallet, terms.currency))
    residual = balance - reserved
    if residual <= 0:
        return build_transaction(view, [], timestamp=now)

    moves = [Move(
        quantity=_value(residual),
        unit_symbol=terms.currency,
        source=terms.custody_wallet,
        dest=caller,
        contract_id=f'sweep_{symbol}',
    )]
    new_snapshot = replace(snapshot, total_swept=snapshot.total_swept + residual)
    return _build(view, symbol, ACTION_SWEEP_RESIDUAL, caller,
                  old_state, terms, new_snapshot, moves, now)


# ============================================================================
# TRANSACTION INTERFACE
# ============================================================================

def transact(
    view: LedgerView,
    symbol: str,
    action: str,
    caller: str,
    **kwargs
) -> PendingTransaction:
    """
    Build the transaction for a loan action.

    Unified entry point routing to the compute_* builders.

    Args:
        view: Read-only ledger access
        symbol: Loan symbol
        action: One of:
            - PROVIDE_COLLATERAL (requires 'transferred_value')
            - DISBURSE (requires 'transferred_value')
            - REPAY (requires 'transferred_value')
            - LIQUIDATE
            - SWEEP_RESIDUAL
        caller: Wallet performing the action
        **kwargs: Action-specific parameters

    Example:
        pending = transact(view, "P2PLOAN", "REPAY", "borrower", transferred_value=105)
    """
    if action in (ACTION_PROVIDE_COLLATERAL, ACTION_DISBURSE, ACTION_REPAY):
        transferred_value = kwargs.get('transferred_value')
        if transferred_value is None:
            raise ValueError(f"Missing 'transferred_value' parameter for {action} on {symbol}")
        if action == ACTION_PROVIDE_COLLATERAL:
            return compute_provide_collateral(view, symbol, caller, transferred_value)
        if action == ACTION_DISBURSE:
            return compute_disbursement(view, symbol, caller, transferred_value)
        return compute_repayment(view, symbol, caller, transferred_value)

    elif action == ACTION_LIQUIDATE:
        return compute_liquidation(view, symbol, caller)

    elif action == ACTION_SWEEP_RESIDUAL:
        return compute_residual_sweep(view, symbol, caller)

    else:
        raise ValueError(f"Unknown action '{action}' for loan {symbol}")


# ============================================================================
# EVENT DERIVATION
# ============================================================================

def derive_events(tx: Transaction) -> List[LoanEvent]:
    """
    Lifecycle events implied by one committed transaction.

    Loan creation yields LoanRequested; every status change yields the
    events of that transition, and an increase of total_swept yields
    ResidualSwept. Transactions that touch no loan yield nothing.
    """
    events: List[LoanEvent] = []
    at = tx.execution_time

    for unit in tx.units_to_create:
        if unit.unit_type != UNIT_TYPE_P2P_LOAN:
            continue
        terms, _ = _from_state_dict(unit.state)
        events.append(LoanRequested(
            loan=unit.symbol,
            timestamp=at,
            borrower=terms.borrower,
            loan_amount=terms.loan_amount,
            collateral_amount=terms.collateral_amount,
            duration=terms.loan_duration,
            interest_rate=terms.interest_rate,
        ))

    for sc in tx.state_changes:
        if not isinstance(sc.new_state, dict) or sc.new_state.get('unit_type') != UNIT_TYPE_P2P_LOAN:
            continue
        _, before = _from_state_dict(sc.old_state)
        terms, after = _from_state_dict(sc.new_state)
        symbol = sc.unit

        if before.state != after.state:
            if after.state == LoanState.COLLATERAL_PROVIDED:
                events.append(CollateralProvided(
                    symbol, at, terms.borrower, terms.collateral_amount,
                ))
            elif after.state == LoanState.DISBURSED:
                events.append(LoanDisbursed(
                    symbol, at, terms.borrower, terms.lender, terms.loan_amount,
                    after.loan_start_time, after.loan_end_time,
                ))
            elif after.state == LoanState.REPAID:
                events.append(RepaymentMade(
                    symbol, at, terms.borrower, after.amount_repaid, 0,
                ))
                events.append(CollateralReleased(
                    symbol, at, terms.borrower, terms.collateral_amount,
                ))
            elif after.state == LoanState.LIQUIDATED:
                events.append(CollateralLiquidated(
                    symbol, at, terms.lender, terms.collateral_amount,
                ))

        if after.total_swept > before.total_swept:
            events.append(ResidualSwept(
                symbol, at, tx.origin.source_id, after.total_swept - before.total_swept,
            ))

    return events


def loan_history(ledger: Ledger, symbol: str) -> List[LoanEvent]:
    """Every event a loan has emitted, rebuilt from the transaction log."""
    return [
        event
        for tx in ledger.transaction_log
        for event in derive_events(tx)
        if event.loan == symbol
    ]


# ============================================================================
# LOAN HANDLE
# ============================================================================

class Loan:
    """
    Handle on one loan agreement held in a ledger.

    Every mutating method builds one PendingTransaction, executes it, and
    returns the events it emitted. Preconditions are checked before anything
    reaches the ledger; if the ledger rejects the transaction (for example
    the caller cannot cover the transferred value) TransferFailed is raised
    and neither the loan state nor any balance has changed.

    Example:
        loan = create_loan(ledger, "lender", "borrower", 100, 1, 500, 30 * 86400,
                           "DAI", "WETH")
        loan.provide_collateral("borrower", 1)
        loan.disburse("lender", 100)
        ledger.advance_time(ledger.current_time + timedelta(days=30))
        loan.repay("borrower", loan.calculate_amount_due())
    """

    def __init__(
        self,
        ledger: Ledger,
        symbol: str,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        unit = ledger.get_unit(symbol)
        if unit.unit_type != UNIT_TYPE_P2P_LOAN:
            raise ValueError(f"{symbol} is not a {UNIT_TYPE_P2P_LOAN} unit")
        self.ledger = ledger
        self.symbol = symbol
        self.dispatcher = dispatcher or EventDispatcher()

    def __repr__(self) -> str:
        return f"Loan({self.symbol}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Read-only
    # ------------------------------------------------------------------

    @property
    def terms(self) -> LoanTerms:
        return load_loan(self.ledger, self.symbol)[0]

    @property
    def snapshot(self) -> LoanSnapshot:
        return load_loan(self.ledger, self.symbol)[1]

    @property
    def state(self) -> LoanState:
        return self.snapshot.state

    @property
    def loan_start_time(self) -> Optional[datetime]:
        return self.snapshot.loan_start_time

    @property
    def loan_end_time(self) -> Optional[datetime]:
        return self.snapshot.loan_end_time

    @property
    def events(self) -> Tuple[LoanEvent, ...]:
        return tuple(loan_history(self.ledger, self.symbol))

    def calculate_amount_due(self) -> int:
        return compute_amount_due(self.ledger, self.symbol)

    def is_overdue(self) -> bool:
        return is_liquidatable(self.snapshot, self.ledger.current_time)

    def custody_balance(self) -> int:
        terms = self.terms
        return int(self.ledger.get_balance(terms.custody_wallet, terms.currency))

    def summary(self) -> Dict[str, str]:
        """Human-readable terms, as printed after deployment."""
        terms, snapshot = load_loan(self.ledger, self.symbol)
        return {
            'loan': self.symbol,
            'lender': terms.lender,
            'borrower': terms.borrower,
            'loan_amount': format_units(terms.loan_amount),
            'collateral_amount': format_units(terms.collateral_amount),
            'interest_rate': format_rate(terms.interest_rate),
            'loan_duration': str(terms.loan_duration),
            'loan_asset': terms.loan_asset,
            'collateral_asset': terms.collateral_asset,
            'state': snapshot.state.value,
        }

    def subscribe(
        self,
        observer: EventObserver,
        event_type: Optional[Type[LoanEvent]] = None,
    ) -> None:
        self.dispatcher.subscribe(observer, event_type)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def provide_collateral(self, caller: str, transferred_value: int) -> Tuple[LoanEvent, ...]:
        return self._submit(
            ACTION_PROVIDE_COLLATERAL,
            compute_provide_collateral(self.ledger, self.symbol, caller, transferred_value),
        )

    def disburse(self, caller: str, transferred_value: int) -> Tuple[LoanEvent, ...]:
        return self._submit(
            ACTION_DISBURSE,
            compute_disbursement(self.ledger, self.symbol, caller, transferred_value),
        )

    fund_loan = disburse

    def repay(self, caller: str, transferred_value: int) -> Tuple[LoanEvent, ...]:
        return self._submit(
            ACTION_REPAY,
            compute_repayment(self.ledger, self.symbol, caller, transferred_value),
        )

    def liquidate(self, caller: str) -> Tuple[LoanEvent, ...]:
        return self._submit(
            ACTION_LIQUIDATE,
            compute_liquidation(self.ledger, self.symbol, caller),
        )

    def sweep_residual(self, caller: str) -> int:
        """Sweep residual custody value to the caller; returns the amount swept."""
        events = self._submit(
            ACTION_SWEEP_RESIDUAL,
            compute_residual_sweep(self.ledger, self.symbol, caller),
        )
        return sum(e.amount for e in events if isinstance(e, ResidualSwept))

    def perform(self, action: str, caller: str, **kwargs) -> Tuple[LoanEvent, ...]:
        """Run any action by name, e.g. perform("REPAY", "borrower", transferred_value=105)."""
        return self._submit(action, transact(self.ledger, self.symbol, action, caller, **kwargs))

    def _submit(self, action: str, pending: PendingTransaction) -> Tuple[LoanEvent, ...]:
        if pending.is_empty():
            return ()
        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            raise TransferFailed(action, result)
        events = derive_events(self.ledger.transaction_log[-1])
        self.dispatcher.publish(events)
        return tuple(events)


def create_loan(
    ledger: Ledger,
    lender: str,
    borrower: str,
    loan_amount: int,
    collateral_amount: int,
    interest_rate: int,
    loan_duration: int,
    loan_asset: str,
    collateral_asset: str,
    *,
    symbol: str = DEFAULT_LOAN_SYMBOL,
    currency: str = DEFAULT_CURRENCY,
    admin: Optional[str] = None,
    sweep_policy: str = SWEEP_POLICY_ADMIN,
    observers: Optional[List[EventObserver]] = None,
) -> Loan:
    """
    Create a loan in a ledger and return its handle.

    Registers the loan's custody wallet, then registers the loan unit through
    a ledger transaction so the creation is in the transaction log and emits
    LoanRequested.

    Args:
        ledger: Ledger holding the parties' balances
        lender, borrower, loan_amount, collateral_amount, interest_rate,
        loan_duration, loan_asset, collateral_asset: see create_loan_unit()
        symbol: Loan unit symbol, unique within the ledger
        currency: Registered native unit carrying value
        admin: Wallet allowed to sweep residual value (default: lender)
        sweep_policy: SWEEP_POLICY_ADMIN (default) or SWEEP_POLICY_OPEN
        observers: Observers subscribed before LoanRequested is published

    Raises:
        InvalidParameters: If terms are invalid, the symbol or its custody
                           wallet already exists, the currency is not a
                           registered native unit, or a party wallet is not
                           registered.
    """
    unit = create_loan_unit(
        symbol, lender, borrower, loan_amount, collateral_amount,
        interest_rate, loan_duration, loan_asset, collateral_asset,
        currency=currency, admin_wallet=admin, sweep_policy=sweep_policy,
    )
    if symbol in ledger.units:
        raise InvalidParameters(f"Unit {symbol} already registered")
    try:
        currency_unit = ledger.get_unit(currency)
    except UnitNotRegistered:
        raise InvalidParameters(f"currency {currency} is not registered")
    if currency_unit.unit_type != UNIT_TYPE_NATIVE:
        raise InvalidParameters(f"currency {currency} is not a {UNIT_TYPE_NATIVE} unit")
    for role, wallet in (("lender", lender), ("borrower", borrower)):
        if not ledger.is_registered(wallet):
            raise InvalidParameters(f"{role} wallet {wallet} is not registered")
    custody = custody_wallet_for(symbol)
    if ledger.is_registered(custody):
        raise InvalidParameters(f"custody wallet {custody} already registered")

    ledger.register_wallet(custody)
    pending = build_transaction(
        ledger,
        [],
        origin=TransactionOrigin(OriginType.SYSTEM, lender, symbol, "CREATE"),
        units_to_create=(unit,),
    )
    result = ledger.execute(pending)
    if result != ExecuteResult.APPLIED:
        raise TransferFailed("CREATE", result)

    loan = Loan(ledger, symbol)
    for observer in observers or ():
        loan.subscribe(observer)
    loan.dispatcher.publish(derive_events(ledger.transaction_log[-1]))
    return loan

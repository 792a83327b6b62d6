"""
events.py - Loan Lifecycle Events

Events are just data, observers are just functions:
- Each event is an immutable record of one committed loan state transition
- Events are derived from the ledger's transaction log after commit, so the
  log is the persisted history and events can always be rebuilt from it
- EventDispatcher pushes freshly committed events to subscribed observers

Event fields follow the loan's public event interface:
    LoanRequested{borrower, loan_amount, collateral_amount, duration, interest_rate}
    CollateralProvided{borrower, collateral_amount}
    LoanDisbursed{borrower, lender, amount, start_time, end_time}
    RepaymentMade{borrower, amount_paid, remaining_due}
    CollateralReleased{borrower, collateral_amount}
    CollateralLiquidated{lender, collateral_amount}
    ResidualSwept{caller, amount}
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type


# ============================================================================
# EVENT DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanEvent:
    """
    Base class for loan lifecycle events.

    Attributes:
        loan: Symbol of the loan unit that emitted the event
        timestamp: Ledger time at which the transition was committed
    """
    loan: str
    timestamp: datetime

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, slots=True)
class LoanRequested(LoanEvent):
    borrower: str
    loan_amount: int
    collateral_amount: int
    duration: int
    interest_rate: int


@dataclass(frozen=True, slots=True)
class CollateralProvided(LoanEvent):
    borrower: str
    collateral_amount: int


@dataclass(frozen=True, slots=True)
class LoanDisbursed(LoanEvent):
    borrower: str
    lender: str
    amount: int
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True, slots=True)
class RepaymentMade(LoanEvent):
    borrower: str
    amount_paid: int
    remaining_due: int = 0


@dataclass(frozen=True, slots=True)
class CollateralReleased(LoanEvent):
    borrower: str
    collateral_amount: int


@dataclass(frozen=True, slots=True)
class CollateralLiquidated(LoanEvent):
    lender: str
    collateral_amount: int


@dataclass(frozen=True, slots=True)
class ResidualSwept(LoanEvent):
    caller: str
    amount: int


# ============================================================================
# DISPATCH
# ============================================================================

# Observer type: called once per committed event
EventObserver = Callable[[LoanEvent], None]


class EventDispatcher:
    """
    Fan-out of committed loan events to observers.

    Observers subscribe to every event or to one event class. They run
    after the ledger has applied the transaction, so an observer can never
    affect the outcome of the operation. An observer that raises is reported
    on stdout and recorded in `failures`; the remaining observers still run
    and the operation still returns its events.
    """

    def __init__(self):
        self._observers: List[Tuple[Optional[Type[LoanEvent]], EventObserver]] = []
        self.failures: List[Tuple[LoanEvent, EventObserver, Exception]] = []

    def subscribe(
        self,
        observer: EventObserver,
        event_type: Optional[Type[LoanEvent]] = None,
    ) -> None:
        """Register an observer, optionally only for one event class."""
        self._observers.append((event_type, observer))

    def unsubscribe(self, observer: EventObserver) -> None:
        """Remove every registration of an observer."""
        self._observers = [(t, o) for t, o in self._observers if o is not observer]

    def publish(self, events: Iterable[LoanEvent]) -> None:
        """Deliver events in order to every matching observer."""
        for event in events:
            for event_type, observer in list(self._observers):
                if event_type is None or isinstance(event, event_type):
                    try:
                        observer(event)
                    except Exception as e:
                        self.failures.append((event, observer, e))
                        print(f"⚠️  Observer failed on {event.name}: {e!r}")


def count_by_name(events: Iterable[LoanEvent]) -> Dict[str, int]:
    """Tally events by class name, e.g. {"LoanRequested": 1, "LoanDisbursed": 1}."""
    counts: Dict[str, int] = {}
    for event in events:
        counts[event.name] = counts.get(event.name, 0) + 1
    return counts

"""
Lifecycle state machines for rentals and sales.

Both lifecycles share the same roles (initial, payment processing, payment
success, review, approved, stock state, terminal states); the engine works in
terms of roles so one orchestration path drives both kinds.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping

from shared.errors import InvalidTransition


class TransactionKind(str, Enum):
    RENTAL = "RENTAL"
    SALE = "SALE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RentalStatus(str, Enum):
    PENDING = "PENDING"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    ASSIGNED = "ASSIGNED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    ACTIVE = "ACTIVE"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    INSPECTION_PENDING = "INSPECTION_PENDING"
    REFUND_PROCESSING = "REFUND_PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SaleStatus(str, Enum):
    CREATED = "CREATED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


CANCELLED = "CANCELLED"


class CancellationReason(str, Enum):
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    RISK_REJECTED = "RISK_REJECTED"
    REJECTED_BY_REVIEW = "REJECTED_BY_REVIEW"
    CANCELLED_BY_SUBJECT = "CANCELLED_BY_SUBJECT"
    CANCELLED_BY_ADMIN = "CANCELLED_BY_ADMIN"


@dataclass(frozen=True)
class Lifecycle:
    """Transition table plus the role each state plays."""

    kind: TransactionKind
    initial: str
    payment_processing: str
    payment_success: str
    under_review: str
    approved: str
    stock_state: str
    terminal: FrozenSet[str]
    restoring: FrozenSet[str]
    transitions: Mapping[str, FrozenSet[str]]

    @property
    def engine_controlled(self) -> FrozenSet[str]:
        """States whose exits only the payment, risk and review flows may drive."""
        return frozenset(
            {self.initial, self.payment_processing, self.payment_success, self.under_review}
        )

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal

    def can_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, frozenset())

    def check(self, from_status: str, to_status: str) -> None:
        if self.is_terminal(from_status):
            raise InvalidTransition(
                f"{self.kind.value} transaction is {from_status}, a terminal state",
                from_status=from_status,
                to_status=to_status,
            )
        if not self.can_transition(from_status, to_status):
            raise InvalidTransition(
                f"Cannot move {self.kind.value} transaction from {from_status} to {to_status}",
                from_status=from_status,
                to_status=to_status,
            )

    def next_states(self, status: str) -> FrozenSet[str]:
        return self.transitions.get(status, frozenset())


def _with_cancellation(
    steps: Mapping[str, Iterable[str]], terminal: FrozenSet[str]
) -> Dict[str, FrozenSet[str]]:
    """Add CANCELLED as an exit from every non-terminal state."""
    table: Dict[str, FrozenSet[str]] = {}
    for state, targets in steps.items():
        if state in terminal:
            continue
        table[state] = frozenset(targets) | {CANCELLED}
    return table


_RENTAL_TERMINAL = frozenset({RentalStatus.COMPLETED.value, CANCELLED})
_SALE_TERMINAL = frozenset({SaleStatus.DELIVERED.value, CANCELLED})

RENTAL_LIFECYCLE = Lifecycle(
    kind=TransactionKind.RENTAL,
    initial=RentalStatus.PENDING.value,
    payment_processing=RentalStatus.PAYMENT_PROCESSING.value,
    payment_success=RentalStatus.PAYMENT_SUCCESS.value,
    under_review=RentalStatus.UNDER_REVIEW.value,
    approved=RentalStatus.APPROVED.value,
    stock_state=RentalStatus.ACTIVE.value,
    terminal=_RENTAL_TERMINAL,
    restoring=_RENTAL_TERMINAL,
    transitions=_with_cancellation(
        {
            "PENDING": ["PAYMENT_PROCESSING"],
            "PAYMENT_PROCESSING": ["PAYMENT_SUCCESS"],
            "PAYMENT_SUCCESS": ["APPROVED", "UNDER_REVIEW"],
            "UNDER_REVIEW": ["APPROVED"],
            "APPROVED": ["ASSIGNED"],
            "ASSIGNED": ["OUT_FOR_DELIVERY"],
            "OUT_FOR_DELIVERY": ["ACTIVE"],
            "ACTIVE": ["RETURN_REQUESTED", "COMPLETED"],
            "RETURN_REQUESTED": ["INSPECTION_PENDING"],
            "INSPECTION_PENDING": ["REFUND_PROCESSING"],
            "REFUND_PROCESSING": ["COMPLETED"],
        },
        _RENTAL_TERMINAL,
    ),
)

# A sold unit leaves the shelf at PROCESSING and never comes back on delivery
SALE_LIFECYCLE = Lifecycle(
    kind=TransactionKind.SALE,
    initial=SaleStatus.CREATED.value,
    payment_processing=SaleStatus.PAYMENT_PROCESSING.value,
    payment_success=SaleStatus.PAYMENT_SUCCESS.value,
    under_review=SaleStatus.UNDER_REVIEW.value,
    approved=SaleStatus.CONFIRMED.value,
    stock_state=SaleStatus.PROCESSING.value,
    terminal=_SALE_TERMINAL,
    restoring=frozenset({CANCELLED}),
    transitions=_with_cancellation(
        {
            "CREATED": ["PAYMENT_PROCESSING"],
            "PAYMENT_PROCESSING": ["PAYMENT_SUCCESS"],
            "PAYMENT_SUCCESS": ["CONFIRMED", "UNDER_REVIEW"],
            "UNDER_REVIEW": ["CONFIRMED"],
            "CONFIRMED": ["PROCESSING"],
            "PROCESSING": ["SHIPPED"],
            "SHIPPED": ["DELIVERED"],
        },
        _SALE_TERMINAL,
    ),
)

LIFECYCLES: Dict[TransactionKind, Lifecycle] = {
    TransactionKind.RENTAL: RENTAL_LIFECYCLE,
    TransactionKind.SALE: SALE_LIFECYCLE,
}


def lifecycle_for(kind) -> Lifecycle:
    return LIFECYCLES[TransactionKind(kind)]

"""Transaction status vocabulary and the transition table."""
from enum import Enum
from typing import Dict, FrozenSet


class TransactionStatus(str, Enum):
    """Normalized transaction status shared by every provider."""

    INITIATED = "initiated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    DISPUTED = "disputed"


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
        TransactionStatus.CANCELED,
        TransactionStatus.DISPUTED,
    }
)

# initiated -> completed is the collapsed initiated -> processing -> completed
# path, for providers that report success straight away.
ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.INITIATED: frozenset(
        {
            TransactionStatus.PROCESSING,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELED,
        }
    ),
    TransactionStatus.PROCESSING: frozenset(
        {
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELED,
        }
    ),
    TransactionStatus.COMPLETED: frozenset(
        {
            TransactionStatus.PARTIALLY_REFUNDED,
            TransactionStatus.REFUNDED,
            TransactionStatus.DISPUTED,
            TransactionStatus.CANCELED,
        }
    ),
    TransactionStatus.PARTIALLY_REFUNDED: frozenset(
        {
            TransactionStatus.REFUNDED,
            TransactionStatus.CANCELED,
        }
    ),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
    TransactionStatus.CANCELED: frozenset(),
    TransactionStatus.DISPUTED: frozenset(),
}

REFUNDABLE_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED}
)

RETRYABLE_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.INITIATED, TransactionStatus.PROCESSING}
)


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """
    Check whether ``current`` may move to ``target``.

    Staying in the same status is always accepted; it carries a metadata
    update but is not a transition.
    """
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def is_terminal(status: TransactionStatus) -> bool:
    """Terminal statuses accept no further transitions."""
    return status in TERMINAL_STATUSES

"""
Bridge request lifecycle.

    Pending(0) -> Processing(1) -> Completed(2) | Failed(3)

Pending may also move straight to a terminal status. Completed and Failed are
final.
"""
import logging
from dataclasses import replace
from enum import IntEnum

from yield_aggregator.errors import InvalidTransition

logger = logging.getLogger(__name__)


class BridgeStatus(IntEnum):
    PENDING = 0
    PROCESSING = 1
    COMPLETED = 2
    FAILED = 3

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BridgeStatus.COMPLETED, BridgeStatus.FAILED})

TRANSITIONS = {
    BridgeStatus.PENDING: frozenset({
        BridgeStatus.PROCESSING, BridgeStatus.COMPLETED, BridgeStatus.FAILED,
    }),
    BridgeStatus.PROCESSING: frozenset({
        BridgeStatus.COMPLETED, BridgeStatus.FAILED,
    }),
    BridgeStatus.COMPLETED: frozenset(),
    BridgeStatus.FAILED: frozenset(),
}


def check_transition(current: BridgeStatus, new: BridgeStatus):
    """Raise InvalidTransition unless current -> new is in the table."""
    current = BridgeStatus(current)
    new = BridgeStatus(new)
    if new not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"Bridge request cannot move from {current.name} to {new.name}"
        )


def open_request(user, target_chain: int, amount: int, target_address: bytes,
                 now: int, bump: int = 0):
    """Create a new request; the initial status is always PENDING."""
    from yield_aggregator.state import BridgeRequest

    return BridgeRequest(
        user=user,
        target_chain=target_chain,
        amount=amount,
        target_address=target_address,
        status=BridgeStatus.PENDING,
        created_at=now,
        completed_at=0,
        bump=bump,
    )


def mark_processing(request):
    """Record the relayer-reported PROCESSING status."""
    check_transition(request.status, BridgeStatus.PROCESSING)
    return replace(request, status=BridgeStatus.PROCESSING)


def finish(request, success: bool, now: int):
    """Move a request to COMPLETED or FAILED and stamp completed_at."""
    new_status = BridgeStatus.COMPLETED if success else BridgeStatus.FAILED
    check_transition(request.status, new_status)
    logger.debug(f"Bridge request for {request.user} -> {new_status.name}")
    return replace(request, status=new_status, completed_at=now)

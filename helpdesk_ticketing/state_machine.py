"""Ticket status state machine.

Two states, no terminal state: a closed ticket can always be reopened.
``closed_at`` is derived here so every mutation path applies the same rule.
"""

from typing import Dict, List, Optional

from helpdesk_ticketing.errors import TicketingError
from helpdesk_ticketing.models import TicketStatus


class InvalidTransitionError(TicketingError, ValueError):
    """Raised when a status transition violates the state machine."""

    pass


INITIAL_STATUS = TicketStatus.opened

STATUS_TRANSITIONS: Dict[TicketStatus, List[TicketStatus]] = {
    TicketStatus.opened: [TicketStatus.closed],
    TicketStatus.closed: [TicketStatus.opened],
}


def validate_transition(
    current_status: TicketStatus,
    target_status: TicketStatus,
    raise_on_invalid: bool = True,
) -> bool:
    """Validate a status transition against the state machine.

    Args:
        current_status: Current status of the ticket.
        target_status: Desired target status.
        raise_on_invalid: If True, raise InvalidTransitionError; otherwise return False.

    Returns:
        True if transition is valid.

    Raises:
        InvalidTransitionError: If transition is invalid and raise_on_invalid=True.
    """
    allowed = STATUS_TRANSITIONS.get(TicketStatus(current_status), [])
    if TicketStatus(target_status) not in allowed:
        if raise_on_invalid:
            raise InvalidTransitionError(
                f"Cannot transition ticket from '{TicketStatus(current_status).value}' "
                f"to '{TicketStatus(target_status).value}'. "
                f"Allowed: {[s.value for s in allowed]}"
            )
        return False
    return True


def derive_closed_at(
    current_status: TicketStatus,
    current_closed_at: Optional[float],
    target_status: TicketStatus,
    now: float,
    explicit_closed_at: Optional[float] = None,
) -> Optional[float]:
    """Compute ``closed_at`` for a ticket that will end up in ``target_status``.

    Opened tickets never carry a close time. A ticket that is (or stays)
    closed keeps an explicitly supplied time, then its existing time, and only
    then falls back to ``now``.
    """
    if TicketStatus(target_status) == TicketStatus.opened:
        return None
    if explicit_closed_at is not None:
        return explicit_closed_at
    if TicketStatus(current_status) == TicketStatus.closed and current_closed_at is not None:
        return current_closed_at
    return now

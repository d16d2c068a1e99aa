"""
Booking status state machine

Single transition table for every booking status change. All callers ask this
module which statuses an event may start from and where it leads; nothing else
in the code base decides status transitions on its own.

    pending ──accept──▶ accepted ──en_route──▶ assigned
       │                   │  ╲                   │
       │                   │   ╲──arrive/start──▶ in_progress
       │                   │                      │
       ├──reject──▶ rejected                      │
       ├──cancel──▶ cancelled ◀──cancel── accepted/assigned
       │                                          │
       └────────── complete (accepted/assigned/in_progress) ──▶ completed
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from ...shared.exceptions import ConflictError


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class BookingEvent(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    EN_ROUTE = "en_route"
    ARRIVE = "arrive"
    START = "start"
    COMPLETE = "complete"


TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED}
)

# Statuses in which a professional is attached and travelling/working
ACTIVE_ASSIGNMENT_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.ACCEPTED, BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS}
)

# Statuses shown as "the customer's current booking"
OPEN_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING} | ACTIVE_ASSIGNMENT_STATUSES
)

RESCHEDULABLE_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.ACCEPTED}
)

TRANSITIONS: Dict[BookingEvent, Tuple[FrozenSet[BookingStatus], BookingStatus]] = {
    BookingEvent.ACCEPT: (frozenset({BookingStatus.PENDING}), BookingStatus.ACCEPTED),
    BookingEvent.REJECT: (frozenset({BookingStatus.PENDING}), BookingStatus.REJECTED),
    BookingEvent.CANCEL: (
        frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.ASSIGNED}),
        BookingStatus.CANCELLED,
    ),
    BookingEvent.EN_ROUTE: (frozenset({BookingStatus.ACCEPTED}), BookingStatus.ASSIGNED),
    BookingEvent.ARRIVE: (
        frozenset({BookingStatus.ACCEPTED, BookingStatus.ASSIGNED}),
        BookingStatus.IN_PROGRESS,
    ),
    BookingEvent.START: (ACTIVE_ASSIGNMENT_STATUSES, BookingStatus.IN_PROGRESS),
    BookingEvent.COMPLETE: (ACTIVE_ASSIGNMENT_STATUSES, BookingStatus.COMPLETED),
}

# Professional-reported tracking phases and the booking event each one fires
PHASE_EVENTS: Dict[str, BookingEvent] = {
    "en_route": BookingEvent.EN_ROUTE,
    "arrived": BookingEvent.ARRIVE,
    "started": BookingEvent.START,
}

# Conflict messages shown to API callers, per event
CONFLICT_MESSAGES: Dict[BookingEvent, str] = {
    BookingEvent.ACCEPT: "Booking already processed",
    BookingEvent.REJECT: "Booking already processed",
    BookingEvent.CANCEL: "Booking can no longer be cancelled",
    BookingEvent.COMPLETE: "Booking cannot be completed in its current state",
}


def sources(event: BookingEvent) -> FrozenSet[BookingStatus]:
    return TRANSITIONS[event][0]


def target(event: BookingEvent) -> BookingStatus:
    return TRANSITIONS[event][1]


def allowed_from(event: BookingEvent) -> FrozenSet[str]:
    """Status values (plain strings, as stored) an event may start from"""
    return frozenset(status.value for status in sources(event))


def conflict_message(event: BookingEvent) -> str:
    return CONFLICT_MESSAGES.get(event, f"Cannot apply '{event.value}' to this booking")


def next_status(current: str, event: BookingEvent) -> BookingStatus:
    """
    Status reached by applying event to current.

    Raises:
        ConflictError: If the event is not allowed from current
    """
    allowed, to_status = TRANSITIONS[event]
    if BookingStatus(current) not in allowed:
        raise ConflictError(conflict_message(event))
    return to_status


def can_transition(current: str, to_status: str) -> bool:
    """True if some event leads from current to to_status"""
    current_status = BookingStatus(current)
    return any(
        current_status in allowed and to == BookingStatus(to_status)
        for allowed, to in TRANSITIONS.values()
    )


def is_terminal(status: str) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES

"""
Booking lifecycle as an explicit transition table.

    pending -> confirmed -> approved -> picked_up -> in_use -> returned -> completed
    pending -> approved                      (provider skips payment confirmation)
    pending | confirmed -> cancelled
    pending -> rejected

Each allowed (current, requested) pair maps to the roles that may request it.
Anything not listed is not a lifecycle edge at all.
"""

from __future__ import annotations

from app.errors import InvalidStateTransition, PermissionDenied
from app.models import BookingStatus
from app.scopes import Role

S = BookingStatus

TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[Role]] = {
    (S.PENDING, S.CONFIRMED): frozenset({Role.SYSTEM}),
    (S.PENDING, S.APPROVED): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.PENDING, S.REJECTED): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.PENDING, S.CANCELLED): frozenset({Role.CUSTOMER, Role.SYSTEM}),
    (S.CONFIRMED, S.APPROVED): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.CONFIRMED, S.CANCELLED): frozenset({Role.CUSTOMER, Role.SYSTEM}),
    (S.APPROVED, S.PICKED_UP): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.PICKED_UP, S.IN_USE): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.IN_USE, S.RETURNED): frozenset({Role.PROVIDER, Role.ADMIN}),
    (S.RETURNED, S.COMPLETED): frozenset({Role.SYSTEM, Role.ADMIN}),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED, S.REJECTED})

# Entering any of these gives the booking's units back to the ledger.
RELEASING_STATUSES = TERMINAL_STATUSES


def next_statuses(current: BookingStatus) -> list[BookingStatus]:
    return [to for (frm, to) in TRANSITIONS if frm == current]


def can_transition(current: BookingStatus, requested: BookingStatus, role: Role) -> bool:
    return role in TRANSITIONS.get((current, requested), frozenset())


def assert_transition(
    current: BookingStatus, requested: BookingStatus, role: Role
) -> None:
    """
    Raise InvalidStateTransition when (current, requested) is not an edge,
    PermissionDenied when it is an edge but `role` may not request it.
    """
    allowed = TRANSITIONS.get((current, requested))
    if allowed is None:
        raise InvalidStateTransition(
            f"Cannot transition from '{current}' to '{requested}'. "
            f"Allowed: {[s.value for s in next_statuses(current)]}"
        )
    if role not in allowed:
        raise PermissionDenied(
            f"Role '{role}' may not move a booking from '{current}' to "
            f"'{requested}'. Requires one of: {sorted(r.value for r in allowed)}"
        )

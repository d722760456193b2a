from __future__ import annotations

from typing import Iterable


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket does not exist or is not visible to the actor."""


class TicketPermissionError(TicketServiceError):
    """Raised when the actor can see a ticket but may not perform the action."""


class TransitionNotAllowedError(TicketPermissionError):
    """Raised when the requested status is outside the actor's allowed set."""

    def __init__(self, current: str, target: str, allowed: Iterable[str]) -> None:
        self.current = current
        self.target = target
        self.allowed = sorted(allowed)
        super().__init__(f"Status transition not allowed: {current} -> {target}")


class StaleTicketVersionError(TicketServiceError):
    """Raised when a conditional write sees a newer ticket version."""

    def __init__(self, ticket_id: int, expected: int) -> None:
        self.ticket_id = ticket_id
        self.expected = expected
        super().__init__(f"Ticket {ticket_id} was modified (expected version {expected})")


class InvalidAssigneeError(TicketServiceError):
    """Raised when a ticket is assigned to a missing or non-staff user."""


class DuplicateTicketNumberError(TicketServiceError):
    """Raised when a generated ticket number collides with an existing one."""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from crm.users.models import Role

from .errors import TransitionNotAllowedError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    UNSEEN = "unseen"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value: "str | TicketStatus") -> "TicketStatus":
        if isinstance(value, TicketStatus):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            valid = ", ".join(status.value for status in cls)
            raise ValueError(f"Invalid status {value!r}. Valid statuses: {valid}") from exc


_S = TicketStatus
_STAFF_ELEVATED: Mapping[TicketStatus, frozenset[TicketStatus]] = {
    _S.UNSEEN: frozenset({_S.IN_PROGRESS, _S.RESOLVED, _S.REJECTED, _S.CLOSED}),
    _S.IN_PROGRESS: frozenset({_S.RESOLVED, _S.CLOSED, _S.REJECTED}),
    _S.RESOLVED: frozenset({_S.CLOSED, _S.IN_PROGRESS}),
    _S.CLOSED: frozenset({_S.IN_PROGRESS}),
    _S.REJECTED: frozenset({_S.IN_PROGRESS}),
}


class TransitionPolicy:
    """Role aware lookup of the statuses a ticket may move into.

    Pairs missing from the table resolve to an empty set. CLIENT has no entry
    for any status and therefore can never change a ticket's status.
    """

    _DEFAULT_TRANSITIONS: Mapping[TicketStatus, Mapping[Role, frozenset[TicketStatus]]] = {
        _S.UNSEEN: {
            Role.EMPLOYEE: frozenset({_S.IN_PROGRESS, _S.RESOLVED, _S.REJECTED}),
            Role.MANAGER: _STAFF_ELEVATED[_S.UNSEEN],
            Role.ADMIN: _STAFF_ELEVATED[_S.UNSEEN],
        },
        _S.IN_PROGRESS: {
            Role.EMPLOYEE: frozenset({_S.RESOLVED}),
            Role.MANAGER: _STAFF_ELEVATED[_S.IN_PROGRESS],
            Role.ADMIN: _STAFF_ELEVATED[_S.IN_PROGRESS],
        },
        _S.RESOLVED: {
            Role.EMPLOYEE: frozenset({_S.CLOSED}),
            Role.MANAGER: _STAFF_ELEVATED[_S.RESOLVED],
            Role.ADMIN: _STAFF_ELEVATED[_S.RESOLVED],
        },
        _S.CLOSED: {
            Role.MANAGER: _STAFF_ELEVATED[_S.CLOSED],
            Role.ADMIN: _STAFF_ELEVATED[_S.CLOSED],
        },
        _S.REJECTED: {
            Role.EMPLOYEE: frozenset({_S.IN_PROGRESS}),
            Role.MANAGER: _STAFF_ELEVATED[_S.REJECTED],
            Role.ADMIN: _STAFF_ELEVATED[_S.REJECTED],
        },
    }

    def __init__(
        self, transitions: Mapping[TicketStatus, Mapping[Role, frozenset[TicketStatus]]] | None = None
    ) -> None:
        self._transitions = self._DEFAULT_TRANSITIONS if transitions is None else transitions

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.UNSEEN

    def available_transitions(self, current: "str | TicketStatus", role: "str | Role") -> frozenset[TicketStatus]:
        status = TicketStatus.parse(current)
        actor_role = Role.parse(role)
        return self._transitions.get(status, {}).get(actor_role, frozenset())

    def can_transition(self, current: "str | TicketStatus", target: "str | TicketStatus", role: "str | Role") -> bool:
        return TicketStatus.parse(target) in self.available_transitions(current, role)

    def assert_transition(self, current: "str | TicketStatus", target: "str | TicketStatus", role: "str | Role") -> None:
        allowed = self.available_transitions(current, role)
        target_status = TicketStatus.parse(target)
        if target_status not in allowed:
            raise TransitionNotAllowedError(
                TicketStatus.parse(current).value,
                target_status.value,
                (status.value for status in allowed),
            )

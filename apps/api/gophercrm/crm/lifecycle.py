"""Status state machines for leads, tickets and tasks.

Each machine answers ``transition(current, requested)`` with the next status
or raises ``InvalidTransitionError``. Terminal states reject every request,
including a request for the state the record is already in.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from gophercrm.core.errors import InvalidRequestError


class LeadStatus(StrEnum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    UNQUALIFIED = "unqualified"
    CONVERTED = "converted"


class TicketStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InvalidTransitionError(InvalidRequestError):
    code = "invalid_transition"
    default_message = "invalid status transition"


class CompletedTaskLockedError(InvalidTransitionError):
    code = "completed_task_locked"
    default_message = "cannot modify completed task"


class ConflictingLinkError(InvalidRequestError):
    code = "conflicting_link"
    default_message = "task cannot be linked to both a lead and a customer"


class AlreadyConvertedError(InvalidRequestError):
    code = "already_converted"
    default_message = "lead has already been converted"


@dataclass(frozen=True)
class StateMachine:
    name: str
    transitions: Mapping[str, frozenset[str]]
    terminal_messages: Mapping[str, str] = field(default_factory=dict)
    terminal_error: type[InvalidTransitionError] = InvalidTransitionError

    @property
    def states(self) -> frozenset[str]:
        return frozenset(self.transitions)

    def is_terminal(self, status: str) -> bool:
        return not self.transitions.get(status)

    def can_transition(self, current: str, requested: str) -> bool:
        return requested in self.transitions.get(current, frozenset())

    def transition(self, current: str, requested: str) -> str:
        if current not in self.transitions:
            raise InvalidTransitionError(f"unknown {self.name} status: {current}")
        if requested not in self.transitions:
            raise InvalidTransitionError(f"unknown {self.name} status: {requested}")
        if self.is_terminal(current):
            message = self.terminal_messages.get(current, f"{self.name} is {current} and cannot change status")
            raise self.terminal_error(message)
        if not self.can_transition(current, requested):
            raise InvalidTransitionError(f"cannot move {self.name} from {current} to {requested}")
        return requested


def _free_among(states: frozenset[str]) -> dict[str, frozenset[str]]:
    # Every listed state may move to any listed state, itself included.
    return {state: states for state in states}


_LEAD_EDITABLE = frozenset(
    {LeadStatus.NEW, LeadStatus.CONTACTED, LeadStatus.QUALIFIED, LeadStatus.UNQUALIFIED}
)

# converted is only reachable through the conversion workflow.
LEAD_MACHINE = StateMachine(
    name="lead",
    transitions=MappingProxyType({**_free_among(_LEAD_EDITABLE), LeadStatus.CONVERTED: frozenset()}),
    terminal_messages=MappingProxyType({LeadStatus.CONVERTED: "cannot change status of converted lead"}),
)

TICKET_MACHINE = StateMachine(
    name="ticket",
    transitions=MappingProxyType(
        {
            **_free_among(frozenset(TicketStatus)),
            TicketStatus.CLOSED: frozenset(),
        }
    ),
    terminal_messages=MappingProxyType({TicketStatus.CLOSED: "cannot reopen closed ticket"}),
)

TASK_MACHINE = StateMachine(
    name="task",
    transitions=MappingProxyType(
        {
            **_free_among(frozenset(TaskStatus)),
            TaskStatus.COMPLETED: frozenset(),
        }
    ),
    terminal_messages=MappingProxyType({TaskStatus.COMPLETED: "cannot modify completed task"}),
    terminal_error=CompletedTaskLockedError,
)


def transition_lead(current: str, requested: str) -> str:
    if requested == LeadStatus.CONVERTED and current != LeadStatus.CONVERTED:
        raise InvalidTransitionError("leads can only be converted through the conversion workflow")
    return LEAD_MACHINE.transition(current, requested)


def transition_ticket(current: str, requested: str) -> str:
    return TICKET_MACHINE.transition(current, requested)


def transition_task(current: str, requested: str) -> str:
    return TASK_MACHINE.transition(current, requested)


def ensure_task_mutable(status: str) -> None:
    """Completed tasks are frozen: any field update is rejected, not just status."""

    if status == TaskStatus.COMPLETED:
        raise CompletedTaskLockedError()


def ensure_lead_convertible(status: str) -> None:
    if status == LeadStatus.CONVERTED:
        raise AlreadyConvertedError()


def check_task_links(lead_id: int | None, customer_id: int | None) -> None:
    if lead_id is not None and customer_id is not None:
        raise ConflictingLinkError()

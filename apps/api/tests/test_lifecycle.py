from __future__ import annotations

import pytest

from gophercrm.crm.lifecycle import (
    LEAD_MACHINE,
    TASK_MACHINE,
    TICKET_MACHINE,
    AlreadyConvertedError,
    CompletedTaskLockedError,
    ConflictingLinkError,
    InvalidTransitionError,
    LeadStatus,
    TaskStatus,
    TicketStatus,
    check_task_links,
    ensure_lead_convertible,
    ensure_task_mutable,
    transition_lead,
    transition_task,
    transition_ticket,
)


EDITABLE_LEAD_STATUSES = [
    LeadStatus.NEW,
    LeadStatus.CONTACTED,
    LeadStatus.QUALIFIED,
    LeadStatus.UNQUALIFIED,
]


@pytest.mark.parametrize("current", EDITABLE_LEAD_STATUSES)
@pytest.mark.parametrize("requested", EDITABLE_LEAD_STATUSES)
def test_lead_statuses_are_freely_settable(current: LeadStatus, requested: LeadStatus) -> None:
    assert transition_lead(current, requested) == requested


@pytest.mark.parametrize("current", EDITABLE_LEAD_STATUSES)
def test_lead_cannot_be_converted_by_status_assignment(current: LeadStatus) -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        transition_lead(current, LeadStatus.CONVERTED)
    assert "conversion" in exc_info.value.message


@pytest.mark.parametrize("requested", list(LeadStatus))
def test_converted_lead_is_terminal(requested: LeadStatus) -> None:
    with pytest.raises(InvalidTransitionError):
        transition_lead(LeadStatus.CONVERTED, requested)
    assert LEAD_MACHINE.is_terminal(LeadStatus.CONVERTED)


def test_convert_precondition() -> None:
    ensure_lead_convertible(LeadStatus.QUALIFIED)
    with pytest.raises(AlreadyConvertedError):
        ensure_lead_convertible(LeadStatus.CONVERTED)


@pytest.mark.parametrize("prior", [TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED])
def test_closed_ticket_rejects_every_request(prior: TicketStatus) -> None:
    closed = transition_ticket(prior, TicketStatus.CLOSED)
    assert closed == TicketStatus.CLOSED
    for requested in TicketStatus:
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_ticket(closed, requested)
        assert exc_info.value.message == "cannot reopen closed ticket"


def test_open_ticket_statuses_move_freely() -> None:
    assert transition_ticket(TicketStatus.RESOLVED, TicketStatus.OPEN) == TicketStatus.OPEN
    assert transition_ticket(TicketStatus.OPEN, TicketStatus.IN_PROGRESS) == TicketStatus.IN_PROGRESS
    assert TICKET_MACHINE.can_transition(TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED)


@pytest.mark.parametrize("requested", list(TaskStatus))
def test_completed_task_rejects_every_status(requested: TaskStatus) -> None:
    with pytest.raises(CompletedTaskLockedError) as exc_info:
        transition_task(TaskStatus.COMPLETED, requested)
    assert exc_info.value.message == "cannot modify completed task"
    assert isinstance(exc_info.value, InvalidTransitionError)


def test_completed_task_is_locked_for_any_field_update() -> None:
    ensure_task_mutable(TaskStatus.CANCELLED)
    with pytest.raises(CompletedTaskLockedError):
        ensure_task_mutable(TaskStatus.COMPLETED)
    assert TASK_MACHINE.is_terminal(TaskStatus.COMPLETED)
    assert not TASK_MACHINE.is_terminal(TaskStatus.CANCELLED)


def test_unknown_status_is_an_invalid_transition() -> None:
    with pytest.raises(InvalidTransitionError):
        transition_ticket("escalated", TicketStatus.OPEN)
    with pytest.raises(InvalidTransitionError):
        transition_task(TaskStatus.PENDING, "blocked")


def test_task_links_are_mutually_exclusive() -> None:
    check_task_links(None, None)
    check_task_links(3, None)
    check_task_links(None, 4)
    with pytest.raises(ConflictingLinkError):
        check_task_links(3, 4)

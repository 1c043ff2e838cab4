from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gophercrm.crm.lifecycle import LeadStatus, TaskStatus, TicketStatus
from gophercrm.crm.models import Customer, Lead, Task, Ticket
from gophercrm.crm.schemas import DashboardStats
from gophercrm.platform.security.context import Actor
from gophercrm.platform.security.policies import Operation, PermissionEvaluator, ResourceType, default_evaluator


OPEN_TICKET_STATUSES = (TicketStatus.OPEN.value, TicketStatus.IN_PROGRESS.value)
PENDING_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


class DashboardService:
    """Summary counts for the landing page, each scoped like the matching list endpoint."""

    def __init__(self, session: Session, evaluator: PermissionEvaluator = default_evaluator) -> None:
        self.session = session
        self.evaluator = evaluator

    def stats(self, actor: Actor) -> DashboardStats:
        total_leads = self._count(actor, ResourceType.LEAD, Lead, Lead.owner_id)
        converted_leads = self._count(
            actor, ResourceType.LEAD, Lead, Lead.owner_id, Lead.status == LeadStatus.CONVERTED.value
        )
        conversion_rate: float | None = None
        if total_leads is not None and converted_leads is not None:
            conversion_rate = round(converted_leads / total_leads * 100, 2) if total_leads else 0.0

        return DashboardStats(
            total_leads=total_leads,
            converted_leads=converted_leads,
            conversion_rate=conversion_rate,
            total_customers=self._count(actor, ResourceType.CUSTOMER, Customer, None),
            open_tickets=self._count(
                actor, ResourceType.TICKET, Ticket, Ticket.assigned_to_id, Ticket.status.in_(OPEN_TICKET_STATUSES)
            ),
            pending_tasks=self._count(
                actor, ResourceType.TASK, Task, Task.assigned_to_id, Task.status.in_(PENDING_TASK_STATUSES)
            ),
        )

    def _count(self, actor: Actor, resource: ResourceType, model: Any, owner_column: Any, *criteria: Any) -> int | None:
        # Hidden tiles are not denials, so nothing is audited here.
        decision = self.evaluator.evaluate(actor, resource, Operation.LIST)
        if not decision.allowed:
            return None
        stmt = select(func.count()).select_from(model).where(model.deleted_at.is_(None), *criteria)
        if decision.scope_owner_id is not None and owner_column is not None:
            stmt = stmt.where(owner_column == decision.scope_owner_id)
        return self.session.scalar(stmt) or 0

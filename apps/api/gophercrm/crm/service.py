from __future__ import annotations

import logging
from collections.abc import Collection
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gophercrm import audit, events
from gophercrm.core.errors import ConflictError, InvalidReferenceError, NotFoundError
from gophercrm.crm.lifecycle import (
    LeadStatus,
    TaskStatus,
    TicketStatus,
    check_task_links,
    ensure_task_mutable,
    transition_lead,
    transition_task,
    transition_ticket,
)
from gophercrm.crm.models import Customer, Lead, Task, Ticket, utcnow
from gophercrm.crm.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    TicketCreate,
    TicketRead,
    TicketUpdate,
)
from gophercrm.identity.models import User
from gophercrm.platform.security.context import Actor, Role
from gophercrm.platform.security.policies import Operation, PermissionEvaluator, ResourceType, default_evaluator


logger = logging.getLogger("gophercrm.crm")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

TICKET_ASSIGNEE_ROLES = frozenset({Role.SUPPORT.value, Role.ADMIN.value})
TASK_CLEARABLE_FIELDS = ("description", "due_date", "lead_id", "customer_id")


def clamp_page(offset: int, limit: int) -> tuple[int, int]:
    return max(offset, 0), max(1, min(limit, MAX_PAGE_SIZE))


def changed_fields(dto: BaseModel, nullable: Collection[str] = ()) -> dict[str, Any]:
    """Fields the caller actually sent.

    ``None`` means "leave unchanged" except for the ``nullable`` fields, where an
    explicit ``None`` clears the column.
    """

    changes: dict[str, Any] = {}
    for name, value in dto.model_dump(exclude_unset=True).items():
        if value is None and name not in nullable:
            continue
        changes[name] = value.value if isinstance(value, Enum) else value
    return changes


def commit_or_conflict(session: Session, message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message) from exc


def load_active_user(session: Session, user_id: int, *, field_name: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    if user is None or not user.is_active:
        raise InvalidReferenceError(f"{field_name} must reference an active user", details={field_name: user_id})
    return user


def load_customer_reference(session: Session, customer_id: int) -> Customer:
    customer = session.scalar(select(Customer).where(Customer.id == customer_id, Customer.deleted_at.is_(None)))
    if customer is None:
        raise InvalidReferenceError("customer_id must reference an existing customer", details={"customer_id": customer_id})
    return customer


def load_lead_reference(session: Session, lead_id: int) -> Lead:
    lead = session.scalar(select(Lead).where(Lead.id == lead_id, Lead.deleted_at.is_(None)))
    if lead is None:
        raise InvalidReferenceError("lead_id must reference an existing lead", details={"lead_id": lead_id})
    return lead


class _EntityService:
    entity_type = ""
    resource: ResourceType
    read_schema: type[BaseModel]

    def __init__(self, session: Session, evaluator: PermissionEvaluator = default_evaluator) -> None:
        self.session = session
        self.evaluator = evaluator

    def _snapshot(self, entity: Any) -> dict[str, Any]:
        return self.read_schema.model_validate(entity).model_dump(mode="json")

    def _record_change(
        self,
        actor: Actor,
        entity: Any,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=entity.id,
            action=action,
            before=before,
            after=after,
        )
        event_payload = {f"{self.entity_type}_id": entity.id, **(payload or {})}
        events.publish(events.build_envelope(f"crm.{self.entity_type}.{action}d", actor.id, event_payload))
        logger.info(
            f"crm.{self.entity_type}.{action}d",
            extra={"actor_id": actor.id, f"{self.entity_type}_id": entity.id},
        )


class LeadService(_EntityService):
    entity_type = "lead"
    resource = ResourceType.LEAD
    read_schema = LeadRead

    def create_lead(self, actor: Actor, dto: LeadCreate) -> Lead:
        self.evaluator.authorize(actor, self.resource, Operation.CREATE, record={"owner_id": dto.owner_id})
        owner_id = dto.owner_id if dto.owner_id is not None else actor.id
        load_active_user(self.session, owner_id, field_name="owner_id")
        status = LeadStatus.NEW.value
        if dto.status is not None:
            status = transition_lead(LeadStatus.NEW, dto.status)

        lead = Lead(
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=str(dto.email),
            phone=dto.phone,
            company=dto.company,
            position=dto.position,
            source=dto.source,
            status=str(status),
            notes=dto.notes,
            owner_id=owner_id,
        )
        self.session.add(lead)
        self.session.commit()
        self.session.refresh(lead)
        self._record_change(actor, lead, "create", None, self._snapshot(lead), {"owner_id": owner_id})
        return lead

    def list_leads(
        self,
        actor: Actor,
        *,
        status: LeadStatus | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Lead]:
        scope_owner_id = self.evaluator.list_scope(actor, self.resource)
        stmt: Select[tuple[Lead]] = select(Lead).where(Lead.deleted_at.is_(None))
        if scope_owner_id is not None:
            stmt = stmt.where(Lead.owner_id == scope_owner_id)
        if status is not None:
            stmt = stmt.where(Lead.status == status.value)
        offset, limit = clamp_page(offset, limit)
        return list(self.session.scalars(stmt.order_by(Lead.id).offset(offset).limit(limit)))

    def get_lead(self, actor: Actor, lead_id: int) -> Lead:
        lead = self._load(lead_id)
        self.evaluator.authorize(actor, self.resource, Operation.GET, record=lead)
        return lead

    def update_lead(self, actor: Actor, lead_id: int, dto: LeadUpdate) -> Lead:
        lead = self._load(lead_id)
        changes = changed_fields(dto)
        self.evaluator.authorize(actor, self.resource, Operation.UPDATE, record=lead, changes=changes)
        before = self._snapshot(lead)

        if "status" in changes:
            changes["status"] = transition_lead(lead.status, changes["status"])
        if "owner_id" in changes and changes["owner_id"] != lead.owner_id:
            load_active_user(self.session, changes["owner_id"], field_name="owner_id")
        if "email" in changes:
            changes["email"] = str(changes["email"])

        for name, value in changes.items():
            setattr(lead, name, value)
        self.session.commit()
        self.session.refresh(lead)
        self._record_change(
            actor, lead, "update", before, self._snapshot(lead), {"changed_fields": sorted(changes)}
        )
        return lead

    def delete_lead(self, actor: Actor, lead_id: int) -> None:
        lead = self._load(lead_id)
        self.evaluator.authorize(actor, self.resource, Operation.DELETE, record=lead)
        before = self._snapshot(lead)
        lead.deleted_at = utcnow()
        self.session.commit()
        self._record_change(actor, lead, "delete", before, None)

    def _load(self, lead_id: int) -> Lead:
        lead = self.session.scalar(select(Lead).where(Lead.id == lead_id, Lead.deleted_at.is_(None)))
        if lead is None:
            raise NotFoundError("lead not found")
        return lead


class CustomerService(_EntityService):
    entity_type = "customer"
    resource = ResourceType.CUSTOMER
    read_schema = CustomerRead

    def create_customer(self, actor: Actor, dto: CustomerCreate) -> Customer:
        self.evaluator.authorize(actor, self.resource, Operation.CREATE)
        email = str(dto.email)
        self._ensure_email_available(email)
        if dto.user_id is not None:
            load_active_user(self.session, dto.user_id, field_name="user_id")

        customer = Customer(
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=email,
            phone=dto.phone,
            company=dto.company,
            address=dto.address,
            notes=dto.notes,
            user_id=dto.user_id,
        )
        self.session.add(customer)
        commit_or_conflict(self.session, "customer email already exists")
        self.session.refresh(customer)
        self._record_change(actor, customer, "create", None, self._snapshot(customer))
        return customer

    def list_customers(
        self,
        actor: Actor,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Customer]:
        self.evaluator.list_scope(actor, self.resource)
        stmt: Select[tuple[Customer]] = select(Customer).where(Customer.deleted_at.is_(None))
        offset, limit = clamp_page(offset, limit)
        return list(self.session.scalars(stmt.order_by(Customer.id).offset(offset).limit(limit)))

    def get_customer(self, actor: Actor, customer_id: int) -> Customer:
        customer = self._load(customer_id)
        self.evaluator.authorize(actor, self.resource, Operation.GET, record=customer)
        return customer

    def update_customer(self, actor: Actor, customer_id: int, dto: CustomerUpdate) -> Customer:
        customer = self._load(customer_id)
        changes = changed_fields(dto)
        self.evaluator.authorize(actor, self.resource, Operation.UPDATE, record=customer, changes=changes)
        before = self._snapshot(customer)
        if "email" in changes:
            changes["email"] = str(changes["email"])
            self._ensure_email_available(changes["email"], exclude_customer_id=customer.id)

        for name, value in changes.items():
            setattr(customer, name, value)
        commit_or_conflict(self.session, "customer email already exists")
        self.session.refresh(customer)
        self._record_change(
            actor, customer, "update", before, self._snapshot(customer), {"changed_fields": sorted(changes)}
        )
        return customer

    def delete_customer(self, actor: Actor, customer_id: int) -> None:
        customer = self._load(customer_id)
        self.evaluator.authorize(actor, self.resource, Operation.DELETE, record=customer)
        before = self._snapshot(customer)
        customer.deleted_at = utcnow()
        self.session.commit()
        self._record_change(actor, customer, "delete", before, None)

    def _load(self, customer_id: int) -> Customer:
        customer = self.session.scalar(
            select(Customer).where(Customer.id == customer_id, Customer.deleted_at.is_(None))
        )
        if customer is None:
            raise NotFoundError("customer not found")
        return customer

    def _ensure_email_available(self, email: str, *, exclude_customer_id: int | None = None) -> None:
        stmt = select(Customer.id).where(Customer.email == email)
        if exclude_customer_id is not None:
            stmt = stmt.where(Customer.id != exclude_customer_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("customer email already exists")


class TicketService(_EntityService):
    entity_type = "ticket"
    resource = ResourceType.TICKET
    read_schema = TicketRead

    def create_ticket(self, actor: Actor, dto: TicketCreate) -> Ticket:
        self.evaluator.authorize(
            actor, self.resource, Operation.CREATE, record={"assigned_to_id": dto.assigned_to_id}
        )
        load_customer_reference(self.session, dto.customer_id)
        assignee_id = dto.assigned_to_id if dto.assigned_to_id is not None else actor.id
        self._validate_assignee(assignee_id)

        ticket = Ticket(
            title=dto.title,
            description=dto.description,
            status=TicketStatus.OPEN.value,
            priority=dto.priority.value,
            customer_id=dto.customer_id,
            assigned_to_id=assignee_id,
        )
        self.session.add(ticket)
        self.session.commit()
        self.session.refresh(ticket)
        self._record_change(
            actor, ticket, "create", None, self._snapshot(ticket), {"assigned_to_id": assignee_id}
        )
        return ticket

    def list_tickets(
        self,
        actor: Actor,
        *,
        status: TicketStatus | None = None,
        customer_id: int | None = None,
        assigned_to_id: int | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Ticket]:
        scope_owner_id = self.evaluator.list_scope(actor, self.resource)
        stmt: Select[tuple[Ticket]] = select(Ticket).where(Ticket.deleted_at.is_(None))
        if scope_owner_id is not None:
            stmt = stmt.where(Ticket.assigned_to_id == scope_owner_id)
        if status is not None:
            stmt = stmt.where(Ticket.status == status.value)
        if customer_id is not None:
            stmt = stmt.where(Ticket.customer_id == customer_id)
        if assigned_to_id is not None:
            stmt = stmt.where(Ticket.assigned_to_id == assigned_to_id)
        offset, limit = clamp_page(offset, limit)
        return list(self.session.scalars(stmt.order_by(Ticket.id).offset(offset).limit(limit)))

    def get_ticket(self, actor: Actor, ticket_id: int) -> Ticket:
        ticket = self._load(ticket_id)
        self.evaluator.authorize(actor, self.resource, Operation.GET, record=ticket)
        return ticket

    def update_ticket(self, actor: Actor, ticket_id: int, dto: TicketUpdate) -> Ticket:
        ticket = self._load(ticket_id)
        changes = changed_fields(dto)
        self.evaluator.authorize(actor, self.resource, Operation.UPDATE, record=ticket, changes=changes)
        before = self._snapshot(ticket)

        if "status" in changes:
            changes["status"] = transition_ticket(ticket.status, changes["status"])
        if "assigned_to_id" in changes and changes["assigned_to_id"] != ticket.assigned_to_id:
            self._validate_assignee(changes["assigned_to_id"])

        for name, value in changes.items():
            setattr(ticket, name, value)
        self.session.commit()
        self.session.refresh(ticket)
        self._record_change(
            actor, ticket, "update", before, self._snapshot(ticket), {"changed_fields": sorted(changes)}
        )
        return ticket

    def delete_ticket(self, actor: Actor, ticket_id: int) -> None:
        ticket = self._load(ticket_id)
        self.evaluator.authorize(actor, self.resource, Operation.DELETE, record=ticket)
        before = self._snapshot(ticket)
        ticket.deleted_at = utcnow()
        self.session.commit()
        self._record_change(actor, ticket, "delete", before, None)

    def _validate_assignee(self, user_id: int) -> None:
        assignee = load_active_user(self.session, user_id, field_name="assigned_to_id")
        if assignee.role not in TICKET_ASSIGNEE_ROLES:
            raise InvalidReferenceError(
                "tickets can only be assigned to support or admin users",
                details={"assigned_to_id": user_id},
            )

    def _load(self, ticket_id: int) -> Ticket:
        ticket = self.session.scalar(select(Ticket).where(Ticket.id == ticket_id, Ticket.deleted_at.is_(None)))
        if ticket is None:
            raise NotFoundError("ticket not found")
        return ticket


class TaskService(_EntityService):
    entity_type = "task"
    resource = ResourceType.TASK
    read_schema = TaskRead

    def create_task(self, actor: Actor, dto: TaskCreate) -> Task:
        self.evaluator.authorize(
            actor, self.resource, Operation.CREATE, record={"assigned_to_id": dto.assigned_to_id}
        )
        check_task_links(dto.lead_id, dto.customer_id)
        assignee_id = dto.assigned_to_id if dto.assigned_to_id is not None else actor.id
        load_active_user(self.session, assignee_id, field_name="assigned_to_id")
        self._validate_links(dto.lead_id, dto.customer_id)

        task = Task(
            title=dto.title,
            description=dto.description,
            status=TaskStatus.PENDING.value,
            priority=dto.priority.value,
            due_date=dto.due_date,
            assigned_to_id=assignee_id,
            lead_id=dto.lead_id,
            customer_id=dto.customer_id,
        )
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        self._record_change(actor, task, "create", None, self._snapshot(task), {"assigned_to_id": assignee_id})
        return task

    def list_tasks(
        self,
        actor: Actor,
        *,
        status: TaskStatus | None = None,
        lead_id: int | None = None,
        customer_id: int | None = None,
        assigned_to_id: int | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Task]:
        scope_owner_id = self.evaluator.list_scope(actor, self.resource)
        stmt: Select[tuple[Task]] = select(Task).where(Task.deleted_at.is_(None))
        if scope_owner_id is not None:
            stmt = stmt.where(Task.assigned_to_id == scope_owner_id)
        if status is not None:
            stmt = stmt.where(Task.status == status.value)
        if lead_id is not None:
            stmt = stmt.where(Task.lead_id == lead_id)
        if customer_id is not None:
            stmt = stmt.where(Task.customer_id == customer_id)
        if assigned_to_id is not None:
            stmt = stmt.where(Task.assigned_to_id == assigned_to_id)
        offset, limit = clamp_page(offset, limit)
        return list(self.session.scalars(stmt.order_by(Task.id).offset(offset).limit(limit)))

    def get_task(self, actor: Actor, task_id: int) -> Task:
        task = self._load(task_id)
        self.evaluator.authorize(actor, self.resource, Operation.GET, record=task)
        return task

    def update_task(self, actor: Actor, task_id: int, dto: TaskUpdate) -> Task:
        task = self._load(task_id)
        changes = changed_fields(dto, nullable=TASK_CLEARABLE_FIELDS)
        self.evaluator.authorize(actor, self.resource, Operation.UPDATE, record=task, changes=changes)
        ensure_task_mutable(task.status)
        before = self._snapshot(task)

        if "status" in changes:
            changes["status"] = transition_task(task.status, changes["status"])
            if changes["status"] == TaskStatus.COMPLETED:
                changes["completed_at"] = utcnow()
        if "assigned_to_id" in changes and changes["assigned_to_id"] != task.assigned_to_id:
            load_active_user(self.session, changes["assigned_to_id"], field_name="assigned_to_id")

        lead_id = changes.get("lead_id", task.lead_id)
        customer_id = changes.get("customer_id", task.customer_id)
        check_task_links(lead_id, customer_id)
        self._validate_links(changes.get("lead_id"), changes.get("customer_id"))

        for name, value in changes.items():
            setattr(task, name, value)
        self.session.commit()
        self.session.refresh(task)
        self._record_change(
            actor,
            task,
            "update",
            before,
            self._snapshot(task),
            {"changed_fields": sorted(name for name in changes if name != "completed_at")},
        )
        return task

    def delete_task(self, actor: Actor, task_id: int) -> None:
        task = self._load(task_id)
        self.evaluator.authorize(actor, self.resource, Operation.DELETE, record=task)
        before = self._snapshot(task)
        task.deleted_at = utcnow()
        self.session.commit()
        self._record_change(actor, task, "delete", before, None)

    def _validate_links(self, lead_id: int | None, customer_id: int | None) -> None:
        if lead_id is not None:
            load_lead_reference(self.session, lead_id)
        if customer_id is not None:
            load_customer_reference(self.session, customer_id)

    def _load(self, task_id: int) -> Task:
        task = self.session.scalar(select(Task).where(Task.id == task_id, Task.deleted_at.is_(None)))
        if task is None:
            raise NotFoundError("task not found")
        return task

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from gophercrm.core.database import get_db
from gophercrm.crm.conversion import LeadConversionService
from gophercrm.crm.dashboard import DashboardService
from gophercrm.crm.lifecycle import LeadStatus, TaskStatus, TicketStatus
from gophercrm.crm.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    DashboardStats,
    LeadConvertRequest,
    LeadConvertResponse,
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
from gophercrm.crm.service import CustomerService, LeadService, TaskService, TicketService
from gophercrm.identity.api import get_current_actor
from gophercrm.platform.security.context import Actor


leads_router = APIRouter(prefix="/leads", tags=["crm.leads"])
customers_router = APIRouter(prefix="/customers", tags=["crm.customers"])
tickets_router = APIRouter(prefix="/tickets", tags=["crm.tickets"])
tasks_router = APIRouter(prefix="/tasks", tags=["crm.tasks"])
dashboard_router = APIRouter(prefix="/dashboard", tags=["crm.dashboard"])


def get_lead_service(db: Session = Depends(get_db)) -> LeadService:
    return LeadService(db)


def get_conversion_service(db: Session = Depends(get_db)) -> LeadConversionService:
    return LeadConversionService(db)


def get_customer_service(db: Session = Depends(get_db)) -> CustomerService:
    return CustomerService(db)


def get_ticket_service(db: Session = Depends(get_db)) -> TicketService:
    return TicketService(db)


def get_task_service(db: Session = Depends(get_db)) -> TaskService:
    return TaskService(db)


def get_dashboard_service(db: Session = Depends(get_db)) -> DashboardService:
    return DashboardService(db)


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    status_filter: LeadStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: LeadService = Depends(get_lead_service),
) -> list[LeadRead]:
    leads = service.list_leads(actor, status=status_filter, offset=offset, limit=limit)
    return [LeadRead.model_validate(lead) for lead in leads]


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    actor: Actor = Depends(get_current_actor),
    service: LeadService = Depends(get_lead_service),
) -> LeadRead:
    return LeadRead.model_validate(service.create_lead(actor, dto))


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    lead_id: int,
    actor: Actor = Depends(get_current_actor),
    service: LeadService = Depends(get_lead_service),
) -> LeadRead:
    return LeadRead.model_validate(service.get_lead(actor, lead_id))


@leads_router.put("/{lead_id}", response_model=LeadRead)
def update_lead(
    lead_id: int,
    dto: LeadUpdate,
    actor: Actor = Depends(get_current_actor),
    service: LeadService = Depends(get_lead_service),
) -> LeadRead:
    return LeadRead.model_validate(service.update_lead(actor, lead_id, dto))


@leads_router.delete("/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    lead_id: int,
    actor: Actor = Depends(get_current_actor),
    service: LeadService = Depends(get_lead_service),
) -> Response:
    service.delete_lead(actor, lead_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/{lead_id}/convert", response_model=LeadConvertResponse)
def convert_lead(
    lead_id: int,
    dto: LeadConvertRequest | None = Body(default=None),
    actor: Actor = Depends(get_current_actor),
    service: LeadConversionService = Depends(get_conversion_service),
) -> LeadConvertResponse:
    result = service.convert(actor, lead_id, dto)
    return LeadConvertResponse(
        lead=LeadRead.model_validate(result.lead),
        customer=CustomerRead.model_validate(result.customer),
    )


@customers_router.get("", response_model=list[CustomerRead])
def list_customers(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: CustomerService = Depends(get_customer_service),
) -> list[CustomerRead]:
    return [CustomerRead.model_validate(customer) for customer in service.list_customers(actor, offset=offset, limit=limit)]


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    actor: Actor = Depends(get_current_actor),
    service: CustomerService = Depends(get_customer_service),
) -> CustomerRead:
    return CustomerRead.model_validate(service.create_customer(actor, dto))


@customers_router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    customer_id: int,
    actor: Actor = Depends(get_current_actor),
    service: CustomerService = Depends(get_customer_service),
) -> CustomerRead:
    return CustomerRead.model_validate(service.get_customer(actor, customer_id))


@customers_router.put("/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: int,
    dto: CustomerUpdate,
    actor: Actor = Depends(get_current_actor),
    service: CustomerService = Depends(get_customer_service),
) -> CustomerRead:
    return CustomerRead.model_validate(service.update_customer(actor, customer_id, dto))


@customers_router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer(
    customer_id: int,
    actor: Actor = Depends(get_current_actor),
    service: CustomerService = Depends(get_customer_service),
) -> Response:
    service.delete_customer(actor, customer_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@customers_router.get("/{customer_id}/tickets", response_model=list[TicketRead])
def list_customer_tickets(
    customer_id: int,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    customers: CustomerService = Depends(get_customer_service),
    tickets: TicketService = Depends(get_ticket_service),
) -> list[TicketRead]:
    customers.get_customer(actor, customer_id)
    rows = tickets.list_tickets(actor, status=status_filter, customer_id=customer_id, offset=offset, limit=limit)
    return [TicketRead.model_validate(ticket) for ticket in rows]


@tickets_router.get("", response_model=list[TicketRead])
def list_tickets(
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    customer_id: int | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> list[TicketRead]:
    tickets = service.list_tickets(actor, status=status_filter, customer_id=customer_id, offset=offset, limit=limit)
    return [TicketRead.model_validate(ticket) for ticket in tickets]


@tickets_router.post("", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
def create_ticket(
    dto: TicketCreate,
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> TicketRead:
    return TicketRead.model_validate(service.create_ticket(actor, dto))


@tickets_router.get("/my", response_model=list[TicketRead])
def list_my_tickets(
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> list[TicketRead]:
    tickets = service.list_tickets(actor, status=status_filter, assigned_to_id=actor.id, offset=offset, limit=limit)
    return [TicketRead.model_validate(ticket) for ticket in tickets]


@tickets_router.get("/{ticket_id}", response_model=TicketRead)
def get_ticket(
    ticket_id: int,
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> TicketRead:
    return TicketRead.model_validate(service.get_ticket(actor, ticket_id))


@tickets_router.put("/{ticket_id}", response_model=TicketRead)
def update_ticket(
    ticket_id: int,
    dto: TicketUpdate,
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> TicketRead:
    return TicketRead.model_validate(service.update_ticket(actor, ticket_id, dto))


@tickets_router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_ticket(
    ticket_id: int,
    actor: Actor = Depends(get_current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> Response:
    service.delete_ticket(actor, ticket_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    lead_id: int | None = Query(default=None),
    customer_id: int | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> list[TaskRead]:
    tasks = service.list_tasks(
        actor,
        status=status_filter,
        lead_id=lead_id,
        customer_id=customer_id,
        offset=offset,
        limit=limit,
    )
    return [TaskRead.model_validate(task) for task in tasks]


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    dto: TaskCreate,
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> TaskRead:
    return TaskRead.model_validate(service.create_task(actor, dto))


@tasks_router.get("/my", response_model=list[TaskRead])
def list_my_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> list[TaskRead]:
    tasks = service.list_tasks(actor, status=status_filter, assigned_to_id=actor.id, offset=offset, limit=limit)
    return [TaskRead.model_validate(task) for task in tasks]


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> TaskRead:
    return TaskRead.model_validate(service.get_task(actor, task_id))


@tasks_router.put("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: int,
    dto: TaskUpdate,
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> TaskRead:
    return TaskRead.model_validate(service.update_task(actor, task_id, dto))


@tasks_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: int,
    actor: Actor = Depends(get_current_actor),
    service: TaskService = Depends(get_task_service),
) -> Response:
    service.delete_task(actor, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@dashboard_router.get("/stats", response_model=DashboardStats)
def dashboard_stats(
    actor: Actor = Depends(get_current_actor),
    service: DashboardService = Depends(get_dashboard_service),
) -> DashboardStats:
    return service.stats(actor)

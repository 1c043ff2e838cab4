from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from gophercrm.crm.lifecycle import LeadStatus, TaskPriority, TaskStatus, TicketPriority, TicketStatus


class CustomerCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    address: str | None = None
    notes: str | None = None
    user_id: int | None = None


class CustomerUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    address: str | None = None
    notes: str | None = None


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None
    company: str | None
    address: str | None
    notes: str | None
    user_id: int | None
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    position: str | None = Field(default=None, max_length=100)
    source: str | None = Field(default=None, max_length=50)
    status: LeadStatus | None = None
    notes: str | None = None
    owner_id: int | None = None


class LeadUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    position: str | None = Field(default=None, max_length=100)
    source: str | None = Field(default=None, max_length=50)
    status: LeadStatus | None = None
    notes: str | None = None
    owner_id: int | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None
    company: str | None
    position: str | None
    source: str | None
    status: LeadStatus
    notes: str | None
    owner_id: int
    customer_id: int | None
    converted_at: datetime | None
    created_at: datetime
    updated_at: datetime


class LeadConvertRequest(BaseModel):
    """Optional overrides; blank values fall back to the lead's own data."""

    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    address: str | None = None
    notes: str | None = None


class LeadConvertResponse(BaseModel):
    lead: LeadRead
    customer: CustomerRead


class TicketCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: TicketPriority = TicketPriority.MEDIUM
    customer_id: int
    assigned_to_id: int | None = None


class TicketUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assigned_to_id: int | None = None
    resolution: str | None = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    status: TicketStatus
    priority: TicketPriority
    customer_id: int
    assigned_to_id: int | None
    resolution: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime | None = None
    assigned_to_id: int | None = None
    lead_id: int | None = None
    customer_id: int | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
    assigned_to_id: int | None = None
    lead_id: int | None = None
    customer_id: int | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    status: TaskStatus
    priority: TaskPriority
    due_date: datetime | None
    assigned_to_id: int
    lead_id: int | None
    customer_id: int | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DashboardStats(BaseModel):
    """Counts over the records the caller may list; ``None`` where the role sees none."""

    total_leads: int | None
    converted_leads: int | None
    conversion_rate: float | None
    total_customers: int | None
    open_tickets: int | None
    pending_tasks: int | None

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gophercrm import audit, events
from gophercrm.core.errors import ConflictError, CoreError, NotFoundError
from gophercrm.crm.lifecycle import AlreadyConvertedError, LeadStatus, ensure_lead_convertible
from gophercrm.crm.models import Customer, Lead, utcnow
from gophercrm.crm.schemas import CustomerRead, LeadConvertRequest
from gophercrm.metrics import observe_lead_conversion
from gophercrm.platform.security.context import Actor
from gophercrm.platform.security.policies import Operation, PermissionEvaluator, ResourceType, default_evaluator


logger = logging.getLogger("gophercrm.crm.conversion")
tracer = trace.get_tracer("gophercrm.crm.conversion")

MERGED_FIELDS = ("first_name", "last_name", "email", "phone", "company")


@dataclass(frozen=True, slots=True)
class ConversionResult:
    lead: Lead
    customer: Customer


def merge_customer_fields(lead: Lead, overrides: LeadConvertRequest | None) -> dict[str, Any]:
    """Lead data with every non-blank override taking precedence."""

    values: dict[str, Any] = {name: getattr(lead, name) for name in MERGED_FIELDS}
    if overrides is None:
        return values
    for name in MERGED_FIELDS:
        override = getattr(overrides, name)
        if override is not None and str(override).strip():
            values[name] = str(override)
    values["address"] = overrides.address
    values["notes"] = overrides.notes
    return values


class LeadConversionService:
    """Turns a lead into a customer in a single transaction.

    The status flip is a conditional update guarded on ``status <> 'converted'``,
    so of two concurrent conversions of the same lead exactly one commits and
    the other observes zero affected rows.
    """

    def __init__(self, session: Session, evaluator: PermissionEvaluator = default_evaluator) -> None:
        self.session = session
        self.evaluator = evaluator

    def convert(self, actor: Actor, lead_id: int, overrides: LeadConvertRequest | None = None) -> ConversionResult:
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", lead_id)
            span.set_attribute("actor_id", actor.id)
            try:
                result = self._convert(actor, lead_id, overrides)
            except CoreError as exc:
                observe_lead_conversion(exc.code)
                span.set_attribute("outcome", exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                raise
            observe_lead_conversion("converted")
            span.set_attribute("outcome", "converted")
            span.set_attribute("customer_id", result.customer.id)
            return result

    def _convert(self, actor: Actor, lead_id: int, overrides: LeadConvertRequest | None) -> ConversionResult:
        lead = self.session.scalar(select(Lead).where(Lead.id == lead_id, Lead.deleted_at.is_(None)))
        if lead is None:
            raise NotFoundError("lead not found")
        self.evaluator.authorize(actor, ResourceType.LEAD, Operation.CONVERT, record=lead)
        ensure_lead_convertible(lead.status)

        before = {"status": lead.status, "customer_id": None}
        customer = Customer(**merge_customer_fields(lead, overrides))
        self.session.add(customer)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            self._raise_if_converted(lead_id)
            raise ConflictError("a customer with this email already exists") from exc

        converted_at = utcnow()
        result = self.session.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.status != LeadStatus.CONVERTED.value,
                Lead.deleted_at.is_(None),
            )
            .values(status=LeadStatus.CONVERTED.value, customer_id=customer.id, converted_at=converted_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            logger.info("crm.lead.conversion_lost_race", extra={"lead_id": lead_id, "actor_id": actor.id})
            raise AlreadyConvertedError()

        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            self._raise_if_converted(lead_id)
            raise ConflictError("lead conversion conflict") from exc

        self.session.refresh(lead)
        self.session.refresh(customer)
        customer_snapshot = CustomerRead.model_validate(customer).model_dump(mode="json")
        audit.record(
            actor_user_id=actor.id,
            entity_type="lead",
            entity_id=lead.id,
            action="convert",
            before=before,
            after={"status": lead.status, "customer_id": customer.id},
        )
        audit.record(
            actor_user_id=actor.id,
            entity_type="customer",
            entity_id=customer.id,
            action="create",
            before=None,
            after=customer_snapshot,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                actor.id,
                {"lead_id": lead.id, "customer_id": customer.id, "owner_id": lead.owner_id},
            )
        )
        logger.info(
            "crm.lead.converted",
            extra={"actor_id": actor.id, "lead_id": lead.id, "customer_id": customer.id},
        )
        return ConversionResult(lead=lead, customer=customer)

    def _raise_if_converted(self, lead_id: int) -> None:
        current = self.session.scalar(
            select(Lead.status).where(Lead.id == lead_id).execution_options(populate_existing=True)
        )
        if current == LeadStatus.CONVERTED:
            raise AlreadyConvertedError()

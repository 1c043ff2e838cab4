from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from gophercrm import audit
from gophercrm.core.errors import CoreError, NotFoundError
from gophercrm.metrics import observe_authz_denial
from gophercrm.platform.security.context import Actor, Role
from gophercrm.platform.security.errors import (
    ForbiddenError,
    LeadOwnerRequiredError,
    SelfDeletionForbiddenError,
)


logger = logging.getLogger("gophercrm.authz")


class ResourceType(StrEnum):
    USER = "user"
    LEAD = "lead"
    CUSTOMER = "customer"
    TICKET = "ticket"
    TASK = "task"
    API_KEY = "api_key"
    CONFIGURATION = "configuration"


class Operation(StrEnum):
    LIST = "list"
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONVERT = "convert"


class Access(StrEnum):
    ANY = "any"
    OWN = "own"
    NONE = "none"


class DecisionOutcome(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


COLLECTION_OPERATIONS = frozenset({Operation.LIST, Operation.CREATE})

# Refused with Forbidden, never NotFound, when the role has no access at all.
# CONVERT acts on a lead the caller already addressed by id.
FORBIDDEN_WHEN_UNGRANTED = COLLECTION_OPERATIONS | {Operation.CONVERT}

_CRUD = (Operation.LIST, Operation.GET, Operation.CREATE, Operation.UPDATE, Operation.DELETE)

SUPPORTED_OPERATIONS: Mapping[ResourceType, frozenset[Operation]] = MappingProxyType(
    {
        ResourceType.USER: frozenset(_CRUD),
        ResourceType.LEAD: frozenset((*_CRUD, Operation.CONVERT)),
        ResourceType.CUSTOMER: frozenset(_CRUD),
        ResourceType.TICKET: frozenset(_CRUD),
        ResourceType.TASK: frozenset(_CRUD),
        ResourceType.API_KEY: frozenset({Operation.LIST, Operation.CREATE, Operation.DELETE}),
        ResourceType.CONFIGURATION: frozenset({Operation.LIST, Operation.GET, Operation.UPDATE}),
    }
)

# Field compared against the actor id when a rule grants OWN access.
OWNERSHIP_FIELDS: Mapping[ResourceType, str | None] = MappingProxyType(
    {
        ResourceType.USER: "id",
        ResourceType.LEAD: "owner_id",
        ResourceType.CUSTOMER: None,
        ResourceType.TICKET: "assigned_to_id",
        ResourceType.TASK: "assigned_to_id",
        ResourceType.API_KEY: "user_id",
        ResourceType.CONFIGURATION: None,
    }
)

# Fields only an admin may change on an existing record.
ADMIN_ONLY_FIELDS: Mapping[ResourceType, tuple[str, ...]] = MappingProxyType(
    {
        ResourceType.USER: ("role", "is_active"),
        ResourceType.LEAD: ("owner_id",),
        ResourceType.TASK: ("assigned_to_id",),
    }
)


def _row(resource: ResourceType, default: Access = Access.NONE, **grants: Access) -> Mapping[Operation, Access]:
    supported = SUPPORTED_OPERATIONS[resource]
    row = {operation: default for operation in supported}
    for name, access in grants.items():
        operation = Operation(name)
        if operation not in supported:
            raise ValueError(f"{operation} is not an operation of {resource}")
        row[operation] = access
    if Access.OWN in row.values() and OWNERSHIP_FIELDS[resource] is None:
        raise ValueError(f"{resource} has no ownership field")
    return MappingProxyType(row)


PolicyTable = Mapping[Role, Mapping[ResourceType, Mapping[Operation, Access]]]

POLICY_TABLE: PolicyTable = MappingProxyType(
    {
        Role.ADMIN: MappingProxyType({resource: _row(resource, Access.ANY) for resource in ResourceType}),
        Role.SALES: MappingProxyType(
            {
                ResourceType.USER: _row(ResourceType.USER, get=Access.OWN, update=Access.OWN),
                ResourceType.LEAD: _row(ResourceType.LEAD, Access.OWN),
                ResourceType.CUSTOMER: _row(ResourceType.CUSTOMER, Access.ANY, delete=Access.NONE),
                ResourceType.TICKET: _row(ResourceType.TICKET, list=Access.ANY, get=Access.ANY, update=Access.ANY),
                ResourceType.TASK: _row(ResourceType.TASK, Access.OWN, delete=Access.NONE),
                ResourceType.API_KEY: _row(ResourceType.API_KEY, Access.OWN),
                ResourceType.CONFIGURATION: _row(ResourceType.CONFIGURATION),
            }
        ),
        Role.SUPPORT: MappingProxyType(
            {
                ResourceType.USER: _row(ResourceType.USER, get=Access.OWN, update=Access.OWN),
                ResourceType.LEAD: _row(ResourceType.LEAD),
                ResourceType.CUSTOMER: _row(
                    ResourceType.CUSTOMER, list=Access.ANY, get=Access.ANY, update=Access.ANY
                ),
                ResourceType.TICKET: _row(
                    ResourceType.TICKET, list=Access.OWN, get=Access.OWN, update=Access.OWN, create=Access.ANY
                ),
                ResourceType.TASK: _row(ResourceType.TASK, Access.OWN, delete=Access.NONE),
                ResourceType.API_KEY: _row(ResourceType.API_KEY, Access.OWN),
                ResourceType.CONFIGURATION: _row(ResourceType.CONFIGURATION),
            }
        ),
        Role.CUSTOMER: MappingProxyType(
            {
                ResourceType.USER: _row(ResourceType.USER, get=Access.OWN, update=Access.OWN),
                ResourceType.LEAD: _row(ResourceType.LEAD),
                ResourceType.CUSTOMER: _row(ResourceType.CUSTOMER),
                ResourceType.TICKET: _row(ResourceType.TICKET),
                ResourceType.TASK: _row(ResourceType.TASK, list=Access.OWN, get=Access.OWN, update=Access.OWN),
                ResourceType.API_KEY: _row(ResourceType.API_KEY, Access.OWN),
                ResourceType.CONFIGURATION: _row(ResourceType.CONFIGURATION),
            }
        ),
    }
)


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of one policy evaluation.

    ``scope_owner_id`` is set on an allowed LIST when the actor may only see
    records whose ownership field equals that id.
    """

    outcome: DecisionOutcome
    reason: str = ""
    error: type[CoreError] | None = None
    scope_owner_id: int | None = None

    @classmethod
    def allow(cls, scope_owner_id: int | None = None) -> Decision:
        return cls(DecisionOutcome.ALLOW, scope_owner_id=scope_owner_id)

    @classmethod
    def deny(cls, reason: str, error: type[CoreError] = ForbiddenError) -> Decision:
        return cls(DecisionOutcome.DENY, reason=reason, error=error)

    @classmethod
    def not_found(cls, reason: str) -> Decision:
        return cls(DecisionOutcome.NOT_FOUND, reason=reason, error=NotFoundError)

    @classmethod
    def invalid(cls, reason: str, error: type[CoreError]) -> Decision:
        return cls(DecisionOutcome.INVALID, reason=reason, error=error)

    @property
    def allowed(self) -> bool:
        return self.outcome is DecisionOutcome.ALLOW

    @property
    def code(self) -> str:
        return "allowed" if self.error is None else self.error.code

    def enforce(self) -> None:
        if self.allowed:
            return
        raise (self.error or ForbiddenError)()


def _field(record: Any, name: str) -> Any:
    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


class PermissionEvaluator:
    def __init__(self, table: PolicyTable = POLICY_TABLE) -> None:
        self.table = table

    def access_for(self, role: Role, resource: ResourceType, operation: Operation) -> Access | None:
        return self.table[role][resource].get(operation)

    def evaluate(
        self,
        actor: Actor,
        resource: ResourceType,
        operation: Operation,
        record: Any = None,
        changes: Mapping[str, Any] | None = None,
    ) -> Decision:
        """Decide whether ``actor`` may perform ``operation`` on ``record``.

        ``record`` is the stored row (or a mapping of the prospective row for
        CREATE); ``changes`` holds the fields an UPDATE intends to set. The
        function is pure and total.
        """

        access = self.access_for(actor.role, resource, operation)
        if access is None:
            return Decision.deny(f"{operation} is not supported on {resource}")

        if resource is ResourceType.USER and operation is Operation.DELETE and _field(record, "id") == actor.id:
            return Decision.deny("cannot delete own account", SelfDeletionForbiddenError)

        if access is Access.NONE:
            if operation not in FORBIDDEN_WHEN_UNGRANTED and self.access_for(actor.role, resource, Operation.GET) is Access.NONE:
                return Decision.not_found(f"{resource} not found")
            return Decision.deny(f"{actor.role} may not {operation} {resource}")

        if operation is Operation.CREATE:
            return self._evaluate_create(actor, resource, access, record)

        if operation is Operation.LIST:
            if access is Access.OWN:
                return Decision.allow(scope_owner_id=actor.id)
            return Decision.allow()

        if record is None:
            return Decision.not_found(f"{resource} not found")

        if access is Access.OWN:
            owner_field = OWNERSHIP_FIELDS[resource]
            if owner_field is None or _field(record, owner_field) != actor.id:
                return Decision.deny(f"{resource} is not owned by or assigned to actor")

        if operation is Operation.UPDATE and changes and not actor.is_admin:
            for name in ADMIN_ONLY_FIELDS.get(resource, ()):
                if name in changes and changes[name] is not None and changes[name] != _field(record, name):
                    return Decision.deny(f"only admins can change {resource} {name}")

        return Decision.allow()

    def _evaluate_create(self, actor: Actor, resource: ResourceType, access: Access, record: Any) -> Decision:
        owner_field = OWNERSHIP_FIELDS[resource]
        requested_owner = _field(record, owner_field) if owner_field else None

        if resource is ResourceType.LEAD and actor.is_admin and requested_owner is None:
            return Decision.invalid("admin must set owner_id explicitly", LeadOwnerRequiredError)

        # A missing owner on the prospective record defaults to the actor.
        if access is Access.OWN and requested_owner is not None and requested_owner != actor.id:
            return Decision.deny(f"cannot assign {resource} to another user")

        return Decision.allow()

    def authorize(
        self,
        actor: Actor,
        resource: ResourceType,
        operation: Operation,
        record: Any = None,
        changes: Mapping[str, Any] | None = None,
    ) -> Decision:
        """Evaluate and raise the decision's error unless it allows the call."""

        decision = self.evaluate(actor, resource, operation, record=record, changes=changes)
        if not decision.allowed:
            self._emit_denial(actor, resource, operation, record, decision)
        decision.enforce()
        return decision

    def list_scope(self, actor: Actor, resource: ResourceType) -> int | None:
        """Authorize LIST and return the owner id the listing must be filtered by, if any."""

        return self.authorize(actor, resource, Operation.LIST).scope_owner_id

    def _emit_denial(
        self,
        actor: Actor,
        resource: ResourceType,
        operation: Operation,
        record: Any,
        decision: Decision,
    ) -> None:
        observe_authz_denial(resource=resource.value, operation=operation.value, outcome=decision.outcome.value)
        logger.info(
            "authz.denied",
            extra={
                "actor_id": actor.id,
                "role": actor.role.value,
                "resource": resource.value,
                "operation": operation.value,
                "outcome": decision.outcome.value,
                "reason": decision.reason,
            },
        )
        record_id = _field(record, "id")
        audit.record(
            actor_user_id=actor.id,
            entity_type=resource.value,
            entity_id=record_id if record_id is not None else "-",
            action="authz.denied",
            before=None,
            after={"operation": operation.value, "outcome": decision.outcome.value, "reason": decision.reason},
        )


default_evaluator = PermissionEvaluator()


def evaluate(
    actor: Actor,
    resource: ResourceType,
    operation: Operation,
    record: Any = None,
    changes: Mapping[str, Any] | None = None,
) -> Decision:
    return default_evaluator.evaluate(actor, resource, operation, record=record, changes=changes)


def authorize(
    actor: Actor,
    resource: ResourceType,
    operation: Operation,
    record: Any = None,
    changes: Mapping[str, Any] | None = None,
) -> Decision:
    return default_evaluator.authorize(actor, resource, operation, record=record, changes=changes)

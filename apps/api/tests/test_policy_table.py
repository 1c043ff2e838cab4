from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest

from gophercrm import audit
from gophercrm.core.errors import NotFoundError
from gophercrm.platform.security import (
    POLICY_TABLE,
    Actor,
    Decision,
    DecisionOutcome,
    ForbiddenError,
    Operation,
    ResourceType,
    Role,
    authorize,
    evaluate,
)


ACTOR_ID = 7
OTHER_ID = 999

OPS = (Operation.LIST, Operation.GET, Operation.CREATE, Operation.UPDATE, Operation.DELETE, Operation.CONVERT)

# Per role and resource, one entry per operation in OPS order.
# "any": always allowed; "own": allowed only for the actor's own record;
# "none": refused; "-": the resource has no such operation.
EXPECTED: dict[Role, dict[ResourceType, tuple[str, ...]]] = {
    Role.ADMIN: {
        ResourceType.USER: ("any", "any", "any", "any", "any", "-"),
        ResourceType.LEAD: ("any", "any", "any", "any", "any", "any"),
        ResourceType.CUSTOMER: ("any", "any", "any", "any", "any", "-"),
        ResourceType.TICKET: ("any", "any", "any", "any", "any", "-"),
        ResourceType.TASK: ("any", "any", "any", "any", "any", "-"),
        ResourceType.API_KEY: ("any", "-", "any", "-", "any", "-"),
        ResourceType.CONFIGURATION: ("any", "any", "-", "any", "-", "-"),
    },
    Role.SALES: {
        ResourceType.USER: ("none", "own", "none", "own", "none", "-"),
        ResourceType.LEAD: ("own", "own", "own", "own", "own", "own"),
        ResourceType.CUSTOMER: ("any", "any", "any", "any", "none", "-"),
        ResourceType.TICKET: ("any", "any", "none", "any", "none", "-"),
        ResourceType.TASK: ("own", "own", "own", "own", "none", "-"),
        ResourceType.API_KEY: ("own", "-", "own", "-", "own", "-"),
        ResourceType.CONFIGURATION: ("none", "none", "-", "none", "-", "-"),
    },
    Role.SUPPORT: {
        ResourceType.USER: ("none", "own", "none", "own", "none", "-"),
        ResourceType.LEAD: ("none", "none", "none", "none", "none", "none"),
        ResourceType.CUSTOMER: ("any", "any", "none", "any", "none", "-"),
        ResourceType.TICKET: ("own", "own", "any", "own", "none", "-"),
        ResourceType.TASK: ("own", "own", "own", "own", "none", "-"),
        ResourceType.API_KEY: ("own", "-", "own", "-", "own", "-"),
        ResourceType.CONFIGURATION: ("none", "none", "-", "none", "-", "-"),
    },
    Role.CUSTOMER: {
        ResourceType.USER: ("none", "own", "none", "own", "none", "-"),
        ResourceType.LEAD: ("none", "none", "none", "none", "none", "none"),
        ResourceType.CUSTOMER: ("none", "none", "none", "none", "none", "-"),
        ResourceType.TICKET: ("none", "none", "none", "none", "none", "-"),
        ResourceType.TASK: ("own", "own", "none", "own", "none", "-"),
        ResourceType.API_KEY: ("own", "-", "own", "-", "own", "-"),
        ResourceType.CONFIGURATION: ("none", "none", "-", "none", "-", "-"),
    },
}

OWNER_FIELD = {
    ResourceType.USER: "id",
    ResourceType.LEAD: "owner_id",
    ResourceType.CUSTOMER: None,
    ResourceType.TICKET: "assigned_to_id",
    ResourceType.TASK: "assigned_to_id",
    ResourceType.API_KEY: "user_id",
    ResourceType.CONFIGURATION: None,
}


def _record(resource: ResourceType, owner_id: int) -> dict[str, Any]:
    field = OWNER_FIELD[resource]
    if resource is ResourceType.USER:
        return {"id": owner_id}
    record: dict[str, Any] = {"id": 500}
    if field is not None:
        record[field] = owner_id
    return record


def _expected_outcome(role: Role, resource: ResourceType, index: int, own: bool) -> DecisionOutcome:
    access = EXPECTED[role][resource][index]
    operation = OPS[index]
    if access == "-":
        return DecisionOutcome.DENY
    if access == "any":
        return DecisionOutcome.ALLOW
    if access == "own":
        return DecisionOutcome.ALLOW if own else DecisionOutcome.DENY
    if operation in (Operation.LIST, Operation.CREATE, Operation.CONVERT):
        return DecisionOutcome.DENY
    get_access = EXPECTED[role][resource][OPS.index(Operation.GET)]
    return DecisionOutcome.NOT_FOUND if get_access in ("none", "-") else DecisionOutcome.DENY


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


def test_table_covers_every_role_and_resource() -> None:
    assert set(POLICY_TABLE) == set(Role)
    for role in Role:
        assert set(POLICY_TABLE[role]) == set(ResourceType)


@pytest.mark.parametrize("role", list(Role))
@pytest.mark.parametrize("resource", list(ResourceType))
@pytest.mark.parametrize("index", range(len(OPS)))
def test_every_combination_matches_table(role: Role, resource: ResourceType, index: int) -> None:
    actor = Actor(id=ACTOR_ID, role=role)
    operation = OPS[index]

    own_record = _record(resource, ACTOR_ID)
    foreign_record = _record(resource, OTHER_ID)
    if operation is Operation.LIST:
        own_record = foreign_record = None

    if not (resource is ResourceType.USER and operation is Operation.DELETE):
        own_decision = evaluate(actor, resource, operation, record=own_record)
        assert own_decision.outcome is _expected_outcome(role, resource, index, own=True), (role, resource, operation)

    foreign_decision = evaluate(actor, resource, operation, record=foreign_record)
    expected_foreign = _expected_outcome(role, resource, index, own=operation is Operation.LIST)
    assert foreign_decision.outcome is expected_foreign, (role, resource, operation)


@pytest.mark.parametrize("role", list(Role))
def test_self_deletion_is_forbidden_for_every_role(role: Role) -> None:
    decision = evaluate(Actor(id=ACTOR_ID, role=role), ResourceType.USER, Operation.DELETE, record={"id": ACTOR_ID})
    assert decision.outcome is DecisionOutcome.DENY
    assert decision.code == "self_deletion_forbidden"


def test_owned_list_returns_scope_and_admin_list_is_unscoped() -> None:
    sales = Actor(id=ACTOR_ID, role=Role.SALES)
    admin = Actor(id=1, role=Role.ADMIN)

    assert evaluate(sales, ResourceType.LEAD, Operation.LIST).scope_owner_id == ACTOR_ID
    assert evaluate(admin, ResourceType.LEAD, Operation.LIST).scope_owner_id is None
    assert evaluate(sales, ResourceType.CUSTOMER, Operation.LIST).scope_owner_id is None


def test_roles_without_visibility_get_not_found_while_others_get_forbidden() -> None:
    support = Actor(id=ACTOR_ID, role=Role.SUPPORT)
    customer = Actor(id=ACTOR_ID, role=Role.CUSTOMER)
    sales = Actor(id=ACTOR_ID, role=Role.SALES)

    foreign_lead = {"id": 3, "owner_id": OTHER_ID}
    assert evaluate(support, ResourceType.LEAD, Operation.GET, record=foreign_lead).outcome is DecisionOutcome.NOT_FOUND
    assert evaluate(support, ResourceType.LEAD, Operation.CONVERT, record=foreign_lead).outcome is DecisionOutcome.DENY
    assert evaluate(customer, ResourceType.TICKET, Operation.GET, record={"id": 4}).outcome is DecisionOutcome.NOT_FOUND
    assert evaluate(sales, ResourceType.LEAD, Operation.GET, record=foreign_lead).outcome is DecisionOutcome.DENY

    unassigned_ticket = {"id": 7, "assigned_to_id": None}
    assert evaluate(support, ResourceType.TICKET, Operation.UPDATE, record=unassigned_ticket).outcome is DecisionOutcome.DENY


def test_record_bound_operation_without_record_is_not_found() -> None:
    decision = evaluate(Actor(id=1, role=Role.ADMIN), ResourceType.TICKET, Operation.GET, record=None)
    assert decision.outcome is DecisionOutcome.NOT_FOUND


def test_admin_only_fields_on_update() -> None:
    sales = Actor(id=ACTOR_ID, role=Role.SALES)
    admin = Actor(id=1, role=Role.ADMIN)
    own_lead = {"id": 3, "owner_id": ACTOR_ID}
    own_profile = {"id": ACTOR_ID, "role": "sales", "is_active": True}

    assert evaluate(sales, ResourceType.LEAD, Operation.UPDATE, own_lead, {"owner_id": OTHER_ID}).outcome is DecisionOutcome.DENY
    assert evaluate(sales, ResourceType.LEAD, Operation.UPDATE, own_lead, {"owner_id": ACTOR_ID}).allowed
    assert evaluate(admin, ResourceType.LEAD, Operation.UPDATE, own_lead, {"owner_id": OTHER_ID}).allowed
    assert evaluate(sales, ResourceType.USER, Operation.UPDATE, own_profile, {"role": "admin"}).outcome is DecisionOutcome.DENY
    assert evaluate(sales, ResourceType.USER, Operation.UPDATE, own_profile, {"is_active": False}).outcome is DecisionOutcome.DENY
    assert evaluate(sales, ResourceType.USER, Operation.UPDATE, own_profile, {"first_name": "Sam"}).allowed


def test_authorize_raises_mapped_errors_and_records_denials() -> None:
    sales = Actor(id=ACTOR_ID, role=Role.SALES)
    support = Actor(id=ACTOR_ID, role=Role.SUPPORT)

    with pytest.raises(ForbiddenError):
        authorize(sales, ResourceType.LEAD, Operation.DELETE, record={"id": 11, "owner_id": OTHER_ID})
    with pytest.raises(NotFoundError):
        authorize(support, ResourceType.LEAD, Operation.GET, record={"id": 12, "owner_id": OTHER_ID})

    denials = audit.entries_for("lead", action="authz.denied")
    assert [entry["entity_id"] for entry in denials] == ["11", "12"]
    assert denials[0]["after"]["outcome"] == "deny"
    assert denials[1]["after"]["outcome"] == "not_found"


def test_authorize_allowed_call_leaves_no_audit_trail() -> None:
    decision = authorize(Actor(id=1, role=Role.ADMIN), ResourceType.CUSTOMER, Operation.DELETE, record={"id": 3})
    assert decision.allowed
    assert audit.audit_entries == []


def test_refusal_without_mapped_error_still_raises_forbidden() -> None:
    with pytest.raises(ForbiddenError):
        Decision(DecisionOutcome.DENY, reason="unmapped").enforce()
    Decision.allow().enforce()

from __future__ import annotations

from collections.abc import Callable, Generator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gophercrm import audit, events
from gophercrm.configuration.defaults import DEFAULT_CONFIGURATIONS
from gophercrm.configuration.service import ConfigurationService
from gophercrm.core.config import get_settings
from gophercrm.core.database import Base, get_db
from gophercrm.identity.models import User
from gophercrm.identity.service import TokenService
from gophercrm.main import app
from gophercrm.metrics import resolve_http_path_label
from gophercrm.platform.security import Role


API = "/api/v1"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "api-test-secret")
    monkeypatch.setenv("API_KEY_PEPPER", "api-test-pepper")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session: Session) -> Callable[[str, Role], tuple[User, dict[str, str]]]:
    def _make(email: str, role: Role) -> tuple[User, dict[str, str]]:
        user = User(
            email=email,
            password_hash="not-a-real-hash",
            first_name="Test",
            last_name="User",
            role=role.value,
            is_active=True,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        token, _ = TokenService.from_settings().generate(user.id, user.email, role)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


def test_register_login_and_profile(client: TestClient) -> None:
    registered = client.post(
        f"{API}/auth/register",
        json={"email": "kim@example.com", "password": "long-enough", "first_name": "Kim", "last_name": "Lee"},
    )
    assert registered.status_code == 201
    assert registered.json()["role"] == "customer"

    login = client.post(f"{API}/auth/login", json={"email": "kim@example.com", "password": "long-enough"})
    assert login.status_code == 200
    body = login.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "kim@example.com"

    headers = {"Authorization": f"Bearer {body['token']}"}
    me = client.get(f"{API}/users/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["id"] == registered.json()["id"]

    renamed = client.put(f"{API}/users/me", json={"first_name": "Kimberly"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["first_name"] == "Kimberly"

    bad_login = client.post(f"{API}/auth/login", json={"email": "kim@example.com", "password": "nope"})
    assert bad_login.status_code == 401
    assert bad_login.json()["code"] == "invalid_credentials"


def test_missing_and_invalid_credentials_are_401(client: TestClient) -> None:
    missing = client.get(f"{API}/users/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "missing_credentials"
    assert missing.headers.get("www-authenticate") == "Bearer"

    forged = client.get(f"{API}/users/me", headers={"Authorization": "Bearer not.a.token"})
    assert forged.status_code == 401
    assert forged.json()["code"] == "token_invalid"

    unknown_key = client.get(f"{API}/users/me", headers={"X-API-Key": "gcrm_deadbeef"})
    assert unknown_key.status_code == 401
    assert unknown_key.json()["code"] == "api_key_invalid"


def test_api_key_lifecycle_over_http(client: TestClient, make_user: Callable[[str, Role], tuple[User, dict[str, str]]]) -> None:
    user, headers = make_user("sam@example.com", Role.SALES)

    created = client.post(f"{API}/api-keys", json={"name": "ci"}, headers=headers)
    assert created.status_code == 201
    raw_key = created.json()["key"]
    key_id = created.json()["id"]

    via_scheme = client.get(f"{API}/users/me", headers={"Authorization": f"ApiKey {raw_key}"})
    assert via_scheme.status_code == 200
    assert via_scheme.json()["id"] == user.id
    via_header = client.get(f"{API}/users/me", headers={"X-API-Key": raw_key})
    assert via_header.status_code == 200

    listed = client.get(f"{API}/api-keys", headers=headers)
    assert [item["id"] for item in listed.json()] == [key_id]
    assert "key" not in listed.json()[0]

    assert client.delete(f"{API}/api-keys/{key_id}", headers=headers).status_code == 204
    revoked = client.get(f"{API}/users/me", headers={"X-API-Key": raw_key})
    assert revoked.status_code == 401
    assert revoked.json()["code"] == "api_key_invalid"


def test_error_envelope_codes(client: TestClient, make_user: Callable[[str, Role], tuple[User, dict[str, str]]]) -> None:
    _, admin = make_user("root@example.com", Role.ADMIN)
    sales_user, sales = make_user("sam@example.com", Role.SALES)
    other_user, _ = make_user("sue@example.com", Role.SALES)
    _, support = make_user("pat@example.com", Role.SUPPORT)
    lead_body = {"first_name": "Jane", "last_name": "Roe", "email": "jane@acme.com"}

    forbidden = client.post(f"{API}/leads", json={**lead_body, "owner_id": other_user.id}, headers=sales)
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden"

    owner_required = client.post(f"{API}/leads", json=lead_body, headers=admin)
    assert owner_required.status_code == 400
    assert owner_required.json()["code"] == "lead_owner_required"

    lead = client.post(f"{API}/leads", json=lead_body, headers=sales)
    assert lead.status_code == 201
    assert lead.json()["owner_id"] == sales_user.id

    hidden = client.get(f"{API}/leads/{lead.json()['id']}", headers=support)
    assert hidden.status_code == 404
    assert hidden.json()["code"] == "not_found"

    self_delete = client.delete(f"{API}/users/{sales_user.id}", headers=sales)
    assert self_delete.status_code == 403
    assert self_delete.json()["code"] == "self_deletion_forbidden"

    duplicate = client.post(
        f"{API}/auth/register",
        json={"email": "sam@example.com", "password": "long-enough", "first_name": "Sam", "last_name": "Again"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"


def test_correlation_id_in_header_envelope_and_audit(
    client: TestClient,
    make_user: Callable[[str, Role], tuple[User, dict[str, str]]],
) -> None:
    _, sales = make_user("sam@example.com", Role.SALES)

    generated = client.get(f"{API}/leads/999", headers=sales)
    assert generated.status_code == 404
    assert generated.headers.get("x-correlation-id")
    assert generated.json()["correlation_id"] == generated.headers["x-correlation-id"]

    provided = client.post(
        f"{API}/leads",
        json={"first_name": "Jane", "last_name": "Roe", "email": "jane@acme.com"},
        headers={**sales, "X-Correlation-Id": "corr-lead-1"},
    )
    assert provided.status_code == 201
    assert provided.headers.get("x-correlation-id") == "corr-lead-1"
    assert audit.entries_for("lead", action="create")[-1]["correlation_id"] == "corr-lead-1"
    created_events = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created_events[-1]["correlation_id"] == "corr-lead-1"


def test_convert_endpoint(client: TestClient, make_user: Callable[[str, Role], tuple[User, dict[str, str]]]) -> None:
    _, sales = make_user("sam@example.com", Role.SALES)
    lead = client.post(
        f"{API}/leads",
        json={"first_name": "Jane", "last_name": "Roe", "email": "jane@acme.com", "company": "Acme", "status": "qualified"},
        headers=sales,
    ).json()

    converted = client.post(f"{API}/leads/{lead['id']}/convert", headers=sales)
    assert converted.status_code == 200
    body = converted.json()
    assert body["lead"]["status"] == "converted"
    assert body["lead"]["customer_id"] == body["customer"]["id"]
    assert body["customer"]["company"] == "Acme"

    again = client.post(f"{API}/leads/{lead['id']}/convert", json={"company": "Other"}, headers=sales)
    assert again.status_code == 400
    assert again.json()["code"] == "already_converted"

    status_change = client.put(f"{API}/leads/{lead['id']}", json={"status": "new"}, headers=sales)
    assert status_change.status_code == 400
    assert status_change.json()["code"] == "invalid_transition"


def test_configuration_endpoints(
    client: TestClient,
    db_session: Session,
    make_user: Callable[[str, Role], tuple[User, dict[str, str]]],
) -> None:
    ConfigurationService(db_session).ensure_defaults()
    _, admin = make_user("root@example.com", Role.ADMIN)
    _, sales = make_user("sam@example.com", Role.SALES)

    listed = client.get(f"{API}/configurations", headers=admin)
    assert listed.status_code == 200
    assert len(listed.json()["configurations"]) == len(DEFAULT_CONFIGURATIONS)

    leads = client.get(f"{API}/configurations/category/leads", headers=admin)
    assert {item["category"] for item in leads.json()["configurations"]} == {"leads"}

    ui = client.get(f"{API}/configurations/ui", headers=sales)
    assert ui.status_code == 200
    assert "general.company_name" in [item["key"] for item in ui.json()["configurations"]]

    assert client.get(f"{API}/configurations", headers=sales).status_code == 403
    hidden = client.put(f"{API}/configurations/general.company_name", json={"value": "Nope"}, headers=sales)
    assert hidden.status_code == 404

    updated = client.put(f"{API}/configurations/general.company_name", json={"value": "Acme"}, headers=admin)
    assert updated.status_code == 200
    assert updated.json()["value"] == "Acme"

    rejected = client.put(f"{API}/configurations/security.session_timeout_hours", json={"value": 5}, headers=admin)
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "invalid_configuration_value"
    assert rejected.json()["details"]["rejected"] == [5]

    reset = client.post(f"{API}/configurations/general.company_name/reset", headers=admin)
    assert reset.status_code == 200
    assert reset.json()["value"] == "GopherCRM"
    assert client.get(f"{API}/configurations/general.company_name", headers=admin).json()["value"] == "GopherCRM"


def test_dashboard_and_my_work_endpoints(
    client: TestClient,
    make_user: Callable[[str, Role], tuple[User, dict[str, str]]],
) -> None:
    _, admin = make_user("root@example.com", Role.ADMIN)
    support_user, support = make_user("pat@example.com", Role.SUPPORT)
    client_user, customer_role = make_user("cat@example.com", Role.CUSTOMER)

    customer = client.post(
        f"{API}/customers",
        json={"first_name": "Cora", "last_name": "Client", "email": "cora@acme.com"},
        headers=admin,
    ).json()
    ticket = client.post(
        f"{API}/tickets",
        json={"title": "Broken login", "customer_id": customer["id"], "assigned_to_id": support_user.id},
        headers=admin,
    ).json()
    client.post(f"{API}/tickets", json={"title": "Admin's own", "customer_id": customer["id"]}, headers=admin)
    task = client.post(
        f"{API}/tasks",
        json={"title": "Confirm fix", "customer_id": customer["id"], "assigned_to_id": client_user.id},
        headers=admin,
    ).json()

    mine = client.get(f"{API}/tickets/my", headers=support)
    assert mine.status_code == 200
    assert [item["id"] for item in mine.json()] == [ticket["id"]]
    assert [item["id"] for item in client.get(f"{API}/tasks/my", headers=customer_role).json()] == [task["id"]]
    assert client.get(f"{API}/tickets/my", headers=customer_role).status_code == 403

    customer_tickets = client.get(f"{API}/customers/{customer['id']}/tickets", headers=admin)
    assert len(customer_tickets.json()) == 2
    scoped = client.get(f"{API}/customers/{customer['id']}/tickets", headers=support)
    assert [item["id"] for item in scoped.json()] == [ticket["id"]]
    assert client.get(f"{API}/customers/999/tickets", headers=admin).status_code == 404

    stats = client.get(f"{API}/dashboard/stats", headers=support)
    assert stats.status_code == 200
    assert stats.json() == {
        "total_leads": None,
        "converted_leads": None,
        "conversion_rate": None,
        "total_customers": 1,
        "open_tickets": 1,
        "pending_tasks": 0,
    }
    assert client.get(f"{API}/dashboard/stats", headers=customer_role).json()["pending_tasks"] == 1


def test_health(client: TestClient) -> None:
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "GopherCRM API"


def test_metrics_endpoint(
    client: TestClient,
    make_user: Callable[[str, Role], tuple[User, dict[str, str]]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _, admin = make_user("root@example.com", Role.ADMIN)
    _, sales = make_user("sam@example.com", Role.SALES)

    assert client.get(f"{API}/metrics", headers=admin).status_code == 404

    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    client.get(f"{API}/health")
    client.get(f"{API}/users/me")

    assert client.get(f"{API}/metrics", headers=sales).status_code == 403
    metrics = client.get(f"{API}/metrics", headers=admin)
    assert metrics.status_code == 200
    body = metrics.text
    assert "http_requests_total" in body
    assert "auth_failures_total" in body
    assert f'path="{API}/health"' in body
    assert 'kind="missing_credentials"' in body


def _request(path: str, template: str | None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "server": ("testserver", 80),
        "root_path": "",
        "path": path,
        "query_string": b"",
        "headers": [],
    }
    if template is not None:
        scope["route"] = SimpleNamespace(path_format=template)
    return Request(scope)


@pytest.mark.parametrize(
    ("path", "template", "expected"),
    [
        (f"{API}/leads/42", "/leads/{lead_id}", f"{API}/leads/{{id}}"),
        (f"{API}/leads/42", f"{API}/leads/{{lead_id}}", f"{API}/leads/{{id}}"),
        (f"{API}/health", "/health", f"{API}/health"),
        (f"{API}/nowhere/17", None, f"{API}/nowhere/{{id}}"),
    ],
)
def test_metrics_path_label_keeps_api_prefix(path: str, template: str | None, expected: str) -> None:
    assert resolve_http_path_label(_request(path, template)) == expected

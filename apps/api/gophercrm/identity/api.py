from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from gophercrm.context import set_actor_id
from gophercrm.core.database import get_db
from gophercrm.identity.schemas import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyRead,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from gophercrm.identity.service import APIKeyService, CredentialVerifier, UserService
from gophercrm.metrics import observe_auth_failure
from gophercrm.platform.security.context import Actor, Role
from gophercrm.platform.security.errors import MissingCredentialsError


auth_router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["users"])
api_keys_router = APIRouter(prefix="/api-keys", tags=["api_keys"])


def get_credential_verifier(db: Session = Depends(get_db)) -> CredentialVerifier:
    return CredentialVerifier(db)


def get_user_service(db: Session = Depends(get_db)) -> UserService:
    return UserService(db)


def get_api_key_service(db: Session = Depends(get_db)) -> APIKeyService:
    return APIKeyService(db)


async def get_current_actor(
    request: Request,
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
) -> Actor:
    """Resolve ``Authorization: Bearer <jwt>``, ``Authorization: ApiKey <key>`` or ``X-API-Key``."""

    scheme, _, credential = (authorization or "").strip().partition(" ")
    credential = credential.strip()
    if scheme.lower() == "bearer" and credential:
        actor = await run_in_threadpool(verifier.validate_token, credential)
    elif scheme.lower() == "apikey" and credential:
        actor = await run_in_threadpool(verifier.validate_api_key, credential)
    elif not authorization and x_api_key:
        actor = await run_in_threadpool(verifier.validate_api_key, x_api_key.strip())
    else:
        observe_auth_failure(MissingCredentialsError.code)
        raise MissingCredentialsError()
    request.state.actor = actor
    set_actor_id(actor.id)
    return actor


@auth_router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(dto: RegisterRequest, service: UserService = Depends(get_user_service)) -> UserRead:
    return UserRead.model_validate(service.register(dto))


@auth_router.post("/login", response_model=TokenResponse)
def login(dto: LoginRequest, verifier: CredentialVerifier = Depends(get_credential_verifier)) -> TokenResponse:
    result = verifier.login(str(dto.email), dto.password)
    return TokenResponse(
        token=result.token,
        expires_at=result.expires_at,
        user=UserRead.model_validate(result.user),
    )


@users_router.get("/me", response_model=UserRead)
def get_me(
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> UserRead:
    return UserRead.model_validate(service.get_me(actor))


@users_router.put("/me", response_model=UserRead)
def update_me(
    dto: ProfileUpdate,
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> UserRead:
    return UserRead.model_validate(service.update_me(actor, dto))


@users_router.get("", response_model=list[UserRead])
def list_users(
    role: Role | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> list[UserRead]:
    users = service.list_users(actor, role=role, offset=offset, limit=limit)
    return [UserRead.model_validate(user) for user in users]


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> UserRead:
    return UserRead.model_validate(service.create_user(actor, dto))


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> UserRead:
    return UserRead.model_validate(service.get_user(actor, user_id))


@users_router.put("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    dto: UserUpdate,
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> UserRead:
    return UserRead.model_validate(service.update_user(actor, user_id, dto))


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: int,
    actor: Actor = Depends(get_current_actor),
    service: UserService = Depends(get_user_service),
) -> Response:
    service.delete_user(actor, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@api_keys_router.post("", response_model=APIKeyCreated, status_code=status.HTTP_201_CREATED)
def create_api_key(
    dto: APIKeyCreate,
    actor: Actor = Depends(get_current_actor),
    service: APIKeyService = Depends(get_api_key_service),
) -> APIKeyCreated:
    raw_key, api_key = service.generate(actor, dto.name, dto.expires_at)
    return APIKeyCreated(key=raw_key, **APIKeyRead.model_validate(api_key).model_dump())


@api_keys_router.get("", response_model=list[APIKeyRead])
def list_api_keys(
    user_id: int | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    service: APIKeyService = Depends(get_api_key_service),
) -> list[APIKeyRead]:
    return [APIKeyRead.model_validate(api_key) for api_key in service.list_keys(actor, user_id=user_id)]


@api_keys_router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_api_key(
    key_id: int,
    actor: Actor = Depends(get_current_actor),
    service: APIKeyService = Depends(get_api_key_service),
) -> Response:
    service.revoke(actor, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

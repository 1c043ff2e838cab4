from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, NoReturn

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from gophercrm import audit, events
from gophercrm.core.config import Settings, get_settings
from gophercrm.core.errors import ConflictError, InvalidRequestError, NotFoundError
from gophercrm.identity.models import APIKey, User, utcnow
from gophercrm.identity.passwords import dummy_verify, hash_password, verify_password
from gophercrm.identity.schemas import (
    APIKeyRead,
    ProfileUpdate,
    RegisterRequest,
    UserCreate,
    UserRead,
    UserUpdate,
)
from gophercrm.metrics import observe_auth_failure, observe_best_effort_failure
from gophercrm.platform.security.context import Actor, Role
from gophercrm.platform.security.errors import (
    AccountDisabledError,
    APIKeyExpiredError,
    APIKeyInvalidError,
    AuthenticationError,
    InvalidCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
)
from gophercrm.platform.security.policies import Operation, PermissionEvaluator, ResourceType, default_evaluator


logger = logging.getLogger("gophercrm.auth")

API_KEY_RANDOM_BYTES = 32
API_KEY_DISPLAY_LENGTH = 8


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TokenService:
    """Issues and validates HMAC-signed JWTs carrying user_id, email, role and exp."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> TokenService:
        settings = settings or get_settings()
        return cls(
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl=timedelta(hours=settings.jwt_expiry_hours),
        )

    def generate(self, user_id: int, email: str, role: Role) -> tuple[str, datetime]:
        expires_at = self._clock() + self.ttl
        claims = {
            "user_id": user_id,
            "email": email,
            "role": role.value,
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(claims, self._secret, algorithm=self.algorithm), expires_at

    def validate(self, token: str) -> Actor:
        # jose verifies the signature before it looks at exp, so a forged
        # expired token is reported as invalid rather than expired. A token
        # without exp never expires and is refused as invalid.
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require_exp": True},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc

        user_id = claims.get("user_id")
        if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
            raise TokenInvalidError("token is missing a valid user_id claim")
        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise TokenInvalidError("token carries an unknown role") from exc
        return Actor(id=user_id, role=role)


def hash_api_key(raw_key: str, pepper: str, prefix: str = "gcrm_") -> str:
    if not raw_key.startswith(prefix):
        raise ValueError("API key does not carry the expected prefix")
    body = raw_key[len(prefix):]
    return hmac.new(pepper.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def new_api_key(prefix: str = "gcrm_") -> str:
    return prefix + secrets.token_hex(API_KEY_RANDOM_BYTES)


@dataclass(frozen=True, slots=True)
class LoginResult:
    token: str
    expires_at: datetime
    user: User


class CredentialVerifier:
    """Turns login credentials, bearer tokens and API keys into an Actor."""

    def __init__(self, session: Session, tokens: TokenService | None = None, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.tokens = tokens or TokenService.from_settings(self.settings)

    def login(self, email: str, password: str) -> LoginResult:
        user = self.session.scalar(
            select(User).where(User.email == normalize_email(email), User.deleted_at.is_(None))
        )
        if user is None:
            dummy_verify()
            self._fail(InvalidCredentialsError(), reason="unknown_email")
        if not verify_password(password, user.password_hash):
            self._fail(InvalidCredentialsError(), reason="bad_password", user_id=user.id)
        if not user.is_active:
            self._fail(AccountDisabledError(), reason="account_disabled", user_id=user.id)

        user_id, user_email, role = user.id, user.email, Role(user.role)
        self._best_effort(
            update(User).where(User.id == user_id).values(last_login_at=utcnow()),
            kind="last_login",
            user_id=user_id,
        )
        token, expires_at = self.tokens.generate(user_id, user_email, role)
        logger.info("auth.login_succeeded", extra={"user_id": user_id, "role": role.value})
        return LoginResult(token=token, expires_at=expires_at, user=user)

    def validate_token(self, token: str) -> Actor:
        try:
            return self.tokens.validate(token)
        except AuthenticationError as exc:
            observe_auth_failure(exc.code)
            raise

    def validate_api_key(self, raw_key: str) -> Actor:
        if not raw_key.startswith(self.settings.api_key_display_prefix):
            self._fail(APIKeyInvalidError(), reason="malformed")
        key_hash = hash_api_key(raw_key, self.settings.api_key_pepper, self.settings.api_key_display_prefix)
        row = self.session.execute(
            select(APIKey, User).join(User, User.id == APIKey.user_id).where(APIKey.key_hash == key_hash)
        ).first()
        if row is None:
            self._fail(APIKeyInvalidError(), reason="unknown_key")
        api_key, user = row
        if not api_key.is_active:
            self._fail(APIKeyInvalidError(), reason="revoked", api_key_id=api_key.id)
        if not user.is_active or user.deleted_at is not None:
            self._fail(APIKeyInvalidError(), reason="owner_disabled", api_key_id=api_key.id)
        if api_key.expires_at is not None and as_utc(api_key.expires_at) <= utcnow():
            self._fail(APIKeyExpiredError(), reason="expired", api_key_id=api_key.id)

        actor = Actor(id=user.id, role=Role(user.role))
        self._best_effort(
            update(APIKey).where(APIKey.id == api_key.id).values(last_used_at=utcnow()),
            kind="api_key_last_used",
            api_key_id=api_key.id,
        )
        return actor

    def _fail(self, error: AuthenticationError, *, reason: str, **fields: Any) -> NoReturn:
        observe_auth_failure(error.code)
        logger.warning("auth.rejected", extra={"kind": error.code, "reason": reason, **fields})
        raise error

    def _best_effort(self, statement: Any, *, kind: str, **fields: Any) -> None:
        try:
            self.session.execute(statement)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            observe_best_effort_failure(kind)
            logger.warning(
                "auth.best_effort_write_failed",
                extra={"kind": kind, "error": str(exc)[:500], **fields},
            )


def _user_snapshot(user: User) -> dict[str, Any]:
    return UserRead.model_validate(user).model_dump(mode="json")


def _commit_or_conflict(session: Session, message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message) from exc


class UserService:
    entity_type = "user"

    def __init__(self, session: Session, evaluator: PermissionEvaluator = default_evaluator) -> None:
        self.session = session
        self.evaluator = evaluator

    def register(self, dto: RegisterRequest) -> User:
        """Public self-registration; always yields a customer account."""

        user = self._insert(
            email=str(dto.email),
            password=dto.password,
            first_name=dto.first_name,
            last_name=dto.last_name,
            role=Role.CUSTOMER,
            is_active=True,
        )
        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="register",
            before=None,
            after=_user_snapshot(user),
        )
        events.publish(events.build_envelope("identity.user.registered", user.id, {"user_id": user.id}))
        return user

    def create_user(self, actor: Actor, dto: UserCreate) -> User:
        self.evaluator.authorize(actor, ResourceType.USER, Operation.CREATE)
        user = self._insert(
            email=str(dto.email),
            password=dto.password,
            first_name=dto.first_name,
            last_name=dto.last_name,
            role=dto.role,
            is_active=dto.is_active,
        )
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="create",
            before=None,
            after=_user_snapshot(user),
        )
        events.publish(
            events.build_envelope("identity.user.created", actor.id, {"user_id": user.id, "role": user.role})
        )
        return user

    def list_users(
        self,
        actor: Actor,
        *,
        role: Role | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[User]:
        self.evaluator.list_scope(actor, ResourceType.USER)
        stmt: Select[tuple[User]] = select(User).where(User.deleted_at.is_(None))
        if role is not None:
            stmt = stmt.where(User.role == role.value)
        stmt = stmt.order_by(User.id).offset(offset).limit(limit)
        return list(self.session.scalars(stmt))

    def get_user(self, actor: Actor, user_id: int) -> User:
        user = self._load(user_id)
        self.evaluator.authorize(actor, ResourceType.USER, Operation.GET, record=user)
        return user

    def update_user(self, actor: Actor, user_id: int, dto: UserUpdate) -> User:
        user = self._load(user_id)
        changes = dto.model_dump(exclude_unset=True)
        self.evaluator.authorize(actor, ResourceType.USER, Operation.UPDATE, record=user, changes=changes)
        return self._apply_update(actor, user, changes)

    def delete_user(self, actor: Actor, user_id: int) -> None:
        user = self._load(user_id)
        self.evaluator.authorize(actor, ResourceType.USER, Operation.DELETE, record=user)
        before = _user_snapshot(user)
        now = utcnow()
        user.deleted_at = now
        user.is_active = False
        self.session.execute(update(APIKey).where(APIKey.user_id == user.id).values(is_active=False))
        self.session.commit()
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="delete",
            before=before,
            after=None,
        )
        events.publish(events.build_envelope("identity.user.deleted", actor.id, {"user_id": user.id}))

    def get_me(self, actor: Actor) -> User:
        return self._load(actor.id)

    def update_me(self, actor: Actor, dto: ProfileUpdate) -> User:
        user = self._load(actor.id)
        return self._apply_update(actor, user, dto.model_dump(exclude_unset=True))

    def _load(self, user_id: int) -> User:
        user = self.session.scalar(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _ensure_email_available(self, email: str, *, exclude_user_id: int | None = None) -> None:
        stmt = select(User.id).where(User.email == email)
        if exclude_user_id is not None:
            stmt = stmt.where(User.id != exclude_user_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("email already registered")

    def _insert(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role,
        is_active: bool,
    ) -> User:
        email = normalize_email(email)
        self._ensure_email_available(email)
        user = User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=role.value,
            is_active=is_active,
        )
        self.session.add(user)
        _commit_or_conflict(self.session, "email already registered")
        self.session.refresh(user)
        return user

    def _apply_update(self, actor: Actor, user: User, changes: dict[str, Any]) -> User:
        before = _user_snapshot(user)
        if changes.get("email") is not None:
            email = normalize_email(str(changes["email"]))
            self._ensure_email_available(email, exclude_user_id=user.id)
            user.email = email
        if changes.get("password") is not None:
            user.password_hash = hash_password(changes["password"])
        for name in ("first_name", "last_name", "is_active"):
            if changes.get(name) is not None:
                setattr(user, name, changes[name])
        if changes.get("role") is not None:
            user.role = Role(changes["role"]).value
        _commit_or_conflict(self.session, "email already registered")
        self.session.refresh(user)

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="update",
            before=before,
            after=_user_snapshot(user),
        )
        events.publish(
            events.build_envelope(
                "identity.user.updated",
                actor.id,
                {"user_id": user.id, "changed_fields": sorted(name for name in changes if name != "password")},
            )
        )
        return user


class APIKeyService:
    entity_type = "api_key"

    def __init__(
        self,
        session: Session,
        settings: Settings | None = None,
        evaluator: PermissionEvaluator = default_evaluator,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.evaluator = evaluator

    def generate(
        self,
        actor: Actor,
        name: str,
        expires_at: datetime | None = None,
        *,
        user_id: int | None = None,
    ) -> tuple[str, APIKey]:
        """Create a key and return ``(raw_key, record)``; the raw key is never stored."""

        owner_id = actor.id if user_id is None else user_id
        self.evaluator.authorize(actor, ResourceType.API_KEY, Operation.CREATE, record={"user_id": owner_id})
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise InvalidRequestError("expires_at must be in the future")
        owner = self.session.scalar(select(User).where(User.id == owner_id, User.deleted_at.is_(None)))
        if owner is None or not owner.is_active:
            raise InvalidRequestError("API keys can only be issued to active users")

        prefix = self.settings.api_key_display_prefix
        raw_key = new_api_key(prefix)
        api_key = APIKey(
            user_id=owner_id,
            name=name,
            key_hash=hash_api_key(raw_key, self.settings.api_key_pepper, prefix),
            prefix=raw_key[:API_KEY_DISPLAY_LENGTH],
            is_active=True,
            expires_at=as_utc(expires_at) if expires_at is not None else None,
        )
        self.session.add(api_key)
        self.session.commit()
        self.session.refresh(api_key)

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=api_key.id,
            action="create",
            before=None,
            after=APIKeyRead.model_validate(api_key).model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "identity.api_key.created", actor.id, {"api_key_id": api_key.id, "user_id": owner_id}
            )
        )
        return raw_key, api_key

    def list_keys(self, actor: Actor, user_id: int | None = None) -> list[APIKey]:
        scope_owner_id = self.evaluator.list_scope(actor, ResourceType.API_KEY)
        owner_id = scope_owner_id if scope_owner_id is not None else user_id
        stmt: Select[tuple[APIKey]] = select(APIKey)
        if owner_id is not None:
            stmt = stmt.where(APIKey.user_id == owner_id)
        return list(self.session.scalars(stmt.order_by(APIKey.id)))

    def revoke(self, actor: Actor, key_id: int) -> APIKey:
        api_key = self.session.get(APIKey, key_id)
        if api_key is None:
            raise NotFoundError("API key not found")
        self.evaluator.authorize(actor, ResourceType.API_KEY, Operation.DELETE, record=api_key)
        was_active = api_key.is_active
        api_key.is_active = False
        self.session.commit()
        self.session.refresh(api_key)

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=api_key.id,
            action="revoke",
            before={"is_active": was_active},
            after={"is_active": False},
        )
        events.publish(
            events.build_envelope(
                "identity.api_key.revoked", actor.id, {"api_key_id": api_key.id, "user_id": api_key.user_id}
            )
        )
        return api_key

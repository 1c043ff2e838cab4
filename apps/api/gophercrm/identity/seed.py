from __future__ import annotations

import argparse
import getpass
import logging
import os

from sqlalchemy import select
from sqlalchemy.orm import Session

from gophercrm import audit
from gophercrm.core.errors import ConflictError
from gophercrm.identity.models import User
from gophercrm.identity.passwords import hash_password
from gophercrm.identity.service import normalize_email
from gophercrm.platform.security.context import Role


logger = logging.getLogger("gophercrm.identity.seed")


class AdminSeedHelper:
    """Bootstraps the first administrator account."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_admin(
        self,
        email: str,
        password: str,
        first_name: str = "Admin",
        last_name: str = "User",
    ) -> tuple[User, bool]:
        email = normalize_email(email)
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing is not None:
            if existing.role != Role.ADMIN.value or existing.deleted_at is not None:
                raise ConflictError("a non-admin account already uses this email")
            logger.info("identity.admin_exists", extra={"user_id": existing.id})
            return existing, False

        user = User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=Role.ADMIN.value,
            is_active=True,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        audit.record(
            actor_user_id=user.id,
            entity_type="user",
            entity_id=user.id,
            action="seed_admin",
            before=None,
            after={"email": user.email, "role": user.role},
        )
        logger.info("identity.admin_created", extra={"user_id": user.id})
        return user, True


def main(argv: list[str] | None = None) -> int:
    from gophercrm.configuration.service import ConfigurationService
    from gophercrm.core.database import Base, SessionLocal, engine
    from gophercrm.logging import configure_logging

    import gophercrm.models  # noqa: F401

    configure_logging()
    parser = argparse.ArgumentParser(description="Create the first GopherCRM administrator.")
    parser.add_argument("--email", required=True)
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument("--create-schema", action="store_true", help="create missing tables first")
    args = parser.parse_args(argv)

    password = os.getenv("GOPHERCRM_ADMIN_PASSWORD") or getpass.getpass("Admin password: ")
    if args.create_schema:
        Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        user, created = AdminSeedHelper(session).ensure_admin(args.email, password, args.first_name, args.last_name)
        user_id, user_email = user.id, user.email
        seeded = ConfigurationService(session).ensure_defaults()
    print(f"admin {'created' if created else 'already present'}: id={user_id} email={user_email}")
    print(f"default configurations added: {seeded}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    SALES = "sales"
    SUPPORT = "support"
    CUSTOMER = "customer"


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated identity attached to a request.

    Built by the credential verifier from a token or API key; the permission
    evaluator only ever sees this pair, never the raw credential.
    """

    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

from __future__ import annotations

from gophercrm.core.errors import CoreError, InvalidRequestError


class AuthenticationError(CoreError):
    """Base authentication error; every kind surfaces as 401 at the boundary."""

    code = "unauthenticated"
    status_code = 401
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    code = "invalid_credentials"
    default_message = "invalid email or password"


class AccountDisabledError(AuthenticationError):
    code = "account_disabled"
    default_message = "account is disabled"


class TokenInvalidError(AuthenticationError):
    code = "token_invalid"
    default_message = "invalid token"


class TokenExpiredError(AuthenticationError):
    code = "token_expired"
    default_message = "token has expired"


class APIKeyInvalidError(AuthenticationError):
    code = "api_key_invalid"
    default_message = "invalid API key"


class APIKeyExpiredError(AuthenticationError):
    code = "api_key_expired"
    default_message = "API key has expired"


class MissingCredentialsError(AuthenticationError):
    code = "missing_credentials"
    default_message = "authorization header required"


class AuthorizationError(CoreError):
    """Base authorization error for policy enforcement failures."""

    code = "forbidden"
    status_code = 403
    default_message = "forbidden"


class ForbiddenError(AuthorizationError):
    pass


class SelfDeletionForbiddenError(AuthorizationError):
    code = "self_deletion_forbidden"
    default_message = "cannot delete your own account"


class LeadOwnerRequiredError(InvalidRequestError):
    code = "lead_owner_required"
    default_message = "owner_id is required when an admin creates a lead"

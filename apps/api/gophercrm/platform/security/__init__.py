from gophercrm.platform.security.context import Actor, Role
from gophercrm.platform.security.errors import (
    AccountDisabledError,
    APIKeyExpiredError,
    APIKeyInvalidError,
    AuthenticationError,
    AuthorizationError,
    ForbiddenError,
    InvalidCredentialsError,
    LeadOwnerRequiredError,
    MissingCredentialsError,
    SelfDeletionForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
)
from gophercrm.platform.security.policies import (
    POLICY_TABLE,
    Access,
    Decision,
    DecisionOutcome,
    Operation,
    PermissionEvaluator,
    ResourceType,
    authorize,
    default_evaluator,
    evaluate,
)

__all__ = [
    "Actor",
    "Role",
    "AuthenticationError",
    "AuthorizationError",
    "InvalidCredentialsError",
    "AccountDisabledError",
    "TokenInvalidError",
    "TokenExpiredError",
    "APIKeyInvalidError",
    "APIKeyExpiredError",
    "MissingCredentialsError",
    "ForbiddenError",
    "SelfDeletionForbiddenError",
    "LeadOwnerRequiredError",
    "POLICY_TABLE",
    "Access",
    "Decision",
    "DecisionOutcome",
    "Operation",
    "PermissionEvaluator",
    "ResourceType",
    "authorize",
    "default_evaluator",
    "evaluate",
]

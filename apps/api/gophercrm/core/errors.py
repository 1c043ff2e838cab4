from __future__ import annotations

from typing import Any


class CoreError(Exception):
    """Base class for every decision the core reports back to its caller.

    ``code`` is the stable machine-readable kind; ``status_code`` is the hint
    the HTTP layer uses when translating the error into a response.
    """

    code = "core_error"
    status_code = 400
    default_message = "request could not be processed"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class InvalidRequestError(CoreError):
    code = "invalid_request"
    default_message = "invalid request"


class InvalidReferenceError(InvalidRequestError):
    """A referenced user, customer or lead is missing or not eligible."""

    code = "invalid_reference"
    default_message = "referenced record is not valid for this operation"


class NotFoundError(CoreError):
    code = "not_found"
    status_code = 404
    default_message = "not found"


class ConflictError(CoreError):
    code = "conflict"
    status_code = 409
    default_message = "conflicting record already exists"

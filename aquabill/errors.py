"""Error taxonomy shared by every billing and tenancy operation.

Each error carries a stable ``kind`` string that callers switch on, and the
HTTP status the API layer answers with. The message is for humans only.
"""
from typing import Optional


class BillingError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(BillingError):
    """Bad input shape or range, e.g. a reading below the previous one."""
    kind = "validation_error"
    status_code = 422


class NotFoundError(BillingError):
    kind = "not_found"
    status_code = 404


class ConflictError(BillingError):
    """The operation would violate a state invariant."""
    kind = "conflict"
    status_code = 409


class OccupiedError(ConflictError):
    kind = "flat_occupied"


class AuthorizationError(BillingError):
    kind = "forbidden"
    status_code = 403


class ConsistencyError(BillingError):
    """A parent entity that must exist is missing. Never swallowed."""
    kind = "consistency_error"
    status_code = 500


class ExternalError(BillingError):
    """A collaborator (payment gateway, file storage) failed."""
    kind = "external_error"
    status_code = 502

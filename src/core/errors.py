from typing import Any

from fastapi import status


class AccessError(Exception):
    """Base class for every failure the access core reports to its callers.

    Each subclass pins a machine-readable ``code`` and the HTTP status the
    presentation layer maps it to. Routers never build these responses by hand;
    the exception handler registered in ``src.app.main`` does.
    """

    code: str = "access_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "The request could not be completed."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidProfile(AccessError):
    code = "invalid_profile"
    default_message = "The identity provider did not return an email address."


class IdentityProviderError(AccessError):
    code = "identity_provider_error"
    default_message = "Authentication failed"


class DirectoryLookupError(AccessError):
    code = "directory_lookup_error"
    default_message = "Your organization could not be found. Please contact the administrator."


class NotFound(AccessError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class RequestNotFound(NotFound):
    default_message = "Permission request not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class BranchNotFound(NotFound):
    default_message = "Branch not found"


class RoleNotFound(NotFound):
    default_message = "Role not found"


class NoActiveUser(AccessError):
    code = "no_active_user"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "User session not found"


class Forbidden(AccessError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class InvalidStatus(AccessError):
    code = "invalid_status"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid status"


class Conflict(AccessError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class TransactionFailure(AccessError):
    code = "transaction_failure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "The operation could not be completed. No changes were saved."

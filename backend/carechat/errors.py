"""Error taxonomy shared by the messaging core, identity layer and transports.

Every failure the core reports is a ``ChatError`` subclass. The ``code`` is the
stable name sent to clients (REST ``code`` field, WebSocket ``error`` frame),
``status_code`` is used by the REST exception handler, and ``retryable`` marks
the only class of failure a caller may reasonably retry.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all errors raised by the conversation core."""

    code: str = "ChatError"
    status_code: int = 400
    retryable: bool = False
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class AuthenticationRequired(ChatError):
    code = "AuthenticationRequired"
    status_code = 401
    default_message = "Authentication token required"


class InvalidCredential(ChatError):
    code = "InvalidCredential"
    status_code = 401
    default_message = "Invalid authentication token"


class CredentialExpired(InvalidCredential):
    code = "Expired"
    default_message = "Authentication token has expired"


class IdentityProviderUnavailable(ChatError):
    code = "NetworkError"
    status_code = 503
    retryable = True
    default_message = "Identity provider is unreachable"


class UserNotFound(ChatError):
    code = "UserNotFound"
    status_code = 401
    default_message = "User not found in database"


class AccessDenied(ChatError):
    code = "AccessDenied"
    status_code = 403
    default_message = "Access denied"


class NotFound(ChatError):
    code = "NotFound"
    status_code = 404
    default_message = "Not found"


class InvalidReference(NotFound):
    code = "InvalidReference"
    default_message = "Reply message not found"


class Blocked(ChatError):
    code = "Blocked"
    status_code = 403
    default_message = "Conversation is blocked"


class InvalidOperation(ChatError):
    code = "InvalidOperation"
    status_code = 400
    default_message = "Operation not allowed"


class ValidationFailed(ChatError):
    code = "ValidationFailed"
    status_code = 422
    default_message = "Invalid payload"


class TransientStoreError(ChatError):
    code = "TransientStoreError"
    status_code = 503
    retryable = True
    default_message = "Storage temporarily unavailable, please retry"

"""
Error taxonomy for the console.

Store failures are converted to typed outcomes by the mutation gateway and to a
terminal error state by live queries. Client-side gates raise NotAllowedError
before anything reaches the store.
"""
from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


class AuthFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid-credential"
    USER_DISABLED = "user-disabled"
    USER_NOT_FOUND = "user-not-found"
    UNKNOWN = "unknown"


class ConsoleError(Exception):
    """Base exception for all console errors"""

    def __init__(
        self,
        message: str,
        code: str = "CONSOLE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class StoreError(ConsoleError):
    """A document store read or write failed"""

    def __init__(self, kind: FailureKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value, code=kind.value)

    @property
    def denied(self) -> bool:
        return self.kind is FailureKind.PERMISSION_DENIED


_AUTH_MESSAGES = {
    AuthFailure.INVALID_CREDENTIALS: "Invalid email or password",
    AuthFailure.USER_DISABLED: "This account has been disabled",
    AuthFailure.USER_NOT_FOUND: "No account found with this email",
}


class AuthenticationError(ConsoleError):
    """Sign-in was rejected by the identity provider"""

    def __init__(self, kind: AuthFailure, message: str = ""):
        self.kind = kind
        super().__init__(message or _AUTH_MESSAGES.get(kind, "Failed to login. Please try again."), code=kind.value)

    @property
    def user_message(self) -> str:
        return _AUTH_MESSAGES.get(self.kind, self.message)


class NotAllowedError(ConsoleError):
    """A client-side gate refused the action before any store call"""

    def __init__(self, message: str = "You are not allowed to do that."):
        super().__init__(message, code="NOT_ALLOWED")


class SubjectInUseError(NotAllowedError):
    def __init__(self, subject_id: str, task_count: int):
        super().__init__(
            f"Cannot delete this subject. It has {task_count} task(s) associated with it."
        )
        self.details = {"subject_id": subject_id, "task_count": task_count}


class StorageUnavailableError(ConsoleError):
    def __init__(self, message: str = "File storage is not configured."):
        super().__init__(message, code="STORAGE_UNAVAILABLE")


class ConfigurationError(ConsoleError):
    def __init__(self, message: str):
        super().__init__(message, code="CONFIGURATION_ERROR")

"""
Typed failures raised by the order, payment and stock engines.

Every engine call either returns its value or raises exactly one
`ServiceError`. The `code` is stable and machine-readable; `kind` tells the
caller whether retrying can help:

- validation: malformed input, retry is useless
- state: missing object or wrong lifecycle state, retry is useless
- policy: rate limit / limits / CSRF, retry later (or never)
- system: store unavailable, retry now with backoff
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    validation = "validation"
    state = "state"
    policy = "policy"
    system = "system"


class ServiceError(Exception):
    kind: ErrorKind = ErrorKind.validation
    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.retry_after = retry_after
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.code,
            "kind": self.kind.value,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(ServiceError):
    kind = ErrorKind.validation
    status_code = 400


class NotFound(ServiceError):
    kind = ErrorKind.state
    status_code = 404


class InvalidState(ServiceError):
    kind = ErrorKind.state
    status_code = 409


class PolicyViolation(ServiceError):
    kind = ErrorKind.policy
    status_code = 403


class RateLimited(PolicyViolation):
    status_code = 429


class StoreUnavailable(ServiceError):
    kind = ErrorKind.system
    status_code = 500

    def __init__(self, message: str = "Data store unavailable, please retry"):
        super().__init__("store_unavailable", message)

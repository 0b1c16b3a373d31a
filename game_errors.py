from __future__ import annotations


class PhraseotomyError(Exception):
    """Base error raised by the authorized game procedures."""

    kind = "validation"
    default_code = "phraseotomy_error"

    def __init__(self, message: str, status_code: int = 400, code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.code = code or self.default_code


class ValidationError(PhraseotomyError):
    kind = "validation"
    default_code = "invalid_request"

    def __init__(self, message: str, code: str = ""):
        super().__init__(message, 400, code)


class AuthorizationError(PhraseotomyError):
    kind = "authorization"
    default_code = "not_allowed"

    def __init__(self, message: str, code: str = ""):
        super().__init__(message, 403, code)


class NotFoundError(PhraseotomyError):
    kind = "terminal"
    default_code = "not_found"

    def __init__(self, message: str, code: str = ""):
        super().__init__(message, 404, code)


class ConflictError(PhraseotomyError):
    kind = "conflict"
    default_code = "conflict"

    def __init__(self, message: str, code: str = ""):
        super().__init__(message, 409, code)


ERROR_KIND_BY_STATUS = {
    400: "validation",
    401: "authorization",
    403: "authorization",
    404: "terminal",
    409: "conflict",
    410: "terminal",
}


def error_kind_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "transient"
    return ERROR_KIND_BY_STATUS.get(int(status_code), "validation")


class GameApiError(Exception):
    """Client-side view of a failed procedure call or feed poll."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        code: str = "",
        kind: str = "transient",
        details=None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code or "unknown_error"
        self.kind = kind
        self.details = details if details is not None else {}

    @property
    def is_transient(self) -> bool:
        return self.kind == "transient"

    @property
    def is_terminal(self) -> bool:
        return self.kind == "terminal"


class SnapshotValidationError(ValueError):
    """Raised when a snapshot payload does not have the expected shape."""

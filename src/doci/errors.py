"""Error taxonomy shared by the services, the API and the CLI.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
API maps it to. Messages are meant for users and never include storage-layer
details.
"""

from __future__ import annotations


class DociError(Exception):
    """Base class for every error the registry reports to callers."""

    kind = "Error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.kind

    def to_payload(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class NotFound(DociError):
    """Resource absent, or present but not visible to the caller."""

    kind = "NotFound"
    status_code = 404

    @classmethod
    def default_message(cls) -> str:
        return "Identifier not found"


class ValidationError(DociError):
    """Malformed or incomplete input; never retried."""

    kind = "ValidationError"
    status_code = 400


class DuplicateCode(DociError):
    """The composite code is already registered."""

    kind = "DuplicateCode"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Composite code already registered"


class Conflict(DociError):
    """The record changed between read and write."""

    kind = "Conflict"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Identifier was changed concurrently, reload and retry"


class Unauthorized(DociError):
    """The caller is not allowed to act on the resource."""

    kind = "Unauthorized"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "Caller is not authorized for this resource"


class InternalError(DociError):
    """Storage or external dependency failure, distinct from NotFound."""

    kind = "InternalError"
    status_code = 500

    @classmethod
    def default_message(cls) -> str:
        return "The request could not be completed"

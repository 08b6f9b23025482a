from __future__ import annotations

from typing import Any


class ChatError(RuntimeError):
    status_code = 500
    error = "Server error"

    def __init__(self, detail: Any = None) -> None:
        self.detail = detail if detail is not None else self.error
        super().__init__(str(self.detail))


class Unauthorized(ChatError):
    status_code = 401
    error = "Unauthorized"


class Forbidden(ChatError):
    status_code = 403
    error = "Forbidden"


class NotFound(ChatError):
    # Also used when a resource exists but belongs to someone else.
    status_code = 404
    error = "Not found"


class ValidationError(ChatError):
    status_code = 400
    error = "Validation error"


class UpstreamUnavailable(ChatError):
    status_code = 502
    error = "AI provider unavailable"


class StorageError(ChatError):
    status_code = 500
    error = "Storage error"

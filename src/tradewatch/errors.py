"""Error classification shared by the store, ingest and web layers."""

from __future__ import annotations


class TradewatchError(Exception):
    """Base error; ``status`` and ``code`` drive the HTTP response."""

    status = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(TradewatchError):
    status = 400
    code = "invalid_request"


class NotFoundError(TradewatchError):
    status = 404
    code = "not_found"


class StoreError(TradewatchError):
    """Database failure; the failed transaction has been rolled back."""

    status = 500
    code = "store_failure"

from typing import Optional


class IngestError(Exception):
    """Error that maps onto a caller-visible HTTP response."""

    status_code = 500

    def __init__(self, error: str, message: Optional[str] = None, details: Optional[str] = None):
        self.error = error
        self.message = message
        self.details = details
        super().__init__(message or error)

    def to_body(self, request_id: Optional[str]) -> dict:
        body: dict = {"error": self.error}
        if self.message:
            body["message"] = self.message
        if self.details:
            body["details"] = self.details
        body["requestId"] = request_id
        return body


class BadRequestError(IngestError):
    status_code = 400


class UnauthorizedError(IngestError):
    status_code = 401


class MethodNotAllowedError(IngestError):
    status_code = 405


class StoreError(IngestError):
    """Store read/write failed while creating or updating; safe to retry."""

    status_code = 500

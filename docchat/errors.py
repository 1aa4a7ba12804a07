"""API error type and the JSON envelope used by account and chat endpoints."""
from typing import Any, Optional


class ApiError(Exception):
    """An error that maps directly onto an HTTP response."""

    def __init__(self, status_code: int, message: str = "Something went wrong"):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def to_dict(self) -> dict:
        return {
            "statusCode": self.status_code,
            "data": None,
            "message": self.message,
            "success": False,
        }


def api_response(data: Any, message: str = "Success", status_code: int = 200) -> dict:
    """Build the success envelope: {statusCode, data, message, success}."""
    return {
        "statusCode": status_code,
        "data": data,
        "message": message,
        "success": status_code < 400,
    }


def first_validation_message(error: Exception) -> Optional[str]:
    """Pull a readable message out of a pydantic ValidationError."""
    errors = getattr(error, "errors", None)
    if not callable(errors):
        return None
    details = errors()
    if not details:
        return None
    detail = details[0]
    field = ".".join(str(part) for part in detail.get("loc", ()))
    message = detail.get("msg", "Invalid value")
    return f"{field}: {message}" if field else message

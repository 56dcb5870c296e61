from __future__ import annotations

from typing import Any, Optional


class BookingPlatformError(Exception):
    """Base class for every failure surfaced by the booking client."""

    code = "booking_error"
    status_code = 500
    user_message = "Something went wrong while talking to the booking service."
    retryable = False

    def __init__(self, message: str = "", *, status: Optional[int] = None, payload: Any = None) -> None:
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.status = status
        self.payload = payload

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message, "detail": self.message}


class TransportError(BookingPlatformError):
    code = "transport_error"
    status_code = 503
    user_message = "The booking service could not be reached. Please try again."
    retryable = True


class AuthError(BookingPlatformError):
    code = "auth_error"
    status_code = 401
    user_message = "Your session has expired. Please sign in again."


class ValidationError(BookingPlatformError):
    code = "validation_error"
    status_code = 400
    user_message = "The request was rejected as invalid."


class IneligibleMethodError(ValidationError):
    code = "ineligible_method"
    status_code = 422
    user_message = "That booking method is not available for this session."


class DuplicateSubmissionError(ValidationError):
    code = "duplicate_submission"
    status_code = 409
    user_message = "A booking for this session is already being processed."


class DomainConflict(BookingPlatformError):
    code = "domain_conflict"
    status_code = 409
    user_message = "The booking could not be completed because your membership changed."


class InstrumentExhausted(DomainConflict):
    code = "instrument_exhausted"
    user_message = "This membership has no remaining credits or visits for the period."


class SessionFull(DomainConflict):
    code = "session_full"
    user_message = "This session is fully booked."


class SessionClosed(DomainConflict):
    code = "session_closed"
    user_message = "This session is no longer open for booking."


class AlreadyBooked(DomainConflict):
    code = "already_booked"
    user_message = "You have already booked this session."


class NotFoundError(BookingPlatformError):
    code = "not_found"
    status_code = 404
    user_message = "The requested item no longer exists."


def describe_error(error: Any) -> str:
    """Return a user-facing message for anything raised or returned as an error."""
    if isinstance(error, BookingPlatformError):
        return error.user_message
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        for key in ("message", "details", "error", "msg", "description", "reason"):
            value = error.get(key)
            if isinstance(value, str) and value:
                code = error.get("code")
                if isinstance(code, str) and key == "message":
                    return f"Error {code}: {value}"
                return value
            if isinstance(value, dict):
                return describe_error(value)
        return "An unknown error occurred"
    message = str(error) if error is not None else ""
    return message or "An unknown error occurred"

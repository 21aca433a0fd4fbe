"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Admission errors (2xxx)
    UNSUPPORTED_CHANNEL = "ERR_2001"
    PAYLOAD_TOO_LARGE = "ERR_2002"
    IDEMPOTENCY_CONFLICT = "ERR_2003"
    MESSAGE_NOT_FOUND = "ERR_2004"

    # Dead letter errors (3xxx)
    DEAD_LETTER_NOT_FOUND = "ERR_3001"
    DEAD_LETTER_REPLAY_CONFLICT = "ERR_3002"

    # Webhook errors (4xxx)
    WEBHOOK_SIGNATURE_INVALID = "ERR_4001"
    WEBHOOK_PAYLOAD_INVALID = "ERR_4002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class AdmissionException(AppException):
    """Base exception for errors raised while admitting a message"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 400,
        channel: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if channel:
            self.details["channel"] = channel


class UnsupportedChannelError(AdmissionException):
    """Raised when a flight plan names a channel the dispatcher does not serve"""

    def __init__(self, channel: str, supported: tuple[str, ...]):
        super().__init__(
            message=f"Unsupported channel: {channel}",
            error_code=ErrorCode.UNSUPPORTED_CHANNEL,
            channel=channel,
            details={"supported": list(supported)}
        )


class PayloadTooLargeError(AdmissionException):
    """Raised when the serialized payload exceeds the configured maximum"""

    def __init__(self, size: int, max_size: int, channel: str | None = None):
        super().__init__(
            message=f"Payload exceeds maximum size of {max_size} bytes",
            error_code=ErrorCode.PAYLOAD_TOO_LARGE,
            status_code=413,
            channel=channel,
            details={"size": size, "max_size": max_size}
        )


class IdempotencyConflictError(AdmissionException):
    """Raised when a concurrent admission holds the key but its row never became visible"""

    def __init__(self, idempotency_key: str, attempts: int):
        super().__init__(
            message=f"Could not admit message for idempotency key after {attempts} attempts",
            error_code=ErrorCode.IDEMPOTENCY_CONFLICT,
            status_code=409,
            details={"idempotency_key": idempotency_key, "attempts": attempts}
        )


class MessageNotFoundError(NotFoundException):
    """Raised when an outbound message does not exist"""

    def __init__(self, message_id: str):
        super().__init__(
            resource="Message",
            identifier=message_id,
            error_code=ErrorCode.MESSAGE_NOT_FOUND
        )


class DeadLetterNotFoundError(NotFoundException):
    """Raised when a dead-letter entry does not exist"""

    def __init__(self, entry_id: str):
        super().__init__(
            resource="Dead letter entry",
            identifier=entry_id,
            error_code=ErrorCode.DEAD_LETTER_NOT_FOUND
        )


class WebhookSignatureError(AppException):
    """Raised when a provider callback fails signature or timestamp validation"""

    def __init__(self, provider: str, reason: str):
        super().__init__(
            message=f"Invalid {provider} webhook signature",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            status_code=403,
            details={"provider": provider, "reason": reason}
        )


class DeadLetterReplayConflictError(AppException):
    """Raised when the message behind a dead-letter entry is in flight or already succeeded"""

    def __init__(self, entry_id: str, message_id: str, status: str):
        super().__init__(
            message=f"Message {message_id} is {status} and cannot be replayed",
            error_code=ErrorCode.DEAD_LETTER_REPLAY_CONFLICT,
            status_code=409,
            details={"entry_id": entry_id, "message_id": message_id, "status": status}
        )

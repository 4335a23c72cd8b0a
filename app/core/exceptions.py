from fastapi import Request
from fastapi.responses import JSONResponse


class PromptForgeError(Exception):
    """Base exception for PromptForge API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class AuthenticationError(PromptForgeError):
    def __init__(self, message: str = "Invalid or missing API key.", details: dict | None = None):
        super().__init__(code="authentication_required", message=message, status=401, details=details)


class NotFoundError(PromptForgeError):
    """Resource is absent or not owned by the caller (never distinguished)."""

    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class InvalidCodeError(PromptForgeError):
    def __init__(self, message: str = "Invalid confirmation code.", details: dict | None = None):
        super().__init__(
            code="invalid_confirmation_code",
            message=message,
            status=400,
            details=details or {"retryable": True},
        )


class IntegrityError(PromptForgeError):
    """Decryption failed: wrong password or tampered payload."""

    def __init__(
        self,
        message: str = "Decryption failed: wrong password or corrupted data.",
        details: dict | None = None,
    ):
        super().__init__(code="integrity_error", message=message, status=400, details=details)


class UpstreamError(PromptForgeError):
    def __init__(self, message: str = "Upstream service failed.", details: dict | None = None):
        super().__init__(
            code="upstream_failure",
            message=message,
            status=502,
            details=details or {"retryable": True},
        )


class ValidationError(PromptForgeError):
    def __init__(self, message: str = "Invalid request.", details: dict | None = None):
        super().__init__(code="validation_error", message=message, status=422, details=details)


class ConflictError(PromptForgeError):
    def __init__(self, message: str = "Invalid status transition.", details: dict | None = None):
        super().__init__(code="invalid_status_transition", message=message, status=409, details=details)


async def promptforge_error_handler(request: Request, exc: PromptForgeError) -> JSONResponse:
    """Global exception handler for PromptForgeError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())

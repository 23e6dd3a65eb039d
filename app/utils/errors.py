import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class SchedulerError(Exception):
    """
    Base for errors that map onto an error envelope.

    Subclasses set the HTTP status, the `error_type` reported in meta and the
    log level the handler uses. `response_code` replaces `error_code` in the
    envelope when the detailed code should stay server-side.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_type: str = "BUSINESS_ERROR"
    log_level: str = "ERROR"
    response_code: Optional[str] = None

    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def meta(self) -> Dict[str, Any]:
        return {"error_type": self.error_type}

    def field_errors(self) -> Optional[List[Dict[str, Any]]]:
        return None


class BusinessLogicError(SchedulerError):
    """A request that is well formed but not allowed by the scheduling rules."""

    def __init__(self, message: str, error_code: str = "BLOC_ERROR"):
        super().__init__(message, error_code)


class ScheduleValidationError(BusinessLogicError):
    """A schedule or notification definition has an invalid shape. Never persisted."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_type = "VALIDATION_ERROR"
    log_level = "WARNING"

    def __init__(
        self,
        message: str,
        error_code: str = "SCHEDULE_VALIDATION_ERROR",
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, error_code)
        self.errors = errors

    def field_errors(self) -> Optional[List[Dict[str, Any]]]:
        return self.errors


class IllegalTransitionError(BusinessLogicError):
    """A record is not in the state the requested operation expects."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "STATE_ERROR"
    log_level = "WARNING"

    def __init__(
        self,
        message: str,
        error_code: str = "ILLEGAL_TRANSITION",
        current_status: Optional[str] = None,
    ):
        super().__init__(message, error_code)
        self.current_status = current_status

    def meta(self) -> Dict[str, Any]:
        meta = super().meta()
        if self.current_status:
            meta["current_status"] = self.current_status
        return meta


class NotCancellableError(IllegalTransitionError):
    """Cancel was requested for a record that is no longer pending."""

    def __init__(
        self,
        message: str = "Scheduled notification cannot be cancelled",
        current_status: Optional[str] = None,
    ):
        super().__init__(message, "NOT_CANCELLABLE", current_status)


class RecipientResolutionError(SchedulerError):
    """The recipient directory or preference store could not answer."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "UPSTREAM_ERROR"

    def __init__(self, message: str, error_code: str = "RECIPIENT_RESOLUTION_ERROR"):
        super().__init__(message, error_code)


class AuthenticationError(SchedulerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "AUTHENTICATION_ERROR"
    response_code = "UNAUTHORIZED"

    def __init__(
        self, message: str = "Authentication failed", error_code: str = "AUTH_ERROR"
    ):
        super().__init__(message, error_code)


class AuthorizationError(SchedulerError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "AUTHORIZATION_ERROR"
    response_code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied", error_code: str = "AUTHZ_ERROR"):
        super().__init__(message, error_code)


class NotFoundError(SchedulerError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "NOT_FOUND_ERROR"

    def __init__(
        self, message: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(message, error_code)


def format_validation_errors(errors) -> List[Dict[str, Any]]:
    return [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in errors
    ]


def setup_error_handlers(app: FastAPI):
    """Map scheduler, framework and database errors onto error envelopes."""

    @app.exception_handler(SchedulerError)
    async def scheduler_exception_handler(request: Request, exc: SchedulerError):
        logger.log(exc.log_level, f"{exc.__class__.__name__} [{exc.error_code}]: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            errors=exc.field_errors(),
            error_code=exc.response_code or exc.error_code,
            status_code=exc.status_code,
            meta=exc.meta(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.warning(f"Request Validation Error: {exc.errors()}")
        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=format_validation_errors(exc.errors()),
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    # Raised while building a response model, so it is a server fault
    @app.exception_handler(ValidationError)
    async def pydantic_validation_exception_handler(
        request: Request, exc: ValidationError
    ):
        logger.error(f"Pydantic Validation Error: {exc.errors()}")
        return ResponseBuilder.error(
            request=request,
            message="Data validation failed",
            error_code="INTERNAL_VALIDATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"SQLAlchemy Error: {str(exc)}")
        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "SQLALCHEMY_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled Exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "INTERNAL_ERROR"},
        )

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger()


class SupportError(Exception):
    """
    Base class for every rejected support operation.
    `code` is stable and is what clients switch on, over HTTP and over the socket.
    """
    code = "SUPPORT_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class AuthenticationFailed(SupportError):
    code = "AUTHENTICATION_FAILED"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDenied(SupportError):
    code = "PERMISSION_DENIED"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(SupportError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(SupportError):
    code = "INVALID_STATE"
    status_code = status.HTTP_409_CONFLICT


class ValidationFailed(SupportError):
    code = "VALIDATION_FAILED"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class Conflict(SupportError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class Exhausted(SupportError):
    code = "EXHAUSTED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def support_exception_handler(request: Request, exc: SupportError):
    """
    Domain errors carry their own status and stable code.
    """
    logger.info("support_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )

async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    Prevents stack trace leakage in production.
    """
    logger.error("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Standard HTTP exception handler.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Pydantic validation error handler.
    """
    logger.warning("validation_error", errors=exc.errors(), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation error", "errors": jsonable_errors(exc.errors())},
    )


def jsonable_errors(errors):
    # ctx may hold exception instances, which are not JSON serializable
    cleaned = []
    for err in errors:
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        cleaned.append(err)
    return cleaned

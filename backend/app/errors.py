from __future__ import annotations
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

log = structlog.get_logger()


class DomainError(Exception):
    """Base for errors raised by services and translated at the HTTP boundary."""
    status_code = 400
    code = "domain_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.code


class ValidationError(DomainError):
    status_code = 422
    code = "validation_error"


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class Unauthorized(DomainError):
    status_code = 401
    code = "unauthorized"


class Forbidden(DomainError):
    status_code = 403
    code = "forbidden"


class Conflict(DomainError):
    status_code = 409
    code = "conflict"


class BadRequest(DomainError):
    status_code = 400
    code = "bad_request"


class InsufficientFunds(BadRequest):
    status_code = 402
    code = "insufficient_funds"


class StateError(DomainError):
    status_code = 409
    code = "invalid_state"


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        log.info("domain_error", code=exc.code, detail=exc.message, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

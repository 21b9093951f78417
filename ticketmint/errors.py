from __future__ import annotations
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError


# ----------------------------
# Error taxonomy
# ----------------------------
class TicketingError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidInput(TicketingError):
    status_code = 400


class Unauthorized(TicketingError):
    status_code = 401


class Forbidden(TicketingError):
    status_code = 403


class NotFound(TicketingError):
    status_code = 404


class Conflict(TicketingError):
    status_code = 409


class Internal(TicketingError):
    status_code = 500


class UpstreamUnavailable(TicketingError):
    status_code = 502


# ----------------------------
# Request boundary
# ----------------------------
async def _ticketing_error_handler(
    request: Request, exc: TicketingError
) -> ORJSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: "
                     f"{type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path}: "
                    f"{type(exc).__name__}: {exc.message}")
    return ORJSONResponse(
        status_code=exc.status_code, content={"detail": exc.message}
    )


async def _store_error_handler(
    request: Request, exc: Exception
) -> ORJSONResponse:
    logger.opt(exception=exc).error(
        f"{request.method} {request.url.path}: store failure"
    )
    return ORJSONResponse(
        status_code=Internal.status_code, content={"detail": "Store failure"}
    )


async def _unhandled_error_handler(
    request: Request, exc: Exception
) -> ORJSONResponse:
    logger.opt(exception=exc).error(
        f"{request.method} {request.url.path}: unhandled error"
    )
    return ORJSONResponse(
        status_code=500, content={"detail": "Internal server error"}
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketingError, _ticketing_error_handler)
    app.add_exception_handler(SQLAlchemyError, _store_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

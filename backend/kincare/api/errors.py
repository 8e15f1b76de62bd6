"""Exception handlers producing the API error envelope."""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kincare.logging import request_id_var
from kincare.services.family_access import FamilyAccessError

logger = logging.getLogger("kincare")


def _envelope(status_code: int, message, error_type: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "status_code": status_code,
                "type": error_type,
                **extra,
                "request_id": request_id_var.get(),
            }
        },
    )


async def family_access_exception_handler(_request: Request, exc: FamilyAccessError):
    if exc.status_code >= 500:
        logger.error("Family access failure %s: %s", exc.code, exc.message)
    return _envelope(exc.status_code, exc.message, exc.code, details=exc.details)


async def http_exception_handler(_request: Request, exc: HTTPException):
    return _envelope(exc.status_code, exc.detail, "http_error")


async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    return _envelope(422, "Validation error", "validation_error", details=exc.errors())


async def unhandled_exception_handler(_request: Request, _exc: Exception):
    logger.exception("Unhandled error")
    return _envelope(500, "Internal server error", "server_error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FamilyAccessError, family_access_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

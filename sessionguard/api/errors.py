"""Exception handlers mapping auth errors to HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sessionguard.services.errors import AuthError, ValidationFailed

logger = logging.getLogger(__name__)


def _field_name(loc: tuple) -> str:
    # Drop the leading "body"/"query" segment FastAPI adds
    parts = [str(part) for part in loc[1:]] if len(loc) > 1 else [str(part) for part in loc]
    return ".".join(parts)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.debug(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers or None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationFailed(
        "Validation failed",
        errors=[
            {"field": _field_name(tuple(err.get("loc", ()))), "message": err.get("msg", "")}
            for err in exc.errors()
        ],
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the auth error handlers on ``app``."""
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

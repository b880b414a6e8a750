"""
Error types and HTTP error mapping for the Tour Booking API.

Every handled failure leaves the API as
``{"status": "error", "error": {"name": ..., "message": ...}}``.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

SUCCESS = "success"
ERROR = "error"
INTERNAL_ERROR_MESSAGE = "something went wrong, we are working on fixing it"


class AppError(Exception):
    """Base class for failures that map onto a known HTTP status."""

    status_code = 500
    name = "Internal"
    default_message = INTERNAL_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequestError(AppError):
    status_code = 400
    name = "InvalidRequest"
    default_message = "invalid request"


class NotFoundError(AppError):
    status_code = 404
    name = "NotFound"
    default_message = "document not found"


class UnauthenticatedError(AppError):
    status_code = 401
    name = "Unauthenticated"
    default_message = "access denied, you are not logged in"


class ForbiddenError(AppError):
    status_code = 403
    name = "Forbidden"
    default_message = "you are not authorized to access this page"


class ConflictError(AppError):
    status_code = 409
    name = "Conflict"
    default_message = "document already exists"


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {"status": SUCCESS, "results": 0}
    if data is not None:
        response["data"] = data
        response["results"] = len(data) if isinstance(data, list) else 1
    if message:
        response["message"] = message
    return response


def _error_body(name: str, message: str) -> Dict[str, Any]:
    return {"status": ERROR, "error": {"name": name, "message": message}}


def _validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    extracted = []
    for err in errors:
        # drop the "body"/"query" prefix FastAPI puts in front of the field path
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        extracted.append({"name": ".".join(loc) or "request", "message": err.get("msg", "")})
    return extracted


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if isinstance(exc, UnauthenticatedError):
            logger.info("Unauthenticated request to %s: %s", request.url.path, exc.message)
            # the reason stays in the log, clients only learn they are not logged in
            body = _error_body(exc.name, UnauthenticatedError.default_message)
        else:
            body = _error_body(exc.name, exc.message)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"status": ERROR, "errors": _validation_errors(list(exc.errors()))},
        )

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"status": ERROR, "errors": _validation_errors(list(exc.errors()))},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            body = _error_body("UndefinedRoute", f"route ({request.url.path}) not found on the server")
        else:
            body = _error_body("HTTPError", str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_body("Internal", INTERNAL_ERROR_MESSAGE))

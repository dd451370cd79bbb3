"""Exception handlers translating service errors into JSON responses."""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.services.errors import AuthError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, message: str, code: str, details: dict | None = None) -> JSONResponse:
    content = {"detail": message, "code": code}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return _error_response(exc.status_code, exc.message, exc.code, exc.detail)

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError):
        logger.error(f"{request.method} {request.url.path} storage failure: {exc}")
        return _error_response(500, "Internal server error", "INTERNAL_ERROR")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} unexpected failure")
        return _error_response(500, "Internal server error", "INTERNAL_ERROR")

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config

logger = logging.getLogger(__name__)


class APIError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None, **extra):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra


class ValidationFailed(APIError):
    status_code = 400


class NotAuthenticated(APIError):
    status_code = 401


class Forbidden(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


class StockError(APIError):
    """One or more line items cannot be served from current stock."""
    status_code = 400

    def __init__(self, message: str, stock_issues: list):
        super().__init__(message, stock_issues=stock_issues)
        self.stock_issues = stock_issues


class PaymentFailed(APIError):
    status_code = 400


class PartialStockUpdateError(APIError):
    """Stock for some line items stayed decremented after a failed reservation."""
    status_code = 500

    def __init__(self, message: str, applied_items: list):
        super().__init__(message, applied_items=applied_items)
        self.applied_items = applied_items


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        return _error_response(exc.status_code, exc.message, **exc.extra)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
        details = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in errors]
        return _error_response(400, message, errors=details)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if config.EXPOSE_ERRORS:
            return _error_response(500, "Internal server error", error=str(exc))
        return _error_response(500, "Internal server error")

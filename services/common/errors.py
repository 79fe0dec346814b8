"""
Shared error taxonomy

Every service raises these from its command/query layer. The FastAPI
handlers installed by ``install_error_handlers`` turn them into the
structured ``{"success": false, "error": ...}`` body with the matching
HTTP status.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, data: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message, "code": self.code}
        if self.data is not None:
            body["data"] = self.data
        return body


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class EmptyCart(ValidationError):
    code = "EMPTY_CART"


class NoStatusChange(ValidationError):
    code = "NO_STATUS_CHANGE"


class InsufficientStock(ServiceError):
    status_code = 400
    code = "INSUFFICIENT_STOCK"


class InsufficientReservation(ServiceError):
    status_code = 400
    code = "INSUFFICIENT_RESERVATION"


class PaymentNotRefundable(ServiceError):
    status_code = 400
    code = "PAYMENT_NOT_REFUNDABLE"


class NotFound(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"


class Conflict(ServiceError):
    status_code = 409
    code = "CONFLICT"


class AlreadyExists(Conflict):
    code = "ALREADY_EXISTS"


class ReservationRaceLost(Conflict):
    code = "RESERVATION_RACE_LOST"


class Unauthorized(ServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ServiceError):
    status_code = 403
    code = "FORBIDDEN"


class UpstreamUnavailable(ServiceError):
    status_code = 503
    code = "UPSTREAM_UNAVAILABLE"


class InternalError(ServiceError):
    pass


def install_error_handlers(app: FastAPI) -> None:
    """Register the structured error responses on a service app."""

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        err = ValidationError(
            "Invalid request body",
            data={"errors": [e.get("msg") for e in exc.errors()]},
        )
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage failure on %s %s", request.method, request.url.path)
        err = InternalError("Storage operation failed")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

"""Error taxonomy for the commerce service.

Every error is an ``HTTPException`` so it can be raised from business
operations and surface unchanged through FastAPI. ``store_error_handler``
renders them as ``{"detail", "code", "details"}``; anything else that escapes a
route renders as an ``InternalError`` once the request middleware has logged it.
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse


class StoreError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Any = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(
            status_code=self.status_code,
            detail=message or self.default_message,
            headers=headers,
        )
        self.details = details

    @property
    def message(self) -> str:
        return self.detail

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(StoreError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthError(StoreError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_ERROR"
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, **kwargs):
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(message, **kwargs)


class RateLimitError(StoreError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None, **kwargs):
        self.retry_after = retry_after
        kwargs.setdefault("details", {"retry_after": retry_after})
        super().__init__(
            message, headers={"Retry-After": str(retry_after)}, **kwargs
        )


class StockError(StoreError):
    """Insufficient stock. ``details`` lists the offending lines."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "STOCK_ERROR"
    default_message = "Some items in your cart are out of stock"


class InvalidStatusError(ValidationError):
    code = "INVALID_STATUS"
    default_message = "Invalid status"


class OutOfStockError(StockError):
    """A single product has nothing left; carries the restock ETA."""

    code = "OUT_OF_STOCK"
    default_message = "Product is out of stock"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        return_time: Optional[dict] = None,
        restock_message: Optional[str] = None,
    ):
        super().__init__(
            message,
            details={"return_time": return_time, "restock_message": restock_message},
        )
        self.return_time = return_time
        self.restock_message = restock_message


class OrderCreationError(StoreError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "ORDER_CREATION_ERROR"
    default_message = "Failed to create order"


class NotFoundError(StoreError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class InternalError(StoreError):
    pass


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def add_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

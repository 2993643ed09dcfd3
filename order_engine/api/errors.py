from typing import Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from order_engine.core.errors import (
    AlreadyReleased,
    EngineError,
    InsufficientStock,
    InvalidQuantity,
    InvalidState,
    NotFound,
    PaymentFailed,
    Unavailable,
    ValidationError,
)

# Map exception types to HTTP status codes
ERROR_STATUS_CODES: Dict[type, int] = {
    NotFound: 404,
    InvalidState: 409,
    AlreadyReleased: 409,
    InsufficientStock: 409,
    InvalidQuantity: 422,
    PaymentFailed: 402,
    ValidationError: 400,
    Unavailable: 503,
}


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map EngineError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "context": jsonable_encoder(exc.context),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, engine_error_handler)

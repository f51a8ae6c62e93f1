"""Exception hierarchy and the FastAPI handlers that render it as `{code, message, details}`."""

from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

TransactionErrorKind = Literal["TIMEOUT", "NETWORK", "HTTP", "INVALID_PAYLOAD"]


class ValuationEngineError(Exception):
    """Base exception for all valuation-engine errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransactionSourceError(ValuationEngineError):
    """Raised by the transaction client when one page of the registry cannot be read."""

    status_code = 502
    code = "TRANSACTIONS_SOURCE_ERROR"

    def __init__(self, kind: TransactionErrorKind, message: str, details: dict[str, Any]):
        super().__init__(message, details)
        self.kind = kind


class SourceUnavailableError(ValuationEngineError):
    """Raised when the registry failed before a single comparable was collected."""

    status_code = 502
    code = "TRANSACTIONS_UNAVAILABLE"

    @classmethod
    def from_source_error(cls, error: TransactionSourceError) -> "SourceUnavailableError":
        return cls(
            "Transaction registry unavailable",
            {"kind": error.kind, "message": error.message, **error.details},
        )


class PropertyNotFoundError(ValuationEngineError):
    status_code = 404
    code = "PROPERTY_NOT_FOUND"


class MissingCoordinatesError(ValuationEngineError):
    """The property has no usable location, so no comparable search is possible."""

    status_code = 422
    code = "PROPERTY_COORDINATES_MISSING"


class InvalidPropertyTypeError(ValuationEngineError):
    status_code = 400
    code = "INVALID_PROPERTY_TYPE"


class ValuationUnavailableError(ValuationEngineError):
    """Neither the provider nor the market data yields a value for the property."""

    status_code = 422
    code = "VALUATION_UNAVAILABLE"


async def _handle_engine_error(request: Request, exc: ValuationEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message, "details": exc.details},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValuationEngineError, _handle_engine_error)

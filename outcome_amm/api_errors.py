"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from outcome_amm.errors import (
    EngineError, InsufficientBalance, MarketNotActive, MarketNotFound,
    NotResolved, NothingToClaim, NothingToRedeem, OracleUnavailable,
    PartialFill, PriceImpactExceeded, ResidualNotReady, ResolutionNotAllowed,
    SlippageExceeded, UpkeepNotNeeded,
)


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


# First match wins, so subclasses come before their bases.
_STATUS: list[tuple[type, int]] = [
    (MarketNotFound, 404),
    (MarketNotActive, 409),
    (NotResolved, 409),
    (ResidualNotReady, 409),
    (UpkeepNotNeeded, 409),
    (ResolutionNotAllowed, 403),
    (PartialFill, 409),
    (PriceImpactExceeded, 422),
    (SlippageExceeded, 422),
    (InsufficientBalance, 422),
    (NothingToClaim, 422),
    (NothingToRedeem, 422),
    (OracleUnavailable, 503),
]


def translate_engine_error(exc: EngineError) -> APIError:
    """Translate engine exceptions to structured API errors."""
    status = 400
    for kind, code in _STATUS:
        if isinstance(exc, kind):
            status = code
            break
    return APIError(status, exc.code, exc.message, dict(exc.details))

from fastapi import Request
from fastapi.responses import JSONResponse
import logging
from datetime import datetime, timezone
from typing import Dict, Any

logger = logging.getLogger(__name__)

class APIError(Exception):
    """Base API exception"""

    def __init__(self, message: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class AuthorizationError(APIError):
    """Internal token missing or wrong"""

    def __init__(self, message: str = "Access denied", details: Dict[str, Any] = None):
        super().__init__(message, 403, details)

class ValidationError(APIError):
    """Validation related errors"""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(message, 400, details)

class StoreFailure(APIError):
    """
    Transient data store failure (connection, timeout, driver error).
    Safe to retry: issuance is idempotent and corrections are per row.
    """

    def __init__(self, message: str = "Data store operation failed", details: Dict[str, Any] = None):
        super().__init__(message, 503, details)

class TicketIssuanceError(APIError):
    """Ticket issuance could not start (unknown order, wrong status)"""

    def __init__(self, message: str = "Ticket issuance failed", status_code: int = 400, details: Dict[str, Any] = None):
        super().__init__(message, status_code, details)

class CapacityExhausted(TicketIssuanceError):
    """
    Seat pool is sold out. Fatal for the order: never retried automatically,
    the order moves to refund_required.
    """

    def __init__(self, message: str = "Tickets sold out - purchase could not be completed, a refund will be issued", details: Dict[str, Any] = None):
        super().__init__(message, 409, details)

class ReconciliationError(APIError):
    """Reconciliation pass failures surfaced to operators"""

    def __init__(self, message: str = "Reconciliation failed", details: Dict[str, Any] = None):
        super().__init__(message, 500, details)

async def api_exception_handler(request: Request, exc: APIError):
    """Handle custom API exceptions with logging"""

    context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": exc.__class__.__name__,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method
    }

    if exc.status_code >= 500:
        logger.error(f"API Error: {exc.message}", extra={"context": context})
    else:
        logger.warning(f"API Error: {exc.message}", extra={"context": context})

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "error_type": exc.__class__.__name__,
            "message": exc.message,
            "details": exc.details,
            "timestamp": context["timestamp"]
        }
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": exc.__class__.__name__,
        "path": str(request.url.path),
        "method": request.method
    }

    logger.error(f"Unexpected error: {str(exc)}", extra={"context": context}, exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "message": "Internal server error",
            "timestamp": context["timestamp"]
        }
    )

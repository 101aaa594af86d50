"""
Credit ledger error taxonomy and standardized FastAPI error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_COMBINATION = "INVALID_COMBINATION"

    # Credits
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONSISTENCY_VIOLATION = "CONSISTENCY_VIOLATION"

class BusinessLogicError(Exception):
    """Caller-recoverable error; never retried automatically"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Operational error raised by the ledger or its backing store"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class InsufficientCreditsError(BusinessLogicError):
    def __init__(self, account_id: str, requested: int, available: int):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            ErrorCodes.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {requested}, Available: {available}",
            context={"account_id": account_id, "required": requested, "available": available},
        )

class NotFoundError(BusinessLogicError):
    """Account or transaction absent"""
    def __init__(self, message: str, code: str = ErrorCodes.ACCOUNT_NOT_FOUND, context: Dict[str, Any] = None):
        super().__init__(code, message, context=context)

class InvalidCombinationError(BusinessLogicError):
    def __init__(self, duration: int, quality: str):
        super().__init__(
            ErrorCodes.INVALID_COMBINATION,
            f"Invalid duration/quality combination: {duration}s {quality}",
            context={"duration": duration, "quality": quality},
        )

class StorageError(ServiceError):
    """Transient backing-store failure; the whole operation may be retried"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.DATABASE_ERROR, message, original_error)

class ConsistencyViolation(ServiceError):
    """Cached balance diverged from the transaction log sum"""
    def __init__(self, account_id: str, balance: int, ledger_sum: int):
        self.account_id = account_id
        self.balance = balance
        self.ledger_sum = ledger_sum
        super().__init__(
            ErrorCodes.CONSISTENCY_VIOLATION,
            f"Balance {balance} for account {account_id} does not match ledger sum {ledger_sum}",
        )

BUSINESS_STATUS = {
    ErrorCodes.INSUFFICIENT_CREDITS: 402,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.TRANSACTION_NOT_FOUND: 404,
    ErrorCodes.INVALID_COMBINATION: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
}

SERVICE_STATUS = {
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CONSISTENCY_VIOLATION: 500,
}

HTTP_STATUS_CODES = {
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.ACCOUNT_NOT_FOUND,
}

def _request_ids(request: Request) -> Dict[str, Optional[str]]:
    return {
        "trace_id": getattr(request.state, 'trace_id', None),
        "request_id": getattr(request.state, 'request_id', None),
    }

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""
    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump(mode="json"))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Caller errors: the request is rejected and nothing was written"""
    ids = _request_ids(request)
    logger.warning(f"Business logic error: {exc.code} - {exc.message}",
                   extra={"error_code": exc.code, "context": exc.context, **ids})
    return create_error_response(
        exc.code, exc.message, BUSINESS_STATUS.get(exc.code, 400), field=exc.field, context=exc.context, **ids
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    ids = _request_ids(request)
    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "original_error": str(exc.original_error) if exc.original_error else None,
        **ids,
    })

    # Storage details stay in the logs
    message = exc.message if exc.code == ErrorCodes.CONSISTENCY_VIOLATION else "Credit ledger temporarily unavailable"
    return create_error_response(exc.code, message, SERVICE_STATUS.get(exc.code, 500), **ids)

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    ids = _request_ids(request)
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra=ids)
    return create_error_response(
        ErrorCodes.VALIDATION_ERROR, f"Validation error on field '{field}': {message}", 400, field=field, **ids
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    ids = _request_ids(request)
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={"status_code": exc.status_code, **ids})
    error_code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    return create_error_response(error_code, str(exc.detail), exc.status_code, **ids)

async def general_exception_handler(request: Request, exc: Exception):
    ids = _request_ids(request)
    logger.error(f"Unexpected error: {exc}", extra={"traceback": traceback.format_exc(), **ids})
    return create_error_response(
        ErrorCodes.INTERNAL_SERVER_ERROR, "An unexpected error occurred. Please try again later.", 500, **ids
    )

def add_error_handlers(app):
    """Register the ledger's error responses on a FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

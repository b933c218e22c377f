"""Error taxonomy and FastAPI handlers.

Every error response has the shape
``{"success": false, "error": <message>, "code": <code>, "request_id": <rid>}``
plus any structured ``details`` the error carries (for example ``usage`` on
quota errors).
"""

import builtins
import logging
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from unrepo.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class AuthErrorReason(str, Enum):
    MALFORMED = "MALFORMED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


class AuthError(AppError):
    """Missing, malformed, unknown or unverifiable credential."""
    code = "unauthorized"
    status_code = 401

    def __init__(self, reason: AuthErrorReason, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details.setdefault("reason", reason.value)


class QuotaErrorReason(str, Enum):
    FREE_LIMIT_EXCEEDED = "FREE_LIMIT_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class QuotaError(AppError):
    """Quota or rate ceiling reached; carries the counters for self-diagnosis."""
    code = "quota_exceeded"
    status_code = 429

    def __init__(self, reason: QuotaErrorReason, message: str, *, used: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.used = used
        self.limit = limit
        self.details.setdefault("reason", reason.value)
        self.details.setdefault("usage", {"used": used, "limit": limit})


class CollaboratorError(AppError):
    """An external collaborator (GitHub, LLM provider, token oracle) failed."""
    code = "collaborator_error"
    status_code = 500


class AnalysisUnavailableError(CollaboratorError):
    code = "analysis_unavailable"


class LedgerWriteError(AppError):
    code = "ledger_write_failed"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    payload = {"success": False, "error": message, "code": code, "request_id": request_id}
    if details:
        for key, value in details.items():
            payload.setdefault(key, value)
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("unrepo")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("unrepo")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "invalid value")
    else:
        message = "Invalid request"
    payload = _error_payload(ValidationError.code, message, rid)
    logging.getLogger("unrepo").warning(
        "request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("unrepo")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response

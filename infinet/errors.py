"""
Error taxonomy and FastAPI exception handlers.

Entitlement denials are expected, user-facing outcomes: they are logged at
INFO and rendered as a paywall payload. Upstream model failures pass the
backend status through. Accounting failures fail the request loudly.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class EntitlementDenied(Exception):
    """Raised by the gate dependency when ``check()`` returns a Deny."""

    def __init__(self, deny: Any):
        super().__init__(deny.reason.value)
        self.deny = deny


class ModelBackendError(Exception):
    """Model/image backend answered with a non-2xx status."""

    retryable = False

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"Model backend error {status_code}: {detail[:200]}")
        self.status_code = status_code
        self.detail = detail


class ModelBackendTimeout(ModelBackendError):
    """Model/image backend did not answer within the configured timeout."""

    retryable = True

    def __init__(self, detail: str = "Model backend timed out"):
        super().__init__(504, detail)


class AccountingError(Exception):
    """The usage ledger could not record a completed request."""


class ReconciliationError(Exception):
    """A billing event could not be mapped onto a subscription."""

    def __init__(self, message: str, external_event_id: Optional[str] = None):
        super().__init__(message)
        self.external_event_id = external_event_id


class WebhookVerificationError(Exception):
    """Billing webhook payload failed signature verification."""


async def entitlement_denied_handler(request: Request, exc: EntitlementDenied) -> JSONResponse:
    deny = exc.deny
    headers = None
    if deny.retry_after is not None:
        headers = {"Retry-After": str(deny.retry_after)}
    return JSONResponse(status_code=deny.http_status, content=deny.to_body(), headers=headers)


async def model_backend_error_handler(request: Request, exc: ModelBackendError) -> JSONResponse:
    logger.warning(f"Model backend failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "Model Backend Error",
            "code": "BACKEND_TIMEOUT" if isinstance(exc, ModelBackendTimeout) else "BACKEND_ERROR",
            "message": "The AI service could not complete this request. Please try again.",
            "retryable": exc.retryable or exc.status_code >= 500,
        },
    )


async def accounting_error_handler(request: Request, exc: AccountingError) -> JSONResponse:
    logger.error(f"Usage accounting failed on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Accounting Failed",
            "code": "ACCOUNTING_FAILED",
            "message": "Your request could not be recorded. Please try again.",
            "retryable": True,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementDenied, entitlement_denied_handler)
    app.add_exception_handler(ModelBackendError, model_backend_error_handler)
    app.add_exception_handler(AccountingError, accounting_error_handler)

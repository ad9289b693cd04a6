"""API error handling middleware — consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "provider": "..."}}``
JSON responses.

Status code mapping:
- ``ReauthorizationRequiredError`` → 401 ``RECONNECT_REQUIRED``
- ``IntegrationNotFoundError`` → 401 ``INTEGRATION_NOT_FOUND``
- ``FetchFailedError`` → 502 ``FETCH_FAILED``
- ``EntityNotFoundError`` → 404 ``NOT_FOUND``
- ``ValueError`` → 400 ``VALIDATION_ERROR``
- Any other ``Exception`` → 500 ``INTERNAL_ERROR``
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from privatezone.api.models import ErrorDetail, ErrorResponse
from privatezone.errors import (
    EntityNotFoundError,
    FetchFailedError,
    IntegrationNotFoundError,
    ProviderRequestError,
    ReauthorizationRequiredError,
    redact_secrets,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int, code: str, message: str, provider: str | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, provider=provider))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_reauthorization_required(
    request: Request,
    exc: ReauthorizationRequiredError,
) -> JSONResponse:
    """Return 401 so the UI asks the user to reconnect the integration."""
    logger.warning("Integration needs re-authorization: provider=%s", exc.provider)
    return _error_response(
        401,
        "RECONNECT_REQUIRED",
        f"Your {exc.provider} connection has expired. Please reconnect it.",
        str(exc.provider),
    )


async def _handle_integration_not_found(
    request: Request,
    exc: IntegrationNotFoundError,
) -> JSONResponse:
    logger.info("No active integration: provider=%s", exc.provider)
    return _error_response(
        401,
        "INTEGRATION_NOT_FOUND",
        f"No {exc.provider} account is connected.",
        str(exc.provider),
    )


async def _handle_fetch_failed(
    request: Request,
    exc: FetchFailedError,
) -> JSONResponse:
    """Return 502 when the provider could not be reached or refused the call."""
    provider = exc.provider if isinstance(exc, ProviderRequestError) else None
    logger.warning("Provider fetch failed: %s", redact_secrets(str(exc)))
    return _error_response(502, "FETCH_FAILED", redact_secrets(str(exc)), provider)


async def _handle_not_found(
    request: Request,
    exc: EntityNotFoundError,
) -> JSONResponse:
    logger.info("Entity not found: %s", exc)
    return _error_response(404, "NOT_FOUND", str(exc))


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, so exceptions not
    caught by ``add_exception_handler`` (local store failures included) still
    produce the standard error envelope rather than a plain-text 500.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(ReauthorizationRequiredError, _handle_reauthorization_required)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrationNotFoundError, _handle_integration_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(FetchFailedError, _handle_fetch_failed)  # type: ignore[arg-type]
    app.add_exception_handler(EntityNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mariacrm.context import get_correlation_id
from mariacrm.integrations.errors import ProviderError


logger = logging.getLogger("mariacrm.errors")


@dataclass
class ErrorEnvelope:
    success: bool
    error: str
    code: str
    details: Any
    correlation_id: str | None


def _correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        success=False,
        error=message,
        code=code,
        details=details,
        correlation_id=_correlation_id(request),
    )
    merged_headers = dict(getattr(request.state, "rate_limit_headers", None) or {})
    merged_headers.update(headers or {})
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(asdict(payload)),
        headers=merged_headers or None,
    )


def http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        headers=exc.headers,
    )


def provider_error(request: Request, exc: ProviderError, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.http_status,
        code=code,
        message=exc.user_message,
        details={"kind": exc.kind.value, "provider": exc.provider, "detail": exc.message},
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=f"http_{exc.status_code}",
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    fields = [".".join(str(part) for part in error.get("loc", ()) if part != "body") for error in errors]
    message = "Datos inválidos: " + ", ".join(field for field in fields if field) if fields else "Datos inválidos"
    return error_response(request, status_code=400, code="validation_error", message=message, details=errors)


async def _provider_exception_handler(request: Request, exc: ProviderError) -> JSONResponse:
    return provider_error(request, exc, code="provider_error")


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("http.unhandled_error", exc_info=exc, extra={"error": str(exc)})
    return error_response(
        request,
        status_code=500,
        code="internal_error",
        message="Internal server error",
        details=str(exc),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _provider_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

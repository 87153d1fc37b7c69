"""Unified response envelope and exception handlers."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from walletadapter.errors import ErrorCode, WalletAdapterError

logger = logging.getLogger(__name__)


def envelope(
    message: str,
    data: Any = None,
    success: bool = True,
    code: Optional[str] = None,
) -> dict:
    body = {"success": success, "code": code or "OK", "message": message}
    if data is not None:
        body["data"] = data
    return body


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=envelope(message, success=False, code=code),
    )


async def wallet_adapter_error_handler(request: Request, exc: WalletAdapterError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return error_response(exc.status_code, exc.code, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, ErrorCode.VALIDATION_ERR.value, str(exc.errors()))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=True)
    return error_response(500, ErrorCode.SERVER_ERR.value, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WalletAdapterError, wallet_adapter_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

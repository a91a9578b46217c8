"""
FastAPI exception handler for TelebillError.

The ledger owns no HTTP surface. A host application installs the handler
so that ledger errors reach its clients as a structured body, e.g. a
refused minimum-balance gate becomes a 402 telling the user to add funds:

    from telebill.core.errors.middleware import install_error_handler
    install_error_handler(app)

The internal ``detail`` and ``context`` are logged, never returned.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from telebill.core.errors import TelebillError
from telebill.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _unregistered(code: str) -> ErrorEntry:
    return ErrorEntry(
        code=code,
        domain="SYS",
        title="Internal error",
        severity="ERROR",
        retryable=False,
        user_action_required=False,
        http_status=500,
        safe_message="An unexpected error occurred.",
    )


async def telebill_error_handler(request: Request, exc: TelebillError) -> JSONResponse:
    """Render a TelebillError using its registry entry."""
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("Unregistered error code %s raised at %s: %s", exc.code, request.url.path, exc.detail)
        entry = _unregistered(exc.code)
    else:
        logger.log(
            _LOG_LEVELS.get(entry.severity, logging.ERROR),
            "%s [%s] at %s: %s",
            entry.title,
            exc.code,
            request.url.path,
            exc.detail,
            extra={f"error.ctx.{k}": v for k, v in exc.context.items()},
        )

    return JSONResponse(status_code=entry.http_status, content={"error": entry.public_body()})


def install_error_handler(app: FastAPI) -> None:
    """Register telebill_error_handler for every TelebillError subclass."""
    if not len(error_registry):
        error_registry.load()
    app.add_exception_handler(TelebillError, telebill_error_handler)

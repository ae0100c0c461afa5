from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .request_id import get_request_id

_log = logging.getLogger("clinicdesk.errors")


def is_prod_env() -> bool:
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")


def _payload(detail: Any) -> dict[str, Any]:
    return {"detail": detail, "request_id": get_request_id()}


def install_error_handlers(app: FastAPI) -> None:
    """
    HTTPExceptions keep their status and detail, except that 5xx details are
    scrubbed in prod/staging. Anything else is logged with its traceback and
    answered with a 500 that carries the request id.
    """

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        status = int(exc.status_code or 500)
        if status >= 500 and is_prod_env():
            return JSONResponse(status_code=status, content=_payload("internal error"))
        return JSONResponse(status_code=status, content=_payload(exc.detail), headers=exc.headers)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        _log.exception("unhandled exception on %s %s", request.method, request.url.path)
        detail = "internal error" if is_prod_env() else str(exc)
        return JSONResponse(status_code=500, content=_payload(detail))

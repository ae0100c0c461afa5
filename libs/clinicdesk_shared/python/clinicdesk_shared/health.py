from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

_log = logging.getLogger("clinicdesk.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Optional[Dict[str, Callable[[], bool]]] = None,
):
    """
    Register ``GET /health``.

    ``checks`` maps a component name (e.g. ``"db"``) to a callable returning
    True when the component is usable. A failing or raising check turns the
    response into a 503 with ``status="degraded"``.
    """

    @app.get("/health")
    def _health():
        components: Dict[str, str] = {}
        healthy = True
        for name, check in (checks or {}).items():
            try:
                ok = bool(check())
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                ok = False
            components[name] = "ok" if ok else "error"
            healthy = healthy and ok
        body = {
            "status": "ok" if healthy else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if components:
            body["components"] = components
        return JSONResponse(status_code=200 if healthy else 503, content=body)

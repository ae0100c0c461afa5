from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Front-desk and clinical-team web clients in local development.
_DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def configure_cors(app: FastAPI, allowed: str | None) -> list[str]:
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        origins = list(_DEV_ORIGINS)

    # Wildcard origins must not be combined with credentialed requests.
    allow_credentials = "*" not in origins
    if not allow_credentials:
        origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    return origins

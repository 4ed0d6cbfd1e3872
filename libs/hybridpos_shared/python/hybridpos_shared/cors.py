from __future__ import annotations

from typing import Sequence

from fastapi.middleware.cors import CORSMiddleware

# Vite dev server of the POS front end.
_DEV_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]


def parse_origins(allowed: str | None) -> list[str]:
    origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    return origins or list(_DEV_ORIGINS)


def configure_cors(
    app,
    allowed: str | None,
    expose: Sequence[str] = ("X-Request-ID", "X-Local-Id"),
):
    origins = parse_origins(allowed)
    # Wildcard origins must not be combined with credentialed requests.
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Local-Id"],
        # Offline clients read back the idempotency key of their retries.
        expose_headers=list(expose),
    )

import logging
import os
from collections.abc import Callable, Mapping
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

_log = logging.getLogger("hybridpos.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Optional[Mapping[str, Callable[[], object]]] = None,
):
    """
    Register GET /health.

    Each entry of ``checks`` is called on every probe; a check that raises
    marks the service as degraded (HTTP 503) and its error is reported
    under ``checks``. A check may return a value (e.g. a queue depth) that is
    echoed back as-is.
    """

    @app.get("/health")
    def _health():
        body = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if not checks:
            return body
        results: dict[str, object] = {}
        for name, check in checks.items():
            try:
                results[name] = check()
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                results[name] = {"error": str(e)}
                body["status"] = "degraded"
        body["checks"] = results
        if body["status"] != "ok":
            return JSONResponse(status_code=503, content=body)
        return body

"""
Health and readiness probes.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from researchhub.core.logging import latency_bucket_ms, get_request_id
from researchhub.storage.factory import get_storage

logger = logging.getLogger("researchhub")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: storage backend answers a probe."""
    storage = get_storage()
    start = time.perf_counter()
    try:
        ready = storage.ping()
    except Exception as e:
        logger.error(f"[readyz] storage probe raised: {e}")
        ready = False
    latency_ms = (time.perf_counter() - start) * 1000

    logger.info(
        "health.ready",
        extra={
            "request_id": get_request_id(),
            "ok": ready,
            "backend": storage.name,
            "latency_bucket": latency_bucket_ms(latency_ms),
        },
    )
    if not ready:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "storage unreachable"})
    return {"status": "ok", "storage": storage.name}

"""
Coordinator service.

A tiny HTTP registry the agents report capacity hits to. GET-only so it can
be poked from a browser or curl while the fleet is running.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from flipfleet.coord.registry import CoordinationRegistry

logger = logging.getLogger(__name__)


def create_app(registry: CoordinationRegistry | None = None) -> FastAPI:
    reg = registry or CoordinationRegistry()
    api = FastAPI(title="FlipFleet Coordinator", version="0.1.0")
    api.state.registry = reg

    @api.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Return a clean JSON 500 instead of dropping the connection."""
        logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
        logger.debug(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={
                "detail": f"Internal server error: {type(exc).__name__}",
                "message": str(exc)[:200],
            },
        )

    @api.middleware("http")
    async def count_requests(request: Request, call_next):
        reg.count_request()
        return await call_next(request)

    @api.get("/report")
    def report(item: str | None = None, account: str | None = None):
        if not item or not account:
            raise HTTPException(status_code=400, detail="Missing item or account parameter")
        reg.report(item, account)
        logger.info("%s hit the limit on %s", account, item)
        return {"status": "recorded"}

    @api.get("/list")
    def list_blocked():
        return {"blocked": reg.live()}

    @api.get("/health")
    def health():
        return {
            "status": "ok",
            "blockedCount": reg.size(),
            "uptimeSeconds": reg.uptime_seconds(),
        }

    @api.get("/stats")
    def stats():
        return reg.stats()

    @api.get("/clear")
    def clear():
        cleared = reg.clear()
        logger.info("Cleared %s coordination entries", cleared)
        return {"status": "cleared", "count": cleared}

    return api


app = create_app()

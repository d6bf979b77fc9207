from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from giftfinder.routers import cache, metrics, recommend, search
from giftfinder.services.container import Services, build_services
from giftfinder.utils import slog
from giftfinder.utils.logging import configure_logging
from giftfinder.utils.metrics import record_endpoint, record_request

load_dotenv()


async def _logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    req_id = slog.new_request_id(request.headers.get("x-request-id"))
    client_ip = request.client.host if request.client else None
    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = int((time.perf_counter() - start) * 1000)
        ctx = getattr(request.state, "log_context", {})
        slog.log_event(
            "request.error",
            request_id=req_id,
            path=str(request.url.path),
            method=request.method,
            latency_ms=latency_ms,
            client_ip=client_ip,
            error=str(e),
            **(ctx or {}),
        )
        raise
    latency_ms = int((time.perf_counter() - start) * 1000)
    ctx = getattr(request.state, "log_context", {}) or {}
    ctx.setdefault("rate_limited", response.status_code == 429)
    slog.finalize_request_log(
        request_id=req_id,
        method=request.method,
        path=str(request.url.path),
        status=response.status_code,
        latency_ms=latency_ms,
        client_ip=client_ip,
        ctx=ctx,
    )
    record_request(latency_ms=latency_ms, model=ctx.get("model"))
    record_endpoint(method=request.method, path=str(request.url.path), latency_ms=latency_ms)
    response.headers["X-Request-ID"] = req_id
    return response


def create_app(services: Optional[Services] = None) -> FastAPI:
    """`services` lets tests inject fakes; otherwise everything is built from env."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services()
        app.state.services = svc
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title="GiftFinder Search & Recommendations", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.middleware("http")(_logging_middleware)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(search.router)
    app.include_router(recommend.router)
    app.include_router(cache.router)
    app.include_router(metrics.router)
    return app


configure_logging()
app = create_app()


def serve() -> None:
    """Entry point for `giftfinder-api`; same as `uvicorn giftfinder.main:app`."""
    uvicorn.run(
        "giftfinder.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )

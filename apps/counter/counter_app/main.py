# apps/counter/counter_app/main.py
from __future__ import annotations

import os
import time
import logging
import socket
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response

from .counter import apply_action
from .models import CountAction, CountResponse, HealthResponse, VersionResponse
from .storage import RecordStore, create_store
from .obs import (
    setup_json_logging,
    get_or_create_trace_id,
    emit_http_metrics,
    SERVICE as OBS_SERVICE,
)

PORT = int(os.getenv("PORT", "80"))
HOST = os.getenv("HOST", "0.0.0.0")
BUILD_VERSION = os.getenv("BUILD_VERSION", "dev")
BUILD_TIME = os.getenv("BUILD_TIME", "unknown")

INDEX_PATH = os.path.join(os.path.dirname(__file__), "static", "index.html")

WX_SOURCE_HEADER = "x-wx-source"
WX_OPENID_HEADER = "x-wx-openid"

# nginx convention: client hung up before a response was sent
CLIENT_CLOSED_REQUEST = 499

# uvicorn exit code for a server that never started
STARTUP_FAILURE = 3

logger = logging.getLogger("counter")

router = APIRouter()


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
JSON_TYPE = "application/json"


async def _read_action(request: Request) -> CountAction:
    """
    Pull `action` out of a JSON or form body. Other content types carry no
    action; a JSON body that does not parse is a 400.
    """
    media_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if media_type in FORM_TYPES:
        form = await request.form()
        return CountAction.parse(form.get("action"))
    if media_type != JSON_TYPE:
        return CountAction.UNKNOWN

    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="There was an error parsing the body") from e
    if not isinstance(payload, dict):
        return CountAction.UNKNOWN
    return CountAction.parse(payload.get("action"))


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


# ---------- API ----------
@router.get("/")
async def index():
    return FileResponse(INDEX_PATH, media_type="text/html")


@router.post("/api/count", response_model=CountResponse)
async def submit_count_action(request: Request, store: RecordStore = Depends(get_store)):
    action = await _read_action(request)
    data = await apply_action(store, action)
    logger.info("Count action applied", extra={"action": action.value, "count": data})
    return CountResponse(data=data)


@router.get("/api/count", response_model=CountResponse)
async def read_count(store: RecordStore = Depends(get_store)):
    return CountResponse(data=await store.count_records())


@router.get("/api/wx_openid")
async def wx_openid(request: Request):
    # Only the WeChat cloud gateway sets x-wx-source. Anyone else is left
    # unanswered until they hang up.
    if WX_SOURCE_HEADER in request.headers:
        return PlainTextResponse(request.headers.get(WX_OPENID_HEADER, ""))

    logger.warning("wx_openid called without %s; not replying", WX_SOURCE_HEADER)
    await _wait_for_disconnect(request)
    # Never delivered; the status only reaches the metrics middleware
    return Response(status_code=CLIENT_CLOSED_REQUEST)


# ---------- Basic endpoints ----------
@router.get("/health", response_model=HealthResponse)
async def health(store: RecordStore = Depends(get_store)):
    return HealthResponse(status="ok", store=store.backend)


@router.get("/version", response_model=VersionResponse)
async def version():
    return VersionResponse(service=OBS_SERVICE, build_version=BUILD_VERSION, build_time=BUILD_TIME)


# ---------- App ----------
def create_app(store: Optional[RecordStore] = None) -> FastAPI:
    """
    Build the service. The record store is created (or taken from `store`)
    and initialised in the lifespan, before any request is served, and is
    shared by every handler through `get_store`.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = store is None
        app.state.store = create_store() if owned else store
        await app.state.store.init()
        logger.info("Record store ready", extra={"store": app.state.store.backend})

        try:
            yield
        finally:
            if owned:
                await app.state.store.close()

    app = FastAPI(title="Counter Service", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Error handling (avoid empty 500 responses) ----------
    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": f"Internal error: {type(exc).__name__}: {exc}"},
        )

    # ---------- Trace + metrics ----------
    @app.middleware("http")
    async def trace_and_metrics(request: Request, call_next):
        t0 = time.perf_counter()
        tid = get_or_create_trace_id(request)
        status = 500
        try:
            resp = await call_next(request)
            status = resp.status_code
            resp.headers["x-trace-id"] = tid
            return resp
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            try:
                emit_http_metrics(
                    route=request.url.path,
                    method=request.method,
                    status_code=int(status),
                    latency_ms=float(dt_ms),
                )
            except Exception:
                logger.exception("Failed to emit metrics")

    app.include_router(router)
    return app


app = create_app()


class CounterServer(uvicorn.Server):
    """uvicorn server that announces itself once the listener is bound."""

    async def startup(self, sockets: Optional[List[socket.socket]] = None) -> None:
        await super().startup(sockets=sockets)
        # lifespan failure sets should_exit; a failed bind exits before here
        if self.should_exit:
            return
        logger.info("Counter service started", extra={"port": self.bound_port()})

    def bound_port(self):
        for server in self.servers:
            for sock in server.sockets:
                name = sock.getsockname()
                return name[1] if isinstance(name, tuple) else name
        return self.config.port


def main():
    setup_json_logging()

    config = uvicorn.Config(
        "counter_app.main:app",
        host=HOST,
        port=PORT,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
    server = CounterServer(config)
    server.run()
    if not server.started:
        sys.exit(STARTUP_FAILURE)


if __name__ == "__main__":
    main()

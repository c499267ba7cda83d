# main.py
# =========================================================
# FlipSOL Round Engine (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from errors import ConfigurationError, EngineError, SubscriberLimitReached
from ledger import SolanaLedger
from scheduler import RoundEngine, build_engine

logger = logging.getLogger("flipsol")

VERSION = "0.1.0"


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


# =========================================================
# Admin auth
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)
def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    token = settings.ADMIN_TOKEN or ""
    if not token:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != token:
        raise HTTPException(401, "Unauthorized")
    return True


# =========================================================
# App Init
# =========================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    app.state.engine = None
    if settings.has_authority:
        try:
            engine = build_engine(settings)
        except ConfigurationError as e:
            logger.error("Round engine disabled: %s", e)
        else:
            app.state.engine = engine
            await engine.start()
    else:
        logger.error("AUTHORITY_PK not set - round engine disabled")
    try:
        yield
    finally:
        engine = app.state.engine
        if engine is not None:
            await engine.close()


app = FastAPI(title="FlipSOL Round Engine", version=VERSION, lifespan=lifespan)
app.state.engine = None

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = settings.API_PREFIX.rstrip("/")


def _engine(request: Request) -> Optional[RoundEngine]:
    return getattr(request.app.state, "engine", None)


def _require_engine(request: Request) -> RoundEngine:
    engine = _engine(request)
    if engine is None:
        raise HTTPException(503, "Round engine is not configured")
    return engine


# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health(request: Request):
    engine = _engine(request)
    return {
        "ok": True,
        "ts": time.time(),
        "service": "flipsol",
        "version": VERSION,
        "engine": engine is not None and engine.running,
    }


@app.get(f"{API}/health/rpc", include_in_schema=False)
async def health_rpc(request: Request):
    engine = _engine(request)
    started = time.monotonic()
    try:
        if engine is not None and engine.ledger is not None:
            slot = await engine.ledger.get_slot()
        else:
            async with SolanaLedger(settings.RPC_URL, timeout=settings.RPC_TIMEOUT_SEC) as ledger:
                slot = await ledger.get_slot()
    except EngineError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "slot": slot, "latency_ms": round((time.monotonic() - started) * 1000, 1)}


# =========================================================
# Engine status + live feed
# =========================================================
@app.get(f"{API}/engine/status")
async def engine_status(request: Request):
    engine = _engine(request)
    if engine is None:
        return {"enabled": False}
    return engine.get_status()


@app.get(f"{API}/feed/stream")
async def feed_stream(request: Request):
    engine = _require_engine(request)
    try:
        sub = engine.subscribe()
    except SubscriberLimitReached as e:
        raise HTTPException(503, str(e))

    async def events():
        try:
            yield f"data: {json.dumps({'type': 'connected', 'ts': time.time()})}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(sub.get(), timeout=settings.SSE_HEARTBEAT_SEC)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield f"data: {event.model_dump_json()}\n\n"
        finally:
            engine.unsubscribe(sub)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =========================================================
# Admin
# =========================================================
@app.post(f"{API}/admin/engine/start")
async def admin_engine_start(request: Request, auth: bool = Depends(admin_guard)):
    engine = _require_engine(request)
    await engine.start()
    return {"ok": True, "running": engine.running}


@app.post(f"{API}/admin/engine/stop")
async def admin_engine_stop(request: Request, auth: bool = Depends(admin_guard)):
    """Stop the loop after the in-flight iteration finishes."""
    engine = _require_engine(request)
    await engine.stop()
    return {"ok": True, "running": engine.running}


@app.post(f"{API}/admin/engine/force-advance")
async def admin_force_advance(
    request: Request,
    round_id: Optional[int] = Query(None, ge=1),
    auth: bool = Depends(admin_guard),
):
    """
    One-shot authorization to advance past a stuck round. With no round_id it
    applies to whichever round is stuck next; it is consumed by the first
    forced start that confirms.
    """
    engine = _require_engine(request)
    engine.authorize_force_advance(round_id)
    return {"ok": True, "round_id": round_id, "status": engine.get_status()}


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)

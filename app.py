import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from relay_engine import __version__, config
from relay_engine.alerts.models import WatchItem
from relay_engine.errors import RelayError, UnknownRegionError, status_of
from relay_engine.runtime import Runtime, build_runtime

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("relay.api")

RuntimeFactory = Callable[[], Awaitable[Runtime]]


class WatchItemIn(BaseModel):
    owner_id:       str
    appid:          int = 730
    hash_name:      str
    name:           str = ""
    target_price:   float = Field(gt=0)
    alerts_enabled: bool = True


class WatchItemPatch(BaseModel):
    name:           Optional[str] = None
    target_price:   Optional[float] = Field(default=None, ge=0)
    alerts_enabled: Optional[bool] = None


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _upstream_error(e: Exception) -> HTTPException:
    log.error(f"Upstream failure: {e}")
    status = status_of(e)
    detail = f"Marketplace returned HTTP {status}" if status else "Marketplace temporarily unavailable"
    return HTTPException(status_code=502, detail=detail)


def create_app(runtime_factory: RuntimeFactory = build_runtime) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = await runtime_factory()
        app.state.runtime = runtime
        await runtime.start()
        yield
        await runtime.aclose()

    app = FastAPI(
        title="Relay Engine",
        description="Cached, rate-limited marketplace access and watchlist price alerts.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health(rt: Runtime = Depends(get_runtime)):
        return {
            "status":    "healthy",
            "redis":     "connected" if rt.redis is not None else "unavailable (using memory store)",
            "queue":     rt.queue.stats(),
            "scheduler": rt.scheduler.is_running,
            "timestamp": int(time.time()),
        }

    # ── Cache admin ───────────────────────────────────────────

    @app.get("/api/cache/stats", tags=["Cache"])
    async def cache_stats(rt: Runtime = Depends(get_runtime)):
        return rt.cache.stats()

    @app.delete("/api/cache/all", tags=["Cache"])
    async def clear_all(rt: Runtime = Depends(get_runtime)):
        rt.cache.clear_all()
        log.info("All cache regions cleared")
        return {"cleared": "all"}

    @app.delete("/api/cache/{region}", tags=["Cache"])
    async def clear_region(region: str, rt: Runtime = Depends(get_runtime)):
        try:
            rt.cache.clear(region)
        except UnknownRegionError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"cleared": region}

    @app.post("/api/cache/{region}/invalidate", tags=["Cache"])
    async def invalidate(
        region: str,
        pattern: str = Query("", description="Regex matched against keys; empty matches all"),
        rt: Runtime = Depends(get_runtime),
    ):
        try:
            removed = rt.cache.invalidate_by_pattern(region, pattern)
        except UnknownRegionError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except re.error as e:
            raise HTTPException(status_code=400, detail=f"Invalid pattern: {e}")
        return {"region": region, "removed": len(removed), "keys": removed}

    # ── Marketplace ───────────────────────────────────────────

    @app.get("/api/market/price", tags=["Market"])
    async def market_price(
        hash_name: str = Query(..., description="market_hash_name of the item"),
        appid: int = Query(730),
        currency: int = Query(1),
        rt: Runtime = Depends(get_runtime),
    ):
        try:
            return await rt.market.price_overview(appid, hash_name, currency)
        except (httpx.HTTPError, RelayError) as e:
            raise _upstream_error(e)

    @app.get("/api/market/history", tags=["Market"])
    async def market_history(
        hash_name: str = Query(...),
        appid: int = Query(730),
        currency: int = Query(1),
        rt: Runtime = Depends(get_runtime),
    ):
        try:
            return await rt.market.price_history(appid, hash_name, currency)
        except (httpx.HTTPError, RelayError) as e:
            raise _upstream_error(e)

    @app.get("/api/market/search", tags=["Market"])
    async def market_search(
        appid: int = Query(730),
        q: str = Query(""),
        start: int = Query(0, ge=0),
        count: int = Query(10, ge=1, le=100),
        sort_by: str = Query("popularity"),
        rt: Runtime = Depends(get_runtime),
    ):
        try:
            return await rt.market.search(appid, q, start, count, sort_by)
        except (httpx.HTTPError, RelayError) as e:
            raise _upstream_error(e)

    @app.get("/api/market/trending", tags=["Market"])
    async def market_trending(
        appid: int = Query(730),
        count: int = Query(15, ge=1, le=100),
        rt: Runtime = Depends(get_runtime),
    ):
        try:
            return await rt.market.trending(appid, count)
        except (httpx.HTTPError, RelayError) as e:
            raise _upstream_error(e)

    # ── Watchlist ─────────────────────────────────────────────

    @app.post("/api/watchlist", tags=["Watchlist"], status_code=201)
    async def add_watch_item(body: WatchItemIn, rt: Runtime = Depends(get_runtime)):
        item = await rt.store.add_item(WatchItem(id="", **body.model_dump()))
        return item.to_dict()

    @app.get("/api/watchlist/{item_id}", tags=["Watchlist"])
    async def get_watch_item(item_id: str, rt: Runtime = Depends(get_runtime)):
        item = await rt.store.get_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Watch item {item_id} not found")
        return item.to_dict()

    @app.patch("/api/watchlist/{item_id}", tags=["Watchlist"])
    async def update_watch_item(item_id: str, body: WatchItemPatch,
                                rt: Runtime = Depends(get_runtime)):
        changes = body.model_dump(exclude_none=True)
        try:
            item = await rt.store.update_settings(item_id, **changes)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Watch item {item_id} not found")
        return item.to_dict()

    @app.delete("/api/watchlist/{item_id}", tags=["Watchlist"])
    async def remove_watch_item(item_id: str, rt: Runtime = Depends(get_runtime)):
        if not await rt.store.remove_item(item_id):
            raise HTTPException(status_code=404, detail=f"Watch item {item_id} not found")
        return {"removed": item_id}

    # ── Price alerts ──────────────────────────────────────────

    @app.get("/api/alerts/status", tags=["Alerts"])
    async def alerts_status(rt: Runtime = Depends(get_runtime)):
        return rt.scheduler.status()

    @app.post("/api/alerts/run", tags=["Alerts"], status_code=202)
    async def alerts_run(rt: Runtime = Depends(get_runtime)):
        return rt.scheduler.trigger_now()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=config.PORT, reload=False, log_level="info")

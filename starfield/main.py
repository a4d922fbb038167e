"""
Starfield engine service — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Build the engine context (remote client, key-value store, caches)
  3. Restore the persisted universe, if a fresh snapshot exists
  4. Start the frame loop (travel, decoration refresh, point upload)
  5. Expose Prometheus /metrics endpoint
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from starfield.config import settings
from starfield.context import EngineContext
from starfield.routers import admin, locations, search, selection
from starfield.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


async def frame_loop(engine: EngineContext, interval: float) -> None:
    while True:
        try:
            engine.on_frame()
        except Exception:
            logger.exception("Frame callback failed")
        await asyncio.sleep(interval)


def create_app(engine_factory: Callable[[], EngineContext] = EngineContext, frame_interval: Optional[float] = None) -> FastAPI:
    interval = settings.frame_interval if frame_interval is None else frame_interval

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the engine, restore the universe and run the frame loop."""
        logger.info("Starting Starfield engine (env=%s)", settings.environment)

        engine = engine_factory()
        app.state.engine = engine
        await engine.start()
        frames = asyncio.create_task(frame_loop(engine, interval))

        logger.info("Engine ready with %d members.", len(engine.store))
        yield

        logger.info("Shutting down...")
        frames.cancel()
        await engine.stop()

    app = FastAPI(
        title="Starfield Engine",
        description=(
            "Community graph explorer: members as points in a 3D universe, "
            "loaded incrementally from a remote data service."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(search.router, prefix="/search", tags=["Search"])
    app.include_router(selection.router, prefix="/selection", tags=["Selection"])
    app.include_router(locations.router, prefix="/locations", tags=["Locations"])
    app.include_router(admin.router, tags=["Admin"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    # ── OTel FastAPI instrumentation ──────────────────────────────────────
    instrument_app(app)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("starfield.main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()

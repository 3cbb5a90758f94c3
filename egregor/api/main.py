from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from egregor.api.deps import BROADCAST_KEY
from egregor.api.routers.rooms import router as rooms_router
from egregor.core.errors import EgregorError
from egregor.core.obs.logging import configure_json_logging, logger
from egregor.core.obs.metrics import PROM_ENABLED
from egregor.core.settings import settings
from egregor.infra.broadcast.base import BroadcastRegistry

# Initialize observability after imports
configure_json_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: close the change broadcaster on shutdown."""
    yield
    bc = BroadcastRegistry.get(BROADCAST_KEY)
    if bc is not None:
        try:
            await bc.close()
        except Exception as e:
            logger.warning(f"Shutdown warning: {e}")


app = FastAPI(title=f"{settings.APP_NAME} - Room API", lifespan=lifespan)


@app.exception_handler(EgregorError)
async def egregor_error_handler(request: Request, exc: EgregorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Request failed: %s", exc, extra={"status": exc.status_code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": str(exc)}},
    )


@app.get("/health")
def health():
    return {"status": "ok", "service": "room-sync"}


if PROM_ENABLED:

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(rooms_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)

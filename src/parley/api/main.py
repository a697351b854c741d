from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
import logging
import math

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..domain.errors import ChatError, RateLimited
from ..observability.metrics import metrics_middleware_factory
from ..services.stream_coordinator import StreamCoordinator
from .deps import get_coordinator, get_rate_limit_gate, get_settings
from .routers.chat import router as chat_router

load_dotenv()  # Load environment variables from .env if present (PARLEY_LLM_API_KEY, etc.)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    limiter = get_rate_limit_gate().limiter
    limiter.start()
    logger.info("rate_limit_sweep_started")
    try:
        yield
    finally:
        limiter.stop()
        logger.info("rate_limit_sweep_stopped")


app = FastAPI(title="Parley Conversation API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
# Also expose the same routes under /api
app.include_router(chat_router, prefix="/api")


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, RateLimited) and exc.limit is not None:
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = str(exc.remaining)
        if exc.reset_at_ms is not None:
            headers["X-RateLimit-Reset"] = str(math.ceil(exc.reset_at_ms / 1000))
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.get("/")
def root():
    return {"name": "Parley Conversation API", "version": "0.1.0"}


@app.get("/health")
def health(coordinator: StreamCoordinator = Depends(get_coordinator)):
    settings = get_settings()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": settings.store_impl,
            "provider": "ok" if coordinator.provider_available else "unconfigured",
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

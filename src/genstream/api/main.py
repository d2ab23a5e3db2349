from __future__ import annotations

from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.generation import router as generation_router
from ..observability.metrics import metrics_middleware_factory
from ..services.ledger import get_ledger

load_dotenv()  # Load DAILY_TOKEN_LIMIT, REDIS_URL, provider keys, etc. from .env if present

app = FastAPI(title="genstream API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(generation_router)
# Same routes under /api for proxies that mount the service there
app.include_router(generation_router, prefix="/api")


@app.get("/")
def root():
    return {"name": "genstream API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "ledger": get_ledger().mode,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

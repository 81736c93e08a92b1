from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from ..domain.errors import ChatError, InvalidRequest, RateLimited
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, JWT_SECRET, etc.)

app = FastAPI(title="Aura Chat API", version="0.1.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(chat_router)

# Also expose the same routers under /api
app.include_router(chat_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("AURA_CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"path": request.url.path, "code": exc.code})
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": str(err.get("msg", ""))}
        for err in exc.errors()
    ]
    logger.warning("validation_failed", extra={"path": request.url.path, "errors": errors})
    payload = InvalidRequest(errors[0]["message"] if errors else "Validation failed").to_payload()
    payload["errors"] = errors
    return JSONResponse(status_code=422, content=payload)


@app.get("/")
def root():
    return {"name": "Aura Chat API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": (os.getenv("AURA_STORE_IMPL") or "memory").lower(),
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

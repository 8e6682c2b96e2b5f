from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.callback import router as callback_router
from app.api.dependencies import lifespan_http_clients
from app.api.flows import router as flows_router
from app.api.health import router as health_router
from app.api.metrics_endpoint import router as metrics_router
from app.api.relay import router as relay_router
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.redis import lifespan_redis
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Torn down in reverse order.
    async with lifespan_redis():
        async with lifespan_http_clients():
            yield


app = FastAPI(
    title="oauth-flow-debugger",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# A browser UI served from another origin drives the Flow API and the relay.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[SETTINGS.public_origin, "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs first: RequestContext → Metrics → CORS → route handler.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(relay_router)
app.include_router(callback_router)
app.include_router(flows_router)

logger.info(
    "oauth-flow-debugger started  env=%s log_level=%s port=%d delivery=%s relay=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    SETTINGS.delivery_mode,
    SETTINGS.relay_url,
)

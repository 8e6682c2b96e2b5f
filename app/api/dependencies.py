"""Shared wiring for the routers: HTTP clients and the flow orchestrator.

Everything here is a module-level singleton exposed through a getter so the
routers take it with ``Depends(...)`` and tests can swap it out through
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx

from app.core.config import SETTINGS
from app.repos.ephemeral_repo import callback_store, redirect_store
from app.repos.state_repo import state_repo
from app.services.delivery import DirectDelivery, RelayDelivery
from app.services.orchestrator import Deliveries, FlowOrchestrator
from app.services.state_holder import AppStateHolder

logger = logging.getLogger(__name__)

# Outbound calls to authorization servers: direct delivery and the relay
# endpoint both use this one.
outbound_client = httpx.AsyncClient(
    follow_redirects=True,
    timeout=SETTINGS.http_timeout_seconds,
)

# Relay delivery posts to this service's own relay endpoint.
relay_client = httpx.AsyncClient(timeout=SETTINGS.http_timeout_seconds)

state_holder = AppStateHolder(state_repo)

orchestrator = FlowOrchestrator(
    state_holder,
    Deliveries(
        direct=DirectDelivery(outbound_client, SETTINGS.public_origin),
        relay=RelayDelivery(relay_client, SETTINGS.relay_url),
        default_mode=SETTINGS.delivery_mode,
    ),
    callback_store,
    redirect_store,
    SETTINGS,
)


def get_orchestrator() -> FlowOrchestrator:
    return orchestrator


def get_outbound_client() -> httpx.AsyncClient:
    return outbound_client


@asynccontextmanager
async def lifespan_http_clients():
    """Close the shared HTTP clients on shutdown."""
    yield
    await outbound_client.aclose()
    await relay_client.aclose()
    logger.info("HTTP clients closed")

"""Prometheus scrape endpoint.

Besides the HTTP request metrics this exposes the flow-engine counters:
oauth_protocol_calls_total, delivery_requests_total and relay_requests_total.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

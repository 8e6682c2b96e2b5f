"""Redirect target for the authorization server.

GET /callback stores everything the server put on the query string as the
pending-callback record, then resumes the flow that started the redirect.
Answers 503 when the redirect records cannot be stored or read.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.dependencies import get_orchestrator
from app.core.errors import TransportError
from app.core.logging import presence
from app.models.flow import flow_adapter
from app.models.http_exchange import now_ms
from app.models.redirect_records import PendingCallback
from app.services import flow_store
from app.services.orchestrator import FlowOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["callback"])

_KNOWN_PARAMS = frozenset({"code", "state", "error", "error_description", "iss"})


@router.get("/callback")
async def callback(
    request: Request,
    orchestrator: Annotated[FlowOrchestrator, Depends(get_orchestrator)],
) -> dict:
    query = request.query_params
    record = PendingCallback(
        timestamp=now_ms(),
        code=query.get("code"),
        state=query.get("state"),
        error=query.get("error"),
        error_description=query.get("error_description"),
        iss=query.get("iss"),
        extra_params={k: v for k, v in query.items() if k not in _KNOWN_PARAMS},
        callback_url=str(request.url),
    )
    logger.info(
        "FLOW [callback] received  code=%s error=%s",
        presence(record.code),
        record.error,
    )
    try:
        await orchestrator.capture_callback(record)
        state, flow_id = await orchestrator.handle_callback()
    except TransportError as exc:
        logger.warning("FLOW [callback] cannot be processed: %s", exc.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message
        ) from exc
    flow = flow_store.get_flow(state, flow_id) if flow_id is not None else None
    if flow is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No authorization in progress for this callback",
        )
    return flow_adapter.dump_python(flow, mode="json")

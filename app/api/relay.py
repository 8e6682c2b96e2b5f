"""Relay endpoint: forwards one HTTP request on behalf of the flow engine.

POST {RELAY_PATH} with {url, method?, headers?, body?}.  Whatever the target
answers, including 4xx/5xx, is mirrored back as 200 {status, headers, body};
only a malformed request (400) or a target that cannot be fetched (502,
including a well-formed URL with a non-HTTP scheme) makes the relay answer
with its own error:

  400  {"error": "Missing or invalid \"url\" field"}
  400  {"error": "Invalid URL format"}
  502  {"error": "Proxy request failed: <reason>"}
"""

from __future__ import annotations

import json
import logging
from typing import Annotated
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.dependencies import get_outbound_client
from app.core.config import SETTINGS
from app.core.metrics import RELAY_REQUESTS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


def _error(status_code: int, message: str, result: str) -> JSONResponse:
    RELAY_REQUESTS.labels(result=result).inc()
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(SETTINGS.relay_path)
async def relay(
    request: Request,
    client: Annotated[httpx.AsyncClient, Depends(get_outbound_client)],
) -> JSONResponse:
    # Parsed by hand: a body FastAPI would reject with 422 must still get the
    # relay's own 400 envelope.
    try:
        payload = json.loads(await request.body())
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}

    url = payload.get("url")
    if not url or not isinstance(url, str):
        return _error(400, 'Missing or invalid "url" field', "bad_request")

    try:
        parts = urlsplit(url)
    except ValueError:
        return _error(400, "Invalid URL format", "bad_request")
    if not parts.scheme or (parts.scheme in ("http", "https") and not parts.netloc):
        return _error(400, "Invalid URL format", "bad_request")

    method = str(payload.get("method") or "GET").upper()
    raw_headers = payload.get("headers")
    headers = (
        {str(k): str(v) for k, v in raw_headers.items()}
        if isinstance(raw_headers, dict)
        else {}
    )
    body = payload.get("body") or None
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)

    logger.info("relay %s %s", method, url)
    if parts.scheme not in ("http", "https"):
        logger.warning("relay %s %s refused: unsupported protocol", method, url)
        return _error(
            502,
            f"Proxy request failed: unsupported protocol '{parts.scheme}:'",
            "upstream_failure",
        )
    try:
        resp = await client.request(method, url, headers=headers, content=body)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("relay %s %s failed: %s", method, url, exc)
        return _error(
            502, f"Proxy request failed: {str(exc) or 'Unknown error'}", "upstream_failure"
        )

    RELAY_REQUESTS.labels(result="forwarded").inc()
    logger.info("relay %s %s -> %d", method, url, resp.status_code)
    return JSONResponse(
        status_code=200,
        content={
            "status": resp.status_code,
            "headers": dict(resp.headers),
            "body": resp.text,
        },
    )

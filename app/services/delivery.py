"""Delivery layer: executes one HTTP request and captures the exchange.

Two implementations behind one contract:

  DirectDelivery: calls the target from this process with httpx.
  RelayDelivery:  posts {url, method, headers, body} to the same-origin
                   relay endpoint (app/api/relay.py), which performs the call
                   and mirrors the target's {status, headers, body} back.

Both return a DeliveryResult for a 2xx target response and otherwise raise:

  ProtocolError:  the target answered with a non-2xx status.  For the relay
                   this is the *embedded* status, so a relayed 404 and a
                   direct 404 look the same to callers.
  TransportError: nothing usable came back (connection failure, timeout,
                   relay-level error).

Either error carries the HttpExchange recorded so far.  Response bodies are
parsed as JSON when possible and left as text otherwise.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx

from app.core.config import DeliveryMode
from app.core.errors import ProtocolError, TransportError
from app.core.metrics import DELIVERY_REQUESTS
from app.models.http_exchange import HttpExchange, HttpRequest, HttpResponse, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    response: HttpResponse
    data: Any
    exchange: HttpExchange


class Delivery(Protocol):
    mode: DeliveryMode

    async def execute(self, request: HttpRequest) -> DeliveryResult: ...


def parse_body(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return body


def status_text(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


def format_error_message(status: int, status_text: str, data: Any) -> str:
    """Describe a failed response, preferring an RFC 6749 error body."""
    if isinstance(data, dict):
        if data.get("error"):
            error = str(data["error"])
            description = data.get("error_description")
            return f"{error}: {description}" if description else error
        # Some servers answer with {"message": "..."} instead.
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {status}: {status_text}"


def _protocol_error(response: HttpResponse, data: Any, exchange: HttpExchange) -> ProtocolError:
    error_code = error_description = None
    if isinstance(data, dict) and data.get("error"):
        error_code = str(data["error"])
        if data.get("error_description"):
            error_description = str(data["error_description"])
    return ProtocolError(
        format_error_message(response.status, response.status_text, data),
        exchange,
        status=response.status,
        error_code=error_code,
        error_description=error_description,
    )


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


class DirectDelivery:
    """Calls the target directly from this process."""

    mode: DeliveryMode = "direct"

    def __init__(self, client: httpx.AsyncClient, app_origin: str) -> None:
        self._client = client
        self._app_origin = _origin(app_origin)

    def _diagnose(self, exc: Exception, url: str) -> str:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, httpx.TimeoutException):
            return f"Failed to fetch: request timed out ({message})"
        target = _origin(url)
        if target is not None and target != self._app_origin:
            return (
                f"Failed to fetch: likely CORS rejection - server at {target} must "
                f"include 'Access-Control-Allow-Origin' header ({message})"
            )
        return f"Failed to fetch: Server unreachable or connection refused ({message})"

    async def execute(self, request: HttpRequest) -> DeliveryResult:
        timestamp = now_ms()
        try:
            resp = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            message = self._diagnose(exc, request.url)
            DELIVERY_REQUESTS.labels(mode=self.mode, outcome="transport_error").inc()
            logger.warning("direct %s %s failed: %s", request.method, request.url, message)
            exchange = HttpExchange(request=request, timestamp=timestamp, error=message)
            raise TransportError(message, exchange) from exc

        response = HttpResponse(
            status=resp.status_code,
            status_text=resp.reason_phrase or status_text(resp.status_code),
            headers=dict(resp.headers),
            body=resp.text,
        )
        exchange = HttpExchange(request=request, timestamp=timestamp, response=response)
        data = parse_body(response.body)

        if not resp.is_success:
            DELIVERY_REQUESTS.labels(mode=self.mode, outcome="http_error").inc()
            raise _protocol_error(response, data, exchange)

        DELIVERY_REQUESTS.labels(mode=self.mode, outcome="ok").inc()
        return DeliveryResult(response=response, data=data, exchange=exchange)


class RelayDelivery:
    """Sends the request through the same-origin relay endpoint."""

    mode: DeliveryMode = "relay"

    def __init__(self, client: httpx.AsyncClient, relay_url: str) -> None:
        self._client = client
        self._relay_url = relay_url

    def _fail(self, request: HttpRequest, timestamp: int, message: str) -> TransportError:
        DELIVERY_REQUESTS.labels(mode=self.mode, outcome="transport_error").inc()
        logger.warning("relay %s %s failed: %s", request.method, request.url, message)
        exchange = HttpExchange(request=request, timestamp=timestamp, error=message)
        return TransportError(message, exchange)

    async def execute(self, request: HttpRequest) -> DeliveryResult:
        timestamp = now_ms()
        envelope = {
            "url": request.url,
            "method": request.method,
            "headers": request.headers,
            "body": request.body,
        }
        try:
            resp = await self._client.post(self._relay_url, json=envelope)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._fail(
                request, timestamp, str(exc) or "Failed to reach relay server"
            ) from exc

        if resp.status_code != 200:
            # The relay itself refused or could not reach the target.
            relay_error = parse_body(resp.text)
            if isinstance(relay_error, dict) and relay_error.get("error"):
                message = str(relay_error["error"])
            else:
                message = f"Relay error: {resp.status_code}"
            raise self._fail(request, timestamp, message)

        try:
            mirrored = resp.json()
            status = int(mirrored["status"])
            headers = {str(k): str(v) for k, v in (mirrored.get("headers") or {}).items()}
            body = mirrored.get("body") or ""
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise self._fail(request, timestamp, "Malformed relay response") from exc

        response = HttpResponse(
            status=status,
            status_text=status_text(status),
            headers=headers,
            body=str(body),
        )
        exchange = HttpExchange(request=request, timestamp=timestamp, response=response)
        data = parse_body(response.body)

        if not 200 <= status < 300:
            DELIVERY_REQUESTS.labels(mode=self.mode, outcome="http_error").inc()
            raise _protocol_error(response, data, exchange)

        DELIVERY_REQUESTS.labels(mode=self.mode, outcome="ok").inc()
        return DeliveryResult(response=response, data=data, exchange=exchange)

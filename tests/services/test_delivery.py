from __future__ import annotations

import asyncio

import httpx
import pytest

from app.api.dependencies import get_outbound_client
from app.core.errors import ProtocolError, TransportError
from app.main import app
from app.models.http_exchange import HttpRequest
from app.services.delivery import (
    DirectDelivery,
    RelayDelivery,
    _origin,
    format_error_message,
    status_text,
)

AS_URL = "https://as.example.com"
RELAY_URL = "http://testserver/api/proxy"


def _raising(exc_type: type[Exception]):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("boom", request=request)

    return handler


@pytest.fixture
def relay() -> RelayDelivery:
    return RelayDelivery(httpx.AsyncClient(transport=httpx.ASGITransport(app=app)), RELAY_URL)


def _relay_answering(handler) -> RelayDelivery:
    return RelayDelivery(httpx.AsyncClient(transport=httpx.MockTransport(handler)), RELAY_URL)


# ---- helpers ----


def test_status_text() -> None:
    assert status_text(404) == "Not Found"
    assert status_text(299) == "Unknown"


def test_format_error_message_variants() -> None:
    assert (
        format_error_message(400, "Bad Request", {"error": "invalid_grant", "error_description": "x"})
        == "invalid_grant: x"
    )
    assert format_error_message(400, "Bad Request", {"error": "invalid_grant"}) == "invalid_grant"
    assert format_error_message(403, "Forbidden", {"message": "nope"}) == "nope"
    assert format_error_message(502, "Bad Gateway", "<html>") == "HTTP 502: Bad Gateway"


# ---- direct ----


def test_direct_success_records_exchange(auth_server, outbound) -> None:
    delivery = DirectDelivery(outbound, "http://testserver")
    request = HttpRequest(method="POST", url=f"{AS_URL}/introspect", body="token=x")
    res = asyncio.run(delivery.execute(request))

    assert res.data == {"active": True, "scope": "openid"}
    assert res.exchange.request == request
    assert res.exchange.response.status == 200
    assert res.exchange.response.status_text == "OK"
    assert res.exchange.error is None
    assert res.exchange.timestamp > 0


def test_direct_non_2xx_raises_protocol_error(auth_server, outbound) -> None:
    delivery = DirectDelivery(outbound, "http://testserver")
    with pytest.raises(ProtocolError) as excinfo:
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/missing")))
    assert excinfo.value.status == 404
    assert excinfo.value.message == "not_found"
    assert "not_found" in excinfo.value.exchange.response.body


def test_direct_text_body_is_kept_as_text(auth_server, outbound) -> None:
    auth_server.routes[("GET", "/plain")] = lambda _r: httpx.Response(200, text="hello")
    delivery = DirectDelivery(outbound, "http://testserver")
    res = asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/plain")))
    assert res.data == "hello"


def test_direct_cross_origin_failure_mentions_cors() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_raising(httpx.ConnectError)))
    delivery = DirectDelivery(client, "http://testserver")
    with pytest.raises(TransportError) as excinfo:
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))
    message = excinfo.value.message
    assert "CORS" in message
    assert "https://as.example.com" in message
    assert excinfo.value.exchange.error == message


def test_direct_same_origin_failure_reports_unreachable() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_raising(httpx.ConnectError)))
    delivery = DirectDelivery(client, "http://testserver")
    with pytest.raises(TransportError, match="Server unreachable or connection refused"):
        asyncio.run(delivery.execute(HttpRequest(method="GET", url="http://testserver/x")))


def test_direct_timeout_is_a_transport_error() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_raising(httpx.ReadTimeout)))
    delivery = DirectDelivery(client, "http://testserver")
    with pytest.raises(TransportError, match="timed out"):
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))



def test_origin_of_unparseable_url_is_unknown() -> None:
    assert _origin("https://AS.example.com/x") == "https://as.example.com"
    assert _origin("http://[::1") is None
    assert _origin("/relative") is None

# ---- relay (through the real relay endpoint) ----


def test_relay_mirrors_successful_response(auth_server, relay) -> None:
    res = asyncio.run(
        relay.execute(HttpRequest(method="GET", url=f"{AS_URL}/.well-known/oauth-authorization-server"))
    )
    assert res.data["issuer"] == AS_URL
    assert res.exchange.response.status == 200
    assert auth_server.requests[-1].url.path == "/.well-known/oauth-authorization-server"


def test_relay_forwards_method_headers_and_body(auth_server, relay) -> None:
    asyncio.run(
        relay.execute(
            HttpRequest(
                method="POST",
                url=f"{AS_URL}/token",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                body="grant_type=authorization_code&code=abc",
            )
        )
    )
    forwarded = auth_server.last("/token")
    assert forwarded.method == "POST"
    assert forwarded.headers["content-type"] == "application/x-www-form-urlencoded"
    assert forwarded.content == b"grant_type=authorization_code&code=abc"


def test_relay_embedded_error_matches_direct(auth_server, outbound, relay) -> None:
    auth_server.routes[("POST", "/token")] = lambda _r: httpx.Response(
        400, json={"error": "invalid_client"}
    )
    request = HttpRequest(method="POST", url=f"{AS_URL}/token", body="x=1")
    direct = DirectDelivery(outbound, "http://testserver")

    with pytest.raises(ProtocolError) as via_direct:
        asyncio.run(direct.execute(request))
    with pytest.raises(ProtocolError) as via_relay:
        asyncio.run(relay.execute(request))

    assert via_relay.value.message == via_direct.value.message == "invalid_client"
    assert via_relay.value.status == via_direct.value.status == 400
    assert via_relay.value.exchange.response.status_text == "Bad Request"


def test_relay_level_error_is_transport_error() -> None:
    delivery = _relay_answering(
        lambda _r: httpx.Response(400, json={"error": "Invalid URL format"})
    )
    with pytest.raises(TransportError) as excinfo:
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))
    assert excinfo.value.message == "Invalid URL format"
    assert excinfo.value.exchange.response is None


def test_relay_error_without_body_uses_status() -> None:
    delivery = _relay_answering(lambda _r: httpx.Response(503, text="down"))
    with pytest.raises(TransportError, match="Relay error: 503"):
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))


def test_relay_unreachable_target_reports_proxy_failure() -> None:
    failing = httpx.AsyncClient(transport=httpx.MockTransport(_raising(httpx.ConnectError)))
    app.dependency_overrides[get_outbound_client] = lambda: failing
    delivery = RelayDelivery(httpx.AsyncClient(transport=httpx.ASGITransport(app=app)), RELAY_URL)
    with pytest.raises(TransportError, match="Proxy request failed: boom"):
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))


def test_relay_malformed_envelope() -> None:
    delivery = _relay_answering(lambda _r: httpx.Response(200, json={"nope": True}))
    with pytest.raises(TransportError, match="Malformed relay response"):
        asyncio.run(delivery.execute(HttpRequest(method="GET", url=f"{AS_URL}/x")))

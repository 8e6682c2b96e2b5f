from __future__ import annotations

import dataclasses
import json
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from urllib.parse import parse_qsl

import httpx
import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.api.dependencies import get_orchestrator, get_outbound_client  # noqa: E402
from app.core.config import SETTINGS, Settings  # noqa: E402
from app.main import app  # noqa: E402
from app.repos.ephemeral_repo import InMemoryEphemeralStore  # noqa: E402
from app.repos.state_repo import InMemoryStateRepo  # noqa: E402
from app.services.delivery import DirectDelivery, RelayDelivery  # noqa: E402
from app.services.orchestrator import Deliveries, FlowOrchestrator  # noqa: E402
from app.services.state_holder import AppStateHolder  # noqa: E402

AS_URL = "https://as.example.com"
APP_ORIGIN = "http://testserver"

METADATA = {
    "issuer": AS_URL,
    "authorization_endpoint": f"{AS_URL}/authorize",
    "token_endpoint": f"{AS_URL}/token",
    "registration_endpoint": f"{AS_URL}/register",
    "introspection_endpoint": f"{AS_URL}/introspect",
    "revocation_endpoint": f"{AS_URL}/revoke",
    "scopes_supported": ["openid", "profile"],
    "code_challenge_methods_supported": ["S256"],
}

REGISTERED_CLIENT = {
    "client_id": "client-123",
    "client_secret": "s3cret",
    "token_endpoint_auth_method": "client_secret_basic",
    "redirect_uris": [f"{APP_ORIGIN}/callback"],
}

Handler = Callable[[httpx.Request], httpx.Response]


def json_response(status: int, payload: object) -> Handler:
    return lambda _request: httpx.Response(status, json=payload)


def form_of(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode()))


class FakeAuthServer:
    """An authorization server behind httpx.MockTransport.

    Routes are keyed by (method, path); unknown routes answer 404.  Every
    request is recorded in ``requests``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Handler] = {
            ("GET", "/.well-known/oauth-authorization-server"): json_response(200, METADATA),
            ("POST", "/register"): json_response(201, REGISTERED_CLIENT),
            ("POST", "/token"): self._token,
            ("POST", "/introspect"): json_response(200, {"active": True, "scope": "openid"}),
            ("POST", "/revoke"): lambda _request: httpx.Response(200),
        }
        self.refresh_returns_new_refresh_token = False

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = form_of(request)
        if form.get("grant_type") == "refresh_token":
            tokens = {"access_token": "at-2", "token_type": "Bearer", "expires_in": 3600}
            if self.refresh_returns_new_refresh_token:
                tokens["refresh_token"] = "rt-2"
            return httpx.Response(200, json=tokens)
        return httpx.Response(
            200,
            json={
                "access_token": "at-1",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "rt-1",
            },
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        return route(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handle), follow_redirects=True
        )

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]

    def last_json(self, path: str) -> dict:
        return json.loads(self.last(path).content)


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
def test_settings() -> Settings:
    return dataclasses.replace(SETTINGS, public_origin=APP_ORIGIN, delivery_mode="direct")


@pytest.fixture
def outbound(auth_server: FakeAuthServer) -> httpx.AsyncClient:
    return auth_server.client()


@pytest.fixture
def orchestrator(
    outbound: httpx.AsyncClient, test_settings: Settings
) -> FlowOrchestrator:
    # Relay delivery goes through the real relay endpoint of the app, whose
    # own outbound client is the fake authorization server.
    relay_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    return FlowOrchestrator(
        AppStateHolder(InMemoryStateRepo()),
        Deliveries(
            direct=DirectDelivery(outbound, APP_ORIGIN),
            relay=RelayDelivery(relay_client, test_settings.relay_url),
            default_mode=test_settings.delivery_mode,
        ),
        InMemoryEphemeralStore(),
        InMemoryEphemeralStore(),
        test_settings,
    )


@pytest.fixture(autouse=True)
def override_dependencies(
    orchestrator: FlowOrchestrator, outbound: httpx.AsyncClient
) -> Iterator[None]:
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_outbound_client] = lambda: outbound
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)

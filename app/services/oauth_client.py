"""OAuth 2.0 / OpenID Connect client operations.

Each network operation takes a Delivery (direct or relay) and returns a
ProtocolResult(result, exchange), or raises a FlowError subclass carrying the
exchange captured so far.  Nothing here touches flow state; sequencing lives
in app/services/orchestrator.py.

Operations:
  discover_metadata:  RFC 8414 metadata, falling back to OIDC discovery on 404
  register_client:    RFC 7591 dynamic client registration
  build_authorization_url: authorization request URL (no network)
  exchange_token:     authorization_code grant
  refresh_token:      refresh_token grant
  introspect_token:   RFC 7662
  revoke_token:       RFC 7009

OPTIONAL FIELD CONVENTION
-------------------------
Optional request fields go through resolve_optional():
  None, "" or []  → the field is not sent at all
  " "             → the field is sent with an empty value ("")
  [" "]           → the field is sent as an empty list
Inside lists, " " items become "" and "" items are dropped.  This lets a
caller probe how a server treats an absent field versus an empty one.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from app.core.errors import ProtocolError, ValidationError
from app.models.http_exchange import HttpExchange, HttpRequest
from app.services.delivery import Delivery

logger = logging.getLogger(__name__)

OAUTH_WELL_KNOWN = "/.well-known/oauth-authorization-server"
OIDC_WELL_KNOWN = "/.well-known/openid-configuration"

# RFC 7591 §2 client metadata this client knows how to send.
REGISTRATION_FIELDS = (
    "redirect_uris",
    "token_endpoint_auth_method",
    "grant_types",
    "response_types",
    "client_name",
    "client_uri",
    "logo_uri",
    "scope",
    "contacts",
    "tos_uri",
    "policy_uri",
    "jwks_uri",
    "jwks",
    "software_id",
    "software_version",
)

_JSON_HEADERS = {"Accept": "application/json"}
_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


@dataclass(frozen=True, slots=True)
class ProtocolResult:
    result: Any
    exchange: HttpExchange


@dataclass(frozen=True, slots=True)
class RegistrationRequest:
    redirect_uris: list[str] | None = None
    token_endpoint_auth_method: str | None = None
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    client_name: str | None = None
    client_uri: str | None = None
    logo_uri: str | None = None
    scope: str | None = None
    contacts: list[str] | None = None
    tos_uri: str | None = None
    policy_uri: str | None = None
    jwks_uri: str | None = None
    jwks: str | None = None  # JWK Set as a JSON string
    software_id: str | None = None
    software_version: str | None = None


@dataclass(frozen=True, slots=True)
class AuthorizationParams:
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scope: str | None = None
    response_type: str = "code"


@dataclass(frozen=True, slots=True)
class ClientAuth:
    """How the client authenticates at the token/introspection/revocation endpoints.

    method is a token_endpoint_auth_method value: client_secret_basic,
    client_secret_post, none, or a JWT method (client_secret_jwt,
    private_key_jwt) whose assertion the caller supplies in extra_params.
    """

    method: str = "none"
    client_id: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True, slots=True)
class TokenRequestParams:
    code: str
    redirect_uri: str | None = None
    code_verifier: str | None = None
    auth: ClientAuth = field(default_factory=ClientAuth)
    grant_type: str = "authorization_code"
    extra_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RefreshRequestParams:
    refresh_token: str
    scope: str | None = None
    auth: ClientAuth = field(default_factory=ClientAuth)
    grant_type: str = "refresh_token"
    extra_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TokenProbeParams:
    """Parameters shared by introspection and revocation."""

    token: str
    token_type_hint: str | None = None
    auth: ClientAuth = field(default_factory=ClientAuth)
    extra_params: dict[str, str] = field(default_factory=dict)


def resolve_optional(value: str | list[str] | None) -> str | list[str] | None:
    """Apply the optional-field convention.  None means "do not send"."""
    if value is None:
        return None
    if isinstance(value, str):
        if value == "":
            return None
        if value == " ":
            return ""
        return value
    items = list(value)
    if not items:
        return None
    if items == [" "]:
        return []
    resolved = ["" if item == " " else item for item in items if item != ""]
    return resolved or None


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _split_server_url(server_url: str) -> tuple[str, str]:
    try:
        parts = urlsplit(server_url.strip())
    except ValueError:
        raise ValidationError(f"Invalid server URL: {server_url!r}") from None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"Invalid server URL: {server_url!r}")
    return f"{parts.scheme}://{parts.netloc}", parts.path.rstrip("/")


def build_discovery_url(server_url: str) -> str:
    """RFC 8414 §3: the well-known segment goes between origin and path."""
    origin, path = _split_server_url(server_url)
    return f"{origin}{OAUTH_WELL_KNOWN}{path}"


def build_oidc_discovery_url(server_url: str) -> str:
    """OpenID Connect Discovery §4: the well-known segment is appended to the issuer."""
    origin, path = _split_server_url(server_url)
    return f"{origin}{path}{OIDC_WELL_KNOWN}"


def _metadata_from(data: Any, exchange: HttpExchange) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProtocolError("Discovery response is not a JSON object", exchange)
    return data


async def discover_metadata(server_url: str, delivery: Delivery) -> ProtocolResult:
    oauth_url = build_discovery_url(server_url)
    try:
        res = await delivery.execute(
            HttpRequest(method="GET", url=oauth_url, headers=dict(_JSON_HEADERS))
        )
    except ProtocolError as exc:
        # Only "not found" means "try the other document"; a 500 or 403 is a
        # real answer from the server and ends discovery.
        if exc.status != 404:
            raise
        oidc_url = build_oidc_discovery_url(server_url)
        logger.info("no RFC 8414 metadata at %s, trying %s", oauth_url, oidc_url)
        res = await delivery.execute(
            HttpRequest(method="GET", url=oidc_url, headers=dict(_JSON_HEADERS))
        )
    return ProtocolResult(_metadata_from(res.data, res.exchange), res.exchange)


# ---------------------------------------------------------------------------
# Dynamic client registration
# ---------------------------------------------------------------------------


def default_registration_request(redirect_uri: str, client_name: str) -> RegistrationRequest:
    return RegistrationRequest(
        redirect_uris=[redirect_uri],
        client_name=client_name,
        token_endpoint_auth_method="client_secret_basic",
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
    )


def build_registration_body(request: RegistrationRequest) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for name in REGISTRATION_FIELDS:
        value = resolve_optional(getattr(request, name))
        if value is None:
            continue
        if name == "jwks" and isinstance(value, str):
            if value == "":
                body[name] = {}
                continue
            try:
                value = json.loads(value)
            except ValueError:
                raise ValidationError("jwks must be a JSON object") from None
            if not isinstance(value, dict):
                raise ValidationError("jwks must be a JSON object")
        body[name] = value
    return body


async def register_client(
    registration_endpoint: str,
    request: RegistrationRequest,
    delivery: Delivery,
) -> ProtocolResult:
    body = build_registration_body(request)
    http_request = HttpRequest(
        method="POST",
        url=registration_endpoint,
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        body=json.dumps(body),
    )
    res = await delivery.execute(http_request)
    if not isinstance(res.data, dict) or not res.data.get("client_id"):
        raise ProtocolError("Registration response missing client_id", res.exchange)
    return ProtocolResult(dict(res.data), res.exchange)


# ---------------------------------------------------------------------------
# Authorization request
# ---------------------------------------------------------------------------


def build_authorization_url(authorization_endpoint: str, params: AuthorizationParams) -> str:
    invalid = ValidationError(f"Invalid authorization endpoint: {authorization_endpoint!r}")
    try:
        parts = urlsplit(authorization_endpoint)
    except ValueError:
        raise invalid from None
    if not parts.scheme or not parts.netloc:
        raise invalid

    ours = {
        "response_type": params.response_type,
        "client_id": params.client_id,
        "redirect_uri": params.redirect_uri,
        "scope": params.scope,
        "state": params.state,
        "code_challenge": params.code_challenge,
        "code_challenge_method": params.code_challenge_method,
    }
    # Parameters already on the endpoint survive unless we set the same name.
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in ours
    ]
    for name, raw in ours.items():
        value = resolve_optional(raw)
        if value is not None:
            query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


# ---------------------------------------------------------------------------
# Token endpoint family (form-encoded POSTs with client authentication)
# ---------------------------------------------------------------------------


def apply_client_auth(auth: ClientAuth, form: dict[str, str], headers: dict[str, str]) -> None:
    """Add client credentials to ``form`` / ``headers`` for ``auth.method``."""
    match auth.method:
        case "client_secret_basic":
            if not auth.client_id:
                raise ValidationError("client_secret_basic requires a client_id")
            raw = f"{auth.client_id}:{auth.client_secret or ''}".encode()
            headers["Authorization"] = f"Basic {base64.b64encode(raw).decode('ascii')}"
        case "client_secret_post":
            if not auth.client_id:
                raise ValidationError("client_secret_post requires a client_id")
            form["client_id"] = auth.client_id
            if auth.client_secret:
                form["client_secret"] = auth.client_secret
        case _:
            # "none" and the JWT assertion methods: identify the client in the
            # body; any assertion travels in the caller's extra_params.
            if auth.client_id:
                form["client_id"] = auth.client_id


def _form_request(
    endpoint: str,
    form: dict[str, str],
    auth: ClientAuth,
    extra_params: dict[str, str],
) -> HttpRequest:
    headers = dict(_FORM_HEADERS)
    apply_client_auth(auth, form, headers)
    for key, value in extra_params.items():
        form.setdefault(key, value)
    return HttpRequest(method="POST", url=endpoint, headers=headers, body=urlencode(form))


def _put_optional(form: dict[str, str], name: str, raw: str | None) -> None:
    value = resolve_optional(raw)
    if value is not None:
        form[name] = value  # type: ignore[assignment]


async def exchange_token(
    token_endpoint: str, params: TokenRequestParams, delivery: Delivery
) -> ProtocolResult:
    form = {"grant_type": params.grant_type, "code": params.code}
    _put_optional(form, "redirect_uri", params.redirect_uri)
    _put_optional(form, "code_verifier", params.code_verifier)
    request = _form_request(token_endpoint, form, params.auth, params.extra_params)

    res = await delivery.execute(request)
    if not isinstance(res.data, dict) or not res.data.get("access_token"):
        raise ProtocolError("Token response missing access_token", res.exchange)
    return ProtocolResult(dict(res.data), res.exchange)


async def refresh_token(
    token_endpoint: str, params: RefreshRequestParams, delivery: Delivery
) -> ProtocolResult:
    form = {"grant_type": params.grant_type, "refresh_token": params.refresh_token}
    _put_optional(form, "scope", params.scope)
    request = _form_request(token_endpoint, form, params.auth, params.extra_params)

    res = await delivery.execute(request)
    # A refresh response may omit anything (even the access token); callers
    # merge whatever came back into what they already hold.
    if not isinstance(res.data, dict):
        raise ProtocolError("Refresh response is not a JSON object", res.exchange)
    return ProtocolResult(dict(res.data), res.exchange)


def _probe_form(params: TokenProbeParams) -> dict[str, str]:
    form = {"token": params.token}
    _put_optional(form, "token_type_hint", params.token_type_hint)
    return form


async def introspect_token(
    introspection_endpoint: str, params: TokenProbeParams, delivery: Delivery
) -> ProtocolResult:
    request = _form_request(
        introspection_endpoint, _probe_form(params), params.auth, params.extra_params
    )
    res = await delivery.execute(request)
    if not isinstance(res.data, dict):
        raise ProtocolError("Introspection response is not a JSON object", res.exchange)
    return ProtocolResult(dict(res.data), res.exchange)


async def revoke_token(
    revocation_endpoint: str, params: TokenProbeParams, delivery: Delivery
) -> ProtocolResult:
    request = _form_request(
        revocation_endpoint, _probe_form(params), params.auth, params.extra_params
    )
    res = await delivery.execute(request)
    # RFC 7009 §2.2: any 200 means the token is no longer valid; the body
    # carries nothing.
    return ProtocolResult(True, res.exchange)

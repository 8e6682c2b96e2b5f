"""Flow API: the JSON surface over the flow orchestrator.

  GET    /flows                                  list (most recent first)
  POST   /flows                                  create
  GET    /flows/{id}                             one flow
  PATCH  /flows/{id}                             rename
  DELETE /flows/{id}                             delete
  POST   /flows/{id}/select                      make active
  POST   /flows/{id}/fork                        copy steps [0..step_index]
  POST   /flows/{id}/start                       submit the server URL
  POST   /flows/{id}/discovery                   fetch server metadata
  GET    /flows/{id}/registration/defaults       pre-filled registration
  POST   /flows/{id}/registration                dynamic client registration
  POST   /flows/{id}/registration/manual         enter client credentials
  GET    /flows/{id}/authorization/defaults      pre-filled authorization
  POST   /flows/{id}/authorization               build URL, await callback
  GET    /flows/{id}/token/defaults              pre-filled token request
  POST   /flows/{id}/token                       code → tokens
  GET    /flows/{id}/refresh/defaults            pre-filled refresh request
  POST   /flows/{id}/refresh                     refresh_token → tokens
  POST   /flows/{id}/introspect                  token introspection
  POST   /flows/{id}/revoke                      token revocation
  POST   /flows/{id}/steps                       append refresh/introspect/revoke
  POST   /flows/{id}/steps/{step_id}/edit        reopen a finished step
  POST   /flows/{id}/steps/{step_id}/reset       blank a step, drop its successors

Action bodies are optional.  Fields that are left out are taken from the
step's defaults, so an empty POST replays the pre-filled request.
"""

from __future__ import annotations

import dataclasses
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from pydantic import BaseModel

from app.api.dependencies import get_orchestrator
from app.core.config import DeliveryMode
from app.models.flow import Flow, flow_adapter
from app.services import flow_store
from app.services.oauth_client import AuthorizationParams
from app.services.orchestrator import FlowOrchestrator

router = APIRouter(prefix="/flows", tags=["flows"])

Orchestrator = Annotated[FlowOrchestrator, Depends(get_orchestrator)]


# --- Request schemas -------------------------------------------------------


class CreateFlowIn(BaseModel):
    name: str | None = None


class RenameFlowIn(BaseModel):
    name: str


class ForkFlowIn(BaseModel):
    step_index: int
    name: str | None = None


class StartIn(BaseModel):
    server_url: str


class DeliveryIn(BaseModel):
    mode: DeliveryMode | None = None


class RegistrationIn(BaseModel):
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
    jwks: str | None = None
    software_id: str | None = None
    software_version: str | None = None


class ManualCredentialsIn(BaseModel):
    client_id: str
    client_secret: str | None = None


class AuthorizationIn(BaseModel):
    response_type: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    code_verifier: str | None = None


class ClientAuthIn(DeliveryIn):
    auth_method: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    extra_params: dict[str, str] | None = None


class TokenIn(ClientAuthIn):
    grant_type: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None


class RefreshIn(ClientAuthIn):
    grant_type: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


class ProbeIn(ClientAuthIn):
    token: str | None = None
    token_type_hint: str | None = None


class AppendStepIn(BaseModel):
    type: Literal["refresh", "introspect", "revoke"]


# --- Helpers ---------------------------------------------------------------


def _dump(flow: Flow) -> dict[str, Any]:
    return flow_adapter.dump_python(flow, mode="json")


def _require_flow(orchestrator: FlowOrchestrator, flow_id: str) -> Flow:
    flow = orchestrator.get_flow(flow_id)
    if flow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="flow not found")
    return flow


def _current(orchestrator: FlowOrchestrator, flow_id: str) -> dict[str, Any]:
    return _dump(_require_flow(orchestrator, flow_id))


def _authorization_defaults(
    orchestrator: FlowOrchestrator, flow_id: str
) -> tuple[AuthorizationParams, str | None]:
    defaults = orchestrator.authorization_defaults(flow_id)
    if defaults is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="flow not found")
    return defaults


def _merge(defaults: Any, body: ClientAuthIn | None, *fields: str) -> Any:
    """Overlay the fields the client actually sent onto the defaults."""
    if body is None:
        return defaults
    sent = body.model_fields_set
    updates = {name: getattr(body, name) for name in fields if name in sent}
    if "extra_params" in sent:
        updates["extra_params"] = dict(body.extra_params or {})
    auth_updates = {}
    if "auth_method" in sent:
        auth_updates["method"] = body.auth_method or "none"
    for name in ("client_id", "client_secret"):
        if name in sent:
            auth_updates[name] = getattr(body, name)
    if auth_updates:
        updates["auth"] = dataclasses.replace(defaults.auth, **auth_updates)
    return dataclasses.replace(defaults, **updates)


def _params_out(params: Any) -> dict[str, Any]:
    out = dataclasses.asdict(params)
    auth = out.pop("auth", None)
    if auth is not None:
        out["auth_method"] = auth["method"]
        out["client_id"] = auth["client_id"]
        out["client_secret"] = auth["client_secret"]
    return out


# --- Flow management -------------------------------------------------------


@router.get("")
async def list_flows(orchestrator: Orchestrator) -> dict[str, Any]:
    state = orchestrator.state
    return {
        "active_flow_id": state.active_flow_id,
        "flows": [_dump(f) for f in flow_store.list_flows(state)],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_flow(
    orchestrator: Orchestrator,
    payload: Annotated[CreateFlowIn | None, Body()] = None,
) -> dict[str, Any]:
    _, flow = await orchestrator.create_flow(payload.name if payload else None)
    return _dump(flow)


@router.get("/{flow_id}")
async def get_flow(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    return _current(orchestrator, flow_id)


@router.patch("/{flow_id}")
async def rename_flow(
    flow_id: str, payload: RenameFlowIn, orchestrator: Orchestrator
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    await orchestrator.rename_flow(flow_id, payload.name)
    return _current(orchestrator, flow_id)


@router.delete("/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flow(flow_id: str, orchestrator: Orchestrator) -> Response:
    _require_flow(orchestrator, flow_id)
    await orchestrator.delete_flow(flow_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{flow_id}/select")
async def select_flow(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    state = await orchestrator.select_flow(flow_id)
    return {"active_flow_id": state.active_flow_id}


@router.post("/{flow_id}/fork", status_code=status.HTTP_201_CREATED)
async def fork_flow(
    flow_id: str, payload: ForkFlowIn, orchestrator: Orchestrator
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    _, forked = await orchestrator.fork_flow(flow_id, payload.step_index, payload.name)
    if forked is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="step_index out of range"
        )
    return _dump(forked)


# --- Steps -----------------------------------------------------------------


@router.post("/{flow_id}/start")
async def submit_start(
    flow_id: str, payload: StartIn, orchestrator: Orchestrator
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    await orchestrator.submit_start(flow_id, payload.server_url)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/discovery")
async def discover(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[DeliveryIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    await orchestrator.discover(flow_id, payload.mode if payload else None)
    return _current(orchestrator, flow_id)


@router.get("/{flow_id}/registration/defaults")
async def registration_defaults(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    return dataclasses.asdict(orchestrator.registration_defaults())


@router.post("/{flow_id}/registration")
async def register(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[RegistrationIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    request = orchestrator.registration_defaults()
    if payload is not None:
        request = dataclasses.replace(request, **payload.model_dump(exclude_unset=True))
    await orchestrator.register(flow_id, request)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/registration/manual")
async def set_manual_credentials(
    flow_id: str, payload: ManualCredentialsIn, orchestrator: Orchestrator
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    await orchestrator.set_manual_credentials(
        flow_id, payload.client_id, payload.client_secret
    )
    return _current(orchestrator, flow_id)


@router.get("/{flow_id}/authorization/defaults")
async def authorization_defaults(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    params, code_verifier = _authorization_defaults(orchestrator, flow_id)
    return {**dataclasses.asdict(params), "code_verifier": code_verifier}


@router.post("/{flow_id}/authorization")
async def authorize(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[AuthorizationIn | None, Body()] = None,
) -> dict[str, Any]:
    params, code_verifier = _authorization_defaults(orchestrator, flow_id)
    if payload is not None:
        sent = payload.model_dump(exclude_unset=True)
        code_verifier = sent.pop("code_verifier", code_verifier)
        params = AuthorizationParams(**{**dataclasses.asdict(params), **sent})

    result = await orchestrator.authorize(flow_id, params, code_verifier)
    return {
        "flow": _current(orchestrator, flow_id),
        "authorization_url": result.authorization_url,
    }


@router.get("/{flow_id}/token/defaults")
async def token_defaults(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    return _params_out(orchestrator.token_defaults(flow_id))


@router.post("/{flow_id}/token")
async def exchange_token(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[TokenIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    params = _merge(
        orchestrator.token_defaults(flow_id),
        payload,
        "grant_type",
        "code",
        "redirect_uri",
        "code_verifier",
    )
    await orchestrator.exchange_token(flow_id, params, payload.mode if payload else None)
    return _current(orchestrator, flow_id)


@router.get("/{flow_id}/refresh/defaults")
async def refresh_defaults(flow_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    return _params_out(orchestrator.refresh_defaults(flow_id))


@router.post("/{flow_id}/refresh")
async def refresh(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[RefreshIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    params = _merge(
        orchestrator.refresh_defaults(flow_id),
        payload,
        "grant_type",
        "refresh_token",
        "scope",
    )
    await orchestrator.refresh(flow_id, params, payload.mode if payload else None)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/introspect")
async def introspect(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[ProbeIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    params = _merge(
        orchestrator.probe_defaults(flow_id), payload, "token", "token_type_hint"
    )
    await orchestrator.introspect(flow_id, params, payload.mode if payload else None)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/revoke")
async def revoke(
    flow_id: str,
    orchestrator: Orchestrator,
    payload: Annotated[ProbeIn | None, Body()] = None,
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    params = _merge(
        orchestrator.probe_defaults(flow_id), payload, "token", "token_type_hint"
    )
    await orchestrator.revoke(flow_id, params, payload.mode if payload else None)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/steps")
async def append_step(
    flow_id: str, payload: AppendStepIn, orchestrator: Orchestrator
) -> dict[str, Any]:
    _require_flow(orchestrator, flow_id)
    await orchestrator.append_step(flow_id, payload.type)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/steps/{step_id}/edit")
async def edit_step(flow_id: str, step_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    flow = _require_flow(orchestrator, flow_id)
    if flow.index_of(step_id) == -1:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="step not found")
    await orchestrator.edit_step(flow_id, step_id)
    return _current(orchestrator, flow_id)


@router.post("/{flow_id}/steps/{step_id}/reset")
async def reset_step(flow_id: str, step_id: str, orchestrator: Orchestrator) -> dict[str, Any]:
    flow = _require_flow(orchestrator, flow_id)
    if flow.index_of(step_id) == -1:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="step not found")
    await orchestrator.reset_step(flow_id, step_id)
    return _current(orchestrator, flow_id)

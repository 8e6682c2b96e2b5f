"""Step variants: one frozen dataclass per protocol operation.

The set is closed: ``Step`` is the union of the nine classes below and the
``type`` field is the discriminator.  Code that branches on a step does so
with ``match step.type`` over ``STEP_TYPES``; there is no per-variant
behaviour on the classes themselves.

Request fields (what was submitted) are kept next to the result fields so a
retry can be pre-filled with exactly what was sent last time.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import Field

from app.models.http_exchange import HttpExchange

StepType = Literal[
    "start",
    "discovery",
    "registration",
    "authorization",
    "callback",
    "token",
    "refresh",
    "introspect",
    "revoke",
]
StepStatus = Literal["pending", "in_progress", "complete", "error"]
RegistrationMode = Literal["dynamic", "manual"]

STEP_TYPES: tuple[StepType, ...] = (
    "start",
    "discovery",
    "registration",
    "authorization",
    "callback",
    "token",
    "refresh",
    "introspect",
    "revoke",
)

# pending → in_progress → complete | error → pending (edit / reset)
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress"}),
    "in_progress": frozenset({"complete", "error"}),
    "complete": frozenset({"pending"}),
    "error": frozenset({"pending"}),
}


def new_id() -> str:
    return uuid4().hex


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True, kw_only=True)
class _StepBase:
    id: str
    status: StepStatus = "pending"
    error: str | None = None
    http_exchange: HttpExchange | None = None
    completed_at: int | None = None
    # Set by edit_step; the next submission discards the steps after this one.
    edited: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class StartStep(_StepBase):
    type: Literal["start"] = "start"
    server_url: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class DiscoveryStep(_StepBase):
    type: Literal["discovery"] = "discovery"
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RegistrationStep(_StepBase):
    type: Literal["registration"] = "registration"
    mode: RegistrationMode = "manual"
    request: dict[str, Any] | None = None
    credentials: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class AuthorizationStep(_StepBase):
    type: Literal["authorization"] = "authorization"
    response_type: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    code_verifier: str | None = None
    authorization_url: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class CallbackStep(_StepBase):
    # An OAuth error returned on the redirect is stored in ``error``.
    type: Literal["callback"] = "callback"
    code: str | None = None
    error_description: str | None = None
    state: str | None = None
    iss: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)
    callback_url: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class TokenStep(_StepBase):
    type: Literal["token"] = "token"
    grant_type: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    auth_method: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)
    token_endpoint: str | None = None
    tokens: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RefreshStep(_StepBase):
    type: Literal["refresh"] = "refresh"
    grant_type: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    auth_method: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)
    token_endpoint: str | None = None
    tokens: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class IntrospectStep(_StepBase):
    type: Literal["introspect"] = "introspect"
    token: str | None = None
    token_type_hint: str | None = None
    auth_method: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    introspection_endpoint: str | None = None
    token_info: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RevokeStep(_StepBase):
    type: Literal["revoke"] = "revoke"
    token: str | None = None
    token_type_hint: str | None = None
    auth_method: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    revocation_endpoint: str | None = None
    revoked: bool | None = None


Step = Union[
    StartStep,
    DiscoveryStep,
    RegistrationStep,
    AuthorizationStep,
    CallbackStep,
    TokenStep,
    RefreshStep,
    IntrospectStep,
    RevokeStep,
]

# Used wherever steps are (de)serialized, so pydantic picks the class by ``type``.
AnyStep = Annotated[Step, Field(discriminator="type")]

STEP_CLASSES: dict[str, type[Step]] = {
    "start": StartStep,
    "discovery": DiscoveryStep,
    "registration": RegistrationStep,
    "authorization": AuthorizationStep,
    "callback": CallbackStep,
    "token": TokenStep,
    "refresh": RefreshStep,
    "introspect": IntrospectStep,
    "revoke": RevokeStep,
}


def new_step(step_type: StepType, **fields: Any) -> Step:
    """A fresh pending step of the given type with a new id."""
    return STEP_CLASSES[step_type](id=new_id(), **fields)


def blank_step(step: Step) -> Step:
    """The same step (same id) with every request/result field cleared.

    A registration step keeps its mode: it was decided by discovery, not by
    anything the registration step itself submitted.
    """
    if isinstance(step, RegistrationStep):
        return RegistrationStep(id=step.id, mode=step.mode)
    return STEP_CLASSES[step.type](id=step.id)


def with_status(step: Step, status: StepStatus, **fields: Any) -> Step:
    """Move ``step`` to ``status`` (and merge ``fields``) if the move is legal."""
    if not can_transition(step.status, status):
        raise ValueError(f"illegal step transition {step.status} -> {status}")
    return dataclasses.replace(step, status=status, **fields)

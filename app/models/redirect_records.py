from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import TypeAdapter

# The two one-shot records that carry a flow across the browser's trip to the
# authorization server and back.  Both are written once, read once and
# cleared after one processing attempt.


@dataclass(frozen=True, slots=True, kw_only=True)
class PreRedirect:
    """Saved just before the browser leaves for the authorization endpoint."""

    flow_id: str
    code_verifier: str | None
    state: str | None


@dataclass(frozen=True, slots=True, kw_only=True)
class PendingCallback:
    """What the authorization server put on the redirect back to /callback."""

    timestamp: int
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    iss: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)
    callback_url: str | None = None


pre_redirect_adapter: TypeAdapter[PreRedirect] = TypeAdapter(PreRedirect)
pending_callback_adapter: TypeAdapter[PendingCallback] = TypeAdapter(PendingCallback)

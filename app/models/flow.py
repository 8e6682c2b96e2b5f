from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import TypeAdapter

from app.models.step import AnyStep

# Flow fields that later steps overwrite as they complete.
AccumulatedField = Literal["server_url", "metadata", "credentials", "tokens"]
ACCUMULATED_FIELDS: tuple[AccumulatedField, ...] = (
    "server_url",
    "metadata",
    "credentials",
    "tokens",
)


@dataclass(frozen=True, slots=True, kw_only=True)
class Flow:
    id: str
    name: str
    created_at: int
    last_modified: int
    steps: tuple[AnyStep, ...] = ()
    parent_flow_id: str | None = None
    parent_step_index: int | None = None

    server_url: str | None = None
    metadata: dict[str, Any] | None = None
    credentials: dict[str, Any] | None = None
    tokens: dict[str, Any] | None = None

    def index_of(self, step_id: str) -> int:
        """Position of the step with ``step_id``, or -1."""
        for idx, step in enumerate(self.steps):
            if step.id == step_id:
                return idx
        return -1


@dataclass(frozen=True, slots=True, kw_only=True)
class AppState:
    flows: tuple[Flow, ...] = ()
    active_flow_id: str | None = None


app_state_adapter: TypeAdapter[AppState] = TypeAdapter(AppState)
flow_adapter: TypeAdapter[Flow] = TypeAdapter(Flow)

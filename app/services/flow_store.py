"""Pure state transitions over AppState.

Every function takes the current AppState and returns a new one; the input
is never modified.  Functions that address an unknown flow or step return the
input state unchanged, except ``fork_flow`` which returns None.
"""

from __future__ import annotations

import copy
import dataclasses
from typing import Any

from app.models.flow import ACCUMULATED_FIELDS, AccumulatedField, AppState, Flow
from app.models.http_exchange import now_ms
from app.models.step import Step, StepType, StartStep, blank_step, new_id

# Accumulated flow fields derived from a step or anything after it.  Resetting
# a step of the given type clears these on the flow.
RESET_CLEARS: dict[StepType, tuple[AccumulatedField, ...]] = {
    "start": ("server_url", "metadata", "credentials", "tokens"),
    "discovery": ("metadata", "credentials", "tokens"),
    "registration": ("credentials", "tokens"),
    "authorization": ("tokens",),
    "callback": ("tokens",),
    "token": ("tokens",),
    "refresh": (),
    "introspect": (),
    "revoke": (),
}


def _default_name(state: AppState) -> str:
    return f"Flow #{len(state.flows) + 1}"


def get_flow(state: AppState, flow_id: str) -> Flow | None:
    for flow in state.flows:
        if flow.id == flow_id:
            return flow
    return None


def list_flows(state: AppState) -> list[Flow]:
    """All flows, most recently modified first."""
    return sorted(state.flows, key=lambda f: f.last_modified, reverse=True)


def create_flow(state: AppState, name: str | None = None) -> tuple[AppState, Flow]:
    now = now_ms()
    flow = Flow(
        id=new_id(),
        name=name if name is not None else _default_name(state),
        created_at=now,
        last_modified=now,
        steps=(StartStep(id=new_id()),),
    )
    new_state = dataclasses.replace(
        state, flows=state.flows + (flow,), active_flow_id=flow.id
    )
    return new_state, flow


def update_flow(state: AppState, flow_id: str, **updates: Any) -> AppState:
    """Merge ``updates`` into the flow and bump its last_modified."""
    if get_flow(state, flow_id) is None:
        return state
    if "steps" in updates:
        updates["steps"] = tuple(updates["steps"])

    def _apply(flow: Flow) -> Flow:
        # last_modified never goes backwards, even if the wall clock does.
        touched = max(now_ms(), flow.last_modified)
        return dataclasses.replace(flow, **updates, last_modified=touched)

    return dataclasses.replace(
        state,
        flows=tuple(_apply(f) if f.id == flow_id else f for f in state.flows),
    )


def rename_flow(state: AppState, flow_id: str, name: str) -> AppState:
    return update_flow(state, flow_id, name=name)


def delete_flow(state: AppState, flow_id: str) -> AppState:
    # Forks of the deleted flow keep their (now dangling) parent_flow_id.
    return dataclasses.replace(
        state,
        flows=tuple(f for f in state.flows if f.id != flow_id),
        active_flow_id=None if state.active_flow_id == flow_id else state.active_flow_id,
    )


def set_active_flow(state: AppState, flow_id: str | None) -> AppState:
    return dataclasses.replace(state, active_flow_id=flow_id)


def update_flow_state(state: AppState, flow_id: str, **accumulated: Any) -> AppState:
    """Overwrite accumulated fields (server_url, metadata, credentials, tokens)."""
    unknown = set(accumulated) - set(ACCUMULATED_FIELDS)
    if unknown:
        raise ValueError(f"not an accumulated flow field: {sorted(unknown)}")
    return update_flow(state, flow_id, **accumulated)


def add_step(state: AppState, flow_id: str, step: Step) -> AppState:
    flow = get_flow(state, flow_id)
    if flow is None:
        return state
    return update_flow(state, flow_id, steps=flow.steps + (step,))


def update_step(state: AppState, flow_id: str, step_id: str, **updates: Any) -> AppState:
    flow = get_flow(state, flow_id)
    if flow is None:
        return state
    return update_flow(
        state,
        flow_id,
        steps=tuple(
            dataclasses.replace(s, **updates) if s.id == step_id else s
            for s in flow.steps
        ),
    )


def replace_step(state: AppState, flow_id: str, step: Step) -> AppState:
    """Swap in ``step`` for the flow's step with the same id."""
    flow = get_flow(state, flow_id)
    if flow is None:
        return state
    return update_flow(
        state,
        flow_id,
        steps=tuple(step if s.id == step.id else s for s in flow.steps),
    )


def truncate_flow(
    state: AppState,
    flow_id: str,
    step_index: int,
    clear: tuple[AccumulatedField, ...] = (),
) -> AppState:
    """Keep steps [0..step_index] and set the ``clear`` fields to None."""
    flow = get_flow(state, flow_id)
    if flow is None or step_index < 0:
        return state
    cleared = {name: None for name in clear}
    return update_flow(state, flow_id, steps=flow.steps[: step_index + 1], **cleared)


def reset_step(state: AppState, flow_id: str, step_id: str) -> AppState:
    """Return a step to blank pending, discarding everything after it.

    Accumulated flow fields that the step (or any later one) produced are
    cleared according to RESET_CLEARS.
    """
    flow = get_flow(state, flow_id)
    if flow is None:
        return state
    index = flow.index_of(step_id)
    if index == -1:
        return state
    step = flow.steps[index]
    state = truncate_flow(state, flow_id, index, clear=RESET_CLEARS[step.type])
    return replace_step(state, flow_id, blank_step(step))


def fork_flow(
    state: AppState,
    flow_id: str,
    step_index: int,
    name: str | None = None,
) -> tuple[AppState, Flow] | None:
    """Copy steps [0..step_index] of a flow into a new, active flow.

    The copy of the fork-point step is set to pending so the fork resumes
    there; earlier copies keep their status.  Every copied step gets a new
    id and nothing mutable is shared with the source.
    """
    source = get_flow(state, flow_id)
    if source is None or step_index < 0 or step_index >= len(source.steps):
        return None

    copied: list[Step] = []
    for idx, step in enumerate(source.steps[: step_index + 1]):
        clone = copy.deepcopy(step)
        status = "pending" if idx == step_index else step.status
        copied.append(dataclasses.replace(clone, id=new_id(), status=status))

    now = now_ms()
    forked = Flow(
        id=new_id(),
        name=name if name is not None else _default_name(state),
        created_at=now,
        last_modified=now,
        steps=tuple(copied),
        parent_flow_id=source.id,
        parent_step_index=step_index,
        server_url=source.server_url,
        metadata=copy.deepcopy(source.metadata),
        credentials=copy.deepcopy(source.credentials),
        tokens=copy.deepcopy(source.tokens),
    )
    new_state = dataclasses.replace(
        state, flows=state.flows + (forked,), active_flow_id=forked.id
    )
    return new_state, forked

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from app.models.flow import AppState
from app.repos.state_repo import StateRepo

logger = logging.getLogger(__name__)

Transition = Callable[[AppState], AppState]


class AppStateHolder:
    """Single writer for the session's AppState.

    Transitions are pure functions applied one at a time to whatever the
    state is *now*, so two actions racing on the same flow both land, with
    the later write winning on any field they both touch.  Every accepted
    transition is saved afterwards on a worker thread; a failed save is
    logged and the in-memory state stays authoritative.
    """

    def __init__(self, repo: StateRepo, initial: AppState | None = None) -> None:
        self._repo = repo
        self._state = initial if initial is not None else repo.load_state()
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()

    @property
    def state(self) -> AppState:
        return self._state

    async def apply(self, transition: Transition) -> AppState:
        async with self._lock:
            new_state = transition(self._state)
            if new_state is self._state:
                return new_state
            self._state = new_state
        await self._persist()
        return new_state

    async def _persist(self) -> None:
        # One save at a time, always of the newest state, so a slow earlier
        # save can never overwrite a later one.
        async with self._save_lock:
            try:
                await asyncio.to_thread(self._repo.save_state, self._state)
            except Exception:
                logger.exception("Failed to save state")

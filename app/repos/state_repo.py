from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError as SchemaError

from app.core.config import SETTINGS
from app.models.flow import AppState, app_state_adapter

logger = logging.getLogger(__name__)


class StateRepo(Protocol):
    def load_state(self) -> AppState: ...
    def save_state(self, state: AppState) -> None: ...


class InMemoryStateRepo:
    def __init__(self) -> None:
        self._state = AppState()

    def load_state(self) -> AppState:
        return self._state

    def save_state(self, state: AppState) -> None:
        self._state = state


class FileStateRepo:
    """AppState as one JSON document on disk.

    A missing or unreadable file loads as an empty AppState.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load_state(self) -> AppState:
        if not self._path.exists():
            return AppState()
        try:
            return app_state_adapter.validate_json(self._path.read_bytes())
        except (OSError, SchemaError):
            logger.warning("Failed to load state from %s, starting empty", self._path)
            return AppState()

    def save_state(self, state: AppState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_bytes(app_state_adapter.dump_json(state))
        os.replace(tmp, self._path)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if SETTINGS.state_file:
    state_repo: StateRepo = FileStateRepo(SETTINGS.state_file)
else:
    state_repo = InMemoryStateRepo()

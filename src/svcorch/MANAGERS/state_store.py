"""
Persisted run state, so that ``down`` and ``status`` work from a later process.

Only handles, states and error payloads are written; environment values
(and therefore secrets) never reach the state file.
"""
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .runtime_driver import InstanceHandle
from ..MODELS.service_state import ServiceState


class ServiceRecord(BaseModel):
    """Persisted view of one service instance."""

    state: ServiceState = ServiceState.PENDING
    handle: Optional[InstanceHandle] = None
    restarts: int = 0
    last_error: Optional[Dict[str, Any]] = None


class RunState(BaseModel):
    """Persisted view of a whole run."""

    stages: List[List[str]] = []
    services: Dict[str, ServiceRecord] = {}


class StateStore:
    """
    Reads and writes ``state.json`` in the state directory.
    """
    FILENAME = "state.json"

    def __init__(self, state_dir):
        """
        :param state_dir: Directory holding the state file.
        """
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / self.FILENAME

    def load(self) -> Optional[RunState]:
        """
        :return: The persisted run, or None when there is none or it is unreadable.
        """
        if not self.path.exists():
            return None
        try:
            return RunState.model_validate_json(self.path.read_text())
        except (OSError, ValidationError):
            return None

    def save(self, state: RunState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(state.model_dump_json(indent=2))
        os.replace(tmp, self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()

"""
Persisted simulation state.

The simulation subsystem writes its state as a JSON blob; the exit monitor
reads it fresh on every tick instead of holding a cached copy. Writes are
atomic (temp file + rename).
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from core.models import SimulationState

logger = logging.getLogger(__name__)


class SimulationStateStore:
    """
    JSON file holding at least ``isActive``, ``isPaused`` and ``openPositions``.

    A missing or unreadable file reads as an inactive simulation, so the exit
    monitor treats it as a no-op tick.
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Args:
            state_file: Path to state JSON file (default: $SIM_STATE_FILE or data/simulation_state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("SIM_STATE_FILE", "data/simulation_state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized SimulationStateStore at {self.state_file}")

    def load_raw(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            logger.debug("No simulation state file found")
            return {}

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load simulation state: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning("Invalid simulation state format, treating as inactive")
            return {}
        return data

    def load(self) -> SimulationState:
        return SimulationState.from_dict(self.load_raw())

    def save(self, state: Any) -> None:
        """
        Save state atomically.

        Args:
            state: SimulationState or a JSON-serializable dict
        """
        payload = state.to_dict() if isinstance(state, SimulationState) else state

        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".simulation_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.state_file)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved simulation state")

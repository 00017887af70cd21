"""
eurusd-bot Infrastructure: State Store

Persists the audit/restart surface of a session: the active config and the
emergency-stop history. Writes are atomic (temp file + rename).
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.models import EmergencyStopReason, SafetyState, utc_now
from tools.config_validator import BotConfig

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "config": None,
    "emergency_stop_active": False,
    "emergency_stop_history": [],
    "updated_at": None,
}

# Never written to disk
REDACTED_FIELDS = ("api_key",)


class StateStore:
    """
    JSON-file state storage.

    Features:
    - Atomic writes (temp file + os.replace)
    - Credential redaction on save
    - Emergency-stop history round trip for restarts
    """

    def __init__(self, state_file: Optional[str] = None):
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """Load state, falling back to defaults for a missing or unreadable file."""
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return dict(DEFAULT_STATE)

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return dict(DEFAULT_STATE)

        if not isinstance(data, dict):
            logger.warning("Invalid state file format, using defaults")
            return dict(DEFAULT_STATE)
        return {**DEFAULT_STATE, **data}

    def save(self, state: Dict[str, Any]) -> None:
        """Save state atomically. Raises OSError if the write fails."""
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(temp_path, self.state_file)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved state to file")

    def save_session(self, config: BotConfig, safety: SafetyState) -> Dict[str, Any]:
        config_dump = config.model_dump(mode="json")
        for field in REDACTED_FIELDS:
            if config_dump.get("broker", {}).get(field):
                config_dump["broker"][field] = "***"
        state = {
            "config": config_dump,
            "emergency_stop_active": safety.emergency_stop_active,
            "emergency_stop_history": [r.to_dict() for r in safety.emergency_stop_history],
            "updated_at": utc_now().isoformat(),
        }
        self.save(state)
        return state

    def load_emergency_history(self) -> Tuple[List[EmergencyStopReason], bool]:
        """Return (history, active flag); malformed entries are dropped with a warning."""
        state = self.load()
        history = []
        for raw in state.get("emergency_stop_history") or []:
            try:
                history.append(EmergencyStopReason.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed emergency stop entry {raw!r}: {e}")
        return history, bool(state.get("emergency_stop_active"))

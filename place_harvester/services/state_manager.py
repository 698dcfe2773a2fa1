"""
Crash-consistent persistence of the orchestrator's session.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from place_harvester.data.session import Session
from place_harvester.utils.errors import StateManagementError, ValidationError
from place_harvester.utils.logging import get_logger


class StateManager:
    """
    Saves and restores a ``Session`` as JSON.

    Writes go to a temporary file that is then renamed over the state file,
    so a crash mid-write leaves the previous state intact.
    """

    def __init__(self, state_file_path: str = "data/session_state.json", max_retries: int = 3):
        """
        Initialize state manager.

        Args:
            state_file_path: Path to state persistence file
            max_retries: Retry budget for restored job queues
        """
        self.state_file_path = Path(state_file_path)
        self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_retries = max_retries
        self._recovery_mode = False

        self.logger = get_logger(__name__)

    def load_session(self) -> Optional[Session]:
        """
        Load the saved session.

        A session saved while a job was in flight puts the manager in
        recovery mode.

        Returns:
            The restored session, or None when there is nothing usable
        """
        if not self.state_file_path.exists():
            self.logger.info("No existing state file found, starting with fresh state")
            return None

        try:
            with open(self.state_file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            session = Session.from_state_dict(data.get('session') or {}, max_retries=self.max_retries)
        except (OSError, ValueError, ValidationError) as e:
            self.logger.error(f"Failed to load state from {self.state_file_path}: {e}")
            return None

        self._recovery_mode = session.is_processing
        self.logger.info(f"Loaded existing state from {self.state_file_path}",
                         saved_at=data.get('savedAt'),
                         jobs=len(session.queue),
                         recovery_mode=self._recovery_mode)
        return session

    def save_session(self, session: Session) -> None:
        """
        Persist ``session``.

        Raises:
            StateManagementError: If the file cannot be written
        """
        data: Dict[str, Any] = {
            'savedAt': datetime.now().isoformat(),
            'session': session.to_state_dict(),
        }

        try:
            temp_file = self.state_file_path.with_suffix('.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)

            # Atomic rename
            temp_file.replace(self.state_file_path)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to save state: {e}")
            raise StateManagementError(f"Failed to save state: {e}", {"path": str(self.state_file_path)})

        self.logger.debug(f"State saved to {self.state_file_path}")

    def clear(self) -> None:
        """Remove the saved state."""
        try:
            self.state_file_path.unlink()
        except FileNotFoundError:
            pass
        self._recovery_mode = False

    def is_recovery_mode(self) -> bool:
        """Check if the last load restored a session that was mid-job."""
        return self._recovery_mode

    def clear_recovery_mode(self) -> None:
        self._recovery_mode = False
        self.logger.info("Recovery mode cleared")

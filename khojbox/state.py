"""
Conversation state persistence.
One small JSON document: the last conversation id, its agent, and when it was made.
No validation happens here; the conversation manager owns the semantics.
"""

import json
import logging
from pathlib import Path

from khojbox.models import ConversationState

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """The state file exists but could not be read, parsed or written."""


class StateStore:
    """Load/save ConversationState to a JSON file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> ConversationState:
        """Return the persisted state, or an empty one if nothing was saved yet."""
        if not self.path.exists():
            return ConversationState()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"failed to read conversation state file: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"failed to parse conversation state: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError("failed to parse conversation state: not a JSON object")
        return ConversationState.from_dict(data)

    def save(self, state: ConversationState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"failed to write conversation state file: {e}") from e
        logger.debug("Conversation state saved to %s", self.path)

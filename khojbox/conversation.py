"""
Conversation lifecycle: the one Khoj conversation this process talks to.

Startup resolves which conversation to use (command-line override, forced
new, or the persisted one) and creates a fresh session on Khoj when there
is nothing to resume. After that the handle and agent can be edited, and
every edit is written back to the state file.

All access to the active handle/agent goes through ConversationManager.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from khojbox.config import DEFAULT_AGENT_SLUG
from khojbox.models import ConversationState
from khojbox.state import StateStore, StateStoreError

logger = logging.getLogger(__name__)


class InvalidConversationError(ValueError):
    """Rejected edit of the active conversation (e.g. empty id)."""


class ConversationManager:
    """Owns the active (conversation id, agent slug) pair and its persistence."""

    def __init__(self, store: StateStore, default_agent: str = DEFAULT_AGENT_SLUG):
        self.store = store
        self.default_agent = default_agent or DEFAULT_AGENT_SLUG
        self._lock = threading.Lock()
        self._conversation_id = ""
        self._agent_slug = ""
        self._needs_new = False

    @classmethod
    def from_config(cls, cfg: dict) -> ConversationManager:
        conv = cfg.get("conversation", {})
        return cls(
            StateStore(conv.get("state_file", "conversation_state.json")),
            default_agent=conv.get("default_agent", DEFAULT_AGENT_SLUG),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> str:
        with self._lock:
            return self._conversation_id

    @property
    def agent_slug(self) -> str:
        with self._lock:
            return self._agent_slug or self.default_agent

    @property
    def needs_new(self) -> bool:
        with self._lock:
            return self._needs_new

    def snapshot(self) -> tuple[str, str]:
        """(conversation id, agent) read under one lock acquisition."""
        with self._lock:
            return self._conversation_id, self._agent_slug or self.default_agent

    def display_handle(self) -> str:
        """Short form for menus: "None", the id itself, or "..." + last 4 chars."""
        conversation_id = self.conversation_id
        if not conversation_id:
            return "None"
        if len(conversation_id) <= 4:
            return conversation_id
        return "..." + conversation_id[-4:]

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self, override_id: str | None = None, force_new: bool = False) -> None:
        """Decide which conversation to use. Does not talk to Khoj."""
        if override_id:
            with self._lock:
                self._conversation_id = override_id
            logger.info("Using conversation ID from command line: %s", override_id)
            return

        if force_new:
            with self._lock:
                self._needs_new = True
            logger.info("Will create new conversation when server starts")
            return

        state = self.store.load()
        with self._lock:
            if not state.last_conversation_id:
                self._needs_new = True
                if not self._agent_slug:
                    self._agent_slug = self.default_agent
                logger.info("No saved conversation found, will create new conversation when server starts")
                return

            self._conversation_id = state.last_conversation_id
            self._agent_slug = state.agent_slug or self.default_agent
            agent = self._agent_slug

        logger.info(
            "Using saved conversation ID: %s (created: %s)",
            state.last_conversation_id,
            state.created_at or "unknown",
        )
        logger.info("Using agent slug: %s", agent)

    async def ensure_active(self, client) -> str:
        """
        Make sure there is a conversation to talk to, creating one if needed.
        SessionCreationError propagates: without a conversation there is no server.
        """
        with self._lock:
            needs_new = self._needs_new or not self._conversation_id
            conversation_id = self._conversation_id
        if not needs_new:
            return conversation_id

        logger.info("Creating new conversation...")
        conversation_id = await client.create_session(self.agent_slug)
        with self._lock:
            self._conversation_id = conversation_id
            self._needs_new = False
        try:
            self._persist()
        except StateStoreError as e:
            logger.warning("Failed to save conversation state: %s", e)

        logger.info("New conversation created: %s", conversation_id)
        return conversation_id

    async def new_conversation(self, client) -> str:
        """Start over with a fresh Khoj conversation (menu / CLI action)."""
        conversation_id = await client.create_session(self.agent_slug)
        with self._lock:
            self._conversation_id = conversation_id
            self._needs_new = False
        try:
            self._persist()
        except StateStoreError as e:
            logger.warning("Failed to save conversation state: %s", e)

        logger.info("New conversation created from menu: %s", conversation_id)
        return conversation_id

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def set_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            raise InvalidConversationError("conversation ID cannot be empty")
        with self._lock:
            self._conversation_id = conversation_id
        self._persist()
        logger.info("Conversation ID updated: %s", conversation_id)

    def set_agent(self, agent_slug: str) -> None:
        agent_slug = agent_slug or self.default_agent
        with self._lock:
            self._agent_slug = agent_slug
        self._persist()
        logger.info("Agent slug updated: %s", agent_slug)

    def _persist(self) -> None:
        conversation_id, agent_slug = self.snapshot()
        self.store.save(
            ConversationState(
                last_conversation_id=conversation_id,
                agent_slug=agent_slug,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        )

"""
Server control: the handle a tray/menu shell holds on khojbox.

Start/stop the HTTP server in a background thread and perform the small
conversation edits a menu offers. Everything conversation-related goes
through the same ConversationManager the running app uses.
"""

from __future__ import annotations

import asyncio
import logging
import threading

import uvicorn

from khojbox import main as app_module
from khojbox.backends.khoj import KhojClient
from khojbox.config import get_config
from khojbox.conversation import ConversationManager

logger = logging.getLogger(__name__)


def api_key_status(cfg: dict) -> str:
    """'Set' unless the key is empty or the "dummy" placeholder."""
    api_key = cfg["khoj"].get("api_key", "")
    if not api_key or api_key == "dummy":
        return "Not Set"
    return "Set"


class ServerControl:
    """Start/stop hooks plus conversation edits for a UI shell or the CLI."""

    def __init__(self, cfg: dict | None = None, conversations: ConversationManager | None = None):
        self.cfg = cfg or get_config()
        if conversations is None:
            conversations = ConversationManager.from_config(self.cfg)
            conversations.initialize()
        self.conversations = conversations
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Conversation edits
    # ------------------------------------------------------------------

    def _active(self) -> ConversationManager:
        """The running app's manager if the server is up, else our own."""
        if self.running and app_module.conversations is not None:
            return app_module.conversations
        return self.conversations

    def display_handle(self) -> str:
        return self._active().display_handle()

    def agent_slug(self) -> str:
        return self._active().agent_slug

    def api_key_status(self) -> str:
        return api_key_status(self.cfg)

    def set_conversation(self, conversation_id: str) -> None:
        self._active().set_conversation(conversation_id)

    def set_agent(self, agent_slug: str) -> None:
        self._active().set_agent(agent_slug)

    async def anew_conversation(self) -> str:
        """
        Create a fresh Khoj conversation and make it active.
        Errors are returned to the caller; the server keeps running.
        """
        if not self.cfg["khoj"].get("api_key"):
            raise RuntimeError("KHOJ_API_KEY not set")
        async with KhojClient.from_config(self.cfg) as client:
            return await self._active().new_conversation(client)

    def new_conversation(self) -> str:
        """Blocking anew_conversation. Not for use inside a running event loop."""
        return asyncio.run(self.anew_conversation())

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    def start(self, conversation_id: str | None = None, force_new: bool = False) -> None:
        if self.running:
            logger.info("Server already running")
            return

        app_module.startup_options = {"conversation_id": conversation_id, "force_new": force_new}
        config = uvicorn.Config(
            app_module.app,
            host=self.cfg["server"]["host"],
            port=int(self.cfg["server"]["port"]),
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="khojbox-server", daemon=True)
        self._thread.start()
        logger.info("Server starting on %s:%s", config.host, config.port)

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
        self._server = None
        self._thread = None
        logger.info("Server stopped")

#!/usr/bin/env python3
"""
khojbox CLI: an OpenAI-compatible front for one Khoj conversation.

    COMMAND           ALIASES          WHAT IT DOES
    -------           -------          ----------------------------------
    serve             start, dial      Start the adapter server
    ring              status, health   Ping a running instance
    show              info             Show conversation, agent and API key status
    new                                Start a new Khoj conversation
    set-conversation                   Switch to an existing conversation id
    set-agent                          Change the agent used for new conversations
    ask                                One-shot question to the active conversation
"""

import argparse
import asyncio
import sys

from khojbox import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the adapter server in the foreground."""
    import uvicorn
    from khojbox import main as app_module
    from khojbox.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]
    app_module.startup_options = {
        "conversation_id": args.conversation_id,
        "force_new": args.new,
    }

    print(f"  khojbox {__version__} on {host}:{port}")
    print(f"  Khoj: {cfg['khoj']['api_base']}")
    print()

    uvicorn.run(app_module.app, host=host, port=int(port), log_level="info")


def cmd_ring(args):
    """Ping a running instance."""
    import httpx
    from khojbox.config import get_config

    cfg = get_config()
    url = (args.url or f"http://127.0.0.1:{cfg['server']['port']}").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        resp.raise_for_status()
        print(f"  ✓  {url}  {resp.json().get('status', 'unknown')}")
    except httpx.HTTPError as e:
        print(f"  ✗  Cannot reach khojbox at {url}: {e}")
        sys.exit(1)


def _control():
    """ServerControl for a one-shot command. An unreadable state file exits 1."""
    from khojbox.server import ServerControl
    from khojbox.state import StateStoreError

    try:
        return ServerControl()
    except StateStoreError as e:
        print(f"  ✗  Cannot read conversation state: {e}")
        sys.exit(1)


def cmd_show(args):
    """Show conversation, agent and API key status."""
    control = _control()
    print(f"  Conversation: {control.display_handle()}")
    print(f"  Agent:        {control.agent_slug()}")
    print(f"  API Key:      {control.api_key_status()}")


def cmd_new(args):
    """Create a new Khoj conversation and make it active."""
    from khojbox.backends.errors import SessionCreationError

    control = _control()
    try:
        conversation_id = control.new_conversation()
    except (SessionCreationError, RuntimeError) as e:
        print(f"  ✗  Failed to create new conversation: {e}")
        sys.exit(1)
    print(f"  ✓  New conversation: {conversation_id}")


def cmd_set_conversation(args):
    from khojbox.conversation import InvalidConversationError
    from khojbox.state import StateStoreError

    control = _control()
    try:
        control.set_conversation(args.conversation_id.strip())
    except (InvalidConversationError, StateStoreError) as e:
        print(f"  ✗  {e}")
        sys.exit(1)
    print(f"  ✓  Conversation ID updated: {control.display_handle()}")


def cmd_set_agent(args):
    from khojbox.state import StateStoreError

    control = _control()
    try:
        control.set_agent((args.agent_slug or "").strip())
    except StateStoreError as e:
        print(f"  ✗  {e}")
        sys.exit(1)
    print(f"  ✓  Agent slug updated: {control.agent_slug()}")


def cmd_ask(args):
    """Send one question to the active conversation and print the answer."""
    from khojbox.backends.errors import SessionCreationError, UpstreamTimeoutError
    from khojbox.backends.khoj import KhojClient
    from khojbox.config import get_config
    from khojbox.conversation import ConversationManager
    from khojbox.translator import TranslationError, Translator
    from khojbox.models import ChatCompletionRequest, ChatMessage
    from khojbox.state import StateStoreError

    cfg = get_config()
    deadline = args.timeout or cfg.get("cli", {}).get("ask_timeout", 30)
    prompt = " ".join(args.prompt)
    if not prompt.strip():
        print("  Prompt is empty")
        sys.exit(1)

    async def _ask() -> str:
        conversations = ConversationManager.from_config(cfg)
        conversations.initialize()
        async with KhojClient.from_config(cfg) as client:
            await conversations.ensure_active(client)
            translator = Translator.from_config(cfg, client, conversations)
            request = ChatCompletionRequest(
                model=cfg["translator"]["model_id"],
                messages=[ChatMessage(role="user", content=prompt)],
            )
            resp = await translator.complete(request, deadline=deadline)
            return resp.content

    try:
        print(asyncio.run(_ask()))
    except TranslationError as e:
        if isinstance(e.cause, UpstreamTimeoutError):
            print(f"  ✗  Timed out after {deadline:g} seconds")
        else:
            print(f"  ✗  Request failed: {e.cause or e}")
        sys.exit(1)
    except StateStoreError as e:
        print(f"  ✗  Cannot read conversation state: {e}")
        sys.exit(1)
    except SessionCreationError as e:
        print(f"  ✗  Failed to create conversation: {e}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="khojbox",
        description="khojbox: OpenAI-compatible front for a Khoj conversation.",
        epilog="Run 'khojbox <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"khojbox {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("-n", "--new", action="store_true", help="Start a new conversation")
        p.add_argument("--conversation-id", "-conversation-id", default=None,
                       help="Override conversation ID")

    _add_command(sub, ["serve", "start", "dial"],
                 "Start the adapter server", cmd_serve, setup_serve)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="khojbox URL (default: http://127.0.0.1:<port>)")

    _add_command(sub, ["ring", "status", "health"],
                 "Ping a running khojbox instance", cmd_ring, setup_ring)

    _add_command(sub, ["show", "info"],
                 "Show conversation, agent and API key status", cmd_show)

    _add_command(sub, ["new"], "Start a new Khoj conversation", cmd_new)

    def setup_set_conversation(p):
        p.add_argument("conversation_id", help="Conversation ID to switch to")

    _add_command(sub, ["set-conversation"],
                 "Switch to an existing conversation", cmd_set_conversation, setup_set_conversation)

    def setup_set_agent(p):
        p.add_argument("agent_slug", nargs="?", default="", help="Agent slug (empty = default)")

    _add_command(sub, ["set-agent"],
                 "Change the agent used for new conversations", cmd_set_agent, setup_set_agent)

    def setup_ask(p):
        p.add_argument("prompt", nargs="+", help="Question to ask")
        p.add_argument("--timeout", "-t", type=float, default=None,
                       help="Seconds to wait for Khoj (default: cli.ask_timeout)")

    _add_command(sub, ["ask"], "Ask the active conversation one question", cmd_ask, setup_ask)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()

"""
FastAPI application, the khojbox entry point.
Implements OpenAI-compatible endpoints that translate to Khoj.

  GET  /health
  POST /v1/chat/completions   (JSON or emulated SSE stream)
  POST /v1/completions        (legacy text completions)
  GET  /v1/models
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from khojbox.backends.khoj import KhojClient
from khojbox.config import check_api_key, get_config
from khojbox.conversation import ConversationManager
from khojbox.models import ChatCompletionRequest
from khojbox.translator import TranslationError, Translator


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
khoj_client: KhojClient | None = None
conversations: ConversationManager | None = None
translator: Translator | None = None
model_id: str = "khoj-chat"
started_at: int = int(time.time())

# Set by the CLI before the server starts (-conversation-id / -n)
startup_options: dict = {"conversation_id": None, "force_new": False}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS, PUT, DELETE",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
    "Access-Control-Expose-Headers": "Content-Length, Content-Type",
    "Access-Control-Max-Age": "86400",
}

# How often a pending non-streaming call checks whether its caller left
DISCONNECT_POLL_S = 0.25

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

logger = logging.getLogger(__name__)


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global khoj_client, conversations, translator, model_id, started_at

    cfg = get_config()
    setup_logging(cfg)
    check_api_key(cfg)

    if not cfg["khoj"].get("api_key"):
        logger.warning("KHOJ_API_KEY not set, requests to Khoj will be unauthenticated")

    khoj_client = KhojClient.from_config(cfg)
    conversations = ConversationManager.from_config(cfg)
    try:
        conversations.initialize(
            override_id=startup_options.get("conversation_id"),
            force_new=bool(startup_options.get("force_new")),
        )
        # SessionCreationError here aborts startup: no conversation, no server
        await conversations.ensure_active(khoj_client)
    except Exception:
        await khoj_client.aclose()
        raise

    translator = Translator.from_config(cfg, khoj_client, conversations)
    model_id = cfg.get("translator", {}).get("model_id", "khoj-chat")
    started_at = int(time.time())

    logger.info(
        "khojbox started, listening on %s:%s, Khoj at %s (timeout %.0fs)",
        cfg["server"]["host"],
        cfg["server"]["port"],
        cfg["khoj"]["api_base"],
        cfg["khoj"]["timeout"],
    )
    logger.info("Conversation: %s, agent: %s", conversations.conversation_id, conversations.agent_slug)

    yield

    logger.info("khojbox shutting down")
    await khoj_client.aclose()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="khojbox",
    description="OpenAI-compatible front for a Khoj conversation.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """Permissive CORS on every response; preflights never reach a route."""
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


async def _read_json(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Error parsing JSON: %s", e)
        return None
    if not isinstance(body, dict):
        return None
    return body


async def _complete_while_connected(request: Request, chat_request: ChatCompletionRequest):
    """
    Run translator.complete, cancelling the Khoj call if the caller disconnects
    first. Returns None when the caller is gone.
    """
    task = asyncio.create_task(translator.complete(chat_request))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_S)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling Khoj request")
                return None
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return JSONResponse({"status": "healthy"})


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    Main endpoint. Accepts OpenAI-format chat completion requests and
    answers them from the active Khoj conversation.
    """
    logger.debug("Chat request from User-Agent: %s", request.headers.get("user-agent", ""))
    body = await _read_json(request)
    if body is None:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    try:
        chat_request = ChatCompletionRequest.from_dict(body)
    except ValueError as e:
        logger.warning("Error decoding chat completion request: %s", e)
        return JSONResponse({"error": "invalid JSON"}, status_code=400)

    if chat_request.stream:
        return StreamingResponse(
            translator.stream(chat_request, request.is_disconnected),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    try:
        resp = await _complete_while_connected(request, chat_request)
    except TranslationError as e:
        logger.error("Error handling chat completion: %s", e)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    if resp is None:
        return Response(status_code=499)
    return JSONResponse(resp.to_dict())


@app.post("/v1/completions")
async def completions(request: Request):
    """Legacy completions: the prompt is sent as a single user message."""
    body = await _read_json(request)
    if body is None:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    chat_request = Translator.text_request(body)

    if chat_request.stream:
        return StreamingResponse(
            translator.stream(chat_request, request.is_disconnected, legacy=True),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    try:
        resp = await _complete_while_connected(request, chat_request)
    except TranslationError as e:
        logger.error("Error handling completion: %s", e)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    if resp is None:
        return Response(status_code=499)
    return JSONResponse(resp.to_text_completion())


@app.get("/v1/models")
async def list_models():
    """One synthetic model; every name routes to the same Khoj conversation."""
    return JSONResponse({
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": started_at,
                "owned_by": "khoj",
            }
        ],
    })


# ---------------------------------------------------------------------------
# Run with: python -m khojbox.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "khojbox.main:app",
        host=cfg["server"]["host"],
        port=cfg["server"]["port"],
        reload=False,
    )

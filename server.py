"""
server.py — Voice Chat · FastAPI Control Plane
===============================================
HTTP surface for the voice chat assistant.  The console session (bot.py
--server URL) and any browser client talk to the chat model and the neural
voice through these endpoints instead of holding API keys themselves.

Endpoints
---------
  POST /api/chat             conversation → plain-text assistant reply
  POST /api/tts              text → audio/wav from the neural voice
  GET  /api/proxy?url=       relay allow-listed model/CDN downloads with CORS
  GET  /api/backend-probe    server-side probe of the neural voice backend
  GET  /config               current runtime config
  PUT  /config               deep-merge patch, persisted to VOICE_CHAT_CONFIG
  GET  /health               service liveness
  WS   /ws/logs              real-time log stream

Every collaborator is resolved through a FastAPI dependency so tests can swap
in fakes with `app.dependency_overrides`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Set
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from backend_loader import BackendFactory, probe_backend
from chat_service import GroqChatService
from config import VoiceChatConfig
from contracts import ChatService, SpeechOutputPrimary, SynthesisError
from synthesis import GroqSpeechSynthesizer, groq_voice_factory

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined before the logging handler that uses it)
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Fan-out hub for real-time log events to all connected WebSocket clients."""
    def __init__(self, history_size: int = 500) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners
        self._history_size = history_size

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self._history_size:]:
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every server log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "server",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(
                lambda: loop.create_task(broadcaster.broadcast(event))
            )
        except RuntimeError:
            pass  # no event loop yet during startup


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_chat.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
logging.root.addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH   = os.getenv("VOICE_CHAT_CONFIG", "voice_chat_config.json")
PROXY_TIMEOUT = float(os.getenv("VOICE_CHAT_PROXY_TIMEOUT", "30.0"))

ALLOWED_PROXY_DOMAINS = ("huggingface.co", "cdn.jsdelivr.net")

CORS_HEADERS = {
    "Access-Control-Allow-Origin":  "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class ConfigStore:
    """Holds the live config and persists every accepted patch."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._config = VoiceChatConfig.load(self.path)

    @property
    def config(self) -> VoiceChatConfig:
        return self._config

    def update(self, patch: dict) -> VoiceChatConfig:
        self._config = self._config.merge_patch(patch)
        self._config.save(self.path)
        return self._config


_store: ConfigStore | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_config_store() -> ConfigStore:
    global _store
    if _store is None:
        _store = ConfigStore(CONFIG_PATH)
    return _store


def get_config(store: ConfigStore = Depends(get_config_store)) -> VoiceChatConfig:
    return store.config


def get_chat_service(config: VoiceChatConfig = Depends(get_config)) -> ChatService:
    return GroqChatService(config.groq)


def get_synthesizer(config: VoiceChatConfig = Depends(get_config)) -> SpeechOutputPrimary:
    return GroqSpeechSynthesizer(config.neural_voice)


def get_backend_factory(config: VoiceChatConfig = Depends(get_config)) -> BackendFactory:
    return groq_voice_factory(config.neural_voice)


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=PROXY_TIMEOUT, follow_redirects=True) as client:
        yield client


def _is_allowed_host(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == d or host.endswith("." + d) for d in ALLOWED_PROXY_DOMAINS)


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    store = get_config_store()
    log.info(
        "event=server_start config=%s chat_model=%s voice_model=%s",
        store.path, store.config.groq.model, store.config.neural_voice.model,
    )
    yield
    log.info("event=server_stopped")


app = FastAPI(
    title="Voice Chat",
    version="1.0.0",
    description="Chat, speech synthesis and backend probing for the voice chat assistant",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(request: Request, service: ChatService = Depends(get_chat_service)) -> Response:
    """
    Body: { "messages": [ {"role": "user", "content": "..."}, ... ] }
    Returns the assistant reply as text/plain.
    """
    log.info("event=chat_request_received")
    try:
        body = await request.json()
    except ValueError:
        body = None

    messages = body.get("messages") if isinstance(body, dict) else None
    if not messages or not isinstance(messages, list):
        log.error("event=chat_bad_request reason=no_messages")
        return _error(status.HTTP_400_BAD_REQUEST, "Messages are required")

    last = messages[-1].get("content", "") if isinstance(messages[-1], dict) else ""
    log.info("event=chat_processing messages=%d last=%.100s", len(messages), last)

    started = time.monotonic()
    try:
        text = await service.reply(messages)
    except Exception as exc:
        log.error("event=chat_failed error=%s", exc, exc_info=True)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    log.info(
        "event=chat_reply chars=%d latency_ms=%.0f",
        len(text), (time.monotonic() - started) * 1000,
    )
    return PlainTextResponse(text, media_type="text/plain; charset=utf-8")


@app.post("/api/tts")
async def tts(request: Request, synth: SpeechOutputPrimary = Depends(get_synthesizer)) -> Response:
    """
    Body: { "text": "...", "voice": "troy" }   (voice optional)
    Returns audio/wav.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    text = body.get("text") if isinstance(body, dict) else None
    if not text or not isinstance(text, str):
        return _error(status.HTTP_400_BAD_REQUEST, "Text is required")
    voice = body.get("voice") or None
    if voice == "default":
        voice = None

    log.info("event=tts_request voice=%s chars=%d", voice or "default", len(text))
    try:
        audio = await synth.synthesize(text, voice)
    except SynthesisError as exc:
        log.error("event=tts_failed error=%s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Speech synthesis failed", details=str(exc))
    except Exception as exc:
        log.error("event=tts_failed error=%s", exc, exc_info=True)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or "Unknown TTS service error", details=repr(exc))

    if not audio:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Speech synthesis failed", details="No audio generated")
    return Response(content=audio, media_type="audio/wav")


@app.get("/api/proxy")
async def proxy(url: str | None = None, client: httpx.AsyncClient = Depends(get_http_client)) -> Response:
    """Relay a GET to an allow-listed host so browsers can fetch voice models."""
    if not url:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing url parameter")
    if not _is_allowed_host(url):
        log.warning("event=proxy_rejected url=%s", url)
        return _error(status.HTTP_403_FORBIDDEN, "Domain not allowed")

    log.info("event=proxy_request url=%s", url)
    try:
        upstream = await client.get(url)
    except httpx.HTTPError as exc:
        log.error("event=proxy_failed url=%s error=%s", url, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to proxy request")

    content_type = upstream.headers.get("content-type", "application/json")
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=content_type,
        headers=CORS_HEADERS,
    )


@app.get("/api/backend-probe")
async def backend_probe(
    factory: BackendFactory = Depends(get_backend_factory),
    config: VoiceChatConfig = Depends(get_config),
) -> JSONResponse:
    """Try to load the neural voice backend once, bounded by the load timeout."""
    log.info("event=backend_probe_requested")
    try:
        result = await probe_backend(factory, config.backend_init.load_timeout_sec)
    except Exception as exc:
        log.error("event=backend_probe_crashed error=%s", exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc) or "Unknown error"},
        )

    if result.available:
        info = f"Backend loaded successfully: {type(result.backend).__name__}"
    else:
        info = f"Backend error: {result.detail}"
    return JSONResponse({
        "success":       True,
        "message":       "Backend probe completed",
        "backendStatus": result.status.value,
        "backendInfo":   info,
        "python":        platform.python_version(),
        "platform":      sys.platform,
    })


@app.get("/config")
async def read_config(config: VoiceChatConfig = Depends(get_config)) -> JSONResponse:
    return JSONResponse(config.model_dump(mode="json"))


@app.put("/config")
async def update_config(request: Request, store: ConfigStore = Depends(get_config_store)) -> JSONResponse:
    """Deep-merge a partial config and persist it."""
    try:
        patch = await request.json()
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON")
    if not isinstance(patch, dict):
        return _error(status.HTTP_400_BAD_REQUEST, "Config patch must be an object")

    try:
        config = store.update(patch)
    except ValidationError as exc:
        log.warning("event=config_rejected errors=%d", exc.error_count())
        return JSONResponse(
            status_code=422,
            content={"error": "Invalid config", "details": json.loads(exc.json())},
        )
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return JSONResponse(config.model_dump(mode="json"))


@app.get("/health")
async def health(config: VoiceChatConfig = Depends(get_config)) -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":      "ok",
        "chat_model":  config.groq.model,
        "voice_model": config.neural_voice.model,
        "log_clients": broadcaster.client_count,
    })


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream.  Every server log event is sent as a JSON object:
    {
      "source": "server",
      "level":  "INFO" | "WARNING" | "ERROR" | ...,
      "logger": "<logger name>",
      "msg":    "<formatted line>",
      "ts":     <unix float>
    }
    """
    await broadcaster.connect(ws)
    log.info("event=ws_log_client_connected remote=%s", ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
        log.info("event=ws_log_client_disconnected remote=%s", ws.client)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("VOICE_CHAT_HOST", "127.0.0.1"),
        port=int(os.getenv("VOICE_CHAT_PORT", "8000")),
    )

"""
chat_service.py — Voice Chat · Chat Completion Collaborators
=============================================================
  GroqChatService  — calls Groq chat completions directly (AsyncGroq).
  HttpChatService  — posts the conversation to the control plane's /api/chat.

Both are plain request/response: one request, one complete reply.  Every
failure is raised as ChatServiceError so the orchestrator can turn it into
the apology reply.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional, Sequence

import httpx
from groq import APIError, APIStatusError, AsyncGroq

from config import GroqConfig
from contracts import ChatMessageDict, ChatServiceError

log = logging.getLogger("voice_chat.chat_service")


class GroqChatService:
    """Non-streaming Groq chat completion."""

    def __init__(
        self,
        config: Optional[GroqConfig] = None,
        *,
        client: Optional[AsyncGroq] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._config = config or GroqConfig()
        self._client = client
        self._api_key = api_key

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(
                api_key=self._api_key or os.environ["GROQ_API_KEY"],
                timeout=self._config.timeout_sec,
            )
        return self._client

    def _params(self) -> dict:
        # Add optional sampling parameters only if explicitly set
        params = {}
        cfg = self._config
        if cfg.temperature is not None:
            params["temperature"] = cfg.temperature
        if cfg.top_p is not None:
            params["top_p"] = cfg.top_p
        if cfg.max_tokens is not None:
            params["max_tokens"] = cfg.max_tokens
        if cfg.seed is not None:
            params["seed"] = cfg.seed
        return params

    async def reply(self, messages: Sequence[ChatMessageDict]) -> str:
        if not messages:
            raise ChatServiceError("Messages are required", status_code=400)

        log.info(
            "event=groq_chat_start model=%s messages=%d last_len=%d",
            self._config.model, len(messages), len(messages[-1]["content"]),
        )
        try:
            response = await self._get_client().chat.completions.create(
                model=self._config.model,
                messages=[{"role": m["role"], "content": m["content"]} for m in messages],
                stream=False,
                **self._params(),
            )
        except asyncio.CancelledError:
            raise
        except APIStatusError as exc:
            log.warning("event=groq_chat_error status=%d error=%s", exc.status_code, exc)
            raise ChatServiceError(f"Groq returned {exc.status_code}", status_code=exc.status_code) from exc
        except APIError as exc:
            log.warning("event=groq_chat_error error=%s", exc)
            raise ChatServiceError(f"Groq request failed: {exc}") from exc

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        log.info("event=groq_chat_end chars=%d", len(text))
        return text


class HttpChatService:
    """Client for the control plane's POST /api/chat (plain-text reply)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._client = client

    async def reply(self, messages: Sequence[ChatMessageDict]) -> str:
        url = f"{self._base_url}/api/chat"
        payload = {"messages": [dict(m) for m in messages]}
        log.info("event=http_chat_start url=%s messages=%d", url, len(messages))
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=payload)
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            log.warning("event=http_chat_transport_error error=%s", exc)
            raise ChatServiceError(f"Transport error: {exc}") from exc

        if not resp.is_success:
            log.warning("event=http_chat_error status=%d", resp.status_code)
            raise ChatServiceError(f"Error: {resp.status_code}", status_code=resp.status_code)

        text = resp.text
        log.info("event=http_chat_end chars=%d", len(text))
        return text

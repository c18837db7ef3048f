import asyncio
import json
from types import SimpleNamespace

import groq
import httpx
import pytest

from chat_service import GroqChatService, HttpChatService
from config import GroqConfig
from contracts import ChatServiceError

BASE = "http://voice.test"
MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hello"},
]


class FakeCompletions:
    def __init__(self, content="Hi there", error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def groq_service(completions, config=None):
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return GroqChatService(config, client=client)


def http_service(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpChatService(BASE, client=client)


def test_groq_reply_returns_content():
    completions = FakeCompletions("Hi there")
    text = asyncio.run(groq_service(completions).reply(MESSAGES))
    assert text == "Hi there"
    assert completions.kwargs["model"] == "llama-3.3-70b-versatile"
    assert completions.kwargs["stream"] is False
    assert completions.kwargs["messages"] == MESSAGES
    assert "temperature" not in completions.kwargs


def test_groq_passes_optional_sampling_params():
    completions = FakeCompletions()
    config = GroqConfig(temperature=0.3, max_tokens=64, seed=7)
    asyncio.run(groq_service(completions, config).reply(MESSAGES))
    assert completions.kwargs["temperature"] == 0.3
    assert completions.kwargs["max_tokens"] == 64
    assert completions.kwargs["seed"] == 7
    assert "top_p" not in completions.kwargs


def test_groq_none_content_is_empty_reply():
    assert asyncio.run(groq_service(FakeCompletions(content=None)).reply(MESSAGES)) == ""


def test_groq_status_error_keeps_status_code():
    request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
    error = groq.InternalServerError(
        "upstream exploded",
        response=httpx.Response(500, request=request),
        body=None,
    )
    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(groq_service(FakeCompletions(error=error)).reply(MESSAGES))
    assert excinfo.value.status_code == 500


def test_groq_connection_error_is_chat_error():
    request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
    error = groq.APIConnectionError(request=request)
    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(groq_service(FakeCompletions(error=error)).reply(MESSAGES))
    assert excinfo.value.status_code is None


def test_groq_rejects_empty_conversation():
    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(groq_service(FakeCompletions()).reply([]))
    assert excinfo.value.status_code == 400


def test_http_reply_is_plain_text():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text="Hi there")

    text = asyncio.run(http_service(handler).reply(MESSAGES))
    assert text == "Hi there"
    assert seen["url"] == f"{BASE}/api/chat"
    assert seen["body"] == {"messages": MESSAGES}


def test_http_error_status_raises():
    def handler(request):
        return httpx.Response(500, json={"error": "Internal server error"})

    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(http_service(handler).reply(MESSAGES))
    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "Error: 500"


def test_http_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ChatServiceError) as excinfo:
        asyncio.run(http_service(handler).reply(MESSAGES))
    assert "Transport error" in str(excinfo.value)

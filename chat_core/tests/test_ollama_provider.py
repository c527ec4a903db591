import asyncio
import json

import httpx

from chat_core.domain.models import ChatMessage, CompletionRequest, FinishReason, ProviderConfig, ProviderKind
from chat_core.providers.ollama_client import OllamaProvider


def _config():
    return ProviderConfig(
        id="ollama",
        name="Ollama",
        kind=ProviderKind.OLLAMA,
        base_url="http://localhost:11434/",
        default_model="llama3.2",
        max_retries=1,
    )


def _request(**kw):
    return CompletionRequest(messages=[ChatMessage.user("hi")], model="llama3.2", **kw)


NDJSON = (
    b'{"message":{"role":"assistant","content":"Hel"},"done":false}\n'
    b"garbage line\n"
    b'{"message":{"role":"assistant","content":""},"done":false}\n'
    b'{"message":{"role":"assistant","content":"lo"},"done":false}\n'
    b'{"message":{"role":"assistant","content":"!"},"done":true,"prompt_eval_count":4,"eval_count":6}\n'
)


async def _collect(provider, request):
    return [c async for c in provider.complete_stream(request)]


def test_stream_reads_ndjson_until_done(streamed):
    parts = [NDJSON[i:i + 9] for i in range(0, len(NDJSON), 9)]
    provider = OllamaProvider(_config(), transport=httpx.MockTransport(lambda r: streamed(parts)))

    chunks = asyncio.run(_collect(provider, _request()))

    assert [c.content for c in chunks] == ["Hel", "lo", "!"]
    assert chunks[-1].finish_reason is FinishReason.STOP
    assert chunks[-1].usage.total_tokens == 10
    assert chunks[0].usage is None


def test_stream_without_trailing_newline_flushes_last_object(streamed):
    body = NDJSON.rstrip(b"\n")
    provider = OllamaProvider(_config(), transport=httpx.MockTransport(lambda r: streamed([body])))

    chunks = asyncio.run(_collect(provider, _request()))

    assert chunks[-1].content == "!"
    assert chunks[-1].usage.prompt_tokens == 4


def test_payload_options_only_when_set():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"message": {"content": "ok"}, "done": True, "prompt_eval_count": 1, "eval_count": 2},
        )

    provider = OllamaProvider(_config(), transport=httpx.MockTransport(handler))
    plain = asyncio.run(provider.complete(_request()))
    asyncio.run(provider.complete(_request(temperature=0.5, max_tokens=32)))

    assert "options" not in bodies[0]
    assert bodies[1]["options"] == {"temperature": 0.5, "num_predict": 32}
    assert bodies[0]["stream"] is False
    assert plain.content == "ok"
    assert plain.usage.total_tokens == 3


def test_list_models_reads_tags():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2:latest"}, {"name": "qwen2.5:7b"}]})

    provider = OllamaProvider(_config(), transport=httpx.MockTransport(handler))
    models = asyncio.run(provider.list_models())

    assert [m.id for m in models] == ["llama3.2:latest", "qwen2.5:7b"]


def test_list_models_falls_back_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = OllamaProvider(_config(), transport=httpx.MockTransport(handler))
    models = asyncio.run(provider.list_models())
    status = asyncio.run(provider.health_check())

    assert [m.id for m in models] == ["llama3.2", "qwen2.5", "mistral"]
    assert status.is_healthy is False
    assert status.error_message

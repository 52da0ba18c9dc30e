import json

import httpx
import pytest

from omnichat.config import Config
from omnichat.models import GenerationConfig, Message, Role
from omnichat.providers.base_provider import ModelNotFoundError, NetworkIssueError, ProviderError
from omnichat.providers.ollama_provider import OllamaProvider, normalize_host


def jsonl(*parts) -> str:
    return "".join(json.dumps(p) + "\n" for p in parts)


def provider(handler, api_key="", endpoint="http://gpu-box:11434") -> OllamaProvider:
    return OllamaProvider(api_key, endpoint=endpoint, config=Config(), transport=httpx.MockTransport(handler))


def test_normalize_host(monkeypatch):
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    assert normalize_host("localhost:11434/") == "http://localhost:11434"
    assert normalize_host(" https://ollama.example.com/ ") == "https://ollama.example.com"
    assert normalize_host("") == "http://localhost:11434"
    monkeypatch.setenv("OLLAMA_HOST", "10.0.0.5:11434")
    assert normalize_host(None) == "http://10.0.0.5:11434"


@pytest.mark.asyncio
async def test_stream_chat_json_lines():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        body = jsonl(
            {"message": {"role": "assistant", "content": "Good "}, "done": False},
            {"message": {"role": "assistant", "content": "morning"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"},
        )
        return httpx.Response(200, text=body, headers={"content-type": "application/x-ndjson"})

    chunks = []
    history = [Message(role=Role.MODEL, text="hello")]
    config = GenerationConfig(stream=True, temperature=0.1, top_p=0.5, top_k=20, max_output_tokens=128, thinking_budget=512)
    text = await provider(handler, api_key=" secret ").stream_chat(
        "llama3.1:8b", history, "greet me", "system says", config, chunks.append,
    )

    assert text == "Good morning"
    assert chunks == ["Good ", "Good morning"]
    assert seen["path"] == "/api/chat"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["options"] == {"temperature": 0.1, "top_p": 0.5, "top_k": 20, "num_predict": 128}
    assert seen["body"]["messages"][0] == {"role": "system", "content": "system says"}
    assert seen["body"]["messages"][1] == {"role": "assistant", "content": "hello"}


@pytest.mark.asyncio
async def test_no_auth_header_without_key():
    def handler(request):
        assert "authorization" not in request.headers
        return httpx.Response(200, json={"models": []})

    assert await provider(handler).list_models() == []


@pytest.mark.asyncio
async def test_non_streaming_chat():
    def handler(request):
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json={"message": {"content": "all at once"}, "done": True})

    text = await provider(handler).stream_chat("m", [], "q", None, GenerationConfig(stream=False))
    assert text == "all at once"


@pytest.mark.asyncio
async def test_missing_model_is_fatal():
    def handler(request):
        return httpx.Response(404, json={"error": "model 'nope' not found"})

    with pytest.raises(ModelNotFoundError):
        await provider(handler).stream_chat("nope", [], "q", None, GenerationConfig(stream=True))


@pytest.mark.asyncio
async def test_error_line_mid_stream():
    def handler(request):
        return httpx.Response(200, text=jsonl({"message": {"content": "x"}}, {"error": "llama runner crashed"}))

    with pytest.raises(ProviderError) as exc_info:
        await provider(handler).stream_chat("m", [], "q", None, GenerationConfig(stream=True))
    assert exc_info.value.is_fatal


@pytest.mark.asyncio
async def test_server_down():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkIssueError):
        await provider(handler).stream_chat("m", [], "q", None, GenerationConfig(stream=True))
    assert await provider(handler).test_connection() is False


@pytest.mark.asyncio
async def test_list_models_and_test_connection():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "qwen2.5:7b"}, {"name": "llama3.1:8b"}]})

    p = provider(handler)
    models = await p.list_models()
    assert [m.name for m in models] == ["llama3.1:8b", "qwen2.5:7b"]
    assert models[0].output_token_limit == 4096
    assert await p.test_connection() is True

import asyncio
import json
import os
import re
from typing import List, Optional

import httpx

from omnichat.config import Config
from omnichat.models import GenerationConfig, Message, ModelInfo, ProviderKind
from omnichat.utils.logger import logger
from .base_provider import (
    BaseProvider,
    ChunkCallback,
    ProviderError,
    chat_messages,
    check_cancelled,
    normalize_error,
    raise_for_response,
    stream_error,
)

DEFAULT_HOST = "http://localhost:11434"


def normalize_host(endpoint: Optional[str]) -> str:
    host = (endpoint or "").strip() or os.environ.get("OLLAMA_HOST", DEFAULT_HOST)
    host = host.rstrip("/")
    if not re.match(r"^https?://", host):
        host = f"http://{host}"
    return host


class OllamaProvider(BaseProvider):
    """Self-hosted Ollama server, local or behind an authenticating proxy."""

    kind = ProviderKind.OLLAMA

    def __init__(
        self,
        api_key: str,
        endpoint: Optional[str] = None,
        config: Optional[Config] = None,
        provider_name: str = "ollama",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, provider_name, endpoint, config)
        self.base_url = normalize_host(endpoint)
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout(), transport=self.transport)

    def _headers(self) -> dict:
        # Plain local servers ignore the header; cloud and proxied ones need it
        if self.api_key and self.api_key.strip():
            return {"Authorization": f"Bearer {self.api_key.strip()}"}
        return {}

    async def _tags(self) -> dict:
        async with self._client() as client:
            r = await client.get(f"{self.base_url}/api/tags", headers=self._headers())
            logger.info("ollama_tags", url=self.base_url, status=r.status_code)
            await raise_for_response(r, "Ollama")
            return r.json()

    async def list_models(self) -> List[ModelInfo]:
        try:
            data = await self._tags()
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("ollama_list_models_failed", url=self.base_url, error=str(e))
            raise normalize_error(e, "Ollama") from e

        # /api/tags reports no context sizes
        models = [
            ModelInfo(name=m["name"], display_name=m["name"], input_token_limit=4096, output_token_limit=4096)
            for m in data.get("models") or []
            if isinstance(m, dict) and m.get("name")
        ]
        return sorted(models, key=lambda m: m.name)

    async def test_connection(self, model: Optional[str] = None) -> bool:
        try:
            await self._tags()
            return True
        except Exception as e:
            logger.warning("ollama_test_failed", url=self.base_url, error=str(e))
            return False

    async def stream_chat(
        self,
        model: str,
        history: List[Message],
        new_message: str,
        system_instruction: Optional[str],
        config: GenerationConfig,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        url = f"{self.base_url}/api/chat"
        payload = {
            "model": model,
            "messages": chat_messages(history, new_message, system_instruction),
            "stream": config.stream,
            "options": {
                "temperature": config.temperature,
                "top_p": config.top_p,
                "top_k": config.top_k,
                "num_predict": config.max_output_tokens,
            },
        }

        check_cancelled(cancel_event)
        try:
            async with self._client() as client:
                if not config.stream:
                    r = await client.post(url, json=payload, headers=self._headers())
                    await raise_for_response(r, "Ollama")
                    data = r.json()
                    if data.get("error"):
                        raise stream_error(data["error"], "Ollama")
                    check_cancelled(cancel_event)
                    return (data.get("message") or {}).get("content") or ""

                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    await raise_for_response(resp, "Ollama")
                    full_text = ""
                    async for line in resp.aiter_lines():
                        check_cancelled(cancel_event)
                        if not line.strip():
                            continue
                        try:
                            part = json.loads(line)
                        except json.JSONDecodeError:
                            logger.warning("ollama_malformed_line", line=line[:200])
                            continue
                        if part.get("error"):
                            raise stream_error(part["error"], "Ollama")
                        content = (part.get("message") or {}).get("content") or ""
                        if content:
                            full_text += content
                            if on_chunk:
                                on_chunk(full_text)
                        if part.get("done"):
                            break
                    check_cancelled(cancel_event)
                    return full_text
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("ollama_stream_failed", url=url, error=str(e))
            raise normalize_error(e, "Ollama") from e

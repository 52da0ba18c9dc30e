import asyncio
import json
from typing import List, Optional

import httpx

from omnichat.config import Config
from omnichat.models import GenerationConfig, Message, ModelInfo, ProviderKind
from omnichat.utils.logger import logger
from .base_provider import (
    BaseProvider,
    ChunkCallback,
    ContentRejected,
    ProviderError,
    chat_messages,
    check_cancelled,
    normalize_error,
    raise_for_response,
    stream_error,
)

# finish_reason values that mean the backend withheld content
REJECTION_FINISH_REASONS = ("content_filter", "safety")


class OpenAIProvider(BaseProvider):
    """Any endpoint speaking the OpenAI chat-completions REST/SSE protocol."""

    kind = ProviderKind.OPENAI

    def __init__(
        self,
        api_key: str,
        endpoint: Optional[str] = None,
        config: Optional[Config] = None,
        provider_name: str = "openai",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, provider_name, endpoint, config)
        self.base_url = (endpoint or "").strip().rstrip("/")
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout(), transport=self.transport)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _require_base_url(self) -> str:
        if not self.base_url:
            raise ProviderError("Base URL is required for an OpenAI-compatible credential")
        return self.base_url

    async def list_models(self) -> List[ModelInfo]:
        url = f"{self._require_base_url()}/models"
        try:
            async with self._client() as client:
                r = await client.get(url, headers=self._headers())
                logger.info("openai_list_models", url=url, status=r.status_code)
                await raise_for_response(r, "OpenAI")
                data = r.json()
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("openai_list_models_failed", url=url, error=str(e))
            raise normalize_error(e, "OpenAI") from e

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        # The catalog endpoint carries no limits; these are the common defaults
        models = [
            ModelInfo(name=m["id"], display_name=m["id"], input_token_limit=128000, output_token_limit=4096)
            for m in items
            if isinstance(m, dict) and m.get("id")
        ]
        return sorted(models, key=lambda m: m.name)

    async def test_connection(self, model: Optional[str] = None) -> bool:
        if not self.base_url:
            return False
        payload = {
            "model": model or self.config.default_openai_model,
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 1,
        }
        try:
            async with self._client() as client:
                r = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
                logger.info("openai_test", status=r.status_code)
                return r.is_success
        except Exception as e:
            logger.warning("openai_test_failed", error=str(e))
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
        url = f"{self._require_base_url()}/chat/completions"
        payload = {
            "model": model,
            "messages": chat_messages(history, new_message, system_instruction),
            "temperature": config.temperature,
            "top_p": config.top_p,
            "max_tokens": config.max_output_tokens,
            "stream": config.stream,
        }
        if config.frequency_penalty is not None:
            payload["frequency_penalty"] = config.frequency_penalty

        check_cancelled(cancel_event)
        try:
            async with self._client() as client:
                if not config.stream:
                    r = await client.post(url, json=payload, headers=self._headers())
                    await raise_for_response(r, "OpenAI")
                    text, finish_reason = self._parse_completion(r.json())
                    check_cancelled(cancel_event)
                    return self._finish(text, finish_reason, on_chunk)

                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    await raise_for_response(resp, "OpenAI")
                    full_text = ""
                    finish_reason = None
                    async for line in resp.aiter_lines():
                        check_cancelled(cancel_event)
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            # partial or keep-alive frame
                            continue
                        if not isinstance(parsed, dict):
                            continue
                        if parsed.get("error"):
                            raise stream_error(parsed["error"], "OpenAI")
                        choices = parsed.get("choices") or []
                        if not choices:
                            continue
                        content = (choices[0].get("delta") or {}).get("content") or ""
                        if content:
                            full_text += content
                            if on_chunk:
                                on_chunk(full_text)
                        finish_reason = choices[0].get("finish_reason") or finish_reason
                    check_cancelled(cancel_event)
                    return self._finish(full_text, finish_reason, on_chunk)
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("openai_stream_failed", url=url, error=str(e))
            raise normalize_error(e, "OpenAI") from e

    @staticmethod
    def _parse_completion(data: dict):
        choices = data.get("choices") or []
        if not choices:
            return "", None
        choice = choices[0]
        if "message" in choice:
            text = (choice.get("message") or {}).get("content") or ""
        else:
            text = choice.get("text") or ""
        return text, choice.get("finish_reason")

    @staticmethod
    def _finish(text: str, finish_reason: Optional[str], on_chunk: Optional[ChunkCallback]) -> str:
        if not text and finish_reason in REJECTION_FINISH_REASONS:
            rejected = ContentRejected(finish_reason.upper())
            if on_chunk:
                on_chunk(rejected.marker)
            raise rejected
        return text

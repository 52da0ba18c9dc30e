import asyncio
from typing import List, Optional

from google import genai
from google.genai import types

from omnichat.config import Config
from omnichat.models import GenerationConfig, Message, ModelInfo, ProviderKind, Role
from omnichat.utils.logger import logger
from .base_provider import (
    BaseProvider,
    ChunkCallback,
    ContentRejected,
    ProviderError,
    check_cancelled,
    normalize_error,
)

# Catalog entries outside these families (embeddings, imagen, aqa...) can't chat
CHAT_MODEL_FAMILIES = ("gemini", "flash", "pro", "thinking")


def _reason_name(reason) -> str:
    return getattr(reason, "value", None) or str(reason)


def _to_contents(history: List[Message]) -> List[types.Content]:
    return [
        types.Content(
            role="user" if msg.role == Role.USER else "model",
            parts=[types.Part(text=msg.text)],
        )
        for msg in history
    ]


def _stop_reason(response) -> str:
    """Finish or block reason of a response that carried no text."""
    candidates = getattr(response, "candidates", None) or []
    if candidates and candidates[0].finish_reason:
        return _reason_name(candidates[0].finish_reason)
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None and feedback.block_reason:
        return _reason_name(feedback.block_reason)
    return ""


class GeminiProvider(BaseProvider):
    kind = ProviderKind.GOOGLE

    def __init__(
        self,
        api_key: str,
        endpoint: Optional[str] = None,
        config: Optional[Config] = None,
        provider_name: str = "gemini",
        client: Optional[genai.Client] = None,
    ):
        # The SDK owns the endpoint; `endpoint` is accepted for a uniform signature
        super().__init__(api_key, provider_name, None, config)
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            http_options = None
            if self.config.request_timeout_seconds:
                http_options = types.HttpOptions(timeout=int(self.config.request_timeout_seconds * 1000))
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    async def list_models(self) -> List[ModelInfo]:
        models: List[ModelInfo] = []
        try:
            client = self._get_client()
            pager = await client.aio.models.list()
            async for m in pager:
                if not m.name:
                    continue
                name = m.name.replace("models/", "")
                models.append(ModelInfo(
                    name=name,
                    display_name=m.display_name or name,
                    input_token_limit=m.input_token_limit,
                    output_token_limit=m.output_token_limit,
                ))
        except Exception as e:
            logger.warning("gemini_list_models_failed", error=str(e))
            raise normalize_error(e, "Gemini") from e
        return [m for m in models if any(f in m.name for f in CHAT_MODEL_FAMILIES)]

    async def test_connection(self, model: Optional[str] = None) -> bool:
        """Validate the key with a one-word generation against the target model."""
        try:
            client = self._get_client()
            await client.aio.models.generate_content(
                model=model or self.config.default_model,
                contents="Test",
            )
            return True
        except Exception as e:
            logger.warning("gemini_test_failed", error=str(e))
            return False

    async def count_tokens(self, model: str, history: List[Message], new_message: str) -> int:
        contents = _to_contents(history)
        if new_message and new_message.strip():
            contents.append(types.Content(role="user", parts=[types.Part(text=new_message)]))
        try:
            client = self._get_client()
            response = await client.aio.models.count_tokens(model=model, contents=contents)
            return response.total_tokens or 0
        except Exception as e:
            logger.warning("gemini_count_tokens_failed", error=str(e))
            return -1

    def _generate_config(self, system_instruction: Optional[str], config: GenerationConfig) -> types.GenerateContentConfig:
        kwargs = {
            "system_instruction": system_instruction or None,
            "temperature": config.temperature,
            "top_p": config.top_p,
            "top_k": config.top_k,
            "max_output_tokens": config.max_output_tokens,
        }
        if config.thinking_budget and config.thinking_budget > 0:
            kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=config.thinking_budget)
        return types.GenerateContentConfig(**kwargs)

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
        check_cancelled(cancel_event)
        try:
            client = self._get_client()
            chat = client.aio.chats.create(
                model=model,
                config=self._generate_config(system_instruction, config),
                history=_to_contents(history),
            )

            if not config.stream:
                result = await chat.send_message(new_message)
                check_cancelled(cancel_event)
                text = result.text or ""
                if not text:
                    self._reject_if_stopped(_stop_reason(result), on_chunk)
                return text

            full_text = ""
            stop_reason = ""
            async for chunk in await chat.send_message_stream(new_message):
                check_cancelled(cancel_event)
                chunk_text = chunk.text
                if chunk_text:
                    full_text += chunk_text
                    if on_chunk:
                        on_chunk(full_text)
                else:
                    stop_reason = _stop_reason(chunk) or stop_reason
            check_cancelled(cancel_event)
            if not full_text:
                self._reject_if_stopped(stop_reason, on_chunk)
            return full_text
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("gemini_stream_failed", model=model, error=str(e))
            raise normalize_error(e, "Gemini") from e

    @staticmethod
    def _reject_if_stopped(stop_reason: str, on_chunk: Optional[ChunkCallback]) -> None:
        if not stop_reason:
            return
        rejected = ContentRejected(stop_reason)
        if on_chunk:
            on_chunk(rejected.marker)
        raise rejected

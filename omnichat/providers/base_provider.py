from __future__ import annotations
import abc
import asyncio
import re
from enum import Enum
from typing import Callable, List, Optional

import httpx

from omnichat.config import Config
from omnichat.models import GenerationConfig, Message, ModelInfo, ProviderKind, Role

ChunkCallback = Callable[[str], None]


class ErrorClass(str, Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"
    REJECTION = "rejection"
    CANCELLED = "cancelled"


def classify_status(status: Optional[int]) -> ErrorClass:
    """Map an HTTP-like status to the dispatcher action class.

    Anything unrecognized is fatal: retrying it would only hide a
    misconfigured credential.
    """
    if status is None:
        return ErrorClass.FATAL
    if status == 429 or status >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


class ProviderError(Exception):
    status: Optional[int] = None

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            self.status = status

    @property
    def code(self) -> str:
        return str(self.status) if self.status else "Error"

    @property
    def error_class(self) -> ErrorClass:
        return classify_status(self.status)

    @property
    def is_fatal(self) -> bool:
        return self.error_class is ErrorClass.FATAL


class BadRequestError(ProviderError):
    status = 400


class ProviderAuthError(ProviderError):
    """InvalidCredential."""

    status = 401


class BillingRequiredError(ProviderError):
    status = 402


class PermissionDeniedError(ProviderAuthError):
    status = 403


class ModelNotFoundError(ProviderError):
    status = 404


class ProviderTransientError(ProviderError):
    @property
    def error_class(self) -> ErrorClass:
        return ErrorClass.TRANSIENT


class ProviderQuotaError(ProviderTransientError):
    status = 429


class ServerError(ProviderTransientError):
    status = 500


class NetworkIssueError(ProviderTransientError):
    @property
    def code(self) -> str:
        return "Network"


class ContentRejected(ProviderError):
    """The backend refused to produce content; not a credential fault."""

    def __init__(self, reason: str, marker: str = ""):
        super().__init__(f"Safety Block: {reason}")
        self.reason = reason
        self.marker = marker or rejection_marker(reason)

    @property
    def code(self) -> str:
        return "Rejected"

    @property
    def error_class(self) -> ErrorClass:
        return ErrorClass.REJECTION


class RequestCancelled(ProviderError):
    def __init__(self, message: str = "Aborted by user"):
        super().__init__(message)

    @property
    def code(self) -> str:
        return "Cancelled"

    @property
    def error_class(self) -> ErrorClass:
        return ErrorClass.CANCELLED


ERRORS_BY_STATUS = {
    400: BadRequestError,
    401: ProviderAuthError,
    402: BillingRequiredError,
    403: PermissionDeniedError,
    404: ModelNotFoundError,
    429: ProviderQuotaError,
}

_STATUS_IN_TEXT = re.compile(r"\b([45]\d{2})\b")
_QUOTA_HINTS = ("resource exhausted", "resource_exhausted", "quota")


def error_for_status(status: int, message: str = "") -> ProviderError:
    cls = ERRORS_BY_STATUS.get(status)
    if cls is None:
        cls = ServerError if status >= 500 else ProviderError
    return cls(message or f"HTTP {status}", status=status)


def _status_attr(exc: BaseException) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def normalize_error(exc: BaseException, label: str = "provider") -> ProviderError:
    """Turn any failure raised inside an adapter into a `ProviderError`."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return NetworkIssueError(f"{label} request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, f"{label} HTTP error: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkIssueError(f"{label} network error: {exc}")
    # Resets, refused connections and DNS failures raised outside httpx
    if isinstance(exc, OSError):
        return NetworkIssueError(f"{label} network error: {exc}")

    message = str(exc)
    status = _status_attr(exc)
    if status is not None:
        return error_for_status(status, f"{label} error ({status}): {message}")

    lowered = message.lower()
    if any(hint in lowered for hint in _QUOTA_HINTS):
        return ProviderQuotaError(f"{label} quota exceeded: {message}")
    match = _STATUS_IN_TEXT.search(message)
    if match:
        return error_for_status(int(match.group(1)), f"{label} error: {message}")
    return ProviderError(f"{label} unexpected error: {message}")


async def raise_for_response(response: httpx.Response, label: str) -> None:
    """Raise the classified error for a non-2xx response, streaming or not."""
    if response.status_code < 400:
        return
    body = await response.aread()
    text = body.decode(errors="ignore")[:500]
    raise error_for_status(response.status_code, f"{label} error {response.status_code}: {text}")


def stream_error(error, label: str) -> ProviderError:
    """Classify an error object delivered inside a response stream."""
    if isinstance(error, dict):
        status = error.get("code")
        message = str(error.get("message") or error)
        if isinstance(status, int) and 100 <= status <= 599:
            return error_for_status(status, f"{label} stream error ({status}): {message}")
        return normalize_error(Exception(message), label)
    return normalize_error(Exception(str(error)), label)


def rejection_marker(reason: str) -> str:
    return f"[Response blocked. Reason: {reason}]"


def check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelled()


def chat_messages(history: List[Message], new_message: str, system_instruction: Optional[str]) -> List[dict]:
    """OpenAI/Ollama style role/content list: system first, new user message last."""
    messages = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for msg in history:
        messages.append({
            "role": "user" if msg.role == Role.USER else "assistant",
            "content": msg.text,
        })
    messages.append({"role": "user", "content": new_message})
    return messages


class BaseProvider(abc.ABC):
    """Abstract provider adapter.

    One instance is built per credential for a single call. Every method
    raises a `ProviderError` subclass on failure, except `test_connection`
    and `count_tokens` which report failure through their return value.
    """

    kind: ProviderKind

    def __init__(self, api_key: str, provider_name: str, endpoint: Optional[str] = None, config: Optional[Config] = None):
        self.api_key = api_key
        self.provider_name = provider_name
        self.endpoint = endpoint
        self.config = config or Config.load()

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.request_timeout_seconds, connect=self.config.connect_timeout_seconds)

    @abc.abstractmethod
    async def list_models(self) -> List[ModelInfo]:
        """Return the backend's chat-capable models."""

    @abc.abstractmethod
    async def test_connection(self, model: Optional[str] = None) -> bool:
        """Run the cheapest authorized call. Never raises."""

    async def count_tokens(self, model: str, history: List[Message], new_message: str) -> int:
        return -1

    @abc.abstractmethod
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
        """Generate a reply; `on_chunk` receives the cumulative text so far."""

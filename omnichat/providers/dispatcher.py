from __future__ import annotations
import asyncio
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type

from omnichat.config import Config
from omnichat.models import ChatResult, CredentialEntry, GenerationConfig, Message, ModelInfo, ProviderKind
from omnichat.utils.logger import logger, mask_secret
from omnichat.utils.parse_keys import parse_batch_keys
from omnichat.utils.retry import sleep_backoff
from .base_provider import (
    BaseProvider,
    ChunkCallback,
    ErrorClass,
    NetworkIssueError,
    PermissionDeniedError,
    ProviderAuthError,
    ProviderError,
    RequestCancelled,
    check_cancelled,
    normalize_error,
)
from .credential_pool import CredentialPool, DispatcherState
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

CredentialErrorCallback = Callable[[str, str, bool], None]

PROVIDERS: Dict[ProviderKind, Type[BaseProvider]] = {
    ProviderKind.GOOGLE: GeminiProvider,
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.OLLAMA: OllamaProvider,
}


class DispatchError(Exception):
    pass


class NoActiveCredentials(DispatchError):
    def __init__(self, message: str = "No active credentials configured"):
        super().__init__(message)


class CallAlreadyInProgress(DispatchError):
    def __init__(self, message: str = "Another call is already in progress"):
        super().__init__(message)


class AllCredentialsExhausted(DispatchError):
    def __init__(self, last_error: Optional[ProviderError] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All credentials failed{detail}")
        self.last_error = last_error

    @property
    def last_error_code(self) -> Optional[str]:
        return self.last_error.code if self.last_error else None


def prepare_history(history: Iterable[Message], limit: int = 0) -> List[Message]:
    """Drop empty and error messages, keeping at most the last `limit` (0 = all)."""
    history = list(history)
    if limit > 0 and len(history) > limit:
        history = history[-limit:]
    return [m for m in history if m.text and m.text.strip() and not m.is_error]


class Dispatcher:
    """Multi-provider key rotation engine for one caller session.

    Picks a credential round-robin within per-credential usage quotas,
    skips rate-limited credentials until their cooldown elapses, calls the
    matching provider adapter and rotates to another credential on
    failure. Only one call runs at a time; a second one fails fast.
    """

    def __init__(
        self,
        entries: Optional[Iterable[CredentialEntry]] = None,
        on_credential_error: Optional[CredentialErrorCallback] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or Config.load()
        self.pool = CredentialPool(entries)
        self.on_credential_error = on_credential_error
        self._clock = clock

    @property
    def state(self) -> DispatcherState:
        return self.pool.state

    @property
    def in_flight(self) -> bool:
        return self.state.in_flight

    def update_credentials(self, entries: Iterable[CredentialEntry]) -> None:
        self.pool.replace(entries)
        logger.info("credentials_updated", total=len(self.pool), active=len(self.pool.active_entries()))

    def import_keys(self, text: str, default_endpoint: Optional[str] = None) -> List[CredentialEntry]:
        """Parse pasted keys and append them to the pool; returns the new entries."""
        added = parse_batch_keys(
            text,
            default_model=self.config.default_model,
            usage_quota=self.config.batch_import_usage_quota,
            default_endpoint=default_endpoint,
        )
        if added:
            self.pool.replace(self.pool.entries + added)
            logger.info("credentials_imported", added=len(added), total=len(self.pool))
        return added

    @contextmanager
    def _exclusive(self):
        # No await between the check and the set, so this is atomic on the loop
        if self.state.in_flight:
            raise CallAlreadyInProgress()
        self.state.in_flight = True
        try:
            yield
        finally:
            self.state.in_flight = False

    def _make_adapter(self, entry: CredentialEntry) -> BaseProvider:
        cls = PROVIDERS[ProviderKind(entry.provider)]
        return cls(entry.secret, endpoint=entry.endpoint, config=self.config)

    def _probe_model(self, entry: CredentialEntry) -> str:
        if entry.preferred_model:
            return entry.preferred_model
        if entry.provider == ProviderKind.OPENAI:
            return self.config.default_openai_model
        return self.config.default_model

    async def list_models(self, entry: CredentialEntry, strict: bool = False) -> List[ModelInfo]:
        """Fetch the model catalog for one credential.

        A 403 yields an empty list unless `strict` is set, in which case
        `PermissionDeniedError` propagates so a broken key can be told
        apart from an empty catalog.
        """
        with self._exclusive():
            if not entry.secret:
                raise ProviderAuthError("Credential has an empty secret")
            adapter = self._make_adapter(entry)
            try:
                return await adapter.list_models()
            except PermissionDeniedError:
                logger.warning("list_models_permission_denied", credential_id=entry.id, provider=entry.provider.value)
                if strict:
                    raise
                return []

    async def test_connection(self, entry: CredentialEntry) -> bool:
        with self._exclusive():
            if not entry.secret:
                return False
            ok = await self._make_adapter(entry).test_connection(self._probe_model(entry))
            logger.info("connection_tested", credential_id=entry.id, provider=entry.provider.value, ok=ok)
            return ok

    async def count_tokens(self, entry: CredentialEntry, history: Iterable[Message], new_message: str) -> int:
        with self._exclusive():
            if not entry.secret:
                return -1
            return await self._make_adapter(entry).count_tokens(
                entry.preferred_model or self.config.default_model,
                prepare_history(history),
                new_message,
            )

    async def batch_test(self, entries: Iterable[CredentialEntry]) -> Tuple[List[CredentialEntry], List[CredentialEntry]]:
        """Test entries one after another; returns (passed, failed)."""
        passed, failed = [], []
        for entry in entries:
            if await self.test_connection(entry):
                passed.append(entry)
            else:
                failed.append(entry)
        logger.info("batch_test_finished", passed=len(passed), failed=len(failed))
        return passed, failed

    def _next_credential(self) -> CredentialEntry:
        active = self.pool.active_entries()
        if not active:
            raise NoActiveCredentials()

        state = self.state
        n = len(active)
        if state.cursor >= n:
            state.cursor = 0
            state.usage_counter = 0

        # Quota spent: rotate even if the current entry is healthy
        if state.usage_counter >= active[state.cursor].usage_quota:
            state.cursor = (state.cursor + 1) % n
            state.usage_counter = 0

        now = self._clock()
        cooldown = self.config.rate_limit_cooldown_seconds
        for offset in range(n):
            idx = (state.cursor + offset) % n
            candidate = active[idx]
            if candidate.cooling_down(now, cooldown):
                continue
            if candidate.rate_limited:
                candidate.rate_limited = False
                logger.info("credential_cooldown_elapsed", credential_id=candidate.id)
            if idx != state.cursor:
                state.cursor = idx
                state.usage_counter = 0
            state.usage_counter += 1
            return candidate

        # Everything is cooling down; try the next one anyway
        state.cursor = (state.cursor + 1) % n
        state.usage_counter = 1
        logger.warning("all_credentials_rate_limited", fallback_credential_id=active[state.cursor].id)
        return active[state.cursor]

    async def _call_adapter(
        self,
        entry: CredentialEntry,
        model: str,
        history: List[Message],
        new_message: str,
        system_instruction: Optional[str],
        generation_config: GenerationConfig,
        on_chunk: Optional[ChunkCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        if not entry.secret:
            raise ProviderAuthError("Credential has an empty secret")
        adapter = self._make_adapter(entry)
        call = adapter.stream_chat(
            model, history, new_message, system_instruction, generation_config, on_chunk, cancel_event,
        )
        timeout = self.config.request_timeout_seconds
        try:
            if timeout:
                return await asyncio.wait_for(call, timeout=timeout)
            return await call
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            raise NetworkIssueError(f"{entry.provider.value} call exceeded {timeout}s") from e
        except Exception as e:
            raise normalize_error(e, entry.provider.value) from e

    def _record_failure(self, entry: CredentialEntry, error: ProviderError, attempt: int) -> None:
        target = self.pool.get(entry.id) or entry
        fatal = error.is_fatal
        if fatal:
            target.active = False
        else:
            target.rate_limited = True
            target.last_used_at = self._clock()
        target.last_error_code = error.code
        logger.warning(
            "credential_deactivated" if fatal else "credential_rate_limited",
            credential_id=target.id,
            provider=target.provider.value,
            key=mask_secret(target.secret),
            code=error.code,
            attempt=attempt,
            error=str(error),
        )
        if self.on_credential_error:
            self.on_credential_error(target.id, error.code, fatal)

    async def stream_chat_response(
        self,
        history: Iterable[Message],
        new_message: str,
        system_instruction: Optional[str] = None,
        generation_config: Optional[GenerationConfig] = None,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        default_model: Optional[str] = None,
    ) -> ChatResult:
        """Generate a reply, rotating credentials on failure.

        Raises `ContentRejected` and `RequestCancelled` straight away,
        `NoActiveCredentials` when nothing is selectable and
        `AllCredentialsExhausted` once the retry budget or the active pool
        runs out.
        """
        with self._exclusive():
            generation_config = generation_config or GenerationConfig()
            valid_history = prepare_history(history, self.config.history_context_limit)
            max_attempts = max(2, 2 * len(self.pool.active_entries()))
            last_error: Optional[ProviderError] = None
            attempts = 0

            while attempts < max_attempts:
                check_cancelled(cancel_event)
                entry = self._next_credential()
                model = entry.preferred_model or default_model or self.config.default_model
                try:
                    text = await self._call_adapter(
                        entry, model, valid_history, new_message, system_instruction,
                        generation_config, on_chunk, cancel_event,
                    )
                except ProviderError as e:
                    if e.error_class is ErrorClass.CANCELLED:
                        logger.info("chat_cancelled", credential_id=entry.id)
                        raise
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("chat_cancelled", credential_id=entry.id, error=str(e))
                        raise RequestCancelled() from e
                    if e.error_class is ErrorClass.REJECTION:
                        logger.info("chat_rejected", credential_id=entry.id, reason=getattr(e, "reason", ""))
                        raise
                    last_error = e
                    attempts += 1
                    self._record_failure(entry, e, attempts)
                    if not self.pool.active_entries():
                        break
                    if e.error_class is ErrorClass.TRANSIENT and attempts < max_attempts:
                        await sleep_backoff(
                            attempts - 1,
                            initial_delay=self.config.transient_backoff_seconds,
                            backoff_factor=self.config.transient_backoff_factor,
                            max_delay=self.config.transient_backoff_max_seconds,
                        )
                    continue

                entry.last_used_at = self._clock()
                logger.info(
                    "chat_completed",
                    credential_id=entry.id,
                    provider=entry.provider.value,
                    model=model,
                    attempts=attempts + 1,
                )
                return ChatResult(
                    text=text,
                    credential_id=entry.id,
                    key_index=self.pool.display_index(entry.id),
                    provider=entry.provider,
                    model=model,
                )

            logger.error("all_credentials_exhausted", attempts=attempts, last_code=last_error.code if last_error else None)
            raise AllCredentialsExhausted(last_error)

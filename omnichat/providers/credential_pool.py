from __future__ import annotations
from typing import Iterable, List, Optional

from pydantic import BaseModel

from omnichat.models import CredentialEntry


class DispatcherState(BaseModel):
    """Rotation state shared by every call on one dispatcher."""

    # Index into the active view, not the full list
    cursor: int = 0
    usage_counter: int = 0
    in_flight: bool = False


class CredentialPool:
    """Authoritative, ordered list of credential entries.

    Entries are replaced wholesale by the caller; individual fields are only
    changed by the dispatcher's failure handling.
    """

    def __init__(self, entries: Optional[Iterable[CredentialEntry]] = None, state: Optional[DispatcherState] = None):
        self.state = state or DispatcherState()
        self._entries: List[CredentialEntry] = []
        self.replace(entries or [])

    def replace(self, entries: Iterable[CredentialEntry]) -> None:
        self._entries = list(entries)
        if self.state.cursor >= len(self._entries):
            self.state.cursor = 0
            self.state.usage_counter = 0

    @property
    def entries(self) -> List[CredentialEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def active_entries(self) -> List[CredentialEntry]:
        return [e for e in self._entries if e.active]

    def get(self, credential_id: str) -> Optional[CredentialEntry]:
        for e in self._entries:
            if e.id == credential_id:
                return e
        return None

    def display_index(self, credential_id: str) -> int:
        """1-based position in the full list, 0 when unknown."""
        for i, e in enumerate(self._entries):
            if e.id == credential_id:
                return i + 1
        return 0

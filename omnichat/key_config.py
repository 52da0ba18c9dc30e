import json
from typing import List, Optional, Tuple

from pydantic import ValidationError

from omnichat.models import CredentialEntry

CONFIG_TYPE = "omnichat_key_config"
CONFIG_VERSION = 1

# Runtime state that should not travel with an exported config
_RUNTIME_FIELDS = {"rate_limited", "last_used_at", "last_error_code"}


class InvalidKeyConfig(ValueError):
    pass


def export_key_config(entry: CredentialEntry, cached_models: Optional[List[str]] = None) -> dict:
    return {
        "type": CONFIG_TYPE,
        "version": CONFIG_VERSION,
        "config": entry.model_dump(mode="json", exclude=_RUNTIME_FIELDS),
        "cachedModels": list(cached_models or []),
    }


def dumps_key_config(entry: CredentialEntry, cached_models: Optional[List[str]] = None) -> str:
    return json.dumps(export_key_config(entry, cached_models), indent=2)


def import_key_config(data, slot_id: Optional[str] = None) -> Tuple[CredentialEntry, List[str]]:
    """Parse an exported single-key document.

    `data` may be the decoded dict or its JSON text. When `slot_id` is given
    the imported entry takes that id so it replaces the slot it was loaded
    into. Returns the entry and the cached model names (possibly empty).
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise InvalidKeyConfig(f"Not a JSON document: {e}") from e
    if not isinstance(data, dict) or data.get("type") != CONFIG_TYPE or not isinstance(data.get("config"), dict):
        raise InvalidKeyConfig("Not an omnichat key config")

    fields = {k: v for k, v in data["config"].items() if k not in _RUNTIME_FIELDS}
    if fields.get("active") is None:
        fields["active"] = True
    if slot_id:
        fields["id"] = slot_id
    try:
        entry = CredentialEntry(**fields)
    except ValidationError as e:
        raise InvalidKeyConfig(f"Invalid key config: {e}") from e

    cached = data.get("cachedModels")
    models = [m for m in cached if isinstance(m, str)] if isinstance(cached, list) else []
    return entry, models

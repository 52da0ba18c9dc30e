import re
import uuid
from typing import List, Optional

from omnichat.models import CredentialEntry, ProviderKind

# Optional provider prefix: openai:"sk-..." ollama=token google:AIza...
# Narrowed so a bare URL (https://...) is never read as a prefixed key.
RE = re.compile(
    r"^(?P<provider>gemini|google|openai|ollama)\s*[:=]\s*(?:\"(?P<quoted>[^\"]+)\"|(?P<bare>(?!//)\S+))$",
    re.IGNORECASE,
)

_ALIASES = {"gemini": ProviderKind.GOOGLE, "google": ProviderKind.GOOGLE}


def parse_key_line(line: str) -> Optional[tuple]:
    """Return (provider, secret) for one line, or None for a blank line."""
    line = line.strip()
    if not line:
        return None
    m = RE.match(line)
    if not m:
        return ProviderKind.GOOGLE, line.strip('"')
    name = m.group("provider").lower()
    provider = _ALIASES.get(name) or ProviderKind(name)
    return provider, m.group("quoted") or m.group("bare")


def parse_batch_keys(
    text: str,
    default_model: str = "",
    usage_quota: int = 5,
    default_endpoint: Optional[str] = None,
) -> List[CredentialEntry]:
    """
    Build credential entries from pasted text, one key per line.
    Unprefixed keys are Google keys; `default_endpoint` is applied to
    OpenAI-compatible and Ollama entries.
    """
    out = []
    for raw in re.split(r"[\r\n]+", text):
        parsed = parse_key_line(raw)
        if parsed is None:
            continue
        provider, secret = parsed
        out.append(CredentialEntry(
            id=str(uuid.uuid4()),
            secret=secret,
            provider=provider,
            endpoint=default_endpoint if provider != ProviderKind.GOOGLE else None,
            preferred_model=default_model if provider == ProviderKind.GOOGLE else "",
            active=True,
            usage_quota=usage_quota,
        ))
    return out

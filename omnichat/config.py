import json
from pathlib import Path
from dotenv import load_dotenv
from pydantic import BaseModel
from typing import Optional


class Config(BaseModel):
    # Model used when a credential has no preferred model and the caller gives none
    default_model: str = "gemini-2.5-flash"
    # Model used to probe OpenAI-compatible endpoints when the credential has none
    default_openai_model: str = "gpt-3.5-turbo"
    rate_limit_cooldown_seconds: float = 60.0
    # Upper bound for a single adapter call; None leaves it to the transport
    request_timeout_seconds: Optional[float] = 120.0
    connect_timeout_seconds: float = 10.0
    transient_backoff_seconds: float = 0.5
    transient_backoff_factor: float = 2.0
    transient_backoff_max_seconds: float = 8.0
    # 0 sends the whole history
    history_context_limit: int = 0
    batch_import_usage_quota: int = 5

    @classmethod
    def load(cls, path: str = "config.json"):
        load_dotenv()
        p = Path(path)
        if p.exists():
            data = json.loads(p.read_text())
        else:
            data = {}
        return cls(**data)

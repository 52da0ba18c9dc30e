import uuid
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional


class ProviderKind(str, Enum):
    GOOGLE = "google"
    OPENAI = "openai"
    OLLAMA = "ollama"


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class Message(BaseModel):
    role: Role
    text: str = ""
    is_error: bool = False


class CredentialEntry(BaseModel):
    """One configured authentication unit for one backend.

    The dispatcher only ever touches `active`, `rate_limited`,
    `last_used_at` and `last_error_code`.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    secret: str = ""
    provider: ProviderKind = ProviderKind.GOOGLE
    endpoint: Optional[str] = None
    preferred_model: str = ""
    active: bool = True
    usage_quota: int = Field(default=1, ge=1)
    rate_limited: bool = False
    last_used_at: float = 0.0
    last_error_code: Optional[str] = None
    group_id: Optional[str] = None
    label: Optional[str] = None

    def cooling_down(self, now: float, cooldown_seconds: float) -> bool:
        return self.rate_limited and (now - self.last_used_at) < cooldown_seconds


class ModelInfo(BaseModel):
    name: str
    display_name: Optional[str] = None
    input_token_limit: Optional[int] = None
    output_token_limit: Optional[int] = None


class GenerationConfig(BaseModel):
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192
    stream: bool = False
    thinking_budget: Optional[int] = None
    frequency_penalty: Optional[float] = None


class ChatResult(BaseModel):
    text: str
    credential_id: str
    # 1-based position of the credential in the full pool
    key_index: int
    provider: ProviderKind
    model: str

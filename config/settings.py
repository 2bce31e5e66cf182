"""Runtime settings for providers and logging.

Values come from environment variables; nothing here talks to the network.
"""

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from services.shared.errors import ConfigurationError

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ProviderName(str, Enum):
    """Completion/embedding provider."""
    OPENROUTER = "openrouter"
    OPENAI = "openai"


class EmbeddingBackend(str, Enum):
    OPENAI = "openai"
    LOCAL = "local"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Provider credentials, model names and logging options."""
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API key")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openrouter_base_url: str = Field(default=OPENROUTER_BASE_URL)
    app_url: Optional[str] = Field(default=None, description="Sent as HTTP-Referer to OpenRouter")
    app_name: str = Field(default="IDE Docs Assistant", description="Sent as X-Title to OpenRouter")

    embedding_backend: EmbeddingBackend = Field(default=EmbeddingBackend.OPENAI)
    openrouter_embedding_model: str = Field(default="openai/text-embedding-3-small")
    openai_embedding_model: str = Field(default="text-embedding-3-small")
    local_embedding_model: str = Field(default="all-MiniLM-L6-v2")

    openrouter_chat_model: str = Field(default="meta-llama/llama-3.1-8b-instruct:free")
    openai_chat_model: str = Field(default="gpt-4o-mini")
    classifier_model: str = Field(default="anthropic/claude-3-haiku")

    request_timeout: float = Field(default=60.0, description="Provider request timeout in seconds")

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        return cls(
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", OPENROUTER_BASE_URL),
            app_url=os.getenv("OPENROUTER_APP_URL") or None,
            app_name=os.getenv("OPENROUTER_APP_NAME", "IDE Docs Assistant"),
            embedding_backend=EmbeddingBackend(os.getenv("EMBEDDING_BACKEND", "openai").lower()),
            openrouter_embedding_model=os.getenv("OPENROUTER_EMBEDDING_MODEL", "openai/text-embedding-3-small"),
            openai_embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            local_embedding_model=os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openrouter_chat_model=os.getenv("OPENROUTER_CHAT_MODEL", "meta-llama/llama-3.1-8b-instruct:free"),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"),
            classifier_model=os.getenv("CLASSIFIER_MODEL", "anthropic/claude-3-haiku"),
            request_timeout=float(os.getenv("PROVIDER_TIMEOUT", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", False),
            log_file=os.getenv("LOG_FILE") or None,
        )

    @property
    def provider(self) -> Optional[ProviderName]:
        """OpenRouter is preferred when both keys are present."""
        if self.openrouter_api_key:
            return ProviderName.OPENROUTER
        if self.openai_api_key:
            return ProviderName.OPENAI
        return None

    def require_provider(self) -> ProviderName:
        provider = self.provider
        if provider is None:
            raise ConfigurationError(
                "No LLM provider configured: set OPENROUTER_API_KEY or OPENAI_API_KEY"
            )
        return provider

    def chat_model(self) -> str:
        if self.require_provider() == ProviderName.OPENROUTER:
            return self.openrouter_chat_model
        return self.openai_chat_model

    def embedding_model(self) -> str:
        if self.require_provider() == ProviderName.OPENROUTER:
            return self.openrouter_embedding_model
        return self.openai_embedding_model


_settings: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    """Return the process-wide settings, reading the environment once."""
    global _settings
    if _settings is None or reload:
        _settings = Settings.from_env()
    return _settings

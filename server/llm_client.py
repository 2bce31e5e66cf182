"""Chat-completion client for OpenRouter and OpenAI."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from config.settings import ProviderName, Settings, get_settings
from services.shared.errors import ValidationError, classify_provider_error

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """One completion and its token usage (None when the provider omits it)."""
    text: str
    model: str
    provider: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if self.prompt_tokens is None or self.completion_tokens is None:
            return None
        return self.prompt_tokens + self.completion_tokens


class ChatCompletionClient:
    """Thin wrapper over ``openai.AsyncOpenAI``.

    SDK retries are disabled; callers apply their own RetryPolicy.
    """

    def __init__(self, client: AsyncOpenAI, default_model: str, provider: str = "openai"):
        self.client = client
        self.default_model = default_model
        self.provider = provider

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      model: Optional[str] = None) -> "ChatCompletionClient":
        """Build a client for the configured provider.

        Raises:
            ConfigurationError: Neither OPENROUTER_API_KEY nor OPENAI_API_KEY is set
        """
        settings = settings or get_settings()
        provider = settings.require_provider()
        if provider == ProviderName.OPENROUTER:
            headers = {"X-Title": settings.app_name}
            if settings.app_url:
                headers["HTTP-Referer"] = settings.app_url
            client = AsyncOpenAI(api_key=settings.openrouter_api_key,
                                 base_url=settings.openrouter_base_url,
                                 default_headers=headers,
                                 timeout=settings.request_timeout,
                                 max_retries=0)
        else:
            client = AsyncOpenAI(api_key=settings.openai_api_key,
                                 timeout=settings.request_timeout,
                                 max_retries=0)
        return cls(client, model or settings.chat_model(), provider=provider.value)

    async def complete(self,
                       messages: List[Dict[str, str]],
                       model: Optional[str] = None,
                       temperature: float = 0.7,
                       max_tokens: int = 2000) -> Completion:
        """Run a single completion.

        Raises:
            ValidationError: The response carries no message content
            PipelineError: Translated provider errors
        """
        model = model or self.default_model
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            error = classify_provider_error(e)
            if error is e:
                raise
            raise error from e

        if not response.choices or not response.choices[0].message.content:
            raise ValidationError(f"Empty completion from {self.provider}:{model}")

        usage = getattr(response, "usage", None)
        return Completion(
            text=response.choices[0].message.content,
            model=getattr(response, "model", None) or model,
            provider=self.provider,
            prompt_tokens=getattr(usage, "prompt_tokens", None) if usage else None,
            completion_tokens=getattr(usage, "completion_tokens", None) if usage else None,
        )

"""Grounded chat answers from retrieved documentation."""

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from config.settings import Settings, get_settings
from observability.logging import get_structured_logger
from observability.metrics import record_chat
from services.shared.errors import ConfigurationError, PipelineError
from services.shared.models import RetrievedChunk
from services.shared.retry import RetryPolicy

from .llm_client import ChatCompletionClient, Completion

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="chat")

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7
SOURCE_PREVIEW_CHARS = 200
VALID_ROLES = {"system", "user", "assistant"}

GUIDELINES = """Guidelines:
- Provide clear, concise answers based on the provided documentation
- If the documentation doesn't contain the answer, say so clearly
- Use examples and code snippets when helpful
- Reference the sources you used in your answer
- Maintain a helpful, professional tone
- If you're unsure about something, acknowledge the uncertainty"""

_WORD = re.compile(r"[^\w-]+")


@dataclass
class TokenUsage:
    prompt: int
    completion: int
    estimated: bool = False

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def to_dict(self) -> Dict[str, Any]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total,
                "estimated": self.estimated}


@dataclass
class ChatResponse:
    response: str
    sources: List[Dict[str, Any]]
    tokens_used: TokenUsage
    model: str
    provider: str
    response_time_ms: float
    confidence: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "sources": self.sources,
            "tokens_used": self.tokens_used.to_dict(),
            "metadata": {
                "model": self.model,
                "provider": self.provider,
                "response_time_ms": self.response_time_ms,
                "confidence": self.confidence,
                **self.extra,
            },
        }


def estimate_tokens(text: str) -> int:
    """Rough token estimate at four characters per token."""
    return math.ceil(len(text) / 4)


def build_system_prompt(tool_name: Optional[str], context: Optional[str], has_sources: bool) -> str:
    subject = tool_name or "development tools and IDEs"
    prompt = f"You are a helpful assistant specializing in {subject}."
    if tool_name:
        prompt += (f" You are an expert in {tool_name} and should provide accurate, helpful "
                   "information about its features, usage, and best practices.")
    prompt += "\n\n" + GUIDELINES

    if context and has_sources:
        prompt += (
            f"\n\nBelow is relevant documentation from {tool_name or 'the IDE documentation'}:\n\n"
            f"---\n{context}\n---\n\n"
            "Answer only from this documentation and cite the sources you used. If the "
            "documentation doesn't contain relevant information, say so clearly instead of guessing."
        )
    else:
        prompt += (
            "\n\nNo specific documentation was found for this query. Say that no matching "
            f"documentation was found for {tool_name or 'this tool'}, and make it clear that any "
            "answer is not backed by the documentation."
        )
    return prompt


def _leading_words(text: str, count: int = 5) -> List[str]:
    words = [_WORD.sub("", w) for w in text.lower().split()[:count]]
    return [w for w in words if len(w) >= 4]


def calculate_confidence(sources: Sequence[RetrievedChunk], response: str,
                         context: Optional[str]) -> str:
    """Confidence bucket from source similarities and overlap with the answer."""
    if not sources or not context:
        return "low"

    average = sum(s.similarity for s in sources) / len(sources)
    answer = response.lower()
    references_source = any(
        any(word in answer for word in _leading_words(s.chunk.text)) for s in sources
    )

    if average > 0.8 and references_source:
        return "high"
    if average > 0.6 and len(sources) >= 2:
        return "medium"
    return "low"


def _check_messages(messages: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    if not messages:
        raise ValueError("At least one message is required")
    cleaned = []
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role not in VALID_ROLES:
            raise ValueError(f"Invalid message role: {role!r}")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message content cannot be empty")
        cleaned.append({"role": role, "content": content})
    return cleaned


class ChatResponder:
    """Answers user messages from assembled documentation context.

    Clients are tried in order; transient failures are retried per client,
    configuration errors are raised at once.
    """

    def __init__(self,
                 clients: Sequence[ChatCompletionClient],
                 max_tokens: int = DEFAULT_MAX_TOKENS,
                 temperature: float = DEFAULT_TEMPERATURE,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.clients = list(clients)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=8.0)
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "ChatResponder":
        """OpenRouter first with OpenAI as fallback when both keys are set.

        Raises:
            ConfigurationError: No provider key is configured
        """
        settings = settings or get_settings()
        settings.require_provider()
        clients = []
        if settings.openrouter_api_key:
            clients.append(ChatCompletionClient.from_settings(settings))
        if settings.openai_api_key:
            openai_only = settings.model_copy(update={"openrouter_api_key": None})
            clients.append(ChatCompletionClient.from_settings(openai_only))
        return cls(clients, **kwargs)

    async def _complete(self, messages: List[Dict[str, str]]) -> Completion:
        for index, client in enumerate(self.clients):
            async def attempt(client=client) -> Completion:
                return await client.complete(messages, temperature=self.temperature,
                                             max_tokens=self.max_tokens)
            try:
                return await self.retry_policy.run(attempt, description=f"{client.provider} chat",
                                                   sleep=self.sleep)
            except ConfigurationError:
                raise
            except PipelineError as e:
                slog.warning("Chat provider failed", provider=client.provider, error=str(e))
                if index == len(self.clients) - 1:
                    raise

        raise ConfigurationError("No LLM provider configured")

    async def generate_response(self,
                                messages: Sequence[Dict[str, str]],
                                tool_name: Optional[str] = None,
                                context: Optional[str] = None,
                                sources: Sequence[RetrievedChunk] = ()) -> ChatResponse:
        """Generate a grounded answer.

        Args:
            messages: Conversation so far, oldest first; roles user/assistant/system
            tool_name: Display name of the tool being asked about
            context: Assembled documentation context
            sources: Retrieved chunks the context was built from

        Raises:
            ValueError: Empty or malformed messages
            ConfigurationError: Missing or rejected credentials
            PipelineError: Every provider failed after retries
        """
        conversation = _check_messages(messages)
        start = time.perf_counter()

        system_prompt = build_system_prompt(tool_name, context, bool(sources))
        llm_messages = [{"role": "system", "content": system_prompt}] + conversation

        try:
            completion = await self._complete(llm_messages)
        except PipelineError as e:
            record_chat("failed", error=e)
            raise

        confidence = calculate_confidence(sources, completion.text, context)
        if completion.prompt_tokens is not None and completion.completion_tokens is not None:
            usage = TokenUsage(completion.prompt_tokens, completion.completion_tokens)
        else:
            usage = TokenUsage(estimate_tokens(json.dumps(llm_messages)),
                               estimate_tokens(completion.text), estimated=True)

        record_chat("succeeded", confidence)
        return ChatResponse(
            response=completion.text,
            sources=[s.to_source(max_text=SOURCE_PREVIEW_CHARS) for s in sources],
            tokens_used=usage,
            model=completion.model,
            provider=completion.provider,
            response_time_ms=round((time.perf_counter() - start) * 1000, 1),
            confidence=confidence,
        )

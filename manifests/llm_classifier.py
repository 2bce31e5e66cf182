"""LLM-backed prompt-format classification.

The model's reply is untrusted: the embedded JSON object is extracted,
parsed and validated field by field before a result is produced.
"""

import json
import logging
import math
import re
from typing import Any, Awaitable, Callable, List, Optional

from config.settings import ProviderName, Settings, get_settings
from server.llm_client import ChatCompletionClient
from services.shared.errors import ValidationError
from services.shared.models import FallbackFormat, FormatDetectionResult, PromptFormat
from services.shared.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic/claude-3-haiku"
MAX_DOCUMENT_CHARS = 8000
JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

PROMPT_TEMPLATE = """You are an expert at analyzing IDE documentation to determine the preferred prompt format for generating prompts.

IDE ID: {tool_id}

Documentation excerpt:
\"\"\"
{documentation}
\"\"\"

Analyze this documentation and determine the most appropriate prompt format. Consider:
1. File types and extensions mentioned
2. Code examples and their languages
3. Structural patterns (headings, lists, etc.)
4. Command-line interfaces or tools
5. Schema definitions
6. Explicit format mentions

Respond with a JSON object in this exact format:
{{
  "preferred_format": "json|markdown|plaintext|cli|xml|custom",
  "confidence_score": 0-100,
  "detection_methods_used": ["method1", "method2"],
  "fallback_formats": [
    {{"format": "format1", "confidence": 0-100}},
    {{"format": "format2", "confidence": 0-100}}
  ],
  "reasoning": "Brief explanation of your decision"
}}

Be precise and base your decision on clear evidence from the documentation."""


def _number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    return max(0.0, min(100.0, float(value)))


def parse_classification(text: str) -> FormatDetectionResult:
    """Validate a model reply and convert it into a detection result.

    Raises:
        ValidationError: No JSON object, unknown preferred format, or
            malformed fields
    """
    match = JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ValidationError("No JSON object found in classifier response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Classifier response is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Classifier response must be a JSON object")

    try:
        preferred = PromptFormat.parse(payload.get("preferred_format"))
    except ValueError as e:
        raise ValidationError(str(e)) from e

    confidence = _number(payload.get("confidence_score"), "confidence_score")

    raw_methods = payload.get("detection_methods_used") or []
    if not isinstance(raw_methods, list):
        raise ValidationError("detection_methods_used must be a list")
    methods = ["llm-classifier"] + [str(m) for m in raw_methods if isinstance(m, str) and m.strip()]

    raw_fallbacks = payload.get("fallback_formats") or []
    if not isinstance(raw_fallbacks, list):
        raise ValidationError("fallback_formats must be a list")

    fallbacks: List[FallbackFormat] = []
    seen = {preferred}
    for item in raw_fallbacks:
        if not isinstance(item, dict):
            continue
        try:
            fmt = PromptFormat.parse(item.get("format"))
            fallback_confidence = _number(item.get("confidence"), "fallback confidence")
        except (ValueError, ValidationError) as e:
            logger.debug(f"Dropping fallback entry {item!r}: {e}")
            continue
        if fmt in seen:
            continue
        seen.add(fmt)
        fallbacks.append(FallbackFormat(format=fmt, confidence=fallback_confidence))

    fallbacks.sort(key=lambda f: f.confidence, reverse=True)
    return FormatDetectionResult(
        preferred_format=preferred,
        confidence_score=confidence,
        detection_methods_used=methods,
        fallback_formats=fallbacks[:3],
    )


class LLMClassifier:
    """Classifies documentation into a prompt format with a chat model."""

    def __init__(self,
                 client: ChatCompletionClient,
                 model: str = DEFAULT_MODEL,
                 max_retries: int = 3,
                 temperature: float = 0.1,
                 max_tokens: int = 500,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=max_retries, base_delay=1.0, max_delay=8.0, multiplier=2.0, jitter=0.2
        )
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "LLMClassifier":
        settings = settings or get_settings()
        # classifier_model names an OpenRouter model
        if settings.require_provider() == ProviderName.OPENROUTER:
            model = settings.classifier_model
        else:
            model = settings.openai_chat_model
        client = ChatCompletionClient.from_settings(settings, model=model)
        return cls(client, model=model, **kwargs)

    @staticmethod
    def build_prompt(tool_id: str, documentation: str) -> str:
        if len(documentation) > MAX_DOCUMENT_CHARS:
            documentation = documentation[:MAX_DOCUMENT_CHARS] + "..."
        return PROMPT_TEMPLATE.format(tool_id=tool_id, documentation=documentation)

    async def classify_format(self, tool_id: str, documentation: str) -> FormatDetectionResult:
        """Ask the model for a format; malformed replies are retried.

        Raises:
            ConfigurationError: Provider credentials are missing or rejected
            PipelineError: Retries exhausted (the last error is raised)
        """
        prompt = self.build_prompt(tool_id, documentation)
        messages = [{"role": "user", "content": prompt}]

        async def attempt() -> FormatDetectionResult:
            completion = await self.client.complete(messages, model=self.model,
                                                    temperature=self.temperature,
                                                    max_tokens=self.max_tokens)
            return parse_classification(completion.text)

        result = await self.retry_policy.run(attempt, description=f"format classification for {tool_id}",
                                             sleep=self.sleep)
        logger.info(f"LLM classified {tool_id} as {result.preferred_format.value} "
                    f"({result.confidence_score:.0f})")
        return result

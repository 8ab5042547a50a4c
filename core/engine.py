"""
Conversation Engine — LLM-powered AI conversation partner.

Takes the session's conversation context and produces the partner's next
spoken line. Handles:
- Role-play replies grounded in scenario, role, context documents and history
- Emotional-tone classification of each reply
- Anthropic and OpenAI providers behind one call

Errors are raised, not swallowed: the orchestrator's QuotaGuard owns
retries and fallbacks for every call made through this engine.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import LLMConfig, get_settings
from core.errors import ServiceError, TransientServiceFailure, is_transient
from core.prompts import EMOTION_PROMPT, build_messages, build_system_prompt
from core.services import TextGenerationService
from models.schemas import ConversationContext, Emotion

logger = structlog.get_logger()


class ConversationEngine(TextGenerationService):
    """
    Generates partner replies using Claude or OpenAI.
    The provider SDK client is created lazily on first use.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._config.model)
            except ImportError as e:
                raise ServiceError(
                    f"{self._provider} SDK is not installed: {e}", service="llm",
                ) from e
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        max_tokens = max_tokens or self._config.max_tokens
        temperature = temperature if temperature is not None else self._config.temperature

        try:
            if self.is_openai:
                # OpenAI: system prompt is a message in the messages list
                response = await client.chat.completions.create(
                    model=self._config.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                )
                text = response.choices[0].message.content or ""
            else:
                # Anthropic: system prompt is a separate parameter
                response = await client.messages.create(
                    model=self._config.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=messages,
                )
                text = response.content[0].text if response.content else ""
        except Exception as e:
            if is_transient(e) or _sdk_transient(e):
                raise TransientServiceFailure(str(e), service="llm") from e
            raise ServiceError(str(e), service="llm") from e

        text = text.strip()
        if not text:
            raise TransientServiceFailure("empty completion", service="llm")
        return text

    async def generate_response(self, context: ConversationContext, utterance: str) -> str:
        """
        Generate the partner's next line.

        Args:
            context: scenario, language, AI role, documents and prior turns
            utterance: the trainee's latest utterance (or the greeting prompt)
        """
        reply = await self._call_llm(
            system=build_system_prompt(context),
            messages=build_messages(context, utterance),
        )
        logger.debug("llm_reply_generated", scenario=context.scenario,
                     chars=len(reply), history=len(context.history))
        return reply

    async def analyze_emotion(self, text: str) -> Emotion:
        """Classify the tone of ``text``; anything unexpected maps to neutral."""
        raw = await self._call_llm(
            system="You classify emotional tone. Answer with one word.",
            messages=[{"role": "user", "content": EMOTION_PROMPT.format(text=text)}],
            max_tokens=5,
            temperature=0.0,
        )
        word = raw.strip().strip(".!\"'").lower()
        try:
            return Emotion(word)
        except ValueError:
            logger.debug("emotion_unrecognized", raw=raw[:40])
            return Emotion.NEUTRAL


def _sdk_transient(exc: BaseException) -> bool:
    """Provider SDK errors that carry an HTTP status or are connection problems."""
    status = getattr(exc, "status_code", None)
    if status in (408, 429, 500, 502, 503, 504, 529):
        return True
    name = type(exc).__name__
    return name in ("APIConnectionError", "APITimeoutError", "RateLimitError",
                    "InternalServerError", "OverloadedError")

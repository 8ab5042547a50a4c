"""
Tests for the collaborator services and the LLM conversation engine.

Coverage:
- RemoteAudioService outbound queue, barge-in marker, gated capture
- CannedTextGeneration greeting and reply cycling
- Prompt building: roles, language rule, documents, message alternation
- ConversationEngine against fake Anthropic / OpenAI clients
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from config.settings import LLMConfig
from core.engine import ConversationEngine
from core.errors import ServiceError, TransientServiceFailure
from core.prompts import (
    DEFAULT_ROLE, build_messages, build_system_prompt, canned_replies,
    fallback_greeting, greeting_prompt, role_for_caller, role_for_scenario,
)
from core.services import CannedTextGeneration, RemoteAudioService
from models.schemas import (
    Caller, CallerMood, CallerScenario, ContextDocument, ConversationContext,
    ConversationTurn, Emotion, Gender, Language, Speaker,
)


def context(**overrides) -> ConversationContext:
    fields = {"scenario": "customer-complaint", "language": Language.ENGLISH}
    fields.update(overrides)
    return ConversationContext(**fields)


# ──────────────────────────────────────────────────────────────
#  Remote audio
# ──────────────────────────────────────────────────────────────

class TestRemoteAudioService:
    @pytest.mark.asyncio
    async def test_play_audio_queues_clip(self):
        audio = RemoteAudioService()
        await audio.play_audio(b"clip")
        assert audio.outbound.get_nowait() == b"clip"
        assert not audio.is_playback_active()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        audio = RemoteAudioService(max_queued=2)
        for clip in (b"a", b"b", b"c"):
            await audio.play_audio(clip)
        assert [audio.outbound.get_nowait() for _ in range(2)] == [b"b", b"c"]

    @pytest.mark.asyncio
    async def test_barge_in_flushes_and_sends_stop(self):
        audio = RemoteAudioService()
        await audio.play_audio(b"a")
        await audio.play_audio(b"b")
        await audio.trigger_barge_in()
        assert audio.outbound.qsize() == 1
        assert audio.outbound.get_nowait() == RemoteAudioService.STOP

    @pytest.mark.asyncio
    async def test_receive_only_while_recording(self):
        audio = RemoteAudioService()
        seen = []
        audio.set_sink(lambda energy, chunk: seen.append(energy))
        audio.receive(0.5, b"x")
        await audio.start_recording()
        audio.receive(0.6, b"x")
        await audio.stop_recording()
        audio.receive(0.7, b"x")
        assert seen == [0.6]


# ──────────────────────────────────────────────────────────────
#  Canned partner
# ──────────────────────────────────────────────────────────────

class TestCannedTextGeneration:
    @pytest.mark.asyncio
    async def test_greeting(self):
        gen = CannedTextGeneration()
        reply = await gen.generate_response(context(), greeting_prompt(Language.ENGLISH))
        assert reply == fallback_greeting(Language.ENGLISH)

    @pytest.mark.asyncio
    async def test_cycles_replies(self):
        gen = CannedTextGeneration()
        replies = canned_replies(Language.INDONESIAN)
        ctx = context(language=Language.INDONESIAN)
        seen = [await gen.generate_response(ctx, "halo") for _ in range(len(replies) + 1)]
        assert seen[:-1] == list(replies)
        assert seen[-1] == replies[0]
        assert gen.calls == len(replies) + 1
        assert await gen.analyze_emotion("anything") == Emotion.NEUTRAL


# ──────────────────────────────────────────────────────────────
#  Prompts
# ──────────────────────────────────────────────────────────────

class TestPrompts:
    def test_scenario_roles(self):
        assert "angry customer" in role_for_scenario("customer-complaint")
        assert role_for_scenario("underwater-basket-weaving") == DEFAULT_ROLE

    def test_caller_role_mentions_difficulty(self):
        caller = Caller(position=1, name="Budi", gender=Gender.MALE, mood=CallerMood.HOSTILE,
                        scenario=CallerScenario.CRISIS, difficulty=5, objective="x",
                        estimated_duration_s=120)
        role = role_for_caller(caller)
        assert role.startswith("an aggressive and confrontational person in a crisis")
        assert role.endswith("very difficult to handle")

    def test_system_prompt_language_and_documents(self):
        ctx = context(language=Language.INDONESIAN,
                      documents=[ContextDocument(name="pricing.txt", content="Plan A costs 10")])
        prompt = build_system_prompt(ctx)
        assert "Bahasa Indonesia" in prompt
        assert "Document 1: pricing.txt" in prompt
        assert "Plan A costs 10" in prompt

    def test_messages_alternate_and_start_with_user(self):
        ctx = context(history=[
            ConversationTurn(speaker=Speaker.AI, text="Welcome."),
            ConversationTurn(speaker=Speaker.USER, text="Hi"),
            ConversationTurn(speaker=Speaker.USER, text="I need help"),
            ConversationTurn(speaker=Speaker.AI, text="With what?"),
        ])
        messages = build_messages(ctx, "My order")
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]
        assert messages[0]["content"] == greeting_prompt(Language.ENGLISH)
        assert messages[2]["content"] == "Hi\nI need help"
        assert messages[-1]["content"] == "My order"


# ──────────────────────────────────────────────────────────────
#  Conversation engine
# ──────────────────────────────────────────────────────────────

def anthropic_client(text: str = " Where is my refund? "):
    create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(text=text)]))
    return SimpleNamespace(messages=SimpleNamespace(create=create))


def openai_client(text: str = "Fine."):
    choice = SimpleNamespace(message=SimpleNamespace(content=text))
    create = AsyncMock(return_value=SimpleNamespace(choices=[choice]))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestConversationEngine:
    @pytest.mark.asyncio
    async def test_anthropic_reply(self):
        engine = ConversationEngine(LLMConfig(provider="anthropic", model="m"))
        engine._client = anthropic_client()
        reply = await engine.generate_response(context(), "Hello")
        assert reply == "Where is my refund?"
        kwargs = engine._client.messages.create.call_args.kwargs
        assert kwargs["model"] == "m"
        assert kwargs["max_tokens"] == 300
        assert kwargs["messages"][-1] == {"role": "user", "content": "Hello"}
        assert "customer-complaint" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_openai_system_message_first(self):
        engine = ConversationEngine(LLMConfig(provider="openai", model="gpt"))
        engine._client = openai_client()
        assert await engine.generate_response(context(), "Hello") == "Fine."
        messages = engine._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_empty_completion_is_transient(self):
        engine = ConversationEngine(LLMConfig())
        engine._client = anthropic_client("   ")
        with pytest.raises(TransientServiceFailure):
            await engine.generate_response(context(), "Hello")

    @pytest.mark.asyncio
    async def test_status_error_is_transient(self):
        engine = ConversationEngine(LLMConfig())
        client = anthropic_client()

        class OverloadedError(Exception):
            status_code = 529

        client.messages.create.side_effect = OverloadedError("overloaded")
        engine._client = client
        with pytest.raises(TransientServiceFailure):
            await engine.generate_response(context(), "Hello")

    @pytest.mark.asyncio
    async def test_auth_error_is_permanent(self):
        engine = ConversationEngine(LLMConfig())
        client = anthropic_client()

        class AuthenticationError(Exception):
            status_code = 401

        client.messages.create.side_effect = AuthenticationError("invalid x-api-key")
        engine._client = client
        with pytest.raises(ServiceError) as exc_info:
            await engine.generate_response(context(), "Hello")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw, expected", [
        ("Hostile.", Emotion.HOSTILE),
        ("frustrated", Emotion.FRUSTRATED),
        ("sarcastic", Emotion.NEUTRAL),
    ])
    async def test_analyze_emotion(self, raw, expected):
        engine = ConversationEngine(LLMConfig())
        engine._client = anthropic_client(raw)
        assert await engine.analyze_emotion("whatever") == expected
        assert engine._client.messages.create.call_args.kwargs["max_tokens"] == 5

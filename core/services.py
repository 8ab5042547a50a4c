"""
Collaborator interfaces consumed by the session orchestrator.

Implementations:
  - AudioService / MockAudioService / RemoteAudioService
                                             capture, playback, barge-in, ambient bed
  - TextGenerationService / CannedTextGeneration   replies + emotion classification
  - SpeechSynthesisService / SilentSpeechSynthesis synthesize + streaming
The concrete network-backed implementations live in core/engine.py
(text generation) and voice/synthesis.py (ElevenLabs). Persistence is in
database/store.py and the quota ledger in core/quota.py.
"""
from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from core.errors import PermissionDenied
from core.prompts import canned_replies, fallback_greeting, greeting_prompt
from models.schemas import ConversationContext, Emotion, VoiceInfo

AudioSink = Callable[[float, bytes], None]
ChunkCallback = Callable[[bytes], Optional[Awaitable[None]]]


# ══════════════════════════════════════════════════════════════
#  AUDIO
# ══════════════════════════════════════════════════════════════

class AudioService(ABC):
    """Microphone capture and speaker playback."""

    def __init__(self):
        self._sink: Optional[AudioSink] = None

    def set_sink(self, sink: Optional[AudioSink]) -> None:
        """Register the receiver of ``(energy, raw_chunk)`` for every captured chunk."""
        self._sink = sink

    @abstractmethod
    async def start_recording(self) -> None:
        """Raises PermissionDenied or DeviceUnavailable."""
        ...

    @abstractmethod
    async def stop_recording(self) -> None:
        ...

    @abstractmethod
    async def play_audio(self, audio: bytes) -> None:
        """Completes when playback finishes or is interrupted."""
        ...

    @abstractmethod
    async def trigger_barge_in(self) -> None:
        """Stop playback immediately."""
        ...

    @abstractmethod
    def is_playback_active(self) -> bool:
        ...

    # ── Ambient bed (continuous noise) ────────────────────

    async def start_ambient(self, audio: bytes, volume: float) -> None:
        return None

    async def stop_ambient(self) -> None:
        return None

    def set_ambient_volume(self, volume: float) -> None:
        return None

    async def cleanup(self) -> None:
        await self.stop_recording()


class MockAudioService(AudioService):
    """
    In-memory audio device. Records every call; ``emit`` feeds the sink as
    a microphone would. ``playback_s`` simulates playback time via the
    injected ``sleep``.
    """

    def __init__(self, playback_s: float = 0.0, sleep=asyncio.sleep,
                 permission_granted: bool = True):
        super().__init__()
        self.playback_s = playback_s
        self.permission_granted = permission_granted
        self._sleep = sleep
        self.recording = False
        self.played: list[bytes] = []
        self.barge_ins = 0
        self.ambient: Optional[bytes] = None
        self.ambient_volume = 0.0
        self._playing = False
        self._interrupt = asyncio.Event()

    async def start_recording(self) -> None:
        if not self.permission_granted:
            raise PermissionDenied("microphone permission denied")
        self.recording = True

    async def stop_recording(self) -> None:
        self.recording = False

    async def play_audio(self, audio: bytes) -> None:
        self.played.append(audio)
        self._playing = True
        self._interrupt.clear()
        try:
            if self.playback_s > 0:
                sleeper = asyncio.ensure_future(self._sleep(self.playback_s))
                interrupted = asyncio.ensure_future(self._interrupt.wait())
                done, pending = await asyncio.wait(
                    {sleeper, interrupted}, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in pending:
                    task.cancel()
        finally:
            self._playing = False

    async def trigger_barge_in(self) -> None:
        self.barge_ins += 1
        self._interrupt.set()
        self._playing = False

    def is_playback_active(self) -> bool:
        return self._playing

    async def start_ambient(self, audio: bytes, volume: float) -> None:
        self.ambient = audio
        self.ambient_volume = volume

    async def stop_ambient(self) -> None:
        self.ambient = None

    def set_ambient_volume(self, volume: float) -> None:
        self.ambient_volume = volume

    def emit(self, energy: float, chunk: bytes = b"") -> None:
        if self.recording and self._sink is not None:
            self._sink(energy, chunk)


class RemoteAudioService(AudioService):
    """
    Audio device living on the client (mobile app, browser) behind a
    WebSocket. Captured chunks arrive through ``receive``; playback audio
    and interrupt markers are queued on ``outbound`` for the socket writer.
    Playback completion is not observable here, so ``is_playback_active``
    is always False and the orchestrator's duration estimate governs.
    """

    STOP = b""

    def __init__(self, max_queued: int = 64):
        super().__init__()
        self.recording = False
        self.outbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=max_queued)

    async def start_recording(self) -> None:
        self.recording = True

    async def stop_recording(self) -> None:
        self.recording = False

    async def play_audio(self, audio: bytes) -> None:
        if self.outbound.full():
            # client is not draining; drop the oldest clip
            self.outbound.get_nowait()
        self.outbound.put_nowait(audio)

    async def trigger_barge_in(self) -> None:
        while not self.outbound.empty():
            self.outbound.get_nowait()
        self.outbound.put_nowait(self.STOP)

    def is_playback_active(self) -> bool:
        return False

    def receive(self, energy: float, chunk: bytes) -> None:
        if self.recording and self._sink is not None:
            self._sink(energy, chunk)


# ══════════════════════════════════════════════════════════════
#  TEXT GENERATION
# ══════════════════════════════════════════════════════════════

class TextGenerationService(ABC):
    """The AI conversation partner."""

    @abstractmethod
    async def generate_response(self, context: ConversationContext, utterance: str) -> str:
        ...

    @abstractmethod
    async def analyze_emotion(self, text: str) -> Emotion:
        ...


class CannedTextGeneration(TextGenerationService):
    """Deterministic offline partner: cycles through localized canned replies."""

    def __init__(self):
        self._counter = itertools.count()
        self.calls = 0

    async def generate_response(self, context: ConversationContext, utterance: str) -> str:
        self.calls += 1
        if utterance == greeting_prompt(context.language):
            return fallback_greeting(context.language)
        replies = canned_replies(context.language)
        return replies[next(self._counter) % len(replies)]

    async def analyze_emotion(self, text: str) -> Emotion:
        return Emotion.NEUTRAL


# ══════════════════════════════════════════════════════════════
#  SPEECH SYNTHESIS
# ══════════════════════════════════════════════════════════════

class SpeechSynthesisService(ABC):
    """Text-to-speech with a one-shot and a streaming variant."""

    @abstractmethod
    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        ...

    @abstractmethod
    async def stream(self, text: str, voice_id: Optional[str],
                     on_chunk: ChunkCallback) -> int:
        """Deliver audio chunks to ``on_chunk`` as they arrive. Returns bytes streamed."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Abort an in-progress stream."""
        ...

    @property
    @abstractmethod
    def is_streaming(self) -> bool:
        ...

    async def list_voices(self) -> list[VoiceInfo]:
        return []


class SilentSpeechSynthesis(SpeechSynthesisService):
    """Produces silence sized to the text (16 kHz PCM16, ~60 ms per character)."""

    BYTES_PER_CHAR = 1920
    CHUNK_SIZE = 3200

    def __init__(self):
        self._streaming = False
        self._stop = False
        self.requests: list[tuple[str, Optional[str]]] = []

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        self.requests.append((text, voice_id))
        return bytes(len(text) * self.BYTES_PER_CHAR)

    async def stream(self, text: str, voice_id: Optional[str],
                     on_chunk: ChunkCallback) -> int:
        audio = await self.synthesize(text, voice_id)
        self._streaming = True
        self._stop = False
        sent = 0
        try:
            for start in range(0, len(audio), self.CHUNK_SIZE):
                if self._stop:
                    break
                chunk = audio[start:start + self.CHUNK_SIZE]
                result = on_chunk(chunk)
                if asyncio.iscoroutine(result):
                    await result
                sent += len(chunk)
                await asyncio.sleep(0)
        finally:
            self._streaming = False
        return sent

    async def stop(self) -> None:
        self._stop = True

    @property
    def is_streaming(self) -> bool:
        return self._streaming

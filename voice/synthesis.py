"""
ElevenLabs speech synthesis over HTTP.

- synthesize(): one request, whole clip back
- stream(): chunked response delivered to a callback as it arrives,
  abortable mid-stream with stop() (used for barge-in)
- list_voices(): voice catalogue for caller-queue voice assignment

HTTP failures are mapped onto the error taxonomy (429/5xx/timeouts are
transient) and raised; retries and fallbacks belong to the QuotaGuard.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

import httpx

from config.settings import TTSConfig, get_settings
from core.errors import ServiceError, TransientServiceFailure, classify_http_status
from core.services import ChunkCallback, SpeechSynthesisService
from models.schemas import VoiceInfo

logger = structlog.get_logger()

OUTPUT_FORMAT = "pcm_16000"


class ElevenLabsSynthesizer(SpeechSynthesisService):

    def __init__(self, config: Optional[TTSConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().tts
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self._streaming = False
        self._stop_requested = False

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"xi-api-key": self.config.api_key, "Accept": "audio/*"},
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    def _voice(self, voice_id: Optional[str]) -> str:
        voice = voice_id or self.config.default_voice_id
        if not voice:
            raise ServiceError("no voice id configured", service="tts")
        return voice

    def _payload(self, text: str) -> dict:
        return {
            "text": text,
            "model_id": self.config.model_id,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        }

    @staticmethod
    def _raise_for_status(response: httpx.Response, body: str = "") -> None:
        error = classify_http_status(response.status_code, "tts", body)
        if error is not None:
            raise error

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        client = await self._get_client()
        try:
            response = await client.post(
                f"/v1/text-to-speech/{self._voice(voice_id)}",
                params={"output_format": OUTPUT_FORMAT},
                json=self._payload(text),
            )
        except httpx.TimeoutException as e:
            raise TransientServiceFailure(f"tts timeout: {e}", service="tts") from e
        except httpx.NetworkError as e:
            raise TransientServiceFailure(f"tts network error: {e}", service="tts") from e
        self._raise_for_status(response, response.text if response.status_code >= 400 else "")
        logger.debug("tts_synthesized", chars=len(text), bytes=len(response.content))
        return response.content

    async def stream(self, text: str, voice_id: Optional[str],
                     on_chunk: ChunkCallback) -> int:
        client = await self._get_client()
        self._streaming = True
        self._stop_requested = False
        sent = 0
        try:
            async with client.stream(
                "POST",
                f"/v1/text-to-speech/{self._voice(voice_id)}/stream",
                params={"output_format": OUTPUT_FORMAT},
                json=self._payload(text),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    self._raise_for_status(response, body)
                async for chunk in response.aiter_bytes():
                    if self._stop_requested:
                        logger.info("tts_stream_stopped", bytes=sent)
                        break
                    result = on_chunk(chunk)
                    if asyncio.iscoroutine(result):
                        await result
                    sent += len(chunk)
        except httpx.TimeoutException as e:
            raise TransientServiceFailure(f"tts stream timeout: {e}", service="tts") from e
        except httpx.NetworkError as e:
            raise TransientServiceFailure(f"tts stream network error: {e}", service="tts") from e
        finally:
            self._streaming = False
        logger.debug("tts_streamed", chars=len(text), bytes=sent)
        return sent

    async def stop(self) -> None:
        if self._streaming:
            self._stop_requested = True

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    async def list_voices(self) -> list[VoiceInfo]:
        client = await self._get_client()
        response = await client.get("/v1/voices", headers={"Accept": "application/json"})
        self._raise_for_status(response, response.text if response.status_code >= 400 else "")
        return [
            VoiceInfo(voice_id=v["voice_id"], name=v.get("name", ""))
            for v in response.json().get("voices", [])
        ]

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()

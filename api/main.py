"""
FastAPI Application — REST API + WebSocket host for one training session.

Provides:
- Session lifecycle: start, greeting, utterances, pause/resume, end (→ report)
- Manual disruptions and stress-mode caller transitions
- Quota usage and session snapshot for the dashboard
- WebSocket audio stream: PCM16 chunks in, VAD/orchestrator events and
  partner audio out

The process hosts a single orchestrator. Paid collaborators are used only
when their API keys are configured; otherwise the canned/silent
implementations stand in.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings
from core.engine import ConversationEngine
from core.errors import InvalidInput, InvalidState, PermissionDenied, TrainerError
from core.orchestrator import SessionOrchestrator
from core.services import (
    CannedTextGeneration, RemoteAudioService, SilentSpeechSynthesis,
    SpeechSynthesisService, TextGenerationService,
)
from database.store import create_report_store
from models.schemas import DisruptionType, SessionConfig
from utils.logging import configure_logging
from voice.synthesis import ElevenLabsSynthesizer
from voice.vad import chunk_energy

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def _key_present(key: str) -> bool:
    # unresolved ${VAR} placeholders count as missing
    return bool(key) and not key.startswith("${")


def build_orchestrator(settings: Settings, audio: Optional[RemoteAudioService] = None) -> SessionOrchestrator:
    text_gen: TextGenerationService = (
        ConversationEngine(settings.llm) if _key_present(settings.llm.api_key)
        else CannedTextGeneration()
    )
    speech: SpeechSynthesisService = (
        ElevenLabsSynthesizer(settings.tts) if _key_present(settings.tts.api_key)
        else SilentSpeechSynthesis()
    )
    logger.info("collaborators_selected",
                text_generation=type(text_gen).__name__,
                speech=type(speech).__name__,
                storage=settings.storage.backend)
    return SessionOrchestrator(
        audio=audio or RemoteAudioService(),
        text_gen=text_gen,
        speech=speech,
        store=create_report_store(settings.storage.backend, settings.storage.data_dir),
        settings=settings,
    )


_settings_boot = get_settings()
configure_logging(_settings_boot.logging.level, _settings_boot.logging.json)

audio_service = RemoteAudioService()
orchestrator = build_orchestrator(_settings_boot, audio_service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("resonance_started", app_name=_settings_boot.app_name)
    yield
    await orchestrator.cleanup()
    close = getattr(orchestrator.speech, "close", None)
    if close is not None:
        await close()
    logger.info("resonance_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Resonance API",
    description="Real-time voice training session orchestrator",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidState)
async def invalid_state_handler(request: Request, exc: InvalidState):
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content=exc.to_dict())


@app.exception_handler(TrainerError)
async def trainer_error_handler(request: Request, exc: TrainerError):
    logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    return JSONResponse(status_code=503 if exc.retryable else 500, content=exc.to_dict())


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class UtteranceRequest(BaseModel):
    text: str


class DisruptionRequest(BaseModel):
    type: str


class NextCallerRequest(BaseModel):
    announce_countdown: bool = True


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session_state": orchestrator.state.value,
        "text_generation": type(orchestrator.text_gen).__name__,
        "speech": type(orchestrator.speech).__name__,
    }


@app.get("/api/v1/quota")
async def quota_usage():
    stats = orchestrator.ledger.get_usage_statistics()
    stats["fallbacks"] = orchestrator.guard.fallbacks
    return stats


# ══════════════════════════════════════════════════════════════
#  SESSION LIFECYCLE
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/sessions")
async def start_session(config: SessionConfig):
    session = await orchestrator.start_session(config)
    return {
        "session_id": session.id,
        "state": orchestrator.state.value,
        "snapshot": orchestrator.get_session_snapshot(),
    }


@app.get("/api/v1/sessions/current")
async def current_session():
    return orchestrator.get_session_snapshot()


@app.post("/api/v1/sessions/greeting")
async def send_greeting():
    text = await orchestrator.send_initial_greeting()
    return {"text": text}


@app.post("/api/v1/sessions/utterances")
async def process_utterance(req: UtteranceRequest):
    reply = await orchestrator.process_user_input(req.text)
    return {
        "reply": reply,
        "ignored": reply is None,
        "metrics": orchestrator.get_current_metrics().model_dump(mode="json"),
    }


@app.post("/api/v1/sessions/pause")
async def pause_session():
    await orchestrator.pause_session()
    return {"state": orchestrator.state.value}


@app.post("/api/v1/sessions/resume")
async def resume_session():
    await orchestrator.resume_session()
    return {"state": orchestrator.state.value}


@app.post("/api/v1/sessions/disruptions")
async def trigger_disruption(req: DisruptionRequest):
    fired = orchestrator.trigger_manual_disruption(req.type)
    return {
        "requested": req.type,
        "fired": fired.value if isinstance(fired, DisruptionType) else None,
        "statistics": orchestrator.disruption.get_statistics(),
    }


@app.post("/api/v1/sessions/next-caller")
async def next_caller(req: NextCallerRequest = NextCallerRequest()):
    countdown: list[int] = []
    caller = await orchestrator.transition_to_next_caller(
        countdown.append if req.announce_countdown else None,
    )
    return {
        "caller": caller.model_dump(mode="json") if caller else None,
        "countdown": countdown,
        "queue": orchestrator.callers.get_status().model_dump(mode="json"),
    }


@app.post("/api/v1/sessions/end")
async def end_session():
    report = await orchestrator.end_session()
    return report.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET — live audio
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws/audio")
async def audio_stream(websocket: WebSocket):
    """
    Inbound:  binary PCM16 chunks (16 kHz mono)
    Outbound: JSON events {"event": ..., ...} and binary partner audio;
              an empty binary frame means "stop playback now"
    """
    await websocket.accept()
    events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def push(event: str, **data: Any) -> None:
        events.put_nowait({"event": event, **data})

    orchestrator.set_callbacks(
        on_voice_start=lambda energy: push("voice_start", energy=round(energy, 5)),
        on_voice_end=lambda duration_ms: push("voice_end", duration_ms=round(duration_ms, 1)),
        on_barge_in=lambda: push("barge_in"),
        on_tts_starting=lambda text: push("tts_starting", text=text),
        on_tts_complete=lambda: push("tts_complete"),
        on_state_change=lambda prev, cur: push("state", previous=prev.value, current=cur.value),
        on_transcript=lambda turn: push("transcript", turn=turn.model_dump(mode="json")),
        on_ai_response=lambda turn: push("ai_response", turn=turn.model_dump(mode="json")),
        on_caller_transition=lambda ev: push("caller_transition", **ev.model_dump(mode="json")),
        on_disruption=lambda ev: push("disruption", **ev.model_dump(mode="json")),
    )

    async def writer():
        while True:
            audio_task = asyncio.ensure_future(audio_service.outbound.get())
            event_task = asyncio.ensure_future(events.get())
            done, pending = await asyncio.wait(
                {audio_task, event_task}, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            if audio_task in done:
                await websocket.send_bytes(audio_task.result())
            if event_task in done:
                await websocket.send_json(event_task.result())

    writer_task = asyncio.create_task(writer())
    logger.info("audio_stream_connected")
    try:
        while True:
            chunk = await websocket.receive_bytes()
            audio_service.receive(chunk_energy(chunk), chunk)
    except WebSocketDisconnect:
        logger.info("audio_stream_disconnected")
    finally:
        writer_task.cancel()
        orchestrator.set_callbacks(**{name: None for name in (
            "on_voice_start", "on_voice_end", "on_barge_in", "on_tts_starting",
            "on_tts_complete", "on_state_change", "on_transcript", "on_ai_response",
            "on_caller_transition", "on_disruption",
        )})

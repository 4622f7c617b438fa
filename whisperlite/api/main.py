from __future__ import annotations

"""
API surface for the Whisperlite backend.

Design intent:
- Keep API orchestration thin and typed.
- Delegate domain logic to analysis/speech/transcript/support modules.
- Degrade to calm fallbacks where a student is waiting on the answer.
"""

import asyncio
import base64
import binascii
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from whisperlite.analysis.gemini import GeminiAdapterError
from whisperlite.analysis.recap import RecapStore, clamp_reading_level, generate_recap
from whisperlite.analysis.social_context import analyze_social_context
from whisperlite.analysis.stress import (
    analyze_transcript,
    assess_volume_stress,
    detection_from_assessment,
    overall_state_for_level,
)
from whisperlite.analysis.weekly_dashboard import build_weekly_dashboard, build_weekly_trends, week_bounds
from whisperlite.audio.pcm import (
    AudioFormatError,
    StreamFormat,
    chunk_filename,
    pick_chunk_mime_type,
    resolve_stream_format,
)
from whisperlite.internal_core.audit import record_audit
from whisperlite.internal_core.config import AppConfig, load_config
from whisperlite.internal_core.contracts import ClassSession, felt_stressful_for_mood
from whisperlite.internal_core.session_store import InMemorySessionStore, SessionAlreadyEndedError
from whisperlite.speech.base import RealtimeTranscriber, SpeechServiceError
from whisperlite.speech.elevenlabs_stt import transcribe_audio_bytes
from whisperlite.speech.elevenlabs_tts import audio_data_url, synthesize_speech
from whisperlite.speech.mock import MockRealtimeTranscriber
from whisperlite.speech.realtime import ElevenLabsRealtimeClient
from whisperlite.support.alerts import (
    DEFAULT_MESSAGES,
    AlertConfigError,
    TrustedAdult,
    send_alert,
    validate_trusted_adult,
)
from whisperlite.support.context_clues import ContextClueCatalog
from whisperlite.support.profiles import InMemoryProfileStore, StudentProfile, TrustedAdultContact, normalize_profile
from whisperlite.transcript.live_session import LiveListeningSession, LiveSessionRegistry
from whisperlite.transcript.models import Speaker


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartSessionRequest(ApiModel):
    user_id: str = Field(min_length=1, max_length=128)


class StartSessionResponse(ApiModel):
    session_id: str
    started_at: str
    message: str = "Session started successfully"


class EndSessionRequest(ApiModel):
    session_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)


class SessionInterventionStats(ApiModel):
    haptic: bool
    breathe: bool
    journal: bool


class SessionStats(ApiModel):
    duration: int
    calm_minutes: int
    stressors_detected: int
    interventions_used: SessionInterventionStats
    overall_state: str


class EndSessionResponse(ApiModel):
    session_id: str
    ended_at: str
    stats: SessionStats
    message: str = "Session ended successfully"


class FeedbackRequest(ApiModel):
    session_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    mood: str = Field(min_length=1, max_length=32)
    emoji: str | None = Field(default=None, max_length=32)
    timestamp: str | float | None = None


class FeedbackResponse(ApiModel):
    success: bool = True
    mood: str
    emoji: str | None = None
    timestamp: str | float


class InterventionRequest(ApiModel):
    session_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    intervention_type: str = Field(min_length=1, max_length=32)
    timestamp: str | float | None = None


class InterventionResponse(ApiModel):
    success: bool = True
    intervention_type: str
    timestamp: str | float


class SessionListResponse(ApiModel):
    sessions: list[ClassSession] = Field(default_factory=list)


class StressCheckRequest(ApiModel):
    session_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    volume_db: float
    audio_data: Any = None
    timestamp: str | float | None = None


class StressCheckResponse(ApiModel):
    level: Literal["calm", "mild", "moderate", "high"]
    confidence: float
    triggers: list[str] = Field(default_factory=list)
    timestamp: str | float


class TranscriptAnalysisRequest(ApiModel):
    user_id: str = Field(min_length=1, max_length=128)
    transcript: str = Field(min_length=1)
    sensitivity: Literal["low", "med", "high"] = "med"


class SpeakRequest(ApiModel):
    text: str = ""
    voice_id: str | None = None
    stability: float = Field(default=0.7, ge=0.0, le=1.0)
    similarity_boost: float = Field(default=0.8, ge=0.0, le=1.0)


class RecapRequest(ApiModel):
    user_id: str = Field(min_length=1, max_length=128)
    session_id: str | None = None
    transcript: str = Field(min_length=1)
    reading_level_grade: int = 7
    generate_audio: bool = False


class ContextClueCreateRequest(ApiModel):
    phrase: str = ""
    meaning: str = ""
    examples: list[str] = Field(default_factory=list)
    category: str | None = None


class TrustedAdultPayload(ApiModel):
    name: str = ""
    channel: str = ""
    address: str = ""


class AlertRequest(ApiModel):
    user_id: str = Field(min_length=1, max_length=128)
    message: str | None = None
    trusted_adult: TrustedAdultPayload | None = None


class AlertTestRequest(ApiModel):
    trusted_adult: TrustedAdultPayload | None = None


class ProfileRequest(ApiModel):
    user_id: str = Field(min_length=1, max_length=128)
    display_name: str | None = Field(default=None, max_length=64)
    age_range: str | None = None
    pronouns: str | None = Field(default=None, max_length=32)
    reading_level_grade: int | None = None
    sensitivity: str | None = None
    trusted_adult: TrustedAdultContact | None = None
    focus_moments: int | None = None
    journal_prompts: list[str] | None = None
    role: str | None = None


class FocusMomentsRequest(ApiModel):
    increment: int = 1


app = FastAPI(title="whisperlite backend service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ALLOWED_AUDIO_SUFFIXES = {".webm", ".mp3", ".mpeg", ".wav", ".m4a", ".mp4", ".ogg"}
_VOICE_CACHE_CONTROL = "public, max-age=31536000, immutable"
_PUMP_DRAIN_TIMEOUT_SEC = 5.0

RealtimeFactory = Callable[[AppConfig, StreamFormat], RealtimeTranscriber]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_config() -> AppConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, AppConfig):
        return existing
    created = load_config()
    setattr(app.state, "config", created)
    return created


def _get_session_store() -> InMemorySessionStore:
    existing = getattr(app.state, "session_store", None)
    if isinstance(existing, InMemorySessionStore):
        return existing
    created = InMemorySessionStore()
    setattr(app.state, "session_store", created)
    return created


def _get_live_registry() -> LiveSessionRegistry:
    existing = getattr(app.state, "live_sessions", None)
    if isinstance(existing, LiveSessionRegistry):
        return existing
    config = _get_config()
    created = LiveSessionRegistry(
        max_recent_events=config.CONTEXT_RECENT_EVENTS,
        max_sessions=config.LIVE_SESSION_LIMIT,
    )
    setattr(app.state, "live_sessions", created)
    return created


def _get_recap_store() -> RecapStore:
    existing = getattr(app.state, "recap_store", None)
    if isinstance(existing, RecapStore):
        return existing
    created = RecapStore()
    setattr(app.state, "recap_store", created)
    return created


def _get_clue_catalog() -> ContextClueCatalog:
    existing = getattr(app.state, "context_clues", None)
    if isinstance(existing, ContextClueCatalog):
        return existing
    created = ContextClueCatalog()
    setattr(app.state, "context_clues", created)
    return created


def _get_profile_store() -> InMemoryProfileStore:
    existing = getattr(app.state, "profiles", None)
    if isinstance(existing, InMemoryProfileStore):
        return existing
    created = InMemoryProfileStore()
    setattr(app.state, "profiles", created)
    return created


def _default_realtime_factory(config: AppConfig, fmt: StreamFormat) -> RealtimeTranscriber:
    if config.REALTIME_PROVIDER == "mock":
        return MockRealtimeTranscriber()
    return ElevenLabsRealtimeClient(
        api_key=config.ELEVENLABS_API_KEY,
        model_id=config.ELEVENLABS_REALTIME_MODEL,
        language_code=config.ELEVENLABS_LANGUAGE,
        sample_rate_hz=fmt.sample_rate_hz,
        commit_strategy=config.REALTIME_COMMIT_STRATEGY,
        include_timestamps=config.REALTIME_INCLUDE_TIMESTAMPS,
    )


def _get_realtime_factory() -> RealtimeFactory:
    injected = getattr(app.state, "realtime_transcriber_factory", None)
    if callable(injected):
        return injected
    return _default_realtime_factory


def _session_stats(session: ClassSession) -> SessionStats:
    used = session.interventions_used
    return SessionStats(
        duration=int(session.duration_sec or 0),
        calm_minutes=session.calm_minutes,
        stressors_detected=len(session.detections.events),
        interventions_used=SessionInterventionStats(
            haptic=used.haptic_sent,
            breathe=used.breathe_used,
            journal=used.journal_used,
        ),
        overall_state=session.detections.overall_state,
    )


def _trusted_adult_from_payload(payload: TrustedAdultPayload) -> TrustedAdult:
    return TrustedAdult(
        name=payload.name.strip(),
        channel=payload.channel.strip().lower(),
        address=payload.address.strip(),
    )


def _upload_too_large(limit: int) -> HTTPException:
    megabytes, remainder = divmod(limit, 1024 * 1024)
    size = f"{megabytes}MB" if megabytes and not remainder else f"{limit} byte"
    return HTTPException(status_code=413, detail=f"Uploaded file exceeds {size} limit.")


async def _read_upload(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise _upload_too_large(limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise _upload_too_large(limit)
    return bytes(body)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/health")
async def api_health() -> dict[str, Any]:
    config = _get_config()
    return {
        "status": "ok",
        "timestamp": _utc_now_iso(),
        "storage": "in_memory",
        "services": {
            "elevenlabs": config.elevenlabs_configured,
            "gemini": config.gemini_configured,
            "realtimeProvider": config.REALTIME_PROVIDER,
        },
    }


@app.post("/api/sessions/start", response_model=StartSessionResponse)
async def sessions_start(payload: StartSessionRequest) -> StartSessionResponse:
    store = _get_session_store()
    session = store.create_session(payload.user_id)
    record_audit(store, session.session_id, "SESSION_STARTED", "ok", user_id=payload.user_id)
    return StartSessionResponse(session_id=session.session_id, started_at=session.started_at)


@app.post("/api/sessions/end", response_model=EndSessionResponse)
async def sessions_end(payload: EndSessionRequest) -> EndSessionResponse:
    store = _get_session_store()
    try:
        session = store.end_session(payload.session_id, user_id=payload.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc
    except SessionAlreadyEndedError as exc:
        raise HTTPException(status_code=400, detail="Session already ended") from exc

    record_audit(store, session.session_id, "SESSION_ENDED", "ok", duration_sec=session.duration_sec)
    return EndSessionResponse(
        session_id=session.session_id,
        ended_at=str(session.ended_at),
        stats=_session_stats(session),
    )


@app.post("/api/sessions/feedback", response_model=FeedbackResponse)
async def sessions_feedback(payload: FeedbackRequest) -> FeedbackResponse:
    store = _get_session_store()
    felt = felt_stressful_for_mood(payload.mood)
    try:
        store.record_feedback(payload.session_id, felt, payload.emoji, user_id=payload.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc

    record_audit(store, payload.session_id, "FEEDBACK_SAVED", felt, mood=payload.mood)
    return FeedbackResponse(
        mood=payload.mood,
        emoji=payload.emoji,
        timestamp=payload.timestamp if payload.timestamp is not None else _utc_now_iso(),
    )


@app.post("/api/sessions/intervention", response_model=InterventionResponse)
async def sessions_intervention(payload: InterventionRequest) -> InterventionResponse:
    store = _get_session_store()
    try:
        store.record_intervention(payload.session_id, payload.intervention_type, user_id=payload.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc

    record_audit(store, payload.session_id, "INTERVENTION_LOGGED", payload.intervention_type, haptic_sent=True)
    return InterventionResponse(
        intervention_type=payload.intervention_type,
        timestamp=payload.timestamp if payload.timestamp is not None else _utc_now_iso(),
    )


@app.get("/api/sessions", response_model=SessionListResponse)
async def sessions_list(
    user_id: str = Query(alias="userId", min_length=1, max_length=128),
    limit: int = Query(default=20, ge=1, le=200),
) -> SessionListResponse:
    return SessionListResponse(sessions=_get_session_store().list_user_sessions(user_id, limit=limit))


@app.get("/api/sessions/{session_id}", response_model=ClassSession)
async def sessions_detail(session_id: str) -> ClassSession:
    try:
        return _get_session_store().get_session(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


@app.post("/api/analyze/stress", response_model=StressCheckResponse)
async def analyze_stress(payload: StressCheckRequest) -> StressCheckResponse:
    config = _get_config()
    store = _get_session_store()
    started = time.perf_counter()
    assessment = await asyncio.to_thread(
        assess_volume_stress,
        payload.volume_db,
        has_audio_data=payload.audio_data is not None,
        api_key=config.GEMINI_API_KEY,
        model_name=config.GEMINI_MODEL,
    )

    if assessment.source == "gemini":
        try:
            event = detection_from_assessment(assessment, t=time.time() * 1000.0)
            if event is not None:
                store.add_detection_event(
                    payload.session_id,
                    event,
                    overall_state=overall_state_for_level(assessment.level),
                    user_id=payload.user_id,
                )
            elif assessment.level == "calm":
                store.record_calm_minute(payload.session_id, user_id=payload.user_id)
            record_audit(
                store,
                payload.session_id,
                "STRESS_CHECKED",
                assessment.level,
                duration_ms=int((time.perf_counter() - started) * 1000),
                volume_db=payload.volume_db,
                triggers=len(assessment.triggers),
            )
        except KeyError:
            logger.info("stress_check_no_session session_id=%s", payload.session_id)

    return StressCheckResponse(
        level=assessment.level,
        confidence=assessment.confidence,
        triggers=assessment.triggers,
        timestamp=payload.timestamp if payload.timestamp is not None else _utc_now_iso(),
    )


@app.post("/api/analyze/transcript")
async def analyze_transcript_route(payload: TranscriptAnalysisRequest) -> dict[str, Any]:
    config = _get_config()
    try:
        analysis = await asyncio.to_thread(
            analyze_transcript,
            payload.transcript,
            payload.sensitivity,
            api_key=config.GEMINI_API_KEY,
            model_name=config.GEMINI_MODEL,
        )
    except GeminiAdapterError as exc:
        logger.warning("transcript_analysis_failed user_id=%s reason=%s", payload.user_id, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return analysis.to_wire()


@app.post("/api/analyze/audio")
async def analyze_audio_upload(
    request: Request,
    user_id: str = Query(alias="userId", min_length=1, max_length=128),
    filename: str = Query(min_length=1, max_length=255),
    sensitivity: Literal["low", "med", "high"] = Query(default="med"),
) -> dict[str, Any]:
    config = _get_config()
    filename = Path(str(filename or "")).name
    suffix = Path(filename).suffix.lower()
    if suffix not in _ALLOWED_AUDIO_SUFFIXES:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Only audio files are allowed.",
        )

    body = await _read_upload(request, config.MAX_UPLOAD_BYTES)
    if not body:
        raise HTTPException(status_code=400, detail="No audio file provided")

    try:
        transcription = await transcribe_audio_bytes(
            body,
            filename,
            api_key=config.ELEVENLABS_API_KEY,
            model_id=config.ELEVENLABS_STT_MODEL,
            language_code=config.ELEVENLABS_LANGUAGE,
            timeout_sec=config.ELEVENLABS_TIMEOUT_SEC,
        )
        analysis = await asyncio.to_thread(
            analyze_transcript,
            transcription.text,
            sensitivity,
            api_key=config.GEMINI_API_KEY,
            model_name=config.GEMINI_MODEL,
        )
    except SpeechServiceError as exc:
        logger.warning("audio_analysis_stt_failed code=%s reason=%s", exc.code, exc.message)
        raise HTTPException(status_code=502, detail=exc.message) from exc
    except GeminiAdapterError as exc:
        logger.warning("audio_analysis_gemini_failed reason=%s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    store = _get_session_store()
    session = store.create_session(user_id)
    store.set_analysis(
        session.session_id,
        transcript=transcription.text,
        detections=analysis.detections,
        haptic_sent=analysis.ui_state == "amber",
        calm_minutes=5 if analysis.ui_state == "green" else 2,
    )
    store.end_session(session.session_id)
    record_audit(
        store,
        session.session_id,
        "AUDIO_ANALYZED",
        analysis.ui_state,
        bytes=len(body),
        events=len(analysis.detections.events),
    )
    return {**analysis.to_wire(), "sessionId": session.session_id}


@app.post("/api/voice/speak")
async def voice_speak(payload: SpeakRequest) -> Response:
    config = _get_config()
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Text is required")
    if not config.elevenlabs_configured:
        raise HTTPException(status_code=500, detail="Voice generation not configured")

    try:
        audio = await synthesize_speech(
            text,
            api_key=config.ELEVENLABS_API_KEY,
            voice_id=payload.voice_id or config.ELEVENLABS_VOICE_ID,
            model_id=config.ELEVENLABS_TTS_MODEL,
            stability=payload.stability,
            similarity_boost=payload.similarity_boost,
            timeout_sec=config.ELEVENLABS_TIMEOUT_SEC,
        )
    except SpeechServiceError as exc:
        if exc.code == "upstream_status" and exc.status_code:
            raise HTTPException(status_code=exc.status_code, detail="Voice generation failed") from exc
        logger.exception("voice_speak_failed code=%s", exc.code)
        raise HTTPException(status_code=500, detail="Internal server error") from exc

    return Response(
        content=audio,
        media_type="audio/mpeg",
        headers={"Cache-Control": _VOICE_CACHE_CONTROL},
    )


@app.post("/api/recap")
async def recap_create(payload: RecapRequest) -> dict[str, Any]:
    config = _get_config()
    grade = clamp_reading_level(payload.reading_level_grade)
    try:
        result = await asyncio.to_thread(
            generate_recap,
            payload.transcript,
            grade,
            api_key=config.GEMINI_API_KEY,
            model_name=config.GEMINI_MODEL,
        )
    except GeminiAdapterError as exc:
        logger.warning("recap_failed user_id=%s reason=%s", payload.user_id, exc)
        raise HTTPException(status_code=500, detail="Failed to generate recap") from exc

    audio_url = None
    if payload.generate_audio and config.elevenlabs_configured:
        try:
            audio = await synthesize_speech(
                result.summary_text,
                api_key=config.ELEVENLABS_API_KEY,
                voice_id=config.ELEVENLABS_VOICE_ID,
                model_id=config.ELEVENLABS_TTS_MODEL,
                timeout_sec=config.ELEVENLABS_TIMEOUT_SEC,
            )
            audio_url = audio_data_url(audio)
        except SpeechServiceError as exc:
            logger.warning("recap_audio_skipped code=%s", exc.code)

    return _get_recap_store().save(
        user_id=payload.user_id,
        session_id=payload.session_id,
        transcript=payload.transcript,
        reading_level_grade=grade,
        result=result,
        audio_url=audio_url,
    )


@app.get("/api/recap/user/{user_id}")
async def recap_list_for_user(user_id: str, limit: int = Query(default=10, ge=1, le=100)) -> dict[str, Any]:
    return {"recaps": _get_recap_store().list_for_user(user_id, limit=limit)}


@app.get("/api/recap/{session_id}")
async def recap_for_session(
    session_id: str,
    reading_level_grade: int | None = Query(default=None, alias="readingLevelGrade"),
) -> dict[str, Any]:
    try:
        return _get_recap_store().latest_for_session(session_id, reading_level_grade)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Recap not found") from exc


@app.get("/api/context-clues")
async def context_clues_list(
    q: str | None = Query(default=None),
    category: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    return [clue.to_wire() for clue in _get_clue_catalog().list_clues(q=q, category=category)]


@app.get("/api/context-clues/search")
async def context_clues_search(q: str = Query(default="")) -> list[dict[str, Any]]:
    try:
        clues = _get_clue_catalog().search(q)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [clue.to_wire() for clue in clues]


@app.get("/api/context-clues/{clue_id}")
async def context_clues_detail(clue_id: str) -> dict[str, Any]:
    try:
        return _get_clue_catalog().get(clue_id).to_wire()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Context clue not found") from exc


@app.post("/api/context-clues", status_code=201)
async def context_clues_create(payload: ContextClueCreateRequest) -> dict[str, Any]:
    try:
        clue = _get_clue_catalog().add(payload.phrase, payload.meaning, payload.examples, payload.category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return clue.to_wire()


@app.get("/api/alert/messages")
async def alert_messages() -> dict[str, list[str]]:
    return {"messages": list(DEFAULT_MESSAGES)}


@app.post("/api/alert")
async def alert_send(payload: AlertRequest) -> dict[str, Any]:
    adult = _get_profile_store().trusted_adult_for(payload.user_id)
    source = "profile"
    if adult is None and payload.trusted_adult is not None:
        adult = _trusted_adult_from_payload(payload.trusted_adult)
        source = "request"
    if adult is None:
        raise HTTPException(status_code=400, detail="No trusted adult configured")
    result = send_alert(adult, payload.message)
    logger.info(
        "alert_sent user_id=%s success=%s channel=%s source=%s",
        payload.user_id,
        result.success,
        result.channel,
        source,
    )
    return result.to_wire()


@app.post("/api/alert/test")
async def alert_test(payload: AlertTestRequest) -> dict[str, Any]:
    adult_payload = payload.trusted_adult
    if adult_payload is None or not adult_payload.channel.strip() or not adult_payload.address.strip():
        raise HTTPException(status_code=400, detail="Invalid trusted adult configuration")
    try:
        message = validate_trusted_adult(_trusted_adult_from_payload(adult_payload))
    except AlertConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"valid": True, "message": message}


@app.get("/api/dashboard/weekly")
async def dashboard_weekly(
    user_id: str = Query(alias="userId", min_length=1, max_length=128),
    week_offset: int = Query(default=0, alias="weekOffset", ge=-52, le=52),
) -> dict[str, Any]:
    config = _get_config()
    now = datetime.now(timezone.utc)
    start, _ = week_bounds(week_offset, now=now)
    sessions = _get_session_store().list_user_sessions_since(user_id, start)
    return await asyncio.to_thread(
        build_weekly_dashboard,
        sessions,
        week_offset,
        api_key=config.GEMINI_API_KEY,
        model_name=config.GEMINI_MODEL,
        now=now,
    )


@app.get("/api/dashboard/trends")
async def dashboard_trends(
    user_id: str = Query(alias="userId", min_length=1, max_length=128),
    num_weeks: int = Query(default=4, alias="numWeeks", ge=1, le=12),
) -> dict[str, Any]:
    config = _get_config()
    now = datetime.now(timezone.utc)
    oldest_start, _ = week_bounds(-(num_weeks - 1), now=now)
    sessions = _get_session_store().list_user_sessions_since(user_id, oldest_start)
    return await asyncio.to_thread(
        build_weekly_trends,
        sessions,
        num_weeks,
        api_key=config.GEMINI_API_KEY,
        model_name=config.GEMINI_MODEL,
        now=now,
    )


@app.get("/api/dashboard/session/{session_id}", response_model=ClassSession)
async def dashboard_session(session_id: str) -> ClassSession:
    try:
        return _get_session_store().get_session(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


@app.get("/api/profile/{user_id}", response_model=StudentProfile)
async def profile_get(user_id: str) -> StudentProfile:
    return _get_profile_store().get_or_default(user_id)


@app.post("/api/profile", response_model=StudentProfile)
async def profile_save(payload: ProfileRequest) -> StudentProfile:
    store = _get_profile_store()
    current = store.get_or_default(payload.user_id)
    provided = payload.model_fields_set
    profile = normalize_profile(
        payload.user_id,
        display_name=payload.display_name,
        age_range=payload.age_range,
        pronouns=payload.pronouns if "pronouns" in provided else current.pronouns,
        reading_level_grade=payload.reading_level_grade,
        sensitivity=payload.sensitivity,
        # Omitting the trusted adult keeps the stored one; an explicit null clears it.
        trusted_adult=payload.trusted_adult if "trusted_adult" in provided else current.trusted_adult,
        focus_moments=payload.focus_moments if "focus_moments" in provided else current.focus_moments,
        journal_prompts=payload.journal_prompts if "journal_prompts" in provided else current.journal_prompts,
        role=payload.role,
    )
    return store.upsert(profile)


@app.patch("/api/profile/{user_id}/focus-moments")
async def profile_focus_moments(user_id: str, payload: FocusMomentsRequest | None = None) -> dict[str, int]:
    increment = payload.increment if payload is not None else 1
    try:
        total = _get_profile_store().increment_focus_moments(user_id, increment)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    return {"focusMoments": total}


@app.delete("/api/profile/{user_id}")
async def profile_delete(user_id: str) -> dict[str, Any]:
    _get_profile_store().delete(user_id)
    return {"success": True, "message": "Profile deleted"}


@app.get("/api/context/live/{live_session_id}")
async def context_live_status(live_session_id: str) -> dict[str, Any]:
    try:
        return _get_live_registry().get(live_session_id).to_status()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Live session not found") from exc


class _ContextSocket:
    """Connection-scoped state for one context-listener socket."""

    def __init__(self, websocket: WebSocket, config: AppConfig) -> None:
        self.websocket = websocket
        self.config = config
        user_id = str(websocket.query_params.get("userId", "")).strip()
        self.user_id: str | None = user_id or None
        self.session: LiveListeningSession | None = None
        self.pump_task: asyncio.Task[None] | None = None
        self.context_tasks: set[asyncio.Task[None]] = set()
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, message_type: str, **payload: Any) -> None:
        if self.closed:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_json({"type": message_type, **payload})
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.info("context_ws_send_after_close type=%s reason=%s", message_type, exc)
                self.closed = True

    async def send_error(self, message: str) -> None:
        await self.send("error", message=message)

    def schedule_context_update(self, session: LiveListeningSession) -> None:
        # Claim the interval now so overlapping finals do not stack analyses.
        session.last_context_at = time.monotonic()
        task = asyncio.create_task(_run_context_update(self, session))
        self.context_tasks.add(task)
        task.add_done_callback(self.context_tasks.discard)

    async def drain_context_tasks(self) -> None:
        if self.context_tasks:
            await asyncio.gather(*list(self.context_tasks), return_exceptions=True)

    def cancel_background(self) -> None:
        if self.pump_task is not None and not self.pump_task.done():
            self.pump_task.cancel()
        for task in list(self.context_tasks):
            task.cancel()


async def _run_context_update(
    sock: _ContextSocket,
    session: LiveListeningSession,
    *,
    audio_events: list[str] | None = None,
    speakers: list[Speaker] | None = None,
    decibels: float | None = None,
    report_steps: bool = False,
) -> None:
    config = sock.config
    transcript = session.assembler.live_text
    events = audio_events if audio_events is not None else [e.event for e in session.assembler.recent_events]
    speaker_list = speakers if speakers is not None else list(session.speakers)

    result = await asyncio.to_thread(
        analyze_social_context,
        transcript,
        events,
        speaker_list,
        decibels,
        api_key=config.GEMINI_API_KEY,
        model_name=config.GEMINI_MODEL,
    )
    context = {
        "timestamp": _utc_now_iso(),
        "transcript": transcript,
        "audioEvents": list(events),
        "speakers": [speaker.model_dump() for speaker in speaker_list],
        **result.to_wire(),
    }
    session.mark_context(time.monotonic(), context)
    await sock.send("context:update", **context)

    if result.assessment != "tense" or not config.CONTEXT_CALMING_AUDIO or not config.elevenlabs_configured:
        return
    if report_steps:
        await sock.send("status", step="generating", message="Preparing a calming message...")
    try:
        audio = await synthesize_speech(
            result.summary,
            api_key=config.ELEVENLABS_API_KEY,
            voice_id=config.ELEVENLABS_VOICE_ID,
            model_id=config.ELEVENLABS_TTS_MODEL,
            timeout_sec=config.ELEVENLABS_TIMEOUT_SEC,
        )
    except SpeechServiceError as exc:
        logger.warning("calming_audio_skipped live_session_id=%s code=%s", session.live_session_id, exc.code)
        return
    await sock.send("calming:audio", audioUrl=audio_data_url(audio), summary=result.summary)


async def _pump_upstream(
    sock: _ContextSocket,
    session: LiveListeningSession,
    transcriber: RealtimeTranscriber,
) -> None:
    interval = sock.config.CONTEXT_INTERVAL_SEC
    try:
        async for message in transcriber.events():
            if message.kind == "error":
                logger.warning(
                    "realtime_upstream_error live_session_id=%s type=%s detail=%s",
                    session.live_session_id,
                    message.error_type,
                    message.error_message,
                )
                await sock.send_error(f"Transcription error: {message.error_type}: {message.error_message}")
                continue

            update = session.assembler.apply(message)
            if update is None or not update.text:
                continue
            session.touch()
            await sock.send(
                "transcript:realtime",
                text=update.text,
                isFinal=update.is_final,
                timestamp=_utc_now_iso(),
                liveTranscript=update.live_text,
            )
            for event in update.new_events:
                await sock.send("event:detected", **event.to_wire())
            if update.is_final and session.context_due(time.monotonic(), interval):
                sock.schedule_context_update(session)
    except SpeechServiceError as exc:
        logger.warning("realtime_pump_failed live_session_id=%s code=%s", session.live_session_id, exc.code)
        await sock.send_error(f"Transcription stream failed: {exc.message}")
    except Exception:
        logger.exception("realtime_pump_crashed live_session_id=%s", session.live_session_id)
        await sock.send_error("Transcription stream failed")

    if session.is_streaming and session.transcriber is transcriber:
        # Upstream ended on its own; no reconnect is attempted.
        session.close_stream()
        try:
            await transcriber.close()
        except SpeechServiceError as exc:
            logger.info("realtime_close_after_upstream_end code=%s", exc.code)
        await sock.send("stream:disconnected", reason="upstream_closed")


async def _stop_stream(sock: _ContextSocket, session: LiveListeningSession) -> None:
    transcriber = session.close_stream()
    if transcriber is not None:
        try:
            await transcriber.close()
        except SpeechServiceError as exc:
            logger.warning("realtime_close_failed live_session_id=%s code=%s", session.live_session_id, exc.code)

    pump = sock.pump_task
    sock.pump_task = None
    if pump is not None:
        done, pending = await asyncio.wait({pump}, timeout=_PUMP_DRAIN_TIMEOUT_SEC)
        for task in pending:
            logger.warning("realtime_pump_drain_timeout live_session_id=%s", session.live_session_id)
            task.cancel()
    await sock.drain_context_tasks()


async def _start_stream(sock: _ContextSocket, payload: dict[str, Any]) -> None:
    session = sock.session
    if session is None:
        await sock.send_error("No active session. Send session:start first.")
        return
    if session.is_streaming:
        await sock.send_error("Stream already active")
        return

    try:
        fmt = resolve_stream_format(
            payload.get("encoding"),
            payload.get("sampleRateHz"),
            default_rate=sock.config.REALTIME_SAMPLE_RATE_HZ,
        )
    except (AudioFormatError, TypeError, ValueError) as exc:
        await sock.send_error(str(exc))
        return

    transcriber = _get_realtime_factory()(sock.config, fmt)
    try:
        await transcriber.connect()
    except SpeechServiceError as exc:
        logger.warning("realtime_connect_failed live_session_id=%s code=%s", session.live_session_id, exc.code)
        await sock.send_error(f"Failed to connect to transcription service: {exc.message}")
        return

    session.open_stream(fmt, transcriber)
    sock.pump_task = asyncio.create_task(_pump_upstream(sock, session, transcriber))
    logger.info(
        "context_stream_started live_session_id=%s provider=%s encoding=%s rate=%s",
        session.live_session_id,
        transcriber.name(),
        fmt.encoding,
        fmt.sample_rate_hz,
    )
    await sock.send(
        "stream:connected",
        provider=transcriber.name(),
        encoding=fmt.encoding,
        sampleRateHz=fmt.sample_rate_hz,
    )
    await sock.send("status", step="processing", message="Listening...")


async def _forward_audio_frame(sock: _ContextSocket, frame: bytes) -> None:
    session = sock.session
    if session is None:
        return
    try:
        pcm16 = session.accept_audio_frame(frame)
    except AudioFormatError as exc:
        await sock.send_error(str(exc))
        return
    transcriber = session.transcriber
    if pcm16 is None or transcriber is None:
        return
    try:
        await transcriber.send_audio(pcm16)
    except SpeechServiceError as exc:
        logger.warning("realtime_send_failed live_session_id=%s code=%s", session.live_session_id, exc.code)
        await sock.send_error(f"Transcription stream error: {exc.message}")


async def _process_audio_chunk(sock: _ContextSocket, payload: dict[str, Any]) -> None:
    session = sock.session
    if session is None:
        await sock.send_error("No active session. Send session:start first.")
        return
    data_b64 = str(payload.get("audio", "")).strip()
    if not data_b64:
        await sock.send_error("missing_audio")
        return
    try:
        chunk = base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError):
        await sock.send_error("invalid_base64")
        return

    decibels_raw = payload.get("decibels")
    decibels = float(decibels_raw) if isinstance(decibels_raw, (int, float)) else None
    mime_type = pick_chunk_mime_type(payload.get("mimeType"))
    if not session.is_streaming:
        session.mode = "chunked"

    config = sock.config
    await sock.send("status", step="processing", message="Listening to the room...")
    try:
        transcription = await transcribe_audio_bytes(
            chunk,
            chunk_filename(mime_type),
            api_key=config.ELEVENLABS_API_KEY,
            model_id=config.ELEVENLABS_STT_MODEL,
            language_code=config.ELEVENLABS_LANGUAGE,
            timeout_sec=config.ELEVENLABS_TIMEOUT_SEC,
        )
    except SpeechServiceError as exc:
        logger.warning("context_chunk_stt_failed live_session_id=%s code=%s", session.live_session_id, exc.code)
        await sock.send_error(f"Transcription failed: {exc.message}")
        return

    session.chunks_processed += 1
    session.speakers = list(transcription.speakers)
    session.assembler.replace_transcript(transcription.text)
    for tag in transcription.audio_events:
        event = session.assembler.note_audio_event(tag)
        if event is not None:
            await sock.send("event:detected", **event.to_wire())

    await sock.send("status", step="analyzing", message="Understanding what's happening...")
    await _run_context_update(
        sock,
        session,
        audio_events=list(transcription.audio_events),
        speakers=list(transcription.speakers),
        decibels=decibels,
        report_steps=True,
    )
    await sock.send("status", step="complete", message="Done")


async def _handle_context_message(sock: _ContextSocket, payload: dict[str, Any]) -> None:
    message_type = str(payload.get("type", "")).strip()

    if message_type == "auth":
        user_id = str(payload.get("userId", "")).strip()
        if not user_id:
            await sock.send_error("userId is required")
            return
        sock.user_id = user_id
        await sock.send("auth:ok", userId=user_id)
        return

    if message_type == "session:start":
        if not sock.user_id:
            await sock.send_error("auth_required")
            return
        previous = sock.session
        if previous is not None:
            if previous.is_streaming:
                await _stop_stream(sock, previous)
            previous.status = "ended"
        session = _get_live_registry().create(sock.user_id)
        session.reset_for_new_session()
        sock.session = session
        logger.info("context_session_started live_session_id=%s user_id=%s", session.live_session_id, sock.user_id)
        await sock.send("session:started", sessionId=session.live_session_id, timestamp=_utc_now_iso())
        return

    if message_type == "stream:start":
        await _start_stream(sock, payload)
        return

    if message_type == "audio:stream":
        data_b64 = str(payload.get("dataB64", "")).strip()
        if not data_b64:
            await sock.send_error("missing_data_b64")
            return
        try:
            frame = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError):
            await sock.send_error("invalid_base64")
            return
        await _forward_audio_frame(sock, frame)
        return

    if message_type == "audio:chunk":
        await _process_audio_chunk(sock, payload)
        return

    if message_type == "stream:stop":
        session = sock.session
        if session is not None:
            await _stop_stream(sock, session)
        await sock.send(
            "stream:stopped",
            sessionId=session.live_session_id if session else None,
            transcript=session.assembler.live_text if session else "",
            framesForwarded=session.frames_forwarded if session else 0,
            framesDropped=session.frames_dropped if session else 0,
        )
        return

    if message_type == "session:end":
        session = sock.session
        if session is None:
            await sock.send_error("No active session")
            return
        if session.is_streaming:
            await _stop_stream(sock, session)
        session.status = "ended"
        session.touch()
        sock.session = None
        logger.info("context_session_ended live_session_id=%s", session.live_session_id)
        await sock.send(
            "session:ended",
            sessionId=session.live_session_id,
            transcript=session.assembler.live_text,
            events=[event.to_wire() for event in session.assembler.recent_events],
        )
        return

    await sock.send_error("unknown_message_type")


async def _dispatch_safely(sock: _ContextSocket, message_type: str, handler: Awaitable[None]) -> None:
    """Run one message handler; unexpected failures become an error message, not a closed socket."""
    try:
        await handler
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("context_ws_handler_failed type=%s", message_type)
        await sock.send_error("internal_error")


@app.websocket("/ws/context")
async def context_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    sock = _ContextSocket(websocket, _get_config())

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                raise WebSocketDisconnect(code=int(message.get("code") or 1000))

            frame = message.get("bytes")
            if frame is not None:
                await _dispatch_safely(sock, "audio:frame", _forward_audio_frame(sock, frame))
                continue

            try:
                payload = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                await sock.send_error("invalid_json")
                continue
            if not isinstance(payload, dict):
                await sock.send_error("invalid_json")
                continue
            await _dispatch_safely(sock, str(payload.get("type", "")), _handle_context_message(sock, payload))
    except WebSocketDisconnect as exc:
        logger.info("context_ws_disconnect code=%s", exc.code)
    finally:
        sock.closed = True
        session = sock.session
        if session is not None:
            transcriber = session.close_stream()
            if transcriber is not None:
                try:
                    await transcriber.close()
                except SpeechServiceError as exc:
                    logger.info("realtime_close_on_disconnect code=%s", exc.code)
            session.status = "disconnected"
            session.touch()
            logger.info("context_ws_disconnected live_session_id=%s", session.live_session_id)
        sock.cancel_background()

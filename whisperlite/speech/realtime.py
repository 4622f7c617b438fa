from __future__ import annotations

"""
ElevenLabs realtime speech-to-text client (Scribe realtime).

Design intent:
- Forward PCM frames upstream as base64 JSON messages.
- Normalize every upstream message into a RealtimeMessage before callers see it.
- No reconnect: when the upstream socket ends, the event stream ends.
"""

import base64
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from whisperlite.speech.base import RealtimeTranscriber, SpeechServiceError
from whisperlite.transcript.models import RealtimeMessage, TranscriptWord, words_from_payload

logger = logging.getLogger(__name__)

REALTIME_URL = "wss://api.elevenlabs.io/v1/speech-to-text/realtime"

ERROR_MESSAGE_TYPES: frozenset[str] = frozenset(
    {
        "auth_error",
        "quota_exceeded",
        "transcriber_error",
        "input_error",
        "error",
        "commit_throttled",
        "rate_limited",
        "queue_overflow",
        "resource_exhausted",
        "session_time_limit_exceeded",
        "chunk_size_exceeded",
        "insufficient_audio_activity",
    }
)
_SESSION_STARTED_TYPES = frozenset({"session_started", "session_begins"})
_FINAL_TYPES = frozenset({"committed_transcript", "committed_transcript_with_timestamps"})


def parse_realtime_message(raw: str | bytes) -> RealtimeMessage | None:
    """Map one upstream frame to a RealtimeMessage; None when it is not JSON."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    message_type = str(payload.get("message_type") or payload.get("type") or "").strip()
    if message_type in _SESSION_STARTED_TYPES:
        return RealtimeMessage(kind="session_started", raw_type=message_type)
    if message_type == "partial_transcript":
        return RealtimeMessage(kind="partial", text=str(payload.get("text") or ""), raw_type=message_type)
    if message_type in _FINAL_TYPES:
        return RealtimeMessage(
            kind="final",
            text=str(payload.get("text") or ""),
            words=_parse_words(payload.get("words")),
            raw_type=message_type,
        )
    if message_type in ERROR_MESSAGE_TYPES:
        detail = payload.get("error") or payload.get("message") or message_type
        return RealtimeMessage(
            kind="error",
            error_type=message_type,
            error_message=str(detail),
            raw_type=message_type,
        )

    text = payload.get("text", payload.get("transcript"))
    if isinstance(text, str):
        is_final = bool(payload.get("is_final") or payload.get("isFinal") or payload.get("final"))
        return RealtimeMessage(
            kind="final" if is_final else "partial",
            text=text,
            raw_type=message_type or None,
        )
    return RealtimeMessage(kind="ignored", raw_type=message_type or None)


def _parse_words(raw_words: Any) -> list[TranscriptWord]:
    # Words with broken timings are dropped; the text still carries them.
    return words_from_payload(raw_words)


ConnectFn = Callable[..., Awaitable[ClientConnection]]


class ElevenLabsRealtimeClient(RealtimeTranscriber):
    def __init__(
        self,
        *,
        api_key: str,
        model_id: str = "scribe_v2_realtime",
        language_code: str = "en",
        sample_rate_hz: int = 16000,
        commit_strategy: str = "vad",
        include_timestamps: bool = False,
        connect_fn: ConnectFn = connect,
    ) -> None:
        self._api_key = api_key
        self._model_id = model_id
        self._language_code = language_code
        self._sample_rate_hz = int(sample_rate_hz)
        self._commit_strategy = commit_strategy
        self._include_timestamps = include_timestamps
        self._connect_fn = connect_fn
        self._ws: ClientConnection | None = None
        self._closed = False

    def name(self) -> str:
        return "elevenlabs"

    def build_url(self) -> str:
        params = {
            "model_id": self._model_id,
            "language_code": self._language_code,
            "audio_format": f"pcm_{self._sample_rate_hz}",
            "commit_strategy": self._commit_strategy,
        }
        if self._include_timestamps:
            params["include_timestamps"] = "true"
        return f"{REALTIME_URL}?{urlencode(params)}"

    async def connect(self) -> None:
        if not str(self._api_key or "").strip():
            raise SpeechServiceError("not_configured", "ElevenLabs API key is not configured.")
        try:
            self._ws = await self._connect_fn(
                self.build_url(),
                additional_headers={"xi-api-key": self._api_key},
            )
        except (OSError, WebSocketException) as exc:
            raise SpeechServiceError("connect_failed", f"Realtime connection failed: {exc}") from exc
        logger.info(
            "realtime_connected provider=elevenlabs model=%s rate=%s commit=%s",
            self._model_id,
            self._sample_rate_hz,
            self._commit_strategy,
        )

    def _require_open(self) -> ClientConnection:
        if self._ws is None or self._closed:
            raise SpeechServiceError("not_connected", "Realtime connection is not open.")
        return self._ws

    async def _send_json(self, message: dict[str, Any]) -> None:
        ws = self._require_open()
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise SpeechServiceError("connection_closed", f"Realtime connection closed: {exc}") from exc

    async def send_audio(self, pcm16: bytes) -> None:
        await self._send_json(
            {
                "message_type": "input_audio_chunk",
                "audio_base_64": base64.b64encode(pcm16).decode("ascii"),
                "sample_rate": self._sample_rate_hz,
            }
        )

    async def commit(self) -> None:
        await self._send_json({"message_type": "commit"})

    async def close(self) -> None:
        if self._ws is None or self._closed:
            return
        try:
            await self.commit()
        except SpeechServiceError as exc:
            logger.info("realtime_final_commit_skipped reason=%s", exc.code)
        self._closed = True
        await self._ws.close()
        logger.info("realtime_closed provider=elevenlabs")

    async def events(self) -> AsyncIterator[RealtimeMessage]:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                message = parse_realtime_message(raw)
                if message is None or message.kind == "ignored":
                    continue
                yield message
        except ConnectionClosed as exc:
            logger.warning("realtime_connection_lost code=%s", getattr(exc.rcvd, "code", None))

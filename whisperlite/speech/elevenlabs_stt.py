from __future__ import annotations

"""
ElevenLabs batch speech-to-text adapter (Scribe).

Design intent:
- Upload one recorded clip and return transcript, audio events and speakers.
- Merge the vendor's audio-event field with inline tags found in the text.
- Fail fast on clips too small to contain speech.
"""

import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Any

import httpx

from whisperlite.speech.base import SpeechServiceError
from whisperlite.speech.elevenlabs_tts import ELEVENLABS_API_BASE
from whisperlite.transcript.audio_tags import find_audio_tags
from whisperlite.transcript.models import Speaker, TranscriptWord, words_from_payload

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 100


@dataclass(frozen=True)
class BatchTranscription:
    text: str
    audio_events: list[str] = field(default_factory=list)
    speakers: list[Speaker] = field(default_factory=list)
    words: list[TranscriptWord] = field(default_factory=list)
    language: str = ""


async def transcribe_audio_bytes(
    audio: bytes,
    filename: str,
    *,
    api_key: str,
    model_id: str = "scribe_v2",
    language_code: str = "en",
    tag_audio_events: bool = True,
    diarize: bool = True,
    timeout_sec: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BatchTranscription:
    if not str(api_key or "").strip():
        raise SpeechServiceError("not_configured", "ElevenLabs API key is not configured.")
    if len(audio) < MIN_AUDIO_BYTES:
        raise SpeechServiceError("audio_too_small", f"Audio clip too small ({len(audio)} bytes).")

    content_type, _ = mimetypes.guess_type(filename)
    files = {"file": (filename, audio, content_type or "application/octet-stream")}
    data = {
        "model_id": model_id,
        "language_code": language_code,
        "tag_audio_events": "true" if tag_audio_events else "false",
        "diarize": "true" if diarize else "false",
    }

    try:
        async with httpx.AsyncClient(timeout=timeout_sec, transport=transport) as client:
            response = await client.post(
                f"{ELEVENLABS_API_BASE}/speech-to-text",
                headers={"xi-api-key": api_key},
                data=data,
                files=files,
            )
    except httpx.HTTPError as exc:
        raise SpeechServiceError("transport", f"Transcription failed: {exc}") from exc

    if response.status_code >= 400:
        raise SpeechServiceError(
            "upstream_status",
            f"Transcription failed: HTTP {response.status_code}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise SpeechServiceError("invalid_response", "Transcription response is not JSON.") from exc
    if not isinstance(payload, dict):
        raise SpeechServiceError("invalid_response", "Transcription response is not an object.")

    result = parse_transcription_payload(payload)
    logger.info(
        "elevenlabs_stt_ok chars=%s events=%s speakers=%s",
        len(result.text),
        ",".join(result.audio_events) or "none",
        len(result.speakers),
    )
    return result


def parse_transcription_payload(payload: dict[str, Any]) -> BatchTranscription:
    text = str(payload.get("text") or "").strip()
    words = _extract_words(payload)
    speakers = _extract_speakers(payload, words, text)
    return BatchTranscription(
        text=text,
        audio_events=_extract_audio_events(payload, text, speakers),
        speakers=speakers,
        words=words,
        language=str(payload.get("language_code") or ""),
    )


def _extract_audio_events(payload: dict[str, Any], text: str, speakers: list[Speaker]) -> list[str]:
    events: list[str] = []
    raw_events = payload.get("audio_events")
    if isinstance(raw_events, list):
        for item in raw_events:
            event_type = item.get("type") if isinstance(item, dict) else item
            if event_type and str(event_type) not in events:
                events.append(str(event_type))
    for tag in find_audio_tags(text, include_batch_tags=True):
        if tag not in events:
            events.append(tag)
    reported_speakers = payload.get("speakers")
    speaker_count = len(reported_speakers) if isinstance(reported_speakers, list) else len(speakers)
    if speaker_count > 2 and "Multiple_Voices" not in events:
        events.append("Multiple_Voices")
    return events


def _extract_words(payload: dict[str, Any]) -> list[TranscriptWord]:
    return words_from_payload(payload.get("words"))


def _extract_speakers(payload: dict[str, Any], words: list[TranscriptWord], text: str) -> list[Speaker]:
    speakers: list[Speaker] = []
    raw_speakers = payload.get("speakers")
    if isinstance(raw_speakers, list):
        for item in raw_speakers:
            if not isinstance(item, dict):
                continue
            index = len(speakers)
            segments = item.get("segments")
            speakers.append(
                Speaker(
                    id=str(item.get("id", index)),
                    label=str(item.get("label") or f"Speaker_{index + 1}"),
                    segments=len(segments) if isinstance(segments, list) else 0,
                )
            )
    if not speakers:
        counts: dict[str, int] = {}
        for word in words:
            if word.speaker_id is not None:
                counts[word.speaker_id] = counts.get(word.speaker_id, 0) + 1
        for index, (speaker_id, count) in enumerate(counts.items()):
            speakers.append(Speaker(id=speaker_id, label=f"Speaker_{index + 1}", segments=count))
    if not speakers and text:
        speakers.append(Speaker(id="0", label="Speaker_1", segments=1))
    return speakers

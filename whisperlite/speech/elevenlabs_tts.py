from __future__ import annotations

"""
ElevenLabs text-to-speech adapter.

Design intent:
- Keep the vendor request shape in one place.
- Map transport/status failures to SpeechServiceError so routes pick the HTTP code.
"""

import base64
import logging

import httpx

from whisperlite.speech.base import SpeechServiceError

logger = logging.getLogger(__name__)

ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"


async def synthesize_speech(
    text: str,
    *,
    api_key: str,
    voice_id: str,
    model_id: str = "eleven_monolingual_v1",
    stability: float = 0.7,
    similarity_boost: float = 0.8,
    timeout_sec: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bytes:
    """Return MP3 bytes for `text` spoken with `voice_id`."""
    if not str(api_key or "").strip():
        raise SpeechServiceError("not_configured", "ElevenLabs API key is not configured.")

    url = f"{ELEVENLABS_API_BASE}/text-to-speech/{voice_id}"
    headers = {
        "Accept": "audio/mpeg",
        "Content-Type": "application/json",
        "xi-api-key": api_key,
    }
    body = {
        "text": text,
        "model_id": model_id,
        "voice_settings": {
            "stability": stability,
            "similarity_boost": similarity_boost,
        },
    }

    try:
        async with httpx.AsyncClient(timeout=timeout_sec, transport=transport) as client:
            response = await client.post(url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        raise SpeechServiceError("transport", f"ElevenLabs TTS request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.warning(
            "elevenlabs_tts_failed status=%s voice_id=%s body=%s",
            response.status_code,
            voice_id,
            response.text[:200],
        )
        raise SpeechServiceError(
            "upstream_status",
            "Voice generation failed",
            status_code=response.status_code,
        )

    logger.info("elevenlabs_tts_ok voice_id=%s bytes=%s", voice_id, len(response.content))
    return response.content


def audio_data_url(audio: bytes, mime_type: str = "audio/mpeg") -> str:
    encoded = base64.b64encode(audio).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"

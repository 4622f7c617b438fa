from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_first(names: list[str], default: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


@dataclass(frozen=True)
class AppConfig:
    WHISPERLITE_LOG_LEVEL: str
    WHISPERLITE_HOST: str
    WHISPERLITE_PORT: int
    ELEVENLABS_API_KEY: str
    ELEVENLABS_VOICE_ID: str
    ELEVENLABS_TTS_MODEL: str
    ELEVENLABS_STT_MODEL: str
    ELEVENLABS_REALTIME_MODEL: str
    ELEVENLABS_LANGUAGE: str
    ELEVENLABS_TIMEOUT_SEC: float
    GEMINI_API_KEY: str
    GEMINI_MODEL: str
    REALTIME_PROVIDER: str
    REALTIME_COMMIT_STRATEGY: str
    REALTIME_SAMPLE_RATE_HZ: int
    REALTIME_INCLUDE_TIMESTAMPS: bool
    CONTEXT_INTERVAL_SEC: float
    CONTEXT_RECENT_EVENTS: int
    CONTEXT_CALMING_AUDIO: bool
    MAX_UPLOAD_BYTES: int
    LIVE_SESSION_LIMIT: int

    @property
    def elevenlabs_configured(self) -> bool:
        return bool(self.ELEVENLABS_API_KEY.strip())

    @property
    def gemini_configured(self) -> bool:
        return bool(self.GEMINI_API_KEY.strip())


def load_config() -> AppConfig:
    return AppConfig(
        WHISPERLITE_LOG_LEVEL=_getenv_str("WHISPERLITE_LOG_LEVEL", "INFO"),
        WHISPERLITE_HOST=_getenv_str("WHISPERLITE_HOST", "0.0.0.0"),
        WHISPERLITE_PORT=_getenv_int("WHISPERLITE_PORT", 3001),
        ELEVENLABS_API_KEY=_getenv_str("ELEVENLABS_API_KEY", ""),
        ELEVENLABS_VOICE_ID=_getenv_str("ELEVENLABS_VOICE_ID", "pNInz6obpgDQGcFmaJgB"),
        ELEVENLABS_TTS_MODEL=_getenv_str("ELEVENLABS_TTS_MODEL", "eleven_monolingual_v1"),
        ELEVENLABS_STT_MODEL=_getenv_str("ELEVENLABS_STT_MODEL", "scribe_v2"),
        ELEVENLABS_REALTIME_MODEL=_getenv_str("ELEVENLABS_REALTIME_MODEL", "scribe_v2_realtime"),
        ELEVENLABS_LANGUAGE=_getenv_str("ELEVENLABS_LANGUAGE", "en"),
        ELEVENLABS_TIMEOUT_SEC=_getenv_float("ELEVENLABS_TIMEOUT_SEC", 30.0),
        # GOOGLE_GEMINI_API_KEY is the name older deployments used.
        GEMINI_API_KEY=_getenv_first(["GEMINI_API_KEY", "GOOGLE_GEMINI_API_KEY"], ""),
        GEMINI_MODEL=_getenv_str("GEMINI_MODEL", "gemini-2.5-flash"),
        REALTIME_PROVIDER=_getenv_str("REALTIME_PROVIDER", "elevenlabs").strip().lower(),
        REALTIME_COMMIT_STRATEGY=_getenv_str("REALTIME_COMMIT_STRATEGY", "vad").strip().lower(),
        REALTIME_SAMPLE_RATE_HZ=_getenv_int("REALTIME_SAMPLE_RATE_HZ", 16000),
        REALTIME_INCLUDE_TIMESTAMPS=_getenv_bool("REALTIME_INCLUDE_TIMESTAMPS", False),
        CONTEXT_INTERVAL_SEC=_getenv_float("CONTEXT_INTERVAL_SEC", 5.0),
        CONTEXT_RECENT_EVENTS=_getenv_int("CONTEXT_RECENT_EVENTS", 10),
        CONTEXT_CALMING_AUDIO=_getenv_bool("CONTEXT_CALMING_AUDIO", True),
        MAX_UPLOAD_BYTES=_getenv_int("MAX_UPLOAD_BYTES", 25 * 1024 * 1024),
        LIVE_SESSION_LIMIT=_getenv_int("LIVE_SESSION_LIMIT", 200),
    )

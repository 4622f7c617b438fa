from __future__ import annotations

"""
PCM frame handling for the live listener.

Design intent:
- Accept only a fixed set of client encodings and sample rates.
- Normalize every frame to little-endian int16 before it goes upstream.
- Keep level metering cheap enough to run on every frame.
"""

import math
from dataclasses import dataclass

import numpy as np

SUPPORTED_ENCODINGS: frozenset[str] = frozenset({"pcm_s16le", "pcm_f32le"})
SUPPORTED_SAMPLE_RATES: frozenset[int] = frozenset({8000, 16000, 22050, 24000, 44100, 48000})

# Recorder formats for chunked mode, in preference order.
CHUNK_MIME_TYPES: tuple[str, ...] = ("audio/webm;codecs=opus", "audio/webm", "audio/mp4")
_CHUNK_SUFFIX_BY_MIME = {
    "audio/webm;codecs=opus": ".webm",
    "audio/webm": ".webm",
    "audio/mp4": ".mp4",
}

_SILENCE_DBFS = -120.0


class AudioFormatError(ValueError):
    """Raised when a stream or frame does not match a supported PCM format."""


@dataclass(frozen=True)
class StreamFormat:
    encoding: str
    sample_rate_hz: int

    @property
    def bytes_per_sample(self) -> int:
        return 4 if self.encoding == "pcm_f32le" else 2


def resolve_stream_format(encoding: str | None, sample_rate_hz: int | None, *, default_rate: int) -> StreamFormat:
    chosen_encoding = str(encoding or "pcm_s16le").strip().lower()
    if chosen_encoding not in SUPPORTED_ENCODINGS:
        raise AudioFormatError(f"Unsupported encoding: {chosen_encoding}")
    chosen_rate = int(sample_rate_hz) if sample_rate_hz else int(default_rate)
    if chosen_rate not in SUPPORTED_SAMPLE_RATES:
        raise AudioFormatError(f"Unsupported sample rate: {chosen_rate}")
    return StreamFormat(encoding=chosen_encoding, sample_rate_hz=chosen_rate)


def float32_to_int16(samples: np.ndarray) -> np.ndarray:
    clipped = np.clip(samples.astype(np.float32, copy=False), -1.0, 1.0)
    # Asymmetric scale so -1.0 maps to -32768 and 1.0 to 32767.
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def to_pcm16_bytes(frame: bytes, fmt: StreamFormat) -> bytes:
    if len(frame) % fmt.bytes_per_sample != 0:
        raise AudioFormatError(
            f"Frame length {len(frame)} is not a multiple of {fmt.bytes_per_sample} bytes"
        )
    if fmt.encoding == "pcm_s16le":
        return bytes(frame)
    samples = np.frombuffer(frame, dtype="<f4")
    return float32_to_int16(samples).astype("<i2").tobytes()


def compute_rms(pcm16: bytes) -> float:
    if len(pcm16) < 2:
        return 0.0
    usable = len(pcm16) - (len(pcm16) % 2)
    x = np.frombuffer(pcm16[:usable], dtype="<i2").astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(x * x)))


def level_dbfs(pcm16: bytes) -> float:
    rms = compute_rms(pcm16)
    if rms <= 0.0:
        return _SILENCE_DBFS
    return max(_SILENCE_DBFS, 20.0 * math.log10(rms))


def pick_chunk_mime_type(requested: str | None) -> str:
    normalized = str(requested or "").strip().lower().replace(" ", "")
    for candidate in CHUNK_MIME_TYPES:
        if normalized == candidate:
            return candidate
    return CHUNK_MIME_TYPES[1]


def chunk_filename(mime_type: str, stem: str = "chunk") -> str:
    return f"{stem}{_CHUNK_SUFFIX_BY_MIME.get(mime_type, '.webm')}"

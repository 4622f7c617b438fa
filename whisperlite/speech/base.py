from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from whisperlite.transcript.models import RealtimeMessage


class SpeechServiceError(RuntimeError):
    def __init__(
        self,
        code: str,
        message: str,
        provider_name: str = "elevenlabs",
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name
        self.status_code = status_code


class RealtimeTranscriber(ABC):
    """One upstream streaming-transcription connection.

    `events()` yields normalized messages until the connection ends; it is
    consumed by exactly one task.
    """

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def send_audio(self, pcm16: bytes) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def events(self) -> AsyncIterator[RealtimeMessage]: ...

    @abstractmethod
    def name(self) -> str: ...

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Sequence

from whisperlite.speech.base import RealtimeTranscriber, SpeechServiceError
from whisperlite.transcript.models import RealtimeMessage

DEFAULT_SCRIPT: tuple[str, ...] = (
    "Okay everyone, open your books to page twelve.",
    "[Laughter] That was a funny answer.",
    "Let's work quietly for the next few minutes.",
)


class MockRealtimeTranscriber(RealtimeTranscriber):
    """Scripted transcriber: each audio frame reveals one more word.

    A partial is emitted per frame until the sentence is complete, which emits
    a final. `commit()` finalizes whatever words have been revealed so far.
    """

    def __init__(self, script: Optional[Sequence[str]] = None) -> None:
        self._script = list(script or DEFAULT_SCRIPT)
        self._queue: asyncio.Queue[Optional[RealtimeMessage]] = asyncio.Queue()
        self._sentence_index = 0
        self._revealed = 0
        self.connected = False
        self.closed = False
        self.frames_received = 0
        self.bytes_received = 0
        self.commits = 0

    def name(self) -> str:
        return "mock"

    def _current_words(self) -> list[str]:
        sentence = self._script[self._sentence_index % len(self._script)]
        return sentence.split()

    async def connect(self) -> None:
        self.connected = True
        await self._queue.put(RealtimeMessage(kind="session_started", raw_type="session_started"))

    async def send_audio(self, pcm16: bytes) -> None:
        if self.closed:
            raise SpeechServiceError("not_connected", "Mock transcriber is closed.", provider_name="mock")
        self.frames_received += 1
        self.bytes_received += len(pcm16)
        words = self._current_words()
        self._revealed += 1
        if self._revealed < len(words):
            text = " ".join(words[: self._revealed])
            await self._queue.put(RealtimeMessage(kind="partial", text=text, raw_type="partial_transcript"))
            return
        await self._queue.put(RealtimeMessage(kind="final", text=" ".join(words), raw_type="committed_transcript"))
        self._sentence_index += 1
        self._revealed = 0

    async def commit(self) -> None:
        self.commits += 1
        if self._revealed == 0:
            return
        text = " ".join(self._current_words()[: self._revealed])
        await self._queue.put(RealtimeMessage(kind="final", text=text, raw_type="committed_transcript"))
        self._sentence_index += 1
        self._revealed = 0

    async def close(self) -> None:
        if self.closed:
            return
        await self.commit()
        self.closed = True
        await self._queue.put(None)

    async def events(self) -> AsyncIterator[RealtimeMessage]:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message

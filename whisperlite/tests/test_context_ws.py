import base64
import dataclasses
from typing import AsyncIterator

import httpx
from fastapi.testclient import TestClient

from whisperlite.analysis.social_context import SocialContextResult
from whisperlite.api.main import app
from whisperlite.internal_core.config import load_config
from whisperlite.speech.elevenlabs_stt import BatchTranscription, transcribe_audio_bytes
from whisperlite.speech.mock import MockRealtimeTranscriber
from whisperlite.transcript.models import RealtimeMessage, Speaker


def _use_config(**overrides) -> None:
    app.state.config = dataclasses.replace(load_config(), **overrides)


def _clear_injected_state() -> None:
    for name in ("config", "realtime_transcriber_factory"):
        if hasattr(app.state, name):
            delattr(app.state, name)


def _receive_until(ws, message_type: str, limit: int = 50) -> list[dict]:
    messages = []
    for _ in range(limit):
        message = ws.receive_json()
        messages.append(message)
        if message["type"] == message_type:
            return messages
    raise AssertionError(f"{message_type} not received; got {[m['type'] for m in messages]}")


def _fake_social_context(assessment: str = "friendly"):
    calls: list[dict] = []

    def fake(transcript, audio_events, speakers=(), decibels=None, *, api_key, model_name):
        calls.append({"transcript": transcript, "audio_events": list(audio_events), "decibels": decibels})
        return SocialContextResult(
            success=True,
            assessment=assessment,
            summary="Everyone is just chatting.",
            confidence=0.9,
            recommendations=["Keep going"],
        )

    return fake, calls


def test_stream_transcripts_events_and_gate(monkeypatch) -> None:
    fake_context, context_calls = _fake_social_context()
    monkeypatch.setattr("whisperlite.api.main.analyze_social_context", fake_context)
    transcriber = MockRealtimeTranscriber(["hello class", "[Laughter] nice one"])
    app.state.realtime_transcriber_factory = lambda config, fmt: transcriber
    _use_config(CONTEXT_INTERVAL_SEC=0.0, CONTEXT_CALMING_AUDIO=False)
    client = TestClient(app)
    frame = b"\x00\x01" * 160

    try:
        with client.websocket_connect("/ws/context?userId=ws_user") as ws:
            ws.send_json({"type": "session:start"})
            started = ws.receive_json()
            assert started["type"] == "session:started"
            live_session_id = started["sessionId"]

            ws.send_json({"type": "stream:start", "encoding": "pcm_s16le", "sampleRateHz": 16000})
            connected = _receive_until(ws, "status")
            assert connected[0] == {
                "type": "stream:connected",
                "provider": "mock",
                "encoding": "pcm_s16le",
                "sampleRateHz": 16000,
            }

            ws.send_bytes(frame)
            ws.send_bytes(frame)
            ws.send_json({"type": "audio:stream", "dataB64": base64.b64encode(frame).decode("ascii")})
            ws.send_json({"type": "stream:stop"})
            messages = _receive_until(ws, "stream:stopped")

            ws.send_bytes(frame)
            ws.send_json({"type": "session:end"})
            ended = _receive_until(ws, "session:ended")[-1]
    finally:
        _clear_injected_state()

    transcripts = [(m["text"], m["isFinal"]) for m in messages if m["type"] == "transcript:realtime"]
    assert transcripts == [
        ("hello", False),
        ("hello class", True),
        ("[Laughter]", False),
        ("[Laughter]", True),
    ]
    events = [m["event"] for m in messages if m["type"] == "event:detected"]
    assert events == ["Laughter"]

    contexts = [m for m in messages if m["type"] == "context:update"]
    assert len(contexts) == 2
    assert contexts[0]["assessment"] == "friendly"
    assert contexts[0]["transcript"].startswith("hello class")
    assert context_calls[-1]["audio_events"] == ["Laughter"]

    stopped = messages[-1]
    assert stopped["framesForwarded"] == 3
    assert stopped["framesDropped"] == 0
    assert stopped["transcript"] == "hello class [Laughter]"
    assert transcriber.closed is True
    assert transcriber.frames_received == 3

    assert ended["sessionId"] == live_session_id
    assert ended["transcript"] == "hello class [Laughter]"
    assert [event["event"] for event in ended["events"]] == ["Laughter"]

    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["framesDropped"] == 1
    assert status["framesForwarded"] == 3
    assert status["status"] == "ended"
    assert status["lastContext"]["assessment"] == "friendly"


def test_protocol_errors_do_not_close_the_socket() -> None:
    _use_config()
    client = TestClient(app)
    try:
        with client.websocket_connect("/ws/context") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "invalid_json"}

            ws.send_json({"type": "teleport"})
            assert ws.receive_json()["message"] == "unknown_message_type"

            ws.send_json({"type": "session:start"})
            assert ws.receive_json()["message"] == "auth_required"

            ws.send_json({"type": "auth", "userId": "late_user"})
            assert ws.receive_json() == {"type": "auth:ok", "userId": "late_user"}

            ws.send_json({"type": "stream:start"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "session:start"})
            assert ws.receive_json()["type"] == "session:started"

            ws.send_json({"type": "stream:start", "encoding": "opus"})
            assert ws.receive_json() == {"type": "error", "message": "Unsupported encoding: opus"}

            ws.send_json({"type": "stream:start", "sampleRateHz": 11025})
            assert ws.receive_json() == {"type": "error", "message": "Unsupported sample rate: 11025"}

            ws.send_json({"type": "audio:stream", "dataB64": "%%%"})
            assert ws.receive_json()["message"] == "invalid_base64"
    finally:
        _clear_injected_state()


def test_chunked_mode_runs_batch_pipeline_with_calming_audio(monkeypatch) -> None:
    async def fake_transcribe(audio, filename, **kwargs):
        assert filename == "chunk.mp4"
        assert audio == b"\x05" * 300
        return BatchTranscription(
            text="[Applause] great job everyone",
            audio_events=["Applause", "Multiple_Voices"],
            speakers=[Speaker(id="0", label="Speaker_1"), Speaker(id="1", label="Speaker_2")],
        )

    async def fake_synthesize(text, **kwargs):
        return b"calm-mp3"

    fake_context, context_calls = _fake_social_context("tense")
    monkeypatch.setattr("whisperlite.api.main.transcribe_audio_bytes", fake_transcribe)
    monkeypatch.setattr("whisperlite.api.main.synthesize_speech", fake_synthesize)
    monkeypatch.setattr("whisperlite.api.main.analyze_social_context", fake_context)
    _use_config(ELEVENLABS_API_KEY="xi-key", CONTEXT_CALMING_AUDIO=True)
    client = TestClient(app)

    try:
        with client.websocket_connect("/ws/context?userId=chunk_user") as ws:
            ws.send_json({"type": "session:start"})
            live_session_id = ws.receive_json()["sessionId"]
            ws.send_json(
                {
                    "type": "audio:chunk",
                    "audio": base64.b64encode(b"\x05" * 300).decode("ascii"),
                    "duration": 5000,
                    "decibels": 68.5,
                    "mimeType": "audio/mp4",
                }
            )
            messages = []
            while not messages or messages[-1] != {"type": "status", "step": "complete", "message": "Done"}:
                messages.append(ws.receive_json())
    finally:
        _clear_injected_state()

    assert [m.get("step") or m.get("event") or m["type"] for m in messages] == [
        "processing",
        "Applause",
        "Multiple_Voices",
        "analyzing",
        "context:update",
        "generating",
        "calming:audio",
        "complete",
    ]
    context = messages[4]
    assert context["assessment"] == "tense"
    assert context["audioEvents"] == ["Applause", "Multiple_Voices"]
    assert [speaker["label"] for speaker in context["speakers"]] == ["Speaker_1", "Speaker_2"]
    assert context_calls[0]["decibels"] == 68.5
    assert messages[6]["audioUrl"].startswith("data:audio/mpeg;base64,")

    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["mode"] == "chunked"
    assert status["chunksProcessed"] == 1
    assert status["transcript"] == "[Applause] great job everyone"
    assert status["status"] == "disconnected"


class _EndingTranscriber(MockRealtimeTranscriber):
    async def events(self) -> AsyncIterator[RealtimeMessage]:
        yield RealtimeMessage(kind="final", text="see you tomorrow")


def test_upstream_end_closes_gate_and_reports_disconnect(monkeypatch) -> None:
    fake_context, _ = _fake_social_context()
    monkeypatch.setattr("whisperlite.api.main.analyze_social_context", fake_context)
    transcriber = _EndingTranscriber()
    app.state.realtime_transcriber_factory = lambda config, fmt: transcriber
    _use_config(CONTEXT_CALMING_AUDIO=False)
    client = TestClient(app)

    try:
        with client.websocket_connect("/ws/context?userId=ending_user") as ws:
            ws.send_json({"type": "session:start"})
            live_session_id = ws.receive_json()["sessionId"]
            ws.send_json({"type": "stream:start"})
            messages = _receive_until(ws, "stream:disconnected")
    finally:
        _clear_injected_state()

    assert messages[-1] == {"type": "stream:disconnected", "reason": "upstream_closed"}
    assert any(m["type"] == "transcript:realtime" and m["isFinal"] for m in messages)
    assert transcriber.closed is True
    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["streaming"] is False
    assert status["transcript"] == "see you tomorrow"


def test_disconnect_mid_stream_closes_transcriber() -> None:
    transcriber = MockRealtimeTranscriber()
    app.state.realtime_transcriber_factory = lambda config, fmt: transcriber
    _use_config()
    client = TestClient(app)

    try:
        with client.websocket_connect("/ws/context?userId=gone_user") as ws:
            ws.send_json({"type": "session:start"})
            live_session_id = ws.receive_json()["sessionId"]
            ws.send_json({"type": "stream:start", "encoding": "pcm_f32le", "sampleRateHz": 48000})
            _receive_until(ws, "status")
    finally:
        _clear_injected_state()

    assert transcriber.closed is True
    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["status"] == "disconnected"
    assert status["streaming"] is False


class _CrashingTranscriber(MockRealtimeTranscriber):
    async def events(self) -> AsyncIterator[RealtimeMessage]:
        yield RealtimeMessage(kind="partial", text="good morn")
        raise RuntimeError("decoder state corrupted")


def test_pump_crash_reports_error_and_disconnect() -> None:
    transcriber = _CrashingTranscriber()
    app.state.realtime_transcriber_factory = lambda config, fmt: transcriber
    _use_config()
    client = TestClient(app)

    try:
        with client.websocket_connect("/ws/context?userId=crash_user") as ws:
            ws.send_json({"type": "session:start"})
            live_session_id = ws.receive_json()["sessionId"]
            ws.send_json({"type": "stream:start"})
            messages = _receive_until(ws, "stream:disconnected")

            ws.send_json({"type": "teleport"})
            assert ws.receive_json()["message"] == "unknown_message_type"
    finally:
        _clear_injected_state()

    assert {"type": "error", "message": "Transcription stream failed"} in messages
    assert transcriber.closed is True
    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["streaming"] is False
    assert status["transcript"] == "good morn"


def test_chunk_handler_failure_keeps_socket_open(monkeypatch) -> None:
    async def broken_transcribe(audio, filename, **kwargs):
        raise RuntimeError("unexpected vendor shape")

    monkeypatch.setattr("whisperlite.api.main.transcribe_audio_bytes", broken_transcribe)
    _use_config(ELEVENLABS_API_KEY="xi-key")
    client = TestClient(app)
    chunk = base64.b64encode(b"\x05" * 400).decode("ascii")

    try:
        with client.websocket_connect("/ws/context?userId=sturdy_user") as ws:
            ws.send_json({"type": "session:start"})
            ws.receive_json()
            ws.send_json({"type": "audio:chunk", "audio": chunk})
            assert ws.receive_json()["step"] == "processing"
            assert ws.receive_json() == {"type": "error", "message": "internal_error"}

            ws.send_json({"type": "stream:stop"})
            assert ws.receive_json()["type"] == "stream:stopped"
    finally:
        _clear_injected_state()


def test_chunk_with_malformed_vendor_word_timings_completes(monkeypatch) -> None:
    def vendor(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"text": "hi everyone", "words": [{"text": "hi", "start": 1.0, "end": 0.5, "type": "word"}]},
        )

    async def transcribe_via_vendor(audio, filename, **kwargs):
        return await transcribe_audio_bytes(audio, filename, transport=httpx.MockTransport(vendor), **kwargs)

    fake_context, _ = _fake_social_context()
    monkeypatch.setattr("whisperlite.api.main.transcribe_audio_bytes", transcribe_via_vendor)
    monkeypatch.setattr("whisperlite.api.main.analyze_social_context", fake_context)
    _use_config(ELEVENLABS_API_KEY="xi-key", CONTEXT_CALMING_AUDIO=False)
    client = TestClient(app)

    try:
        with client.websocket_connect("/ws/context?userId=vendor_user") as ws:
            ws.send_json({"type": "session:start"})
            live_session_id = ws.receive_json()["sessionId"]
            ws.send_json({"type": "audio:chunk", "audio": base64.b64encode(b"\x05" * 400).decode("ascii")})
            messages = _receive_until(ws, "context:update")
            assert ws.receive_json() == {"type": "status", "step": "complete", "message": "Done"}
    finally:
        _clear_injected_state()

    assert not any(m["type"] == "error" for m in messages)
    assert messages[-1]["transcript"] == "hi everyone"
    status = client.get(f"/api/context/live/{live_session_id}").json()
    assert status["chunksProcessed"] == 1

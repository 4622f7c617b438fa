import numpy as np
import pytest

from whisperlite.audio.pcm import AudioFormatError, StreamFormat
from whisperlite.speech.mock import MockRealtimeTranscriber
from whisperlite.transcript.live_assembler import LiveTranscriptAssembler
from whisperlite.transcript.live_session import LiveListeningSession, LiveSessionRegistry
from whisperlite.transcript.models import RealtimeMessage


def _assembler() -> LiveTranscriptAssembler:
    return LiveTranscriptAssembler(max_recent_events=3, now_iso=lambda: "2026-01-01T00:00:00+00:00")


def test_partials_replace_each_other_and_never_stack() -> None:
    assembler = _assembler()
    assembler.apply(RealtimeMessage(kind="partial", text="open"))
    assembler.apply(RealtimeMessage(kind="partial", text="open your"))
    update = assembler.apply(RealtimeMessage(kind="partial", text="open your books"))

    assert update is not None
    assert update.is_final is False
    assert assembler.live_text == "open your books"
    assert assembler.committed_text == ""


def test_final_commits_once_and_clears_pending_partial() -> None:
    assembler = _assembler()
    assembler.apply(RealtimeMessage(kind="final", text="Good morning class."))
    assembler.apply(RealtimeMessage(kind="partial", text="today we"))
    update = assembler.apply(RealtimeMessage(kind="final", text="Today we read."))

    assert update is not None
    assert update.is_final is True
    assert assembler.partial_text == ""
    assert assembler.committed_text == "Good morning class. Today we read."
    assert update.live_text == assembler.committed_text


def test_empty_final_clears_partial_without_adding_segment() -> None:
    assembler = _assembler()
    assembler.apply(RealtimeMessage(kind="final", text="Hello."))
    assembler.apply(RealtimeMessage(kind="partial", text="uh"))
    assembler.apply(RealtimeMessage(kind="final", text="   "))

    assert assembler.live_text == "Hello."


def test_non_transcript_messages_are_ignored() -> None:
    assembler = _assembler()
    assert assembler.apply(RealtimeMessage(kind="session_started")) is None
    assert assembler.apply(RealtimeMessage(kind="error", error_type="auth_error")) is None
    assert assembler.live_text == ""


def test_inline_tags_emit_one_event_per_session() -> None:
    assembler = _assembler()
    first = assembler.apply(RealtimeMessage(kind="partial", text="[Laughter] that"))
    second = assembler.apply(RealtimeMessage(kind="final", text="[laughter] that was funny"))

    assert first is not None and second is not None
    assert [event.event for event in first.new_events] == ["Laughter"]
    assert second.new_events == []
    assert assembler.seen_tags == ["Laughter"]
    assert assembler.recent_events[0].interpretation.startswith("The class laughed")


def test_recent_events_are_newest_first_and_capped() -> None:
    assembler = _assembler()
    for tag in ("Laughter", "Applause", "Music", "Coughing"):
        assembler.note_audio_event(tag)

    assert [event.event for event in assembler.recent_events] == ["Coughing", "Music", "Applause"]
    assert assembler.note_audio_event("Music") is None


def test_replace_transcript_and_clear() -> None:
    assembler = _assembler()
    assembler.apply(RealtimeMessage(kind="partial", text="pending"))
    assembler.replace_transcript("  chunk   text ")
    assert assembler.live_text == "chunk text"

    assembler.note_audio_event("Silence")
    assembler.clear()
    assert assembler.live_text == ""
    assert assembler.recent_events == []
    assert assembler.note_audio_event("Silence") is not None


def test_frames_before_stream_open_are_dropped() -> None:
    session = LiveListeningSession("live_gate", user_id="student_1")
    assert session.accept_audio_frame(b"\x00\x01" * 8) is None
    assert session.frames_dropped == 1
    assert session.frames_forwarded == 0


def test_gate_closes_before_transcriber_is_handed_back() -> None:
    session = LiveListeningSession("live_close", user_id="student_1")
    transcriber = MockRealtimeTranscriber()
    session.open_stream(StreamFormat("pcm_s16le", 16000), transcriber)

    assert session.accept_audio_frame(b"\x10\x00" * 4) == b"\x10\x00" * 4
    returned = session.close_stream()

    assert returned is transcriber
    assert session.is_streaming is False
    assert session.transcriber is None
    assert session.accept_audio_frame(b"\x10\x00" * 4) is None
    assert session.frames_forwarded == 1
    assert session.frames_dropped == 1
    assert session.status == "stopped"


def test_float_frames_are_converted_and_metered() -> None:
    session = LiveListeningSession("live_f32")
    session.open_stream(StreamFormat("pcm_f32le", 48000), MockRealtimeTranscriber())
    frame = np.array([0.5, -0.5, 0.5, -0.5], dtype="<f4").tobytes()

    pcm16 = session.accept_audio_frame(frame)

    assert pcm16 is not None
    assert len(pcm16) == 8
    assert session.bytes_forwarded == 8
    assert session.last_level_dbfs is not None
    assert -7.0 < session.last_level_dbfs < -5.0


def test_misaligned_frame_raises_format_error() -> None:
    session = LiveListeningSession("live_bad")
    session.open_stream(StreamFormat("pcm_s16le", 16000), MockRealtimeTranscriber())
    with pytest.raises(AudioFormatError):
        session.accept_audio_frame(b"\x00\x01\x02")


def test_empty_frame_is_not_counted() -> None:
    session = LiveListeningSession("live_empty")
    assert session.accept_audio_frame(b"") is None
    assert session.frames_dropped == 0


def test_context_due_respects_interval() -> None:
    session = LiveListeningSession("live_ctx")
    assert session.context_due(100.0, 5.0) is True
    session.mark_context(100.0, {"assessment": "neutral"})
    assert session.context_due(103.0, 5.0) is False
    assert session.context_due(105.0, 5.0) is True
    assert session.to_status()["lastContext"] == {"assessment": "neutral"}


def test_reset_for_new_session_clears_counters() -> None:
    session = LiveListeningSession("live_reset")
    session.frames_dropped = 4
    session.assembler.replace_transcript("old text")
    session.reset_for_new_session()

    status = session.to_status()
    assert status["status"] == "session_active"
    assert status["framesDropped"] == 0
    assert status["transcript"] == ""


def test_registry_create_and_get() -> None:
    registry = LiveSessionRegistry(max_recent_events=5)
    session = registry.create("student_1")

    assert session.live_session_id.startswith("live_")
    assert registry.get(session.live_session_id) is session
    assert len(registry) == 1
    with pytest.raises(KeyError):
        registry.get("live_missing")


def test_registry_evicts_oldest_finished_sessions_past_limit() -> None:
    registry = LiveSessionRegistry(max_sessions=2)
    finished = registry.create("student_1")
    finished.status = "ended"
    active = registry.create("student_2")
    registry.create("student_3")

    assert len(registry) == 2
    with pytest.raises(KeyError):
        registry.get(finished.live_session_id)
    assert registry.get(active.live_session_id) is active

    # Nothing finished left to evict, so live connections are kept.
    registry.create("student_4")
    assert len(registry) == 3

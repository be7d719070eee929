from __future__ import annotations

import asyncio

from caption_relay.capture.buffer import CaptionBuffer
from caption_relay.capture.dom import Document, Element
from caption_relay.capture.extractor import CaptionExtractor
from caption_relay.config import Settings
from caption_relay.schemas.captions import CaptionEvent
from caption_relay.schemas.local import (
    CaptionData,
    CaptureStarted,
    CaptureStopped,
    GetStatus,
    MeetingDetected,
    StartCapture,
    StopCapture,
)
from tests.helpers import CONTAINER_ATTRS, caption_node, meeting_document, settle


def _extractor(doc, **kwargs):
    emitted = []
    kwargs.setdefault("flush_interval", 60.0)
    return CaptionExtractor(doc, emit=emitted.append, **kwargs), emitted


def _batches(emitted):
    return [m for m in emitted if isinstance(m, CaptionData)]


def test_scenario_a_identical_follow_up_is_suppressed():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")

    container.append_child(caption_node("Hello world"))
    ext.process_pending()
    assert ext.buffer_size == 1

    container.append_child(caption_node("Hello world"))
    ext.process_pending()
    assert ext.buffer_size == 1


def test_no_two_consecutive_buffered_captions_share_text():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    lines = ["Good morning", "Good morning", "  Good morning ", "ok", "", "Agenda first", "Agenda first", "Good morning"]
    for text in lines:
        container.append_child(caption_node(text))
    ext.process_pending()
    ext.stop_capture()

    texts = [c.text for batch in _batches(emitted) for c in batch.captions]
    assert texts == ["Good morning", "Agenda first", "Good morning"]
    assert all(a != b for a, b in zip(texts, texts[1:]))


def test_short_and_blank_candidates_are_rejected():
    doc, container = meeting_document()
    ext, _ = _extractor(doc)
    ext.start_capture("s1")
    for text in ["", "   ", "ab", " a "]:
        container.append_child(caption_node(text))
    ext.process_pending()
    assert ext.buffer_size == 0
    container.append_child(caption_node("abc"))
    ext.process_pending()
    assert ext.buffer_size == 1


def test_threshold_flush_sends_all_ten_once():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    for i in range(10):
        container.append_child(caption_node(f"caption line {i}"))
    ext.process_pending()

    batches = _batches(emitted)
    assert len(batches) == 1
    assert [c.text for c in batches[0].captions] == [f"caption line {i}" for i in range(10)]
    assert ext.buffer_size == 0


def test_scenario_b_twelve_candidates_leave_two_for_stop():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    for i in range(12):
        container.append_child(caption_node(f"caption line {i}"))
    ext.process_pending()

    assert [len(b.captions) for b in _batches(emitted)] == [10]
    assert ext.buffer_size == 2

    ext.stop_capture()
    assert [len(b.captions) for b in _batches(emitted)] == [10, 2]
    assert [c.text for c in _batches(emitted)[1].captions] == ["caption line 10", "caption line 11"]


def test_stop_flushes_before_stop_notification():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    for i in range(3):
        container.append_child(caption_node(f"caption line {i}"))
    ext.process_pending()
    ext.stop_capture()

    assert [type(m) for m in emitted] == [CaptureStarted, CaptionData, CaptureStopped]
    assert len(emitted[1].captions) == 3
    assert emitted[2].session_id == "s1"


def test_stop_with_empty_buffer_emits_no_flush():
    doc, _ = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    ext.stop_capture()
    assert [type(m) for m in emitted] == [CaptureStarted, CaptureStopped]


def test_start_and_stop_are_idempotent():
    doc, _ = meeting_document()
    ext, emitted = _extractor(doc)
    ext.stop_capture()
    ext.start_capture("s1")
    ext.start_capture("s2")
    assert ext.session_id == "s1"
    ext.stop_capture()
    ext.stop_capture()
    assert [type(m) for m in emitted] == [CaptureStarted, CaptureStopped]
    assert ext.session_id is None
    assert not ext.is_capturing


def test_caption_event_fields_and_speaker():
    doc, container = meeting_document()
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    container.append_child(caption_node("Let us begin", speaker="Dana"))
    container.append_child(caption_node("Any questions"))
    ext.process_pending()
    ext.stop_capture()

    first, second = _batches(emitted)[0].captions
    assert first.speaker == "Dana"
    assert first.text == "Let us begin"
    assert first.platform == "teams"
    assert first.session_id == "s1"
    assert first.timestamp.endswith("Z")
    assert second.speaker is None


def test_character_data_update_yields_new_caption():
    doc, container = meeting_document()
    ext, _ = _extractor(doc)
    ext.start_capture("s1")
    line = caption_node("We shou")
    container.append_child(line)
    ext.process_pending()
    line.query_selector('[data-tid="closed-caption-text"]').set_text("We should ship it")
    ext.process_pending()
    assert ext.buffer_size == 2


def test_falls_back_to_document_then_rebinds_to_container():
    doc = Document(url="https://example.com")
    ext, emitted = _extractor(doc)
    ext.start_capture("s1")
    assert ext.container is None
    assert isinstance(emitted[0], CaptureStarted)

    container = Element("div", CONTAINER_ATTRS)
    doc.root.append_child(container)
    ext.process_pending()
    assert ext.container is container

    doc.root.append_child(Element("div", {"class": "banner"}, text="Recording started"))
    container.append_child(caption_node("Now we are live"))
    ext.process_pending()
    ext.stop_capture()

    texts = [c.text for b in _batches(emitted) for c in b.captions]
    assert texts == ["Now we are live"]


def test_time_based_flush_sends_single_caption():
    async def scenario():
        doc, container = meeting_document()
        ext, emitted = _extractor(doc, flush_interval=0.05)
        ext.start_capture("s1")
        container.append_child(caption_node("Only one line"))
        await asyncio.sleep(0.2)

        batches = _batches(emitted)
        assert len(batches) == 1
        assert [c.text for c in batches[0].captions] == ["Only one line"]
        assert ext.buffer_size == 0
        ext.stop_capture()
        assert len(_batches(emitted)) == 1

    asyncio.run(scenario())


def test_observer_task_follows_rebind():
    async def scenario():
        doc = Document()
        ext, emitted = _extractor(doc)
        ext.start_capture("s1")
        container = Element("div", CONTAINER_ATTRS)
        doc.root.append_child(container)
        await settle()
        assert ext.container is container

        container.append_child(caption_node("Picked up after rebind"))
        await settle()
        assert ext.buffer_size == 1
        ext.stop_capture()

    asyncio.run(scenario())


def test_default_flush_policy_from_settings():
    settings = Settings()
    assert settings.FLUSH_THRESHOLD == 10
    assert settings.FLUSH_INTERVAL_SECONDS == 5.0
    assert CaptionBuffer(on_flush=lambda batch: None).threshold == 10


def test_buffer_flush_is_atomic_and_ordered():
    flushed = []
    buffer = CaptionBuffer(on_flush=flushed.append, threshold=3)
    events = [CaptionEvent(text=f"line {i}", platform="teams", session_id="s") for i in range(4)]
    for e in events:
        buffer.push(e)
    assert flushed == [events[:3]]
    assert len(buffer) == 1
    assert buffer.flush() == events[3:]
    assert buffer.flush() == []
    assert len(flushed) == 2


def test_commands_and_status():
    doc, container = meeting_document()
    ext, _ = _extractor(doc)
    assert ext.handle_command(StartCapture(session_id="s9")) == {"success": True, "platform": "teams"}
    container.append_child(caption_node("status check"))
    ext.process_pending()
    assert ext.handle_command(GetStatus()) == {
        "isCapturing": True,
        "platform": "teams",
        "sessionId": "s9",
        "bufferSize": 1,
    }
    assert ext.handle_command(StopCapture()) == {"success": True}
    assert ext.status()["isCapturing"] is False


def test_meeting_detection_by_url():
    doc, _ = meeting_document("https://teams.microsoft.com/_#/meet/19:abc")
    ext, emitted = _extractor(doc)
    assert ext.detect_meeting() is True
    assert isinstance(emitted[0], MeetingDetected)
    assert emitted[0].url == doc.url

    other, _ = meeting_document("https://teams.microsoft.com/_#/chat")
    ext2, emitted2 = _extractor(other)
    assert ext2.detect_meeting() is False
    assert emitted2 == []


def test_emit_failure_does_not_escape():
    doc, container = meeting_document()

    def broken(message):
        raise RuntimeError("host gone")

    ext = CaptionExtractor(doc, emit=broken, flush_interval=60.0, flush_threshold=1)
    ext.start_capture("s1")
    container.append_child(caption_node("still fine"))
    ext.process_pending()
    ext.stop_capture()
    assert ext.buffer_size == 0

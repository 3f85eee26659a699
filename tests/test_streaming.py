"""Tests for SSE event framing and decoding."""
import json

from app.errors import ErrorCategory, ResearchAborted, ResearchError
from app.services import streaming
from app.services.streaming import SSEDecoder


def test_format_round_trips_through_decoder():
    event = streaming.status("Running queries", "parallel_queries", 20)
    decoded = SSEDecoder().feed(event.format())
    assert len(decoded) == 1
    assert decoded[0].event == "status"
    assert decoded[0].data == {"message": "Running queries", "step": "parallel_queries", "progress": 20}


def test_to_message_shape_for_event_source_response():
    message = streaming.preview({"field_proposals": []}).to_message()
    assert message["event"] == "preview"
    assert json.loads(message["data"]) == {"field_proposals": []}


def test_decoder_buffers_split_chunks():
    decoder = SSEDecoder()
    assert decoder.feed('event: status\ndata: {"progr') == []
    assert decoder.feed('ess": 40}\n') == []
    events = decoder.feed("\nevent: complete\ndata: {}\n\n")
    assert [e.event for e in events] == ["status", "complete"]
    assert events[0].data["progress"] == 40


def test_decoder_handles_crlf_split_across_chunks():
    decoder = SSEDecoder()
    assert decoder.feed('event: status\r\ndata: {"progress": 1}\r') == []
    events = decoder.feed("\n\r\n")
    assert len(events) == 1
    assert events[0].data == {"progress": 1}


def test_decoder_skips_comments_and_bad_json():
    decoder = SSEDecoder()
    events = decoder.feed(": ping\n\nevent: status\ndata: not-json\n\nevent: error\ndata: {\"message\": \"x\"}\n\n")
    assert [e.event for e in events] == ["error"]


def test_flush_returns_trailing_block():
    decoder = SSEDecoder()
    assert decoder.feed('event: preview\ndata: {"ok": true}') == []
    events = decoder.flush()
    assert events[0].event == "preview"
    assert events[0].data == {"ok": True}
    assert decoder.flush() == []


def test_error_from_research_error():
    exc = ResearchError(ErrorCategory.AUTH_ERROR, "Bad key", original_error="401")
    event = streaming.error_from_exception(exc)
    assert event.event.value == "error"
    assert event.data == {"message": "Bad key", "category": "AUTH_ERROR", "retryable": False, "originalError": "401"}


def test_error_from_abort_and_unknown():
    aborted = streaming.error_from_exception(ResearchAborted())
    assert aborted.data["category"] == "NETWORK_ERROR"
    assert aborted.data["retryable"] is False

    unknown = streaming.error_from_exception(KeyError("boom"))
    assert unknown.data["category"] == "UNKNOWN_ERROR"
    assert unknown.data["retryable"] is True
    assert unknown.data["originalError"] == "KeyError"

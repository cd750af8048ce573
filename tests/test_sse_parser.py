"""Tests for the incremental event-stream parser."""

from __future__ import annotations

from client.sse_parser import SSEParser, SSERecord


def test_single_record():
    parser = SSEParser()
    assert parser.feed('data: {"a":1}\n\n') == [SSERecord(data='{"a":1}')]


def test_record_split_across_chunks():
    parser = SSEParser()
    assert parser.feed("data: hel") == []
    assert parser.feed("lo\n") == []
    assert parser.feed("\n") == [SSERecord(data="hello")]


def test_multiple_records_in_one_chunk():
    parser = SSEParser()
    records = parser.feed("data: one\n\ndata: two\n\ndata: thr")
    assert [r.data for r in records] == ["one", "two"]
    assert [r.data for r in parser.feed("ee\n\n")] == ["three"]


def test_comments_ignored():
    parser = SSEParser()
    assert parser.feed(": connected\n\n: heartbeat\n\n") == []


def test_multiline_data_joined():
    parser = SSEParser()
    assert parser.feed("data: a\ndata: b\n\n")[0].data == "a\nb"


def test_event_id_and_retry_fields():
    parser = SSEParser()
    record = parser.feed("event: update\nid: 7\nretry: 3000\ndata: x\n\n")[0]
    assert record == SSERecord(data="x", event="update", id="7", retry=3000)


def test_crlf_line_endings():
    parser = SSEParser()
    assert parser.feed("data: a\r\n\r\n") == [SSERecord(data="a")]


def test_crlf_split_between_chunks():
    parser = SSEParser()
    assert parser.feed("data: a\r") == []
    assert parser.feed("\n\r\n") == [SSERecord(data="a")]


def test_reset_drops_partial_record():
    parser = SSEParser()
    parser.feed("data: stale")
    parser.reset()
    assert parser.feed("data: fresh\n\n") == [SSERecord(data="fresh")]

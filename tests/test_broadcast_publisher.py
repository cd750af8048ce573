"""Tests for the broadcast hub and the batching delta publisher."""

from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import ValidationError

from config.settings import Settings
from models.sse_events import CompleteEvent, DeltaEvent, PhaseCompleteBroadcast, parse_stream_event
from services.broadcast import InMemoryBroadcastHub, session_channel
from services.delta_publisher import DeltaPublisher


async def _drain(sub) -> list[dict]:
    out = []
    while (payload := await sub.get(timeout=0.01)) is not None:
        out.append(json.loads(payload))
    return out


# ── Hub ──────────────────────────────────────────────────────


class TestInMemoryHub:
    @pytest.mark.asyncio
    async def test_fan_out_to_all_subscribers(self):
        hub = InMemoryBroadcastHub()
        a = await hub.subscribe("drill:s1")
        b = await hub.subscribe("drill:s1")
        other = await hub.subscribe("drill:s2")
        await hub.publish("drill:s1", CompleteEvent(message_id="m1"))
        assert json.loads(await a.get(timeout=0.1)) == {"type": "complete", "messageId": "m1"}
        assert json.loads(await b.get(timeout=0.1)) == {"type": "complete", "messageId": "m1"}
        assert await other.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        hub = InMemoryBroadcastHub()
        async with await hub.subscribe("drill:s1"):
            assert hub.subscriber_count("drill:s1") == 1
        assert hub.subscriber_count("drill:s1") == 0

    def test_channel_name(self):
        assert session_channel("drill-abc") == "drill:drill-abc"


# ── Stream events ────────────────────────────────────────────


class TestStreamEvents:
    def test_parse_each_variant(self):
        assert isinstance(parse_stream_event('{"type":"delta","messageId":"m","content":"x"}'), DeltaEvent)
        assert isinstance(parse_stream_event({"type": "complete", "messageId": "m"}), CompleteEvent)
        assert isinstance(parse_stream_event('{"type":"phase-complete","phaseId":"p"}'), PhaseCompleteBroadcast)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_stream_event('{"type":"error"}')


# ── Delta publisher ──────────────────────────────────────────


class TestDeltaPublisher:
    @pytest.mark.asyncio
    async def test_batches_fast_tokens(self):
        hub = InMemoryBroadcastHub()
        sub = await hub.subscribe(session_channel("s1"))
        tokens = [f"tok{i} " for i in range(60)]

        async with DeltaPublisher(hub, "s1", flush_interval_ms=20) as publisher:
            for token in tokens:
                await publisher.push("m1", token)
                await asyncio.sleep(0.001)
            await publisher.complete("m1")

        events = await _drain(sub)
        deltas = [e for e in events if e["type"] == "delta"]
        completes = [e for e in events if e["type"] == "complete"]
        assert 0 < len(deltas) < len(tokens)
        assert "".join(d["content"] for d in deltas) == "".join(tokens)
        assert completes == [{"type": "complete", "messageId": "m1"}]
        assert events[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_complete_flushes_pending_text_first(self):
        hub = InMemoryBroadcastHub()
        sub = await hub.subscribe(session_channel("s1"))
        publisher = DeltaPublisher(hub, "s1", flush_interval_ms=10_000)
        await publisher.push("m1", "Hello ")
        await publisher.push("m1", "there")
        await publisher.complete("m1")

        assert await _drain(sub) == [
            {"type": "delta", "messageId": "m1", "content": "Hello there"},
            {"type": "complete", "messageId": "m1"},
        ]
        assert publisher.delta_count == 1
        assert publisher.event_count == 2

    @pytest.mark.asyncio
    async def test_phase_complete_is_not_batched(self):
        hub = InMemoryBroadcastHub()
        sub = await hub.subscribe(session_channel("s1"))
        async with DeltaPublisher(hub, "s1", flush_interval_ms=10_000) as publisher:
            await publisher.phase_complete("phase-1")
            assert json.loads(await sub.get(timeout=0.1)) == {"type": "phase-complete", "phaseId": "phase-1"}

    @pytest.mark.asyncio
    async def test_new_message_flushes_previous(self):
        hub = InMemoryBroadcastHub()
        sub = await hub.subscribe(session_channel("s1"))
        publisher = DeltaPublisher(hub, "s1", flush_interval_ms=10_000)
        await publisher.push("m1", "first")
        await publisher.push("m2", "second")
        await publisher.aclose()
        events = await _drain(sub)
        assert [(e["messageId"], e["content"]) for e in events] == [("m1", "first"), ("m2", "second")]

    @pytest.mark.asyncio
    async def test_aclose_flushes(self):
        hub = InMemoryBroadcastHub()
        sub = await hub.subscribe(session_channel("s1"))
        async with DeltaPublisher(hub, "s1", flush_interval_ms=10_000) as publisher:
            await publisher.push("m1", "tail")
        assert await _drain(sub) == [{"type": "delta", "messageId": "m1", "content": "tail"}]

    @pytest.mark.asyncio
    async def test_empty_push_ignored(self):
        hub = InMemoryBroadcastHub()
        publisher = DeltaPublisher(hub, "s1", flush_interval_ms=50)
        await publisher.push("m1", "")
        await publisher.flush()
        assert publisher.event_count == 0

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_text(self):
        class FlakyHub(InMemoryBroadcastHub):
            fail_next = True

            async def publish(self, channel, event):
                if self.fail_next:
                    self.fail_next = False
                    raise ConnectionError("broadcast unavailable")
                await super().publish(channel, event)

        hub = FlakyHub()
        sub = await hub.subscribe(session_channel("s1"))
        publisher = DeltaPublisher(hub, "s1", flush_interval_ms=10_000)
        await publisher.push("m1", "Hello ")
        with pytest.raises(ConnectionError):
            await publisher.flush()
        await publisher.push("m1", "world")
        await publisher.complete("m1")

        events = await _drain(sub)
        assert "".join(e["content"] for e in events if e["type"] == "delta") == "Hello world"
        assert events[-1] == {"type": "complete", "messageId": "m1"}

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            DeltaPublisher(InMemoryBroadcastHub(), "s1", flush_interval_ms=0)


class TestFlushCadenceSetting:
    def test_interval_above_channel_rate_rejected(self):
        with pytest.raises(ValidationError):
            Settings(delta_flush_interval_ms=10, channel_max_rate=50)

    def test_default_cadence_valid(self):
        settings = Settings()
        assert settings.delta_flush_interval_ms * settings.channel_max_rate >= 1000

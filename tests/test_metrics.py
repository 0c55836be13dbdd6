"""Tests for messaging metrics counters."""

import pytest

from conftest import FakeChannel, ident
from luvora.messaging.events import ChannelEvent, EventKind
from luvora.messaging.metrics import MessagingMetrics
from luvora.messaging.types import ChannelConfig, Platform


class TestMessagingMetrics:
    def test_empty_platform_reports_full_success(self):
        m = MessagingMetrics().get_platform_metrics(Platform.DISCORD)
        assert m["sent"] == 0
        assert m["failed"] == 0
        assert m["success_rate"] == 100.0
        assert m["avg_latency_ms"] == 0.0
        assert m["top_errors"] == []

    def test_success_rate_and_latency(self):
        metrics = MessagingMetrics()
        metrics.record_sent(Platform.TELEGRAM, 100)
        metrics.record_sent(Platform.TELEGRAM, 200)
        metrics.record_sent(Platform.TELEGRAM, 300)
        metrics.record_failed(Platform.TELEGRAM, "timeout", 400)

        m = metrics.get_platform_metrics(Platform.TELEGRAM)
        assert m["sent"] == 3
        assert m["failed"] == 1
        assert m["success_rate"] == 75.0
        assert m["avg_latency_ms"] == 250.0

    def test_top_errors_limited_to_five(self):
        metrics = MessagingMetrics()
        for i, category in enumerate(["a", "b", "c", "d", "e", "f"]):
            for _ in range(i + 1):
                metrics.record_failed(Platform.WHATSAPP, category)

        top = metrics.get_platform_metrics(Platform.WHATSAPP)["top_errors"]
        assert len(top) == 5
        assert top[0] == {"error": "f", "count": 6}
        assert "a" not in [t["error"] for t in top]

    def test_summary_aggregates_platforms(self):
        metrics = MessagingMetrics()
        metrics.record_sent(Platform.TELEGRAM)
        metrics.record_failed(Platform.DISCORD, "forbidden")

        body = metrics.get_metrics()
        assert body["summary"]["total_sent"] == 1
        assert body["summary"]["total_failed"] == 1
        assert body["summary"]["overall_success_rate"] == 50.0
        assert set(body["platforms"]) == {"telegram", "whatsapp", "discord"}

    def test_handle_event_ignores_lifecycle_events(self):
        metrics = MessagingMetrics()
        metrics.handle_event(ChannelEvent(EventKind.READY, ident("u1")))
        assert metrics.get_metrics()["summary"]["total_sent"] == 0

    @pytest.mark.asyncio
    async def test_adapter_sends_feed_counters(self, events, settings, metrics):
        ch = FakeChannel(ident("u1"), ChannelConfig(bot_token="t"), events, settings)
        await ch.start()
        await ch.send("1", "hello")
        with pytest.raises(Exception):
            await ch.send("1", "boom")

        m = metrics.get_platform_metrics(Platform.TELEGRAM)
        assert m["sent"] == 1
        assert m["failed"] == 1
        assert m["top_errors"] == [{"error": "network", "count": 1}]

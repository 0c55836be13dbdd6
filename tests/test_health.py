"""Tests for messaging health classification."""

import time

import pytest

from conftest import ident
from luvora.messaging.errors import ConnectionFailed
from luvora.messaging.health import HealthReport, HealthStatus, MessagingHealth
from luvora.messaging.types import ChannelConfig, Platform


@pytest.fixture
def health(registry, pool, settings):
    return MessagingHealth(registry, pool, settings)


class TestHealthStatus:
    def test_http_status_mapping(self):
        assert HealthStatus.HEALTHY.http_status == 200
        assert HealthStatus.DEGRADED.http_status == 207
        assert HealthStatus.UNHEALTHY.http_status == 503

    def test_uninitialized_is_unhealthy(self, health):
        assert health.classify() is HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_initialized_idle_is_healthy(self, registry, health):
        await registry.initialize()
        report = health.get_health_status()
        assert report.status is HealthStatus.HEALTHY
        assert report.issues == []
        assert set(report.connections) == {"telegram", "whatsapp", "discord"}

    @pytest.mark.asyncio
    async def test_full_pool_is_degraded(self, registry, health, config):
        await registry.initialize()
        await registry.start_channel(ident("a"), config)
        await registry.start_channel(ident("b"), config)

        report = health.get_health_status()
        assert report.status is HealthStatus.DEGRADED
        assert report.connections["telegram"]["running"] == 2
        assert any("telegram connection pool" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_fresh_error_within_grace_is_not_an_issue(self, registry, health):
        await registry.initialize()
        await registry.start_channel(ident("u1"), ChannelConfig(bot_token="bad"))

        report = health.get_health_status()
        assert report.connections["telegram"]["errored"] == 1
        assert report.issues == []

    @pytest.mark.asyncio
    async def test_stale_error_is_reported(self, registry, health, config):
        await registry.initialize()
        result = await registry.start_channel(ident("u1"), config)
        result.channel._fail(ConnectionFailed("gateway lost", Platform.TELEGRAM))
        result.channel.error_since = time.time() - 600

        report = health.get_health_status()
        assert report.status is HealthStatus.DEGRADED
        assert any("gateway lost" in issue for issue in report.issues)

    def test_report_to_dict(self):
        report = HealthReport(
            initialized=True,
            connections={"telegram": {"current": 3, "max": 10, "utilization": 0.3}},
        )
        data = report.to_dict()
        assert data["status"] == "healthy"
        assert data["total_channels"] == 3

"""Tests for the messaging HTTP routes."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import FlakyStore, fake_factory, ident
from luvora.main import app
from luvora.messaging.service import MessagingService
from luvora.messaging.store import InMemoryConfigStore
from luvora.messaging.types import ChannelConfig, Platform


@pytest.fixture
def service(settings):
    return MessagingService(settings, channel_factory=fake_factory)


@pytest_asyncio.fixture
async def client(service):
    """Async test client with the service installed the way the lifespan does it."""
    app.state.messaging = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await service.shutdown()
    del app.state.messaging


class TestHealthRoutes:
    @pytest.mark.asyncio
    async def test_uninitialized_is_503(self, client):
        resp = await client.get("/api/health/messaging")
        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "unhealthy"
        assert "timestamp" in body
        assert "no-cache" in resp.headers["cache-control"]

    @pytest.mark.asyncio
    async def test_initialized_is_200(self, client, service):
        await service.initialize()
        resp = await client.get("/api/health/messaging")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["messaging"]["connections"]["whatsapp"]["max"] == 2

    @pytest.mark.asyncio
    async def test_full_pool_is_207(self, client, service):
        await service.initialize()
        config = ChannelConfig(bot_token="t")
        await service.registry.start_channel(ident("a", Platform.DISCORD), config)
        await service.registry.start_channel(ident("b", Platform.DISCORD), config)

        resp = await client.get("/api/health/messaging")
        assert resp.status_code == 207
        assert resp.json()["messaging"]["issues"]

    @pytest.mark.asyncio
    async def test_metrics(self, client, service):
        service.metrics.record_sent(Platform.TELEGRAM, 10)
        resp = await client.get("/api/health/messaging/metrics")
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["total_sent"] == 1
        assert body["platforms"]["telegram"]["avg_latency_ms"] == 10.0

    @pytest.mark.asyncio
    async def test_without_service_is_503(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/api/health/messaging")
        assert resp.status_code == 503


class TestChannelRoutes:
    @pytest.mark.asyncio
    async def test_list_channels(self, client, service):
        await service.registry.start_channel(ident("u1"), ChannelConfig(bot_token="t"))
        resp = await client.get("/api/messaging/channels")
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["channels"][0]["state"] == "connected"

    @pytest.mark.asyncio
    async def test_initialize_retries_failed_boot(self, client, service):
        store = FlakyStore(outages=2)
        store.put(ident("u1"), ChannelConfig(bot_token="t"))
        assert await service.initialize_with_retry(store, attempts=1, base_delay=0) is False
        assert (await client.get("/api/health/messaging")).status_code == 503

        resp = await client.post("/api/messaging/initialize")
        assert resp.status_code == 503
        assert "config store unreachable" in resp.json()["detail"]

        resp = await client.post("/api/messaging/initialize")
        assert resp.status_code == 200
        assert resp.json() == {"initialized": True, "started": True}
        assert service.registry.is_channel_running(ident("u1"))
        assert (await client.get("/api/health/messaging")).status_code == 200

        resp = await client.post("/api/messaging/initialize")
        assert resp.json() == {"initialized": True, "started": False}

    @pytest.mark.asyncio
    async def test_reload_requires_store(self, client):
        resp = await client.post("/api/messaging/users/u1/reload")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_reload_user(self, client, service):
        store = InMemoryConfigStore()
        store.put(ident("u1", Platform.DISCORD), ChannelConfig(bot_token="t"))
        await service.initialize(store)

        resp = await client.post("/api/messaging/users/u1/reload")
        assert resp.status_code == 200
        results = resp.json()["results"]
        assert len(results) == 1
        assert results[0]["success"] is True

    @pytest.mark.asyncio
    async def test_setup_streams_sse(self, client, service):
        store = InMemoryConfigStore()
        store.put(ident("u1"), ChannelConfig(bot_token="t"))
        await service.initialize(store)
        # The running bot is reused; pairing reports it as already linked
        resp = await client.get("/api/messaging/telegram/setup", params={"user_id": "u1"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert "event: ready" in resp.text
        assert '"already_linked": true' in resp.text

    @pytest.mark.asyncio
    async def test_setup_unknown_platform(self, client):
        resp = await client.get("/api/messaging/sms/setup", params={"user_id": "u1"})
        assert resp.status_code == 422

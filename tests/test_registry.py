"""Tests for the channel registry: idempotence, capacity and slot accounting."""

import asyncio
import random

import pytest

from conftest import FakeChannel, ident
from luvora.messaging.errors import CapacityExceeded, ConfigurationInvalid, ConnectionFailed
from luvora.messaging.registry import ChannelRegistry
from luvora.messaging.store import InMemoryConfigStore
from luvora.messaging.types import TERMINAL_STATES, ChannelConfig, ChannelState, Platform


def non_terminal(registry, platform):
    return sum(1 for ch in registry.channels(platform) if ch.state.value not in ("stopped", "error"))


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_returns_connected_channel(self, registry, pool, config):
        result = await registry.start_channel(ident("u1"), config)
        assert result.ok
        assert result.linked
        assert not result.reused
        assert registry.is_channel_running(ident("u1"))
        assert pool.state(Platform.TELEGRAM).current == 1

    @pytest.mark.asyncio
    async def test_second_start_reuses_handle(self, registry, pool, config):
        first = await registry.start_channel(ident("u1"), config)
        second = await registry.start_channel(ident("u1"), config)
        assert second.ok and second.reused
        assert second.channel is first.channel
        assert pool.state(Platform.TELEGRAM).current == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_build_one_handle(self, pool, events, settings, config):
        built = []

        def factory(identity, cfg, bus, s):
            ch = FakeChannel(identity, cfg, bus, s, connect_delay=0.01)
            built.append(ch)
            return ch

        registry = ChannelRegistry(pool, events, settings, channel_factory=factory)
        results = await asyncio.gather(*(registry.start_channel(ident("u1"), config) for _ in range(5)))

        assert all(r.ok for r in results)
        assert len(built) == 1
        assert len({id(r.channel) for r in results}) == 1
        assert pool.state(Platform.TELEGRAM).current == 1

    @pytest.mark.asyncio
    async def test_stop_releases_slot(self, registry, pool, config):
        await registry.start_channel(ident("u1"), config)
        result = await registry.stop_channel(ident("u1"))
        assert result.ok
        assert result.channel.state is ChannelState.STOPPED
        assert registry.get_channel(ident("u1")) is None
        assert pool.state(Platform.TELEGRAM).current == 0

    @pytest.mark.asyncio
    async def test_stop_absent_identity_is_success(self, registry, pool):
        result = await registry.stop_channel(ident("nobody"))
        assert result.ok
        assert result.channel is None
        assert pool.state(Platform.TELEGRAM).underflows == 0

    @pytest.mark.asyncio
    async def test_double_stop_never_underflows(self, registry, pool, config):
        await registry.start_channel(ident("u1"), config)
        await registry.stop_channel(ident("u1"))
        await registry.stop_channel(ident("u1"))
        assert pool.state(Platform.TELEGRAM).current == 0
        assert pool.state(Platform.TELEGRAM).underflows == 0

    @pytest.mark.asyncio
    async def test_start_stop_storm_keeps_counts_consistent(self, registry, pool, config):
        ops = []
        for i in range(20):
            identity = ident(f"u{i % 3}")
            ops.append(registry.start_channel(identity, config))
            ops.append(registry.stop_channel(identity))
        await asyncio.gather(*ops)

        for platform in Platform:
            assert pool.state(platform).current == non_terminal(registry, platform)
            assert pool.state(platform).underflows == 0

    @pytest.mark.asyncio
    async def test_storm_on_one_identity_never_has_two_live_handles(self, pool, events, settings, config):
        built = []
        peak = 0

        def factory(identity, cfg, bus, s):
            ch = FakeChannel(identity, cfg, bus, s, connect_delay=0.002)
            built.append(ch)
            return ch

        def live():
            return sum(1 for ch in built if ch.state not in TERMINAL_STATES)

        def track(event):
            nonlocal peak
            peak = max(peak, live())

        events.add_listener(track)
        registry = ChannelRegistry(pool, events, settings, channel_factory=factory)
        identity = ident("storm")

        async def caller(seed):
            rng = random.Random(seed)
            for _ in range(10):
                if rng.random() < 0.5:
                    await registry.start_channel(identity, config)
                else:
                    await registry.stop_channel(identity)
                await asyncio.sleep(rng.random() * 0.003)

        await asyncio.gather(*(caller(seed) for seed in range(10)))

        assert len(built) > 1
        assert peak == 1
        assert live() == pool.state(Platform.TELEGRAM).current
        assert live() == non_terminal(registry, Platform.TELEGRAM)
        assert pool.state(Platform.TELEGRAM).underflows == 0

    @pytest.mark.asyncio
    async def test_identity_locks_are_pruned(self, registry, config):
        await asyncio.gather(
            registry.start_channel(ident("u1"), config),
            registry.stop_channel(ident("u1")),
            registry.start_channel(ident("u2"), config),
        )
        await registry.stop_channel(ident("u2"))
        await registry.stop_channel(ident("nobody"))
        assert registry._locks == {}

    @pytest.mark.asyncio
    async def test_disabled_config_rejected_without_slot(self, registry, pool):
        result = await registry.start_channel(ident("u1"), ChannelConfig(enabled=False))
        assert not result.ok
        assert isinstance(result.error, ConfigurationInvalid)
        assert result.error.code == "DISABLED"
        assert pool.state(Platform.TELEGRAM).current == 0

    @pytest.mark.asyncio
    async def test_factory_failure_releases_slot(self, pool, events, settings, config):
        def factory(*args):
            raise RuntimeError("no adapter")

        registry = ChannelRegistry(pool, events, settings, channel_factory=factory)
        result = await registry.start_channel(ident("u1"), config)
        assert not result.ok
        assert isinstance(result.error, ConfigurationInvalid)
        assert pool.state(Platform.TELEGRAM).current == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_invalid_token_releases_slot(self, registry, pool):
        before = pool.state(Platform.TELEGRAM).current
        result = await registry.start_channel(ident("u1"), ChannelConfig(bot_token="bad"))

        assert not result.ok
        assert isinstance(result.error, ConfigurationInvalid)
        assert result.channel.state is ChannelState.ERROR
        assert pool.state(Platform.TELEGRAM).current == before
        # Errored handle stays visible to status and health
        assert registry.get_channel(ident("u1")) is result.channel

    @pytest.mark.asyncio
    async def test_errored_handle_is_retired_on_next_start(self, registry, pool, config):
        failed = await registry.start_channel(ident("u1"), ChannelConfig(bot_token="bad"))
        result = await registry.start_channel(ident("u1"), config)

        assert result.ok
        assert result.channel is not failed.channel
        assert failed.channel.state is ChannelState.STOPPED
        assert pool.state(Platform.TELEGRAM).current == 1

    @pytest.mark.asyncio
    async def test_runtime_error_frees_slot_once(self, registry, pool, config):
        result = await registry.start_channel(ident("u1"), config)
        result.channel._fail(ConnectionFailed("gateway lost", Platform.TELEGRAM))

        assert pool.state(Platform.TELEGRAM).current == 0
        assert not registry.is_channel_running(ident("u1"))

        await registry.wait_for_teardowns()
        assert result.channel.disconnects == 1
        assert result.channel.state is ChannelState.ERROR

        await registry.stop_channel(ident("u1"))
        assert pool.state(Platform.TELEGRAM).current == 0
        assert pool.state(Platform.TELEGRAM).underflows == 0


class TestCapacity:
    @pytest.mark.asyncio
    async def test_full_platform_rejects_while_other_platform_starts(self, registry, pool, config):
        assert (await registry.start_channel(ident("a", Platform.DISCORD), config)).ok
        assert (await registry.start_channel(ident("b", Platform.DISCORD), config)).ok

        third, other = await asyncio.gather(
            registry.start_channel(ident("c", Platform.DISCORD), config),
            registry.start_channel(ident("d", Platform.TELEGRAM), config),
        )

        assert not third.ok
        assert isinstance(third.error, CapacityExceeded)
        assert third.channel is None
        assert other.ok
        assert pool.state(Platform.DISCORD).current == 2
        assert pool.state(Platform.TELEGRAM).current == 1

    @pytest.mark.asyncio
    async def test_slot_frees_after_stop(self, registry, config):
        await registry.start_channel(ident("a", Platform.DISCORD), config)
        await registry.start_channel(ident("b", Platform.DISCORD), config)
        await registry.stop_channel(ident("a", Platform.DISCORD))
        assert (await registry.start_channel(ident("c", Platform.DISCORD), config)).ok


class TestBulkLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_starts_enabled_channels(self, registry, config):
        store = InMemoryConfigStore()
        store.put(ident("u1"), config)
        store.put(ident("u2", Platform.WHATSAPP), ChannelConfig())
        store.put(ident("u3"), ChannelConfig(enabled=False, bot_token="x"))

        await registry.initialize(store)

        assert registry.initialized
        assert registry.is_channel_running(ident("u1"))
        assert registry.get_channel(ident("u2", Platform.WHATSAPP)).state is ChannelState.LINKING
        assert registry.get_channel(ident("u3")) is None

    @pytest.mark.asyncio
    async def test_initialize_survives_individual_failures(self, registry, config):
        store = InMemoryConfigStore()
        store.put(ident("bad"), ChannelConfig(bot_token="bad"))
        store.put(ident("good"), config)

        await registry.initialize(store)
        assert registry.initialized
        assert registry.is_channel_running(ident("good"))

    @pytest.mark.asyncio
    async def test_reload_user_channels(self, registry, config):
        store = InMemoryConfigStore()
        store.put(ident("u1"), config)
        first = await registry.start_channel(ident("u1"), config)

        results = await registry.reload_user_channels("u1", store)

        assert len(results) == 1 and results[0].ok
        assert results[0].channel is not first.channel
        assert first.channel.state is ChannelState.STOPPED

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, registry, pool, config):
        await registry.initialize()
        for i in range(2):
            await registry.start_channel(ident(f"u{i}"), config)
            await registry.start_channel(ident(f"u{i}", Platform.WHATSAPP), config)

        await registry.shutdown()

        assert not registry.initialized
        assert registry.channels() == []
        for platform in Platform:
            assert pool.state(platform).current == 0

    @pytest.mark.asyncio
    async def test_status_lists_channels(self, registry, config):
        await registry.start_channel(ident("u1"), config)
        status = registry.status()
        assert status[0]["user_id"] == "u1"
        assert status[0]["state"] == "connected"

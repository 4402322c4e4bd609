"""
Tests for the in-memory state store.

Covers TTL boundaries, single-use retrieval and predicate deletion.
"""

import asyncio

import pytest

from connect_core.errors import StateStoreUnavailable
from connect_core.services.state_store import NOT_FOUND, InMemoryStateStore


class TestTakeOnce:
    """Single-use retrieval semantics."""

    @pytest.mark.asyncio
    async def test_value_returned_once(self, fake_clock):
        """A stored value can be taken exactly once."""
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("abc", {"platform": "QUICKBOOKS"})

        assert await store.take_once("abc") == {"platform": "QUICKBOOKS"}
        assert await store.take_once("abc") is NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_key_not_found(self, fake_clock):
        store = InMemoryStateStore(clock=fake_clock)
        assert await store.take_once("missing") is NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_found_is_falsy(self):
        assert not NOT_FOUND

    @pytest.mark.asyncio
    async def test_put_replaces_existing_entry(self, fake_clock):
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("abc", "first")
        await store.put("abc", "second")

        assert len(store) == 1
        assert await store.take_once("abc") == "second"

    @pytest.mark.asyncio
    async def test_concurrent_takes_only_one_wins(self, fake_clock):
        """Racing callers cannot both receive the same value."""
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("abc", "value")

        results = await asyncio.gather(*(store.take_once("abc") for _ in range(10)))

        assert results.count("value") == 1
        assert results.count(NOT_FOUND) == 9


class TestExpiry:
    """TTL boundaries with an injected clock."""

    @pytest.mark.asyncio
    async def test_found_just_before_ttl(self, fake_clock):
        store = InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)
        await store.put("abc", "value")
        fake_clock.advance(599)

        assert await store.take_once("abc") == "value"

    @pytest.mark.asyncio
    async def test_found_exactly_at_ttl(self, fake_clock):
        """An entry exactly TTL seconds old is still valid."""
        store = InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)
        await store.put("abc", "value")
        fake_clock.advance(600)

        assert await store.take_once("abc") == "value"

    @pytest.mark.asyncio
    async def test_not_found_after_ttl(self, fake_clock):
        store = InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)
        await store.put("abc", "value")
        fake_clock.advance(601)

        assert await store.take_once("abc") is NOT_FOUND

    @pytest.mark.asyncio
    async def test_per_entry_ttl_overrides_default(self, fake_clock):
        store = InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)
        await store.put("short", "value", ttl_seconds=10)
        fake_clock.advance(11)

        assert await store.take_once("short") is NOT_FOUND

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, fake_clock):
        store = InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)
        await store.put("old", "value")
        fake_clock.advance(400)
        await store.put("new", "value")
        fake_clock.advance(300)

        removed = await store.sweep()

        assert removed == 1
        assert len(store) == 1
        assert await store.take_once("new") == "value"


class TestDeleteWhere:
    @pytest.mark.asyncio
    async def test_deletes_matching_entries(self, fake_clock):
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("a", "QUICKBOOKS")
        await store.put("b", "HUBSPOT")
        await store.put("c", "QUICKBOOKS")

        removed = await store.delete_where(lambda _k, v: v == "QUICKBOOKS")

        assert removed == 2
        assert await store.take_once("a") is NOT_FOUND
        assert await store.take_once("b") == "HUBSPOT"

    @pytest.mark.asyncio
    async def test_no_match_removes_nothing(self, fake_clock):
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("a", "QUICKBOOKS")

        assert await store.delete_where(lambda _k, v: False) == 0
        assert len(store) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_closed_store_is_unavailable(self, fake_clock):
        store = InMemoryStateStore(clock=fake_clock)
        await store.put("abc", "value")
        await store.close()

        with pytest.raises(StateStoreUnavailable):
            await store.take_once("abc")
        with pytest.raises(StateStoreUnavailable):
            await store.put("abc", "value")

    @pytest.mark.asyncio
    async def test_sweeper_start_and_close(self, fake_clock):
        """The background sweeper is cancelled cleanly on close."""
        store = InMemoryStateStore(clock=fake_clock)
        store.start_sweeper(interval_seconds=0.01)
        await store.put("abc", "value", ttl_seconds=1)
        fake_clock.advance(5)

        await asyncio.sleep(0.05)
        assert len(store) == 0

        await store.close()
        assert store._sweeper_task is None

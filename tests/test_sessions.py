"""Tests for concierge.sessions: TTL, consume-once and the sweeper."""

import asyncio

import pytest

from concierge.errors import SessionExpired
from concierge.sessions import SessionMode, SessionStore


@pytest.fixture
def store(clock):
    return SessionStore(ttl=300, clock=clock)


class TestSessionStore:
    """Test session lifecycle."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        await store.put("C1", SessionMode.AWAITING_AUDIO, {"format": "srt"})
        session = await store.get("C1")

        assert session.mode == SessionMode.AWAITING_AUDIO
        assert session.params == {"format": "srt"}
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_put_replaces(self, store, clock):
        await store.put("C1", SessionMode.AWAITING_AUDIO, {"format": "srt"})
        clock.advance(200)
        await store.put("C1", SessionMode.AWAITING_AUDIO, {"format": "vtt"})
        clock.advance(200)

        session = await store.get("C1")
        assert session.params == {"format": "vtt"}
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_live_just_before_ttl(self, store, clock):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        clock.advance(299.9)
        assert await store.get("C1") is not None

    @pytest.mark.asyncio
    async def test_expired_raises_once(self, store, clock):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        clock.advance(301)

        with pytest.raises(SessionExpired):
            await store.get("C1")
        assert await store.get("C1") is None
        assert store.get_stats()["expired"] == 1

    @pytest.mark.asyncio
    async def test_expiry_at_exact_ttl(self, store, clock):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        clock.advance(300)
        with pytest.raises(SessionExpired):
            await store.get("C1")

    @pytest.mark.asyncio
    async def test_consume_once(self, store):
        await store.put("C1", SessionMode.AWAITING_AUDIO, {"language": "es"})

        first = await store.consume("C1", SessionMode.AWAITING_AUDIO)
        second = await store.consume("C1", SessionMode.AWAITING_AUDIO)

        assert first.params == {"language": "es"}
        assert second is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_consume_wrong_mode_leaves_session(self, store):
        await store.put("C1", SessionMode.IDLE)
        assert await store.consume("C1", SessionMode.AWAITING_AUDIO) is None
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_consume_expired(self, store, clock):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        clock.advance(400)
        with pytest.raises(SessionExpired):
            await store.consume("C1", SessionMode.AWAITING_AUDIO)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_concurrent_consume_single_winner(self, store):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        results = await asyncio.gather(
            *(store.consume("C1", SessionMode.AWAITING_AUDIO) for _ in range(5))
        )
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_cancel(self, store):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        assert await store.cancel("C1") is not None
        assert await store.cancel("C1") is None
        assert store.get_stats()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_conversations_are_independent(self, store):
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        await store.put("C2", SessionMode.AWAITING_AUDIO)
        await store.cancel("C1")
        assert await store.get("C2") is not None


class TestSweep:
    """Test expiry sweeping."""

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, store, clock):
        await store.put("old", SessionMode.AWAITING_AUDIO)
        clock.advance(250)
        await store.put("new", SessionMode.AWAITING_AUDIO)
        clock.advance(100)

        assert await store.sweep() == 1
        assert await store.get("old") is None
        assert await store.get("new") is not None

    @pytest.mark.asyncio
    async def test_background_sweeper(self, clock):
        store = SessionStore(ttl=300, clock=clock)
        await store.put("C1", SessionMode.AWAITING_AUDIO)
        clock.advance(301)

        store.start_sweeper(interval=0.01)
        assert store.get_stats()["sweeper_running"] is True
        for _ in range(50):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
        await store.stop_sweeper()

        assert len(store) == 0
        assert store.get_stats()["sweeper_running"] is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self, store):
        await store.stop_sweeper()
        assert store.get_stats()["sweeper_running"] is False

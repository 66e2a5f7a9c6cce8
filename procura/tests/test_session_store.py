"""
Tests for the negotiation conversation cache.
"""
import pytest

from procura.services.session_store import CachedConversation, ConversationCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def conversation(session_id: int) -> CachedConversation:
    return CachedConversation(session_id=session_id, vendor_name=f"Vendor {session_id}")


class TestConversationCache:
    def test_put_and_get(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.put(conversation(1))
        assert cache.get(1).vendor_name == "Vendor 1"
        assert len(cache) == 1

    def test_missing_session(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        assert cache.get(42) is None

    def test_entry_expires_after_ttl(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.put(conversation(1))
        clock.now += 61
        assert cache.get(1) is None
        assert len(cache) == 0

    def test_least_recently_used_is_evicted(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=2, clock=clock)
        cache.put(conversation(1))
        cache.put(conversation(2))
        cache.get(1)  # 2 is now least recently used
        cache.put(conversation(3))
        assert cache.get(2) is None
        assert cache.get(1) is not None
        assert cache.get(3) is not None

    def test_append_to_cached_transcript(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.put(conversation(1))
        assert cache.append(1, "VENDOR", "Best we can do is 95,000")
        assert cache.get(1).transcript == [("VENDOR", "Best we can do is 95,000")]

    def test_append_refreshes_ttl(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.put(conversation(1))
        clock.now += 50
        cache.append(1, "BUYER", "Can you reach 90,000?")
        clock.now += 50
        assert cache.get(1) is not None

    def test_append_to_uncached_session(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        assert cache.append(7, "BUYER", "hello") is False

    def test_evict_and_clear(self, clock):
        cache = ConversationCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.put(conversation(1))
        cache.put(conversation(2))
        cache.evict(1)
        cache.evict(99)
        assert cache.get(1) is None
        cache.clear()
        assert len(cache) == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ConversationCache(ttl_seconds=60, max_entries=0)

"""
In-process cache of live conversations.

Negotiation entries are only a cache: every one can be rebuilt from the
database, and callers commit before they touch it. Chat sessions live here
and nowhere else. Any object with a session_id and a transcript list can
be stored. Entries expire after a TTL and the least recently used entry
is evicted once the cache is full.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, List, Optional, Tuple


@dataclass
class CachedConversation:
    session_id: int
    vendor_name: str
    transcript: List[Tuple[str, str]] = field(default_factory=list)  # (role, content)
    precedents: List[str] = field(default_factory=list)


class ConversationCache:
    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            stored_at, conversation = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[session_id]
                return None
            self._entries.move_to_end(session_id)
            return conversation

    def put(self, conversation: Any) -> None:
        with self._lock:
            self._entries[conversation.session_id] = (self._clock(), conversation)
            self._entries.move_to_end(conversation.session_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def append(self, session_id: Hashable, role: str, content: str) -> bool:
        """Append to a cached transcript. Returns False when the session is not cached."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return False
            stored_at, conversation = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[session_id]
                return False
            conversation.transcript.append((role, content))
            self._entries[session_id] = (self._clock(), conversation)
            self._entries.move_to_end(session_id)
            return True

    def evict(self, session_id: Hashable) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

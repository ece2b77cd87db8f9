import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 256


class AnalysisCache:
    """
    In-process cache of media analyses, keyed by asset content fingerprint.

    Entries expire `ttl_seconds` after they are written and the cache holds at
    most `max_entries`, evicting the least recently used entry first.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, analysis = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return analysis

    def put(self, key: str, analysis: Dict[str, Any]) -> None:
        if self.max_entries < 1:
            return
        self._entries[key] = (self._clock() + self.ttl_seconds, analysis)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

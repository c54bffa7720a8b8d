"""Bounded seen-hash store that rejects reused initData."""

from collections import OrderedDict


class ReplayStoreFull(Exception):
    """Raised when every slot holds a hash that is still inside its ttl."""


class ReplayGuard:
    """Remembers verified hashes for ``ttl`` seconds, at most ``max_entries`` of them.

    Entries are kept in insertion order, which is also expiry order since
    every entry gets the same ttl. Nothing is evicted before its ttl: an
    evicted hash could be replayed while its payload is still fresh, so a
    full store refuses new hashes until the oldest entries expire.
    """

    def __init__(self, ttl: float, max_entries: int = 10000):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, received_hash: str) -> bool:
        return received_hash in self._seen

    def purge(self, now: float) -> None:
        """Drop entries whose ttl has elapsed."""
        while self._seen:
            oldest_hash, expires_at = next(iter(self._seen.items()))
            if expires_at > now:
                break
            del self._seen[oldest_hash]

    def check_and_remember(self, received_hash: str, now: float) -> bool:
        """Return True the first time a hash is seen within its ttl, False on reuse.

        Raises ReplayStoreFull when a new hash cannot be recorded.
        """
        self.purge(now)
        if received_hash in self._seen:
            return False
        if len(self._seen) >= self.max_entries:
            raise ReplayStoreFull(f"{len(self._seen)} live entries")
        self._seen[received_hash] = now + self.ttl
        return True

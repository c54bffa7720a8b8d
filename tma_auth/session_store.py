"""Client-side cache of the last verified (identity, token) pair.

The store is the only writer of its key. Anything unreadable or stale is
treated exactly like an empty cache.
"""

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path

from .models import CachedAuthState, SessionToken, VerifiedIdentity

logger = logging.getLogger(__name__)

SESSION_KEY = "tma_auth_session"
CACHE_TTL = 24 * 3600


class MemoryStorage:
    def __init__(self):
        self.data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileStorage:
    """One file per key under a directory, written atomically."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text()

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value)
        tmp.rename(path)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class SessionStore:
    def __init__(
        self,
        storage,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.time,
        key: str = SESSION_KEY,
    ):
        self.storage = storage
        self.ttl = ttl
        self.clock = clock
        self.key = key

    def get_cached_auth_state(self) -> CachedAuthState | None:
        """Read and decode the cache; a corrupt entry is dropped and reported as a miss."""
        raw = self.storage.get(self.key)
        if raw is None:
            return None
        try:
            return CachedAuthState.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("[Session] Discarding unreadable cached session")
            self.clear()
            return None

    def get_valid_state(self) -> CachedAuthState | None:
        """The cached state if it is inside its ttl and its token has not expired.

        Reads storage once, so the answer and the state always agree.
        """
        state = self.get_cached_auth_state()
        if state is None:
            return None
        now = self.clock()
        if now >= state.cached_at + self.ttl or not state.token.is_valid(now, state.identity.id):
            return None
        return state

    def is_valid(self) -> bool:
        return self.get_valid_state() is not None

    def get_token(self) -> str | None:
        state = self.get_valid_state()
        return state.token.token if state else None

    def cache_auth_state(self, identity: VerifiedIdentity, token: SessionToken) -> CachedAuthState:
        """Overwrite the cache with a freshly verified pair."""
        if token.user_id != identity.id:
            raise ValueError("token is bound to a different user")
        state = CachedAuthState(identity=identity, token=token, cached_at=self.clock())
        self.storage.set(self.key, json.dumps(state.to_dict()))
        return state

    def set_token(self, token: SessionToken, user_id: int) -> bool:
        """Replace the token of the cached user.

        Returns False, leaving the cache empty, when no state for user_id is
        cached: a token is never stored without the identity it belongs to.
        """
        if token.user_id != user_id:
            raise ValueError("token is bound to a different user")
        state = self.get_cached_auth_state()
        if state is None or state.identity.id != user_id:
            self.clear()
            return False
        self.cache_auth_state(state.identity, token)
        return True

    def clear(self) -> None:
        self.storage.remove(self.key)

"""Client-side authentication state machine.

Restores a cached session when one is still valid, otherwise exchanges the
host's launch payload for a session with the backend, retrying transient
failures with capped exponential backoff under a wall-clock watchdog.

The published AuthSnapshot is the only thing the rest of the application
reads. There is no fallback identity: every failure, including an unexpected
exception, ends in TERMINAL_FAILED with user None. An authenticated session is
extended with refresh() shortly before it expires.

    INIT -> CACHE_CHECK -> AUTHENTICATED
                        -> NEEDS_AUTH -> VALIDATING -> AUTHENTICATED
                                                    -> FAILED -> BACKOFF_WAIT -> VALIDATING
                                                              -> TERMINAL_FAILED
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .errors import USER_FACING_ERROR, AuthError, ErrorKind
from .host import HostEnvironment
from .models import SessionToken, VerifiedIdentity
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    INIT = "init"
    CACHE_CHECK = "cache_check"
    AUTHENTICATED = "authenticated"
    NEEDS_AUTH = "needs_auth"
    VALIDATING = "validating"
    FAILED = "failed"
    BACKOFF_WAIT = "backoff_wait"
    TERMINAL_FAILED = "terminal_failed"


S = AuthState

# TERMINAL_FAILED is reachable from every non-terminal state (watchdog),
# INIT from every state (sign-out).
TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    S.INIT: frozenset({S.CACHE_CHECK, S.TERMINAL_FAILED, S.INIT}),
    S.CACHE_CHECK: frozenset({S.AUTHENTICATED, S.NEEDS_AUTH, S.TERMINAL_FAILED, S.INIT}),
    S.NEEDS_AUTH: frozenset({S.VALIDATING, S.TERMINAL_FAILED, S.INIT}),
    S.VALIDATING: frozenset({S.AUTHENTICATED, S.FAILED, S.TERMINAL_FAILED, S.INIT}),
    S.FAILED: frozenset({S.BACKOFF_WAIT, S.TERMINAL_FAILED, S.INIT}),
    S.BACKOFF_WAIT: frozenset({S.VALIDATING, S.TERMINAL_FAILED, S.INIT}),
    S.AUTHENTICATED: frozenset({S.INIT}),
    S.TERMINAL_FAILED: frozenset({S.CACHE_CHECK, S.INIT}),
}


class SessionBackend(Protocol):
    async def issue_session(self, init_data: str) -> tuple[VerifiedIdentity, SessionToken]: ...

    async def refresh_session(self, token: SessionToken) -> SessionToken: ...


@dataclass(frozen=True)
class OrchestratorSettings:
    base_delay: float = 1.0
    max_delay: float = 5.0
    max_retries: int = 3
    watchdog_timeout: float = 10.0
    # refresh() only touches the backend when the token expires within this many seconds
    refresh_margin: float = 3600.0


@dataclass(frozen=True)
class AuthSnapshot:
    state: AuthState
    user: VerifiedIdentity | None = None
    is_authenticated: bool = False
    is_loading: bool = True
    error: str | None = None
    access_denied_reason: ErrorKind | None = None


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 5.0) -> float:
    """Delay before retry number ``attempt`` (0-based): min(base * 2**attempt, cap)."""
    return min(base * 2 ** attempt, cap)


class InvalidTransition(RuntimeError):
    pass


class AuthenticationOrchestrator:
    """Drives one authentication run at a time and publishes AuthSnapshots."""

    def __init__(
        self,
        store: SessionStore,
        backend: SessionBackend,
        host: HostEnvironment | None,
        settings: OrchestratorSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.backend = backend
        self.host = host
        self.settings = settings or OrchestratorSettings()
        self._sleep = sleep
        self.state = AuthState.INIT
        self.snapshot = AuthSnapshot(state=AuthState.INIT)
        self.attempt = 0
        self._token: SessionToken | None = None
        self._listeners: list[Callable[[AuthSnapshot], None]] = []
        self._task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._initialized = False
        self._mounted = True

    # --- public surface ---

    def subscribe(self, listener: Callable[[AuthSnapshot], None]) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> AuthSnapshot:
        """Run authentication once. Later calls join or reuse the first run."""
        if not self._initialized and self._mounted:
            self._initialized = True
            self._task = asyncio.ensure_future(self._run())
        return await self._join()

    async def retry(self) -> AuthSnapshot:
        """Manual retry after a terminal failure, with the attempt counter reset."""
        if not self._mounted or self.running or self.state is not AuthState.TERMINAL_FAILED:
            return await self._join()
        self.attempt = 0
        self._task = asyncio.ensure_future(self._run())
        return await self._join()

    async def sign_out(self) -> AuthSnapshot:
        """Drop the session everywhere on this client and return to INIT."""
        await self._cancel_run()
        self.store.clear()
        self._token = None
        self._initialized = False
        self._transition(AuthState.INIT)
        logger.info("[Auth] Signed out")
        return self.snapshot

    async def refresh(self, force: bool = False) -> AuthSnapshot:
        """Extend an authenticated session that is close to expiry.

        Concurrent calls share one backend request. A session the backend no
        longer accepts is dropped and the orchestrator returns to INIT; a
        transient failure keeps the current session.
        """
        if not self._mounted or not self.snapshot.is_authenticated or self._token is None:
            return self.snapshot
        if self._refresh_task is None or self._refresh_task.done():
            remaining = self._token.expires_at - self.store.clock()
            if not force and remaining > self.settings.refresh_margin:
                return self.snapshot
            self._refresh_task = asyncio.ensure_future(self._refresh(self._token))
        await asyncio.wait({self._refresh_task})
        return self.snapshot

    def close(self) -> None:
        """Teardown: stop timers and ignore any result still in flight."""
        self._mounted = False
        for task in (self._task, self._refresh_task):
            if task is not None:
                task.cancel()

    def auth_headers(self) -> dict[str, str]:
        if not self.snapshot.is_authenticated or self._token is None:
            return {}
        return {"Authorization": f"Bearer {self._token.token}"}

    # --- run ---

    async def _join(self) -> AuthSnapshot:
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        return self.snapshot

    async def _cancel_run(self) -> None:
        for task in (self._task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait({task})

    async def _run(self) -> None:
        try:
            await asyncio.wait_for(self._drive(), timeout=self.settings.watchdog_timeout)
        except asyncio.TimeoutError:
            if self._mounted:
                logger.warning("[Auth] Authentication watchdog fired")
                self._fail_closed(ErrorKind.TIMEOUT)
        except Exception:
            # the run must never end without a published outcome
            logger.exception("[Auth] Authentication run crashed")
            if self._mounted:
                self._fail_closed(ErrorKind.UPSTREAM_ERROR)

    def _fail_closed(self, kind: ErrorKind) -> None:
        self.store.clear()
        self._token = None
        if AuthState.TERMINAL_FAILED in TRANSITIONS[self.state]:
            self._transition(AuthState.TERMINAL_FAILED, kind)
        else:
            self._transition(AuthState.INIT, kind)

    async def _drive(self) -> None:
        self._transition(AuthState.CACHE_CHECK)
        cached = self.store.get_valid_state()
        if cached is not None:
            logger.info(f"[Auth] Restored cached session for user {cached.identity.id}")
            self._authenticate(cached.identity, cached.token)
            return

        self._transition(AuthState.NEEDS_AUTH)
        while True:
            self._transition(AuthState.VALIDATING)
            try:
                identity, token = await self._validate()
            except AuthError as e:
                error = e
            except Exception as e:
                logger.error(f"[Auth] Session backend raised {type(e).__name__}")
                error = AuthError(ErrorKind.UPSTREAM_ERROR)
            else:
                error = None

            if error is not None:
                if not self._mounted:
                    return
                if not self._handle_failure(error):
                    return
                delay = backoff_delay(self.attempt, self.settings.base_delay, self.settings.max_delay)
                self.attempt += 1
                self._transition(AuthState.BACKOFF_WAIT, error.kind)
                logger.info(f"[Auth] Retry {self.attempt}/{self.settings.max_retries} in {delay:.1f}s")
                await self._sleep(delay)
                continue

            if not self._mounted:
                return
            self.store.cache_auth_state(identity, token)
            logger.info(f"[Auth] Authenticated user {identity.id}")
            self._authenticate(identity, token)
            return

    async def _validate(self) -> tuple[VerifiedIdentity, SessionToken]:
        if self.host is None:
            raise AuthError(ErrorKind.MISSING_ENVIRONMENT)
        if not self.host.init_data:
            raise AuthError(ErrorKind.MISSING_PAYLOAD)
        return await self.backend.issue_session(self.host.init_data)

    def _handle_failure(self, error: AuthError) -> bool:
        """Record a failed attempt; True if another attempt should follow."""
        self.store.clear()
        self._token = None
        self._transition(AuthState.FAILED, error.kind)
        if error.retryable and self.attempt < self.settings.max_retries:
            return True
        logger.warning(f"[Auth] Authentication failed: {error.kind.value}")
        self._transition(AuthState.TERMINAL_FAILED, error.kind)
        return False

    async def _refresh(self, token: SessionToken) -> None:
        try:
            refreshed = await self.backend.refresh_session(token)
        except AuthError as e:
            if not self._mounted or self._token != token:
                return
            if e.retryable:
                logger.warning(f"[Auth] Session refresh failed, keeping current session: {e.kind.value}")
                return
            logger.info(f"[Auth] Session no longer accepted: {e.kind.value}")
            self.store.clear()
            self._token = None
            self._initialized = False
            self._transition(AuthState.INIT, e.kind)
            return
        except Exception as e:
            logger.error(f"[Auth] Session refresh raised {type(e).__name__}, keeping current session")
            return

        if not self._mounted or self._token != token:
            return
        if not self.store.set_token(refreshed, self.snapshot.user.id):
            logger.debug("[Session] Cache no longer holds this user, not re-cached")
        self._token = refreshed
        logger.debug(f"[Auth] Session extended to {refreshed.expires_at:.0f}")

    def _authenticate(self, identity: VerifiedIdentity, token: SessionToken) -> None:
        self._token = token
        self._transition(AuthState.AUTHENTICATED, user=identity)

    # --- state ---

    def _transition(
        self, new: AuthState, reason: ErrorKind | None = None, user: VerifiedIdentity | None = None,
    ) -> None:
        if not self._mounted:
            return
        if new not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new.value}")
        logger.debug(f"[Auth] {self.state.value} -> {new.value}")
        self.state = new
        self.snapshot = _snapshot_for(new, reason, user)
        for listener in list(self._listeners):
            try:
                listener(self.snapshot)
            except Exception:
                logger.exception("[Auth] Snapshot listener failed")


def _snapshot_for(state: AuthState, reason: ErrorKind | None, user: VerifiedIdentity | None) -> AuthSnapshot:
    if state is AuthState.AUTHENTICATED:
        return AuthSnapshot(state=state, user=user, is_authenticated=True, is_loading=False)
    if state is AuthState.TERMINAL_FAILED:
        return AuthSnapshot(
            state=state, is_loading=False, error=USER_FACING_ERROR, access_denied_reason=reason,
        )
    if state is AuthState.INIT:
        return AuthSnapshot(state=state, is_loading=False)
    return AuthSnapshot(state=state, access_denied_reason=reason)

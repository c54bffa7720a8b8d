"""Server-side pipeline: parse, verify, check freshness/replay, mint a session."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .config import Config
from .errors import ErrorKind
from .init_data import parse_auth_date, parse_identity, parse_init_data, verify_signature
from .models import SecurityCheckResult, SessionToken, VerifiedIdentity
from .replay import ReplayStoreFull
from .security import SecurityPolicy
from .sessions import SessionRecord, cleanup_expired, issue_token, revoke_token, token_fingerprint

logger = logging.getLogger(__name__)


@dataclass
class IssueResult:
    security: SecurityCheckResult
    identity: VerifiedIdentity | None = None
    session: SessionToken | None = None
    error: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SessionIssuer:
    """Turns a raw launch payload into a session token, short-circuiting on the first failure."""

    def __init__(
        self,
        config: Config,
        tokens: dict[str, SessionRecord],
        save_fn: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.tokens = tokens
        self.save_fn = save_fn
        self.clock = clock
        self.policy = SecurityPolicy(config.freshness_window, config.replay_cache_size)

    def _fail(self, kind: ErrorKind, security: SecurityCheckResult) -> IssueResult:
        logger.warning(f"[Auth] Verification rejected: {kind.value}")
        return IssueResult(security=security, error=kind)

    def issue_session(self, raw_payload: str) -> IssueResult:
        parsed = parse_init_data(raw_payload)
        if not parsed.ok:
            return self._fail(parsed.error, SecurityCheckResult.rejected())

        error = verify_signature(parsed.fields, parsed.received_hash, self.config.telegram_token)
        if error:
            return self._fail(error, SecurityCheckResult.rejected())

        auth_date = parse_auth_date(parsed.fields)
        if auth_date is None:
            return self._fail(ErrorKind.STALE_PAYLOAD, SecurityCheckResult.rejected(signature_valid=True))

        now = self.clock()
        try:
            security = self.policy.evaluate(auth_date, int(now * 1000), parsed.received_hash)
        except ReplayStoreFull:
            logger.error("[Auth] Replay store full, refusing new sessions until entries expire")
            return self._fail(ErrorKind.UPSTREAM_ERROR, SecurityCheckResult.rejected(signature_valid=True))
        if not security.timestamp_valid:
            return self._fail(ErrorKind.STALE_PAYLOAD, security)
        if not security.replay_protected:
            return self._fail(ErrorKind.REPLAYED, security)

        identity = parse_identity(parsed.fields)
        if identity is None:
            return self._fail(ErrorKind.MALFORMED_USER, security)

        cleanup_expired(self.tokens, self.config.session_max_ttl, now=now)
        session = issue_token(self.tokens, identity, self.config.session_ttl, now=now)
        if self.save_fn:
            try:
                self.save_fn()
            except OSError as e:
                revoke_token(self.tokens, session.token)
                logger.error(f"[Session] Could not persist session record: {type(e).__name__}")
                return IssueResult(security=security, identity=identity, error=ErrorKind.UPSTREAM_ERROR)

        logger.info(f"[Auth] Session issued for user {identity.id}")
        logger.debug(f"[Session] token {token_fingerprint(session.token)} expires at {session.expires_at:.0f}")
        return IssueResult(security=security, identity=identity, session=session)

"""Opaque bearer session tokens bound to one verified Telegram user.

The token table maps token -> SessionRecord. Validation slides the expiry
forward by the ttl but never past issued_at + max_ttl.
"""

import hashlib
import json
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

from .models import SessionToken, VerifiedIdentity

TOKEN_TTL = 3600
TOKEN_MAX_TTL = 24 * 3600


@dataclass
class SessionRecord:
    identity: VerifiedIdentity
    issued_at: float
    expires_at: float

    @property
    def user_id(self) -> int:
        return self.identity.id


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def token_fingerprint(token: str) -> str:
    """Short non-reversible tag for correlating a token in debug logs."""
    return hashlib.sha256(token.encode()).hexdigest()[:8]


def issue_token(
    tokens: dict[str, SessionRecord], identity: VerifiedIdentity,
    ttl: float = TOKEN_TTL, now: float | None = None,
) -> SessionToken:
    """Mint a token for identity and record it in the table."""
    now = time.time() if now is None else now
    token = generate_token()
    tokens[token] = SessionRecord(identity=identity, issued_at=now, expires_at=now + ttl)
    return SessionToken(token=token, user_id=identity.id, issued_at=now, expires_at=now + ttl)


def _is_live(record: SessionRecord, now: float, max_ttl: float) -> bool:
    return now < record.expires_at and now - record.issued_at < max_ttl


def validate_token(
    tokens: dict[str, SessionRecord], token: str,
    ttl: float = TOKEN_TTL, max_ttl: float = TOKEN_MAX_TTL, now: float | None = None,
) -> SessionRecord | None:
    """Return the live record for token and refresh its expiry, or None.

    Dead tokens are removed from the table.
    """
    now = time.time() if now is None else now
    record = tokens.get(token)
    if record is None:
        return None
    if not _is_live(record, now, max_ttl):
        del tokens[token]
        return None
    record.expires_at = min(now + ttl, record.issued_at + max_ttl)
    return record


def revoke_token(tokens: dict[str, SessionRecord], token: str) -> bool:
    return tokens.pop(token, None) is not None


def revoke_user(tokens: dict[str, SessionRecord], user_id: int) -> int:
    """Drop every session of user_id and return how many were dropped."""
    doomed = [t for t, record in tokens.items() if record.user_id == user_id]
    for t in doomed:
        del tokens[t]
    return len(doomed)


def cleanup_expired(
    tokens: dict[str, SessionRecord], max_ttl: float = TOKEN_MAX_TTL, now: float | None = None,
) -> int:
    now = time.time() if now is None else now
    doomed = [t for t, record in tokens.items() if not _is_live(record, now, max_ttl)]
    for t in doomed:
        del tokens[t]
    return len(doomed)


def load_sessions(path: Path) -> dict[str, SessionRecord]:
    """Load the token table from a JSON file."""
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    return {
        token: SessionRecord(
            identity=VerifiedIdentity.from_dict(entry["identity"]),
            issued_at=float(entry["issued_at"]),
            expires_at=float(entry["expires_at"]),
        )
        for token, entry in data.items()
    }


def save_sessions(path: Path, tokens: dict[str, SessionRecord]) -> None:
    """Atomically write the token table to a JSON file."""
    data = {
        token: {
            "identity": record.identity.to_dict(),
            "issued_at": record.issued_at,
            "expires_at": record.expires_at,
        }
        for token, record in tokens.items()
    }
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.rename(path)

"""Telegram Mini App initData parsing and HMAC-SHA256 signature check.

Parses the query string the host hands to the Mini App and checks that it
was signed by Telegram for our bot. Pure functions, no I/O.

Reference: https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qsl

from .errors import ErrorKind
from .models import VerifiedIdentity


@dataclass
class ParsedInitData:
    fields: dict[str, str] = field(default_factory=dict)  # everything except hash
    received_hash: str = ""
    error: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_init_data(init_data: str) -> ParsedInitData:
    """Split initData into its fields and the received hash.

    Values are kept exactly as the standard query-string decoding yields
    them; they must not be re-encoded before signing. A repeated key keeps
    its first value.
    """
    fields: dict[str, str] = {}
    for key, value in parse_qsl(init_data or "", keep_blank_values=True):
        fields.setdefault(key, value)

    received_hash = fields.pop("hash", "")
    if not received_hash:
        return ParsedInitData(fields=fields, error=ErrorKind.MISSING_HASH)
    return ParsedInitData(fields=fields, received_hash=received_hash)


def build_data_check_string(fields: Mapping[str, str]) -> str:
    """Build the sorted newline-separated data-check-string for HMAC."""
    lines = [f"{k}={v}" for k, v in fields.items() if k != "hash"]
    return "\n".join(sorted(lines))


def compute_hash(bot_token: str, data_check_string: str) -> str:
    """Compute HMAC-SHA256 using the bot token as the secret key.

    The secret key is HMAC-SHA256("WebAppData", bot_token).
    """
    secret_key = hmac.new(
        b"WebAppData", bot_token.encode(), hashlib.sha256,
    ).digest()
    return hmac.new(
        secret_key, data_check_string.encode(), hashlib.sha256,
    ).hexdigest()


def verify_signature(
    fields: Mapping[str, str], received_hash: str, bot_token: str,
) -> ErrorKind | None:
    """Return None if received_hash signs fields, else SIGNATURE_INVALID."""
    expected = compute_hash(bot_token, build_data_check_string(fields))
    if not hmac.compare_digest(expected.encode(), received_hash.encode()):
        return ErrorKind.SIGNATURE_INVALID
    return None


def parse_auth_date(fields: Mapping[str, str]) -> int | None:
    """Return auth_date as unix seconds, or None if absent or not an integer."""
    raw = fields.get("auth_date", "")
    try:
        return int(raw)
    except ValueError:
        return None


def parse_identity(fields: Mapping[str, str]) -> VerifiedIdentity | None:
    """Decode the embedded user JSON. Malformed or missing user yields None."""
    user_json = fields.get("user", "")
    if not user_json:
        return None
    try:
        return VerifiedIdentity.from_dict(json.loads(user_json))
    except (json.JSONDecodeError, ValueError):
        return None

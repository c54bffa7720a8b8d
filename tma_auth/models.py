"""Identity, session and cache records exchanged between the modules."""

from dataclasses import asdict, dataclass

OPTIONAL_USER_FIELDS = ("last_name", "username", "language_code", "is_premium", "photo_url")


@dataclass(frozen=True)
class VerifiedIdentity:
    id: int
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool | None = None
    photo_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "VerifiedIdentity":
        """Build from a Telegram user object. Raises ValueError if unusable."""
        if not isinstance(data, dict):
            raise ValueError("user is not an object")
        user_id = data.get("id")
        # bool is an int subclass; Telegram never sends one as an id
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            raise ValueError("user id missing or not an integer")
        first_name = data.get("first_name")
        if not isinstance(first_name, str) or not first_name:
            raise ValueError("user first_name missing")
        extra = {k: data[k] for k in OPTIONAL_USER_FIELDS if data.get(k) is not None}
        return cls(id=user_id, first_name=first_name, **extra)

    def to_dict(self) -> dict:
        """Serialize, omitting unset optional fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class SecurityCheckResult:
    signature_valid: bool
    timestamp_valid: bool
    age_seconds: int
    replay_protected: bool

    @property
    def ok(self) -> bool:
        return self.signature_valid and self.timestamp_valid and self.replay_protected

    @classmethod
    def rejected(cls, signature_valid: bool = False, age_seconds: int = 0) -> "SecurityCheckResult":
        return cls(
            signature_valid=signature_valid,
            timestamp_valid=False,
            age_seconds=age_seconds,
            replay_protected=False,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SessionToken:
    token: str
    user_id: int
    issued_at: float
    expires_at: float

    def is_valid(self, now: float, user_id: int | None = None) -> bool:
        """Unexpired, and bound to user_id when one is given."""
        if now >= self.expires_at:
            return False
        return user_id is None or user_id == self.user_id

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionToken":
        return cls(
            token=str(data["token"]),
            user_id=int(data["user_id"]),
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass(frozen=True)
class CachedAuthState:
    identity: VerifiedIdentity
    token: SessionToken
    cached_at: float

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.to_dict(),
            "token": self.token.to_dict(),
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CachedAuthState":
        """Raises KeyError/TypeError/ValueError on malformed input."""
        identity = VerifiedIdentity.from_dict(data["identity"])
        token = SessionToken.from_dict(data["token"])
        if token.user_id != identity.id:
            raise ValueError("token is bound to a different user")
        return cls(identity=identity, token=token, cached_at=float(data["cached_at"]))

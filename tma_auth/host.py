"""The launch context the Telegram client hands to the Mini App."""

from dataclasses import dataclass
from urllib.parse import parse_qsl, urlsplit


@dataclass(frozen=True)
class HostEnvironment:
    init_data: str
    platform: str = "unknown"
    version: str = ""

    @classmethod
    def from_launch_url(cls, url: str) -> "HostEnvironment | None":
        """Read the tgWebApp* launch parameters from the URL fragment or query.

        Returns None when the URL was not opened by a Telegram client.
        """
        parts = urlsplit(url)
        params: dict[str, str] = {}
        for source in (parts.query, parts.fragment):
            for key, value in parse_qsl(source, keep_blank_values=True):
                if key.startswith("tgWebApp"):
                    params.setdefault(key, value)
        if not params:
            return None
        return cls(
            init_data=params.get("tgWebAppData", ""),
            platform=params.get("tgWebAppPlatform", "unknown"),
            version=params.get("tgWebAppVersion", ""),
        )

"""Credential records exchanged with the NETPIE gateway."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from urllib.parse import urlsplit

from microgear._constants import MAX_ALIAS_LENGTH


@dataclass(frozen=True)
class DeviceIdentity:
    """Long-lived application credentials of one gear."""

    key: str
    secret: str
    alias: str | None = None

    def __post_init__(self) -> None:
        if self.alias:
            object.__setattr__(self, "alias", self.alias[:MAX_ALIAS_LENGTH])
        else:
            object.__setattr__(self, "alias", None)


@dataclass
class RequestToken:
    """First-leg OAuth credential, cached until an access token is issued."""

    token: str
    secret: str
    verifier: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: object) -> RequestToken | None:
        """Rebuild a token from its cached form; ``None`` if absent or malformed."""
        if not isinstance(data, dict):
            return None
        try:
            return cls(str(data["token"]), str(data["secret"]), str(data.get("verifier", "")))
        except KeyError:
            return None


@dataclass
class AccessToken:
    """Second-leg OAuth credential used to derive broker credentials.

    An empty :attr:`endpoint` means the broker address has not been
    resolved yet.
    """

    token: str
    secret: str
    appkey: str = ""
    endpoint: str = ""
    revokecode: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: object) -> AccessToken | None:
        """Rebuild a token from its cached form; ``None`` if absent or malformed."""
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                token=str(data["token"]),
                secret=str(data["secret"]),
                appkey=str(data.get("appkey") or ""),
                endpoint=str(data.get("endpoint") or ""),
                revokecode=str(data.get("revokecode") or ""),
            )
        except KeyError:
            return None

    def broker_host(self) -> tuple[str, int | None]:
        """Split :attr:`endpoint` into ``(hostname, port)``.

        Accepts ``pie://host:port``, ``host:port`` and bare ``host``.

        Raises:
            ValueError: If the endpoint is unresolved or has no hostname.
        """
        return parse_endpoint(self.endpoint)


def parse_endpoint(endpoint: str) -> tuple[str, int | None]:
    """Split a broker endpoint string into ``(hostname, port)``."""
    value = endpoint.strip()
    if not value:
        raise ValueError("Endpoint is not resolved.")
    parts = urlsplit(value if "//" in value else f"//{value}")
    if not parts.hostname:
        raise ValueError(f"Invalid endpoint '{endpoint}'.")
    return parts.hostname, parts.port

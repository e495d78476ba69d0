"""Python client for the NETPIE microgear publish/subscribe fabric."""

from microgear._oauth import TokenExchangeError
from microgear.cache import CredentialCache
from microgear.client import GearClient
from microgear.models import AccessToken, DeviceIdentity, RequestToken
from microgear.tokens import ConfigurationError, TokenManager, TokenSignal

__all__ = [
    "AccessToken",
    "ConfigurationError",
    "CredentialCache",
    "DeviceIdentity",
    "GearClient",
    "RequestToken",
    "TokenExchangeError",
    "TokenManager",
    "TokenSignal",
]

"""Internal HMAC-SHA1 helpers for gateway and broker authentication."""

from __future__ import annotations

import base64

from Crypto.Hash import HMAC, SHA1


def hmac_sha1_b64(key: str, message: str) -> str:
    """Return ``base64(HMAC-SHA1(key, message))`` as text."""
    h = HMAC.new(key.encode("utf-8"), msg=message.encode("utf-8"), digestmod=SHA1)
    return base64.b64encode(h.digest()).decode("ascii")


def derive_revoke_code(token: str, token_secret: str, device_secret: str) -> str:
    """Derive the code that proves possession of an access token when revoking it.

    The gateway embeds the code in a URL path, so ``/`` is replaced by ``_``.
    """
    return hmac_sha1_b64(f"{token_secret}&{device_secret}", token).replace("/", "_")


def broker_username(device_key: str, timestamp: int) -> str:
    """Build the MQTT username ``{devicekey}%{unixtime}``."""
    return f"{device_key}%{timestamp}"


def derive_broker_password(
    token: str, token_secret: str, device_secret: str, username: str
) -> str:
    """Derive the MQTT password for *username* from the access token.

    ``base64(HMAC-SHA1(key=token_secret&device_secret, msg=token%username))``
    """
    return hmac_sha1_b64(f"{token_secret}&{device_secret}", f"{token}%{username}")

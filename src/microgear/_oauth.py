"""Internal OAuth 1.0 (HMAC-SHA1) exchanges with the NETPIE gateway."""

from __future__ import annotations

from urllib.parse import parse_qsl

import aiohttp
from oauthlib.oauth1 import SIGNATURE_HMAC, SIGNATURE_TYPE_AUTH_HEADER
from oauthlib.oauth1 import Client as OAuth1Client

from microgear._constants import HTTP_TIMEOUT


class TokenExchangeError(RuntimeError):
    """Raised when the gateway rejects an OAuth request.

    ``status`` is the HTTP status code of the rejection, or ``None`` when
    the response was accepted but did not carry a token.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def sign_request(
    url: str,
    method: str,
    *,
    consumer_key: str,
    consumer_secret: str,
    token: str | None = None,
    token_secret: str | None = None,
    verifier: str | None = None,
    callback: str | None = None,
) -> dict[str, str]:
    """Return the headers of an HMAC-SHA1 signed OAuth 1.0 request."""
    client = OAuth1Client(
        consumer_key,
        client_secret=consumer_secret,
        resource_owner_key=token,
        resource_owner_secret=token_secret,
        verifier=verifier,
        callback_uri=callback,
        signature_method=SIGNATURE_HMAC,
        signature_type=SIGNATURE_TYPE_AUTH_HEADER,
    )
    _, headers, _ = client.sign(url, http_method=method)
    return dict(headers)


async def fetch_token(
    url: str,
    *,
    consumer_key: str,
    consumer_secret: str,
    token: str | None = None,
    token_secret: str | None = None,
    verifier: str | None = None,
    callback: str | None = None,
) -> dict[str, str]:
    """POST a signed token request and return the form-decoded response.

    The returned mapping always contains ``oauth_token`` and
    ``oauth_token_secret``.

    Raises:
        TokenExchangeError: If the gateway answers with a non-2xx status
            or a response without a token.
        aiohttp.ClientError: On transport failures.
    """
    headers = sign_request(
        url,
        "POST",
        consumer_key=consumer_key,
        consumer_secret=consumer_secret,
        token=token,
        token_secret=token_secret,
        verifier=verifier,
        callback=callback,
    )
    headers["Content-Type"] = "application/x-www-form-urlencoded"
    async with aiohttp.ClientSession() as session:
        async with session.post(
            url, headers=headers, timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
        ) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise TokenExchangeError(
                    f"Token request rejected ({resp.status}): {text.strip()}",
                    status=resp.status,
                )

    results = dict(parse_qsl(text))
    if not results.get("oauth_token") or not results.get("oauth_token_secret"):
        raise TokenExchangeError("Token response carries no token.", status=resp.status)
    return results


async def fetch_text(url: str, *, headers: dict[str, str] | None = None) -> str:
    """GET *url* and return the body text.

    Raises:
        aiohttp.ClientResponseError: On a non-2xx status.
        aiohttp.ClientError: On transport failures.
    """
    async with aiohttp.ClientSession() as session:
        async with session.get(
            url, headers=headers, timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
        ) as resp:
            resp.raise_for_status()
            return await resp.text()

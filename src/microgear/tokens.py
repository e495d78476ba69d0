"""Token acquisition state machine.

Turns a device key and secret into an access token and a resolved broker
endpoint::

    NoToken -> RequestTokenPending -> AccessTokenPending -> EndpointReady

Each call to :meth:`TokenManager.advance` performs at most one network
exchange and returns a :class:`TokenSignal` telling the caller what to do
next.  :meth:`TokenManager.acquire` drives the machine until a usable
token is available, sleeping with exponential backoff between retries.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Callable

import aiohttp

from microgear._constants import (
    GEAR_API_ADDRESS,
    GEAR_API_PORT,
    GEAR_API_SECURE_PORT,
    MAX_TOKEN_DELAY_MS,
    MGREV,
    MIN_TOKEN_DELAY_MS,
)
from microgear._crypto import derive_revoke_code
from microgear._oauth import TokenExchangeError, fetch_text, fetch_token, sign_request
from microgear.cache import CredentialCache
from microgear.models import AccessToken, DeviceIdentity, RequestToken, parse_endpoint

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when the gateway refuses to issue a request token.

    This almost always means the device key or secret is wrong; retrying
    will not help.
    """


class TokenSignal(enum.Enum):
    """Outcome of one :meth:`TokenManager.advance` step."""

    NO_TOKEN = "no-token"
    """Request token could not be issued (terminal)."""

    DELAY = "delay"
    """Retry after the current backoff delay."""

    CONTINUE = "continue"
    """An access token was issued; advance again immediately."""

    ENDPOINT_READY = "endpoint-ready"
    """The broker endpoint was resolved; advance again immediately."""

    READY = "ready"
    """Access token and endpoint are available; connect to the broker."""


class Backoff:
    """Doubling delay in milliseconds, capped at *maximum*."""

    def __init__(self, minimum: int = MIN_TOKEN_DELAY_MS, maximum: int = MAX_TOKEN_DELAY_MS) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.delay = minimum

    def next_delay(self) -> int:
        """Return the current delay and double it for the next call."""
        delay = self.delay
        self.delay = min(self.delay * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self.delay = self.minimum


class TokenManager:
    """Drives the two-legged OAuth handshake and endpoint lookup.

    Args:
        identity: Device credentials.
        cache: Credential cache scoped to *identity*.
        notify: Called as ``notify(event, reason)`` for ``rejected``
            notifications.
        secure: Use HTTPS on the secure gateway port.
        scope: OAuth scope requested with the request token.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        cache: CredentialCache,
        *,
        notify: Callable[..., None] | None = None,
        secure: bool = True,
        scope: str = "",
        host: str = GEAR_API_ADDRESS,
    ) -> None:
        self.identity = identity
        self.cache = cache
        self.appid: str | None = None
        self.scope = scope
        self.secure = secure
        self.host = host
        self.request_token: RequestToken | None = None
        self.access_token: AccessToken | None = None
        self.backoff = Backoff()
        self._notify = notify

    @property
    def base_url(self) -> str:
        if self.secure:
            return f"https://{self.host}:{GEAR_API_SECURE_PORT}"
        return f"http://{self.host}:{GEAR_API_PORT}"

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def acquire(self) -> AccessToken:
        """Advance until an access token with a resolved endpoint is ready.

        Raises:
            ConfigurationError: If the request token cannot be issued.
        """
        while True:
            signal = await self.advance()
            if signal is TokenSignal.NO_TOKEN:
                raise ConfigurationError(
                    "Request token is not issued, please check your key and secret."
                )
            if signal is TokenSignal.READY:
                self.backoff.reset()
                assert self.access_token is not None
                return self.access_token
            if signal is TokenSignal.DELAY:
                delay = self.backoff.next_delay()
                logger.debug("Retrying token acquisition in %d ms", delay)
                await asyncio.sleep(delay / 1000)
            else:
                self.backoff.reset()

    async def advance(self) -> TokenSignal:
        """Perform the next step of the handshake."""
        cached_key = self.cache.get("key")
        if cached_key and cached_key != self.identity.key:
            logger.info("Device key changed, discarding cached tokens")
            self.reset()
            self.cache.clear()
        self.cache.set("key", self.identity.key)

        if self.access_token is None:
            self.access_token = AccessToken.from_dict(self.cache.get("accesstoken"))
        if self.access_token is not None:
            if self.access_token.endpoint and not _valid_endpoint(self.access_token.endpoint):
                logger.warning("Discarding unusable endpoint %r", self.access_token.endpoint)
                self.access_token.endpoint = ""
            if self.access_token.endpoint:
                return TokenSignal.READY
            return await self._lookup_endpoint()

        if self.request_token is None:
            self.request_token = RequestToken.from_dict(self.cache.get("requesttoken"))
        if self.request_token is not None:
            return await self._exchange_access_token()
        return await self._exchange_request_token()

    async def _exchange_request_token(self) -> TokenSignal:
        logger.debug("Requesting a request token")
        verifier = self.identity.alias or MGREV
        # The gateway reads its extra parameters from oauth_callback.
        callback = f"scope={self.scope}&appid={self.appid or ''}&mgrev={MGREV}&verifier={verifier}"
        try:
            results = await fetch_token(
                f"{self.base_url}/api/rtoken",
                consumer_key=self.identity.key,
                consumer_secret=self.identity.secret,
                callback=callback,
            )
        except TokenExchangeError as e:
            logger.error("Request token not issued: %s", e)
            return TokenSignal.NO_TOKEN
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Request token exchange failed: %s", e)
            return TokenSignal.DELAY

        self.request_token = RequestToken(
            results["oauth_token"], results["oauth_token_secret"], verifier
        )
        self.cache.set("requesttoken", self.request_token.to_dict())
        return TokenSignal.DELAY

    async def _exchange_access_token(self) -> TokenSignal:
        assert self.request_token is not None
        logger.debug("Requesting an access token")
        try:
            results = await fetch_token(
                f"{self.base_url}/api/atoken",
                consumer_key=self.identity.key,
                consumer_secret=self.identity.secret,
                token=self.request_token.token,
                token_secret=self.request_token.secret,
                verifier=self.request_token.verifier,
            )
        except TokenExchangeError as e:
            if e.status == 401:
                logger.debug("Request token not authorized yet")
                return TokenSignal.DELAY
            logger.warning("Request token rejected: %s", e)
            self.request_token = None
            self.cache.clear("requesttoken")
            self._emit("rejected", "Request token rejected")
            return TokenSignal.DELAY
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Access token exchange failed: %s", e)
            return TokenSignal.DELAY

        token = results["oauth_token"]
        secret = results["oauth_token_secret"]
        self.access_token = AccessToken(
            token=token,
            secret=secret,
            appkey=results.get("appkey", ""),
            endpoint=results.get("endpoint", ""),
            revokecode=derive_revoke_code(token, secret, self.identity.secret),
        )
        self.request_token = None
        if results.get("flag") == "S":
            logger.info("Request token was already redeemed, keeping the new access token")
        self.cache.set("accesstoken", self.access_token.to_dict())
        self.cache.clear("requesttoken")
        return TokenSignal.CONTINUE

    async def _lookup_endpoint(self) -> TokenSignal:
        assert self.access_token is not None
        url = f"{self.base_url}/api/endpoint/{self.identity.key}"
        headers = sign_request(
            url,
            "GET",
            consumer_key=self.identity.key,
            consumer_secret=self.identity.secret,
            token=self.access_token.token,
            token_secret=self.access_token.secret,
        )
        try:
            body = await fetch_text(url, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Endpoint lookup failed: %s", e)
            return TokenSignal.DELAY

        endpoint = _parse_endpoint_body(body)
        if not _valid_endpoint(endpoint):
            logger.warning("Endpoint lookup returned no usable endpoint: %r", endpoint)
            return TokenSignal.DELAY
        self.access_token.endpoint = endpoint
        self.cache.set("accesstoken", self.access_token.to_dict())
        return TokenSignal.ENDPOINT_READY

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Forget the in-memory tokens."""
        self.request_token = None
        self.access_token = None

    def invalidate(self) -> None:
        """Drop both tokens from memory and cache, forcing a new handshake."""
        self.reset()
        self.cache.clear("accesstoken")
        self.cache.clear("requesttoken")

    def reset_endpoint(self) -> bool:
        """Forget the resolved broker endpoint; return ``True`` if one was set."""
        if self.access_token is None or not self.access_token.endpoint:
            return False
        self.access_token.endpoint = ""
        self.cache.set("accesstoken", self.access_token.to_dict())
        return True

    async def revoke(self) -> bool:
        """Revoke the cached access token at the gateway.

        Returns ``True`` when there was nothing to revoke or the gateway
        accepted the revocation (the cache is then cleared), ``False`` when
        the gateway answered ``FAILED`` (the cache is left untouched).

        Falls back to the in-memory token when the cache holds none.

        Raises:
            aiohttp.ClientError: On HTTP failures.
            asyncio.TimeoutError: When the gateway does not answer in time.
        """
        cached = AccessToken.from_dict(self.cache.get("accesstoken"))
        if cached is not None:
            self.access_token = cached
        if self.access_token is None:
            return True
        revokecode = self.access_token.revokecode.replace("/", "_")
        result = await fetch_text(
            f"{self.base_url}/api/revoke/{self.access_token.token}/{revokecode}"
        )
        if result.strip() == "FAILED":
            return False
        self.reset()
        self.cache.clear()
        return True

    def _emit(self, event: str, reason: str) -> None:
        if self._notify is not None:
            self._notify(event, reason)


def _parse_endpoint_body(body: str) -> str:
    """Extract the broker endpoint from a plain-text or JSON lookup response."""
    text = body.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        return str(data.get("endpoint") or "").strip()
    return ""


def _valid_endpoint(endpoint: str) -> bool:
    try:
        parse_endpoint(endpoint)
    except ValueError:
        return False
    return True

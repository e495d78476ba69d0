"""Broker session supervisor.

Owns the aiomqtt client, derives per-connection credentials from the
access token and keeps the session alive across broker drops and
credential rejections.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from collections.abc import Awaitable, Callable

import aiomqtt

from microgear._constants import BROKER_PORT, BROKER_SECURE_PORT, KEEPALIVE
from microgear._crypto import broker_username, derive_broker_password
from microgear.events import EventEmitter
from microgear.models import AccessToken, DeviceIdentity
from microgear.tokens import TokenManager

logger = logging.getLogger(__name__)

# CONNACK return codes, as MQTT 3.1 integers and as paho reason codes
_BAD_CREDENTIALS = {4, 134}
_NOT_AUTHORIZED = {5, 135}

_RECONNECT_INTERVAL = 1  # seconds between reconnection attempts after a drop
_RETRY_CONNECTION_INTERVAL = 5  # seconds before reconnecting after an auth rejection


class BrokerSession:
    """Supervises one MQTT session for a gear.

    Args:
        identity: Device credentials, used for username/password derivation.
        tokens: Token state machine that supplies (and invalidates) the
            access token.
        events: Event surface for ``connected``, ``disconnected``,
            ``closed``, ``pieclosed``, ``info`` and ``warning``.
        secure: Connect over TLS on the secure broker port.
        keepalive: MQTT keep-alive interval in seconds.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        tokens: TokenManager,
        events: EventEmitter,
        *,
        secure: bool = True,
        keepalive: int = KEEPALIVE,
    ) -> None:
        self._identity = identity
        self._tokens = tokens
        self._events = events
        self.secure = secure
        self.keepalive = keepalive
        self.will: aiomqtt.Will | None = None
        self._client: aiomqtt.Client | None = None

    @property
    def connected(self) -> bool:
        """True while a broker session is open."""
        return self._client is not None

    async def run(
        self,
        on_open: Callable[[], Awaitable[None]],
        on_message: Callable[[str, bytes], Awaitable[None]],
    ) -> None:
        """Acquire a token, connect and pump messages until cancelled.

        *on_open* runs after every successful (re)connect, before the
        ``connected`` event.  *on_message* receives every inbound message
        as ``(wire_topic, payload)``.

        Raises:
            ConfigurationError: If the token manager cannot issue a
                request token.
        """
        while True:
            access = await self._tokens.acquire()
            params = _mqtt_params(
                self._identity,
                access,
                secure=self.secure,
                keepalive=self.keepalive,
                will=self.will,
            )
            opened = False
            try:
                async with aiomqtt.Client(**params) as client:  # type: ignore[arg-type]
                    self._client = client
                    opened = True
                    logger.info("Connected to broker %s:%s", params["hostname"], params["port"])
                    try:
                        await on_open()
                        self._events.emit("connected")
                        async for message in client.messages:
                            await on_message(message.topic.value, _payload_bytes(message.payload))
                    finally:
                        self._client = None
            except aiomqtt.MqttCodeError as e:
                reason = _auth_failure(e)
                if reason is None:
                    self._on_drop(e, opened)
                    await asyncio.sleep(_RECONNECT_INTERVAL)
                    continue
                self._on_auth_failure(reason)
                await asyncio.sleep(_RETRY_CONNECTION_INTERVAL)
                continue
            except aiomqtt.MqttError as e:
                self._on_drop(e, opened)
                await asyncio.sleep(_RECONNECT_INTERVAL)
                continue
            except asyncio.CancelledError:
                if opened:
                    self._events.emit("pieclosed")
                    self._events.emit("closed")
                raise
            # The message iterator only ends when the connection goes away.
            self._events.emit("disconnected")
            await asyncio.sleep(_RECONNECT_INTERVAL)

    def _on_auth_failure(self, reason: str) -> None:
        if reason == "bad_credentials":
            logger.warning("Broker rejected credentials, requesting a new token")
            self._events.emit("info", "invalid token, requesting a new one")
        else:
            logger.warning("Broker refused authorization")
            self._events.emit("warning", "microgear unauthorized")
        self._tokens.invalidate()

    def _on_drop(self, error: aiomqtt.MqttError, opened: bool) -> None:
        logger.warning("Broker connection lost: %s", error)
        if opened:
            self._events.emit("disconnected")

    async def publish(self, topic: str, payload: object, *, qos: int = 0, retain: bool = False) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("Session is not open.")
        await self._client.publish(topic, payload, qos=qos, retain=retain)  # type: ignore[arg-type]

    async def subscribe(self, topic: str, *, qos: int = 0) -> bool:
        """Subscribe to a wire topic; return ``True`` if the broker granted it."""
        if self._client is None:
            raise aiomqtt.MqttError("Session is not open.")
        granted = await self._client.subscribe(topic, qos=qos)
        return _granted(granted)

    async def unsubscribe(self, topic: str) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("Session is not open.")
        await self._client.unsubscribe(topic)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _make_tls_context() -> ssl.SSLContext:
    """Create a client SSL context trusting the system CA store."""
    return ssl.create_default_context()


def _mqtt_params(
    identity: DeviceIdentity,
    access: AccessToken,
    *,
    secure: bool = True,
    keepalive: int = KEEPALIVE,
    will: aiomqtt.Will | None = None,
    now: float | None = None,
) -> dict[str, object]:
    """Derive aiomqtt.Client constructor kwargs from the access token.

    The username embeds the current unix time, so the credentials must be
    derived again for every connection attempt.
    """
    hostname, _ = access.broker_host()
    username = broker_username(identity.key, int(time.time() if now is None else now))
    password = derive_broker_password(access.token, access.secret, identity.secret, username)

    params: dict[str, object] = {
        "hostname": hostname,
        "port": BROKER_SECURE_PORT if secure else BROKER_PORT,
        "identifier": access.token,
        "username": username,
        "password": password,
        "protocol": aiomqtt.ProtocolVersion.V31,
        "keepalive": keepalive,
        "will": will,
    }
    if secure:
        params["tls_context"] = _make_tls_context()
    return params


def _rc_value(rc: object) -> object:
    return getattr(rc, "value", rc)


def _auth_failure(error: aiomqtt.MqttCodeError) -> str | None:
    """Classify a CONNACK refusal as ``bad_credentials``, ``not_authorized`` or ``None``."""
    rc = _rc_value(error.rc)
    if rc in _BAD_CREDENTIALS:
        return "bad_credentials"
    if rc in _NOT_AUTHORIZED:
        return "not_authorized"
    return None


def _granted(result: object) -> bool:
    """True unless a SUBACK return code signals failure (>= 0x80)."""
    if not isinstance(result, (list, tuple)):
        return True
    for code in result:
        value = _rc_value(code)
        if isinstance(value, int) and value >= 0x80:
            return False
    return True


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")

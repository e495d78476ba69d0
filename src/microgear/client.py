"""NETPIE microgear client.

Connects a device ("gear") to the NETPIE publish/subscribe fabric.  The
:class:`GearClient` class is the main entry point::

    import asyncio
    from microgear import GearClient

    gear = GearClient("KEY", "SECRET", alias="kitchen")
    gear.on("message", lambda topic, payload: print(topic, payload))

    await gear.connect("myapp")
    await gear.subscribe("/temperature")
    await gear.chat("kitchen", "hello")
    await gear.wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable, Coroutine
from pathlib import Path

import aiohttp
import aiomqtt

from microgear._constants import CACHE_DIR, KEEPALIVE
from microgear.cache import CredentialCache, cache_filename
from microgear.events import EventEmitter
from microgear.models import DeviceIdentity
from microgear.session import BrokerSession
from microgear.tokens import TokenManager
from microgear.topics import PRESENCE_EVENTS, TopicRouter

logger = logging.getLogger(__name__)


class GearClient:
    """A gear connected to one NETPIE application.

    Args:
        key: Device (gear) key.
        secret: Device (gear) secret.
        alias: Optional alias, truncated to 16 characters.
        secure: Use HTTPS for the gateway and TLS for the broker.
        scope: OAuth scope requested with the request token.
        keepalive: MQTT keep-alive interval in seconds.
        cache_dir: Directory of the credential cache file.
        presence: Track ``present`` and ``absent`` notifications from
            the first connection on.

    Events (register with :meth:`on`): ``connected``, ``closed``,
    ``pieclosed``, ``disconnected``, ``message(topic, payload)``,
    ``present(payload)``, ``absent(payload)``, ``error(reason)``,
    ``warning(reason)``, ``info(reason)``, ``rejected(reason)``.
    """

    def __init__(
        self,
        key: str,
        secret: str,
        alias: str | None = None,
        *,
        secure: bool = True,
        scope: str = "",
        keepalive: int = KEEPALIVE,
        cache_dir: Path | str | None = None,
        presence: bool = False,
    ) -> None:
        self._identity = DeviceIdentity(key, secret, alias)
        self._events = EventEmitter()
        self._cache = CredentialCache(Path(cache_dir or CACHE_DIR) / cache_filename(key))
        self._tokens = TokenManager(
            self._identity, self._cache, notify=self._events.emit, secure=secure, scope=scope
        )
        self._session = BrokerSession(
            self._identity, self._tokens, self._events, secure=secure, keepalive=keepalive
        )
        self._router = TopicRouter(
            self._session, self._tokens, self._events, alias=self._identity.alias
        )
        if presence:
            self._router.presence.update(PRESENCE_EVENTS)
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[object]] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._identity.key

    @property
    def appid(self) -> str:
        return self._router.appid

    @property
    def alias(self) -> str | None:
        return self._router.alias

    @property
    def gearname(self) -> str | None:
        return self._router.gearname

    @property
    def connected(self) -> bool:
        """True while the broker session is open."""
        return self._session.connected

    @property
    def subscriptions(self) -> list[str]:
        """Namespaced topics that are replayed after every reconnect."""
        return self._router.subscriptions

    @property
    def cache_path(self) -> Path:
        return self._cache.path

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Callable[..., object]) -> None:
        """Register *listener* for *event*.

        Listening for ``present`` or ``absent`` enables presence tracking
        for that event.
        """
        self._events.on(event, listener)
        if event in PRESENCE_EVENTS and event not in self._router.presence:
            if self.connected:
                self._spawn(self._router.enable_presence(event))
            else:
                self._router.presence.add(event)

    def off(self, event: str, listener: Callable[..., object]) -> None:
        self._events.off(event, listener)

    async def enable_presence_tracking(self, present: bool = True, absent: bool = True) -> None:
        """Subscribe to the presence control topics now and after every reconnect."""
        if present:
            await self._router.enable_presence("present")
        if absent:
            await self._router.enable_presence("absent")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(
        self,
        appid: str,
        *,
        will: aiomqtt.Will | None = None,
        callback: Callable[[], object] | None = None,
    ) -> None:
        """Connect to application *appid* and return once the broker session is open.

        Args:
            appid: Application the gear belongs to.
            will: Optional last-will message; its topic is a public topic
                and is rewritten into the application namespace.
            callback: Called (or awaited) after every successful
                (re)connect, before the ``connected`` event.

        Raises:
            ConfigurationError: If the gateway does not issue a request
                token (bad key or secret).
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError("Already connected or connecting. Call disconnect() first.")

        self._router.appid = appid
        self._tokens.appid = appid
        if will is not None:
            self._session.will = aiomqtt.Will(
                topic=self._router.wire_topic(will.topic),
                payload=will.payload,
                qos=will.qos,
                retain=will.retain,
                properties=will.properties,
            )

        opened: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        async def on_open() -> None:
            await self._router.on_open()
            if not opened.done():
                opened.set_result(None)
            if callback is None:
                return
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("Connect callback failed")
                self._events.emit("error", f"Connect callback error : {e}")

        task = asyncio.create_task(self._session.run(on_open, self._router.dispatch))
        task.add_done_callback(self._on_task_done)
        self._task = task

        await asyncio.wait({opened, task}, return_when=asyncio.FIRST_COMPLETED)
        if not opened.done():
            opened.cancel()
            if not task.cancelled():
                task.result()

    async def disconnect(self) -> None:
        """Close the broker session and stop reconnecting.

        Always emits ``disconnected``, even when no session was open.
        """
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._events.emit("disconnected")

    async def wait(self) -> None:
        """Wait until the background session ends.

        Raises:
            ConfigurationError: If the session stopped because the token
                could no longer be issued.
        """
        if self._task is not None:
            await self._task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session stopped: %s", exc)
            self._events.emit("error", str(exc))

    def _spawn(self, coro: Coroutine[object, object, object]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_spawned_done)

    def _on_spawned_done(self, task: asyncio.Task[object]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background operation failed: %s", exc)
            self._events.emit("error", str(exc))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def publish(
        self, topic: str, message: object = "", *, qos: int = 0, retain: bool = False
    ) -> bool:
        """Publish *message* on public *topic*.

        Emits ``error`` and returns ``False`` when the session is closed;
        nothing is queued.
        """
        return await self._router.publish(topic, message, qos=qos, retain=retain)

    async def subscribe(self, topic: str) -> bool:
        """Subscribe to public *topic*; ``True`` if the broker granted it."""
        return await self._router.subscribe(topic)

    async def unsubscribe(self, topic: str) -> None:
        await self._router.unsubscribe(topic)

    async def chat(self, gearname: str, message: object, *, qos: int = 0, retain: bool = False) -> bool:
        """Send *message* to the gear named *gearname*."""
        return await self._router.chat(gearname, message, qos=qos, retain=retain)

    async def set_alias(self, alias: str) -> bool:
        return await self._router.set_alias(alias)

    async def set_name(self, gearname: str) -> bool:
        """Deprecated: receive messages addressed to *gearname*. Use aliases instead."""
        return await self._router.set_name(gearname)

    async def unset_name(self) -> None:
        """Deprecated counterpart of :meth:`set_name`."""
        await self._router.unset_name()

    async def readstream(self, stream: str, filter: str) -> bool:
        return await self._router.readstream(stream, filter)

    async def writestream(self, stream: str, data: object) -> bool:
        return await self._router.writestream(stream, data)

    async def readpostbox(self, box: str) -> bool:
        """Request the content of *box*; it arrives on ``/@readpostbox/<box>``."""
        return await self._router.readpostbox(box)

    async def writepostbox(self, box: str, data: str) -> bool:
        return await self._router.writepostbox(box, data)

    # ------------------------------------------------------------------
    # Tokens and cache
    # ------------------------------------------------------------------

    async def reset_token(self) -> bool:
        """Revoke the cached access token and clear the cache.

        Returns ``False`` (leaving the cache untouched) if the gateway
        refuses the revocation or cannot be reached.
        """
        try:
            return await self._tokens.revoke()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._events.emit("error", f"Reset token error : {e!r}")
            return False

    def set_cache_path(self, path: Path | str) -> None:
        """Use *path* as the credential cache file."""
        self._cache.path = Path(path)

    def get_instance(self) -> GearClient:
        return self

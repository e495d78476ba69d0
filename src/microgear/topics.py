"""Application namespace, subscription bookkeeping and control topics."""

from __future__ import annotations

import json
import logging

import aiomqtt

from microgear.events import EventEmitter
from microgear.session import BrokerSession
from microgear.tokens import TokenManager

logger = logging.getLogger(__name__)

CONTROL_PREFIX = "/&"
PRESENCE_EVENTS = ("present", "absent")


class TopicRouter:
    """Maps public topics into ``/{appid}`` and handles control messages.

    Public topics look like ``/my/topic``; on the wire they become
    ``/{appid}/my/topic``.  Topics starting with ``/&`` after the prefix
    carry control verbs and are never surfaced as ``message`` events.
    """

    def __init__(
        self,
        session: BrokerSession,
        tokens: TokenManager,
        events: EventEmitter,
        *,
        alias: str | None = None,
    ) -> None:
        self._session = session
        self._tokens = tokens
        self._events = events
        self.appid: str = ""
        self.alias = alias
        self.gearname: str | None = None
        self.presence: set[str] = set()
        self._subscriptions: list[str] = []

    @property
    def subscriptions(self) -> list[str]:
        """Namespaced topics replayed after every reconnect, in issue order."""
        return list(self._subscriptions)

    def wire_topic(self, topic: str) -> str:
        return f"/{self.appid}{topic}"

    def public_topic(self, wire_topic: str) -> str:
        prefix = f"/{self.appid}"
        if wire_topic.startswith(prefix + "/"):
            return wire_topic[len(prefix) :]
        return wire_topic

    # ------------------------------------------------------------------
    # Session hooks
    # ------------------------------------------------------------------

    async def on_open(self) -> None:
        """Replay subscriptions, presence topics and the alias on a fresh session."""
        for topic in self._subscriptions:
            logger.debug("Resubscribing %s", topic)
            await self._session.subscribe(topic)
        for event in PRESENCE_EVENTS:
            if event in self.presence:
                await self._session.subscribe(self.wire_topic(f"{CONTROL_PREFIX}{event}"))
        if self.alias:
            await self.set_alias(self.alias)

    async def dispatch(self, wire_topic: str, payload: bytes) -> None:
        """Route one inbound message to a control handler or the ``message`` event."""
        topic = self.public_topic(wire_topic)
        if not topic.startswith(CONTROL_PREFIX):
            self._events.emit("message", topic, payload)
            return

        verb = topic[len(CONTROL_PREFIX) :].split("/", 1)[0]
        if verb in PRESENCE_EVENTS:
            self._events.emit(verb, _decode_presence(payload))
        elif verb == "resetendpoint":
            if self._tokens.reset_endpoint():
                self._events.emit("info", "endpoint reset")
        else:
            logger.debug("Ignoring control message %s", topic)

    async def enable_presence(self, event: str) -> None:
        """Track ``present``/``absent`` notifications from now on."""
        if event not in PRESENCE_EVENTS:
            raise ValueError(f"Unknown presence event '{event}'.")
        if event in self.presence:
            return
        self.presence.add(event)
        if self._session.connected:
            await self._session.subscribe(self.wire_topic(f"{CONTROL_PREFIX}{event}"))

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    async def publish(
        self, topic: str, payload: object = "", *, qos: int = 0, retain: bool = False
    ) -> bool:
        """Publish to a public topic; return ``True`` once the client has sent it."""
        if not self._session.connected:
            self._events.emit("error", "microgear is disconnected, cannot publish.")
            return False
        try:
            await self._session.publish(self.wire_topic(topic), payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as e:
            self._events.emit("error", f"publish failed: {e}")
            return False
        return True

    async def subscribe(self, topic: str) -> bool:
        """Subscribe to a public topic and track it for resubscription."""
        if not self._session.connected:
            self._events.emit("error", "microgear is disconnected, cannot subscribe.")
            return False
        wire = self.wire_topic(topic)
        try:
            granted = await self._session.subscribe(wire)
        except aiomqtt.MqttError as e:
            self._events.emit("error", f"subscribe failed: {e}")
            return False
        if granted and wire not in self._subscriptions:
            self._subscriptions.append(wire)
        return granted

    async def unsubscribe(self, topic: str) -> None:
        """Stop tracking a public topic; unknown topics are a no-op."""
        wire = self.wire_topic(topic)
        if wire not in self._subscriptions:
            return
        self._subscriptions.remove(wire)
        if not self._session.connected:
            self._events.emit("error", "microgear is disconnected, cannot unsubscribe.")
            return
        try:
            await self._session.unsubscribe(wire)
        except aiomqtt.MqttError as e:
            self._events.emit("error", f"unsubscribe failed: {e}")

    # ------------------------------------------------------------------
    # Alias and addressed messaging
    # ------------------------------------------------------------------

    async def set_alias(self, alias: str) -> bool:
        """Advertise *alias*; the local alias changes once the publish is sent."""
        if not await self.publish(f"/@setalias/{alias}", ""):
            return False
        self.alias = alias
        return True

    async def chat(self, gearname: str, message: object, *, qos: int = 0, retain: bool = False) -> bool:
        return await self.publish(f"/gearname/{gearname}", message, qos=qos, retain=retain)

    async def set_name(self, gearname: str) -> bool:
        if self.gearname:
            await self.unsubscribe(f"/gearname/{self.gearname}")
        if not await self.subscribe(f"/gearname/{gearname}"):
            return False
        self.gearname = gearname
        return True

    async def unset_name(self) -> None:
        if self.gearname is None:
            return
        await self.unsubscribe(f"/gearname/{self.gearname}")
        self.gearname = None

    # ------------------------------------------------------------------
    # Stream and postbox helpers
    # ------------------------------------------------------------------

    async def readstream(self, stream: str, filter: str) -> bool:
        return await self.publish(f"/@readstream/{stream}", _compact({"filter": filter}))

    async def writestream(self, stream: str, data: object) -> bool:
        return await self.publish(f"/@writestream/{stream}", _compact({"data": data}))

    async def readpostbox(self, box: str) -> bool:
        return await self.publish(f"/@readpostbox/{box}", "")

    async def writepostbox(self, box: str, data: str) -> bool:
        return await self.publish(f"/@writepostbox/{box}", data)


def _compact(obj: object) -> str:
    return json.dumps(obj, separators=(",", ":"))


def _decode_presence(payload: bytes) -> object:
    """JSON-decode a presence payload, falling back to the raw text."""
    text = payload.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text

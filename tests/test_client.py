"""Tests for microgear.client."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any
from unittest.mock import AsyncMock, MagicMock, call, patch

import aiohttp
import aiomqtt
import pytest
from aioresponses import aioresponses

from microgear import ConfigurationError, GearClient

_RTOKEN_URL = re.compile(r"^https://ga\.netpie\.io:8081/api/rtoken")
_REVOKE_URL = re.compile(r"^https://ga\.netpie\.io:8081/api/revoke/")
_ENDPOINT_URL = re.compile(r"^https://ga\.netpie\.io:8081/api/endpoint/GEARKEY")

CACHED_ACCESS: dict[str, str] = {
    "token": "AT",
    "secret": "ATS",
    "appkey": "APPKEY",
    "endpoint": "pie://gb.netpie.io:1883",
    "revokecode": "RC",
}


def _make_mock_mqtt_client(drop: asyncio.Event | None = None) -> tuple[AsyncMock, AsyncMock]:
    """Create a mock aiomqtt.Client; its message stream ends with MqttError once *drop* is set."""
    mock_client = AsyncMock()
    mock_client.publish = AsyncMock()
    mock_client.subscribe = AsyncMock(return_value=(0,))
    mock_client.unsubscribe = AsyncMock()

    async def _message_generator() -> Any:
        if drop is None:
            await asyncio.Event().wait()
        else:
            await drop.wait()
            raise aiomqtt.MqttError("connection lost")
        yield  # pragma: no cover

    mock_client.messages = _message_generator()

    mock_cm = AsyncMock()
    mock_cm.__aenter__ = AsyncMock(return_value=mock_client)
    mock_cm.__aexit__ = AsyncMock(return_value=False)
    return mock_cm, mock_client


def _gear(tmp_path, *, cached: bool = True, **kwargs: Any) -> GearClient:
    if cached:
        (tmp_path / "microgear-GEARKEY.cache").write_text(
            json.dumps({"_": {"key": "GEARKEY", "accesstoken": CACHED_ACCESS}})
        )
    return GearClient("GEARKEY", "GEARSECRET", cache_dir=tmp_path, **kwargs)


def _recorder(gear: GearClient, *names: str) -> list[tuple[object, ...]]:
    seen: list[tuple[object, ...]] = []
    for name in names:
        gear.on(name, lambda *args, _n=name: seen.append((_n, *args)))
    return seen


class TestConstruction:
    def test_alias_truncated(self, tmp_path):
        gear = GearClient("K", "S", alias="x" * 40, cache_dir=tmp_path)
        assert gear.alias == "x" * 16

    def test_cache_path(self, tmp_path):
        gear = GearClient("K", "S", cache_dir=tmp_path)
        assert gear.cache_path == tmp_path / "microgear-K.cache"

    def test_set_cache_path(self, tmp_path):
        gear = GearClient("K", "S", cache_dir=tmp_path)
        gear.set_cache_path(tmp_path / "other.cache")
        assert gear.cache_path == tmp_path / "other.cache"

    def test_get_instance(self, tmp_path):
        gear = GearClient("K", "S", cache_dir=tmp_path)
        assert gear.get_instance() is gear

    def test_instances_do_not_share_state(self, tmp_path):
        a = GearClient("A", "S", cache_dir=tmp_path, secure=False)
        b = GearClient("B", "S", cache_dir=tmp_path)
        assert a.cache_path != b.cache_path
        assert a._tokens.base_url.startswith("http://")
        assert b._tokens.base_url.startswith("https://")


class TestDisconnected:
    async def test_publish_emits_error(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "error")
        assert await gear.publish("/x", "y") is False
        assert seen == [("error", "microgear is disconnected, cannot publish.")]

    async def test_subscribe_emits_error(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "error")
        assert await gear.subscribe("/x") is False
        assert seen == [("error", "microgear is disconnected, cannot subscribe.")]

    async def test_disconnect_without_session(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "disconnected")
        await gear.disconnect()
        assert seen == [("disconnected",)]


class TestConnect:
    async def test_connects_with_cached_token(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "connected")
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm) as client_cls:
            await gear.connect("myapp")
            assert gear.connected
            await gear.disconnect()

        kwargs = client_cls.call_args.kwargs
        assert kwargs["hostname"] == "gb.netpie.io"
        assert kwargs["identifier"] == "AT"
        assert kwargs["username"].startswith("GEARKEY%")
        assert gear.appid == "myapp"
        assert seen == [("connected",)]

    async def test_callback_fires_on_open(self, tmp_path):
        gear = _gear(tmp_path)
        callback = MagicMock()
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp", callback=callback)
            await gear.disconnect()
        callback.assert_called_once_with()

    async def test_unusable_cached_endpoint_is_resolved_again(self, tmp_path):
        (tmp_path / "microgear-GEARKEY.cache").write_text(
            json.dumps({"_": {"key": "GEARKEY", "accesstoken": {**CACHED_ACCESS, "endpoint": "pie://:1883"}}})
        )
        gear = GearClient("GEARKEY", "GEARSECRET", cache_dir=tmp_path)
        mock_cm, _ = _make_mock_mqtt_client()
        with (
            aioresponses() as m,
            patch("microgear.session.aiomqtt.Client", return_value=mock_cm) as client_cls,
        ):
            m.get(_ENDPOINT_URL, body="pie://gb.netpie.io:1883")
            await gear.connect("myapp")
            await gear.disconnect()

        assert client_cls.call_args.kwargs["hostname"] == "gb.netpie.io"
        data = json.loads(gear.cache_path.read_text())
        assert data["_"]["accesstoken"]["endpoint"] == "pie://gb.netpie.io:1883"

    async def test_failing_callback_does_not_stop_reconnects(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "connected", "error")
        callback = MagicMock(side_effect=RuntimeError("callback broke"))
        drop = asyncio.Event()
        first_cm, _ = _make_mock_mqtt_client(drop=drop)
        second_cm, _ = _make_mock_mqtt_client()

        with (
            patch("microgear.session.aiomqtt.Client", side_effect=[first_cm, second_cm]),
            patch("microgear.session._RECONNECT_INTERVAL", 0),
        ):
            await gear.connect("myapp", callback=callback)
            assert gear.connected
            drop.set()
            while callback.call_count < 2 or len(seen) < 4:
                await asyncio.sleep(0)
            assert gear.connected
            await gear.disconnect()

        assert callback.call_count == 2
        assert seen.count(("connected",)) == 2
        assert seen.count(("error", "Connect callback error : callback broke")) == 2

    async def test_will_topic_namespaced(self, tmp_path):
        gear = _gear(tmp_path)
        mock_cm, _ = _make_mock_mqtt_client()
        will = aiomqtt.Will("/status", "offline", qos=1, retain=True)
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm) as client_cls:
            await gear.connect("myapp", will=will)
            await gear.disconnect()

        sent = client_cls.call_args.kwargs["will"]
        assert sent.topic == "/myapp/status"
        assert sent.payload == "offline"
        assert sent.qos == 1
        assert sent.retain is True

    async def test_bad_credentials_raise(self, tmp_path):
        gear = _gear(tmp_path, cached=False)
        seen = _recorder(gear, "error")
        with aioresponses() as m:
            m.post(_RTOKEN_URL, status=401, body="invalid consumer key")
            with pytest.raises(ConfigurationError):
                await gear.connect("myapp")
        assert not gear.connected
        assert len(seen) == 1

    async def test_connect_twice_rejected(self, tmp_path):
        gear = _gear(tmp_path)
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            with pytest.raises(RuntimeError, match="Already connected"):
                await gear.connect("myapp")
            await gear.disconnect()

    async def test_graceful_disconnect_events(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "pieclosed", "closed", "disconnected")
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            await gear.disconnect()
        assert seen == [("pieclosed",), ("closed",), ("disconnected",)]
        assert not gear.connected


class TestConnectedOperations:
    async def test_chat(self, tmp_path):
        gear = _gear(tmp_path)
        mock_cm, mock_client = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            assert await gear.chat("peer", "hi") is True
            await gear.disconnect()
        mock_client.publish.assert_awaited_once_with(
            "/myapp/gearname/peer", "hi", qos=0, retain=False
        )

    async def test_alias_applied_on_connect(self, tmp_path):
        gear = _gear(tmp_path, alias="lamp")
        mock_cm, mock_client = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            await gear.disconnect()
        mock_client.publish.assert_awaited_once_with(
            "/myapp/@setalias/lamp", "", qos=0, retain=False
        )

    async def test_presence_flag_subscribes_on_connect(self, tmp_path):
        gear = _gear(tmp_path, presence=True)
        mock_cm, mock_client = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            await gear.disconnect()
        assert mock_client.subscribe.await_args_list == [
            call("/myapp/&present", qos=0),
            call("/myapp/&absent", qos=0),
        ]

    async def test_presence_listener_enables_tracking(self, tmp_path):
        gear = _gear(tmp_path)
        mock_cm, mock_client = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            gear.on("present", lambda payload: None)
            while not mock_client.subscribe.await_count:
                await asyncio.sleep(0)
            await gear.disconnect()
        mock_client.subscribe.assert_awaited_once_with("/myapp/&present", qos=0)

    async def test_failed_background_presence_subscribe_emits_error(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "error")
        mock_cm, mock_client = _make_mock_mqtt_client()
        mock_client.subscribe.side_effect = aiomqtt.MqttError("subscribe failed")
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            gear.on("absent", lambda payload: None)
            while not seen:
                await asyncio.sleep(0)
            await gear.disconnect()
        assert seen == [("error", "subscribe failed")]
        assert not gear._pending

    async def test_resubscribes_after_reconnect(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "connected", "disconnected")
        drop = asyncio.Event()
        first_cm, first_client = _make_mock_mqtt_client(drop=drop)
        second_cm, second_client = _make_mock_mqtt_client()

        with (
            patch("microgear.session.aiomqtt.Client", side_effect=[first_cm, second_cm]),
            patch("microgear.session._RECONNECT_INTERVAL", 0),
        ):
            await gear.connect("myapp")
            await gear.subscribe("/a")
            await gear.subscribe("/b")
            drop.set()
            while len(seen) < 3:
                await asyncio.sleep(0)
            await gear.disconnect()

        assert seen[:3] == [("connected",), ("disconnected",), ("connected",)]
        assert second_client.subscribe.await_args_list == [
            call("/myapp/a", qos=0),
            call("/myapp/b", qos=0),
        ]
        assert gear.subscriptions == ["/myapp/a", "/myapp/b"]

    async def test_message_event_uses_public_topic(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "message")
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            await gear._router.dispatch("/myapp/room/temp", b"22")
            await gear.disconnect()
        assert seen == [("message", "/room/temp", b"22")]


class TestResetToken:
    async def test_success(self, tmp_path):
        gear = _gear(tmp_path)
        with aioresponses() as m:
            m.get(_REVOKE_URL, body="OK")
            assert await gear.reset_token() is True
        data = json.loads(gear.cache_path.read_text())
        assert data == {"_": None}

    async def test_failed(self, tmp_path):
        gear = _gear(tmp_path)
        with aioresponses() as m:
            m.get(_REVOKE_URL, body="FAILED")
            assert await gear.reset_token() is False
        data = json.loads(gear.cache_path.read_text())
        assert data["_"]["accesstoken"] == CACHED_ACCESS

    async def test_http_error_emits_error(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "error")
        with aioresponses() as m:
            m.get(_REVOKE_URL, exception=aiohttp.ClientConnectionError("refused"))
            assert await gear.reset_token() is False
        assert len(seen) == 1
        assert str(seen[0][1]).startswith("Reset token error : ")

    async def test_timeout_emits_error(self, tmp_path):
        gear = _gear(tmp_path)
        seen = _recorder(gear, "error")
        with aioresponses() as m:
            m.get(_REVOKE_URL, exception=asyncio.TimeoutError())
            assert await gear.reset_token() is False
        assert len(seen) == 1
        assert str(seen[0][1]).startswith("Reset token error : ")
        data = json.loads(gear.cache_path.read_text())
        assert data["_"]["accesstoken"] == CACHED_ACCESS

    async def test_in_memory_token_revoked_after_cache_loss(self, tmp_path):
        gear = _gear(tmp_path)
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("microgear.session.aiomqtt.Client", return_value=mock_cm):
            await gear.connect("myapp")
            await gear.disconnect()
        gear.cache_path.unlink()
        with aioresponses() as m:
            m.get(_REVOKE_URL, body="OK")
            assert await gear.reset_token() is True
            assert len(m.requests) == 1

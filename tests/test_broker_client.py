"""Tests for PahoBrokerClient and broker address parsing."""
from __future__ import annotations

import dataclasses
import os
import threading
import time
import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest

from serialbridge.broker_client import (
    ConnectError,
    ConnectionLost,
    ConnectOptions,
    InboundMessage,
    PahoBrokerClient,
    BrokerError,
    parse_broker_address,
)

OPTIONS = ConnectOptions(will_topic="avail", will_payload="offline", username="user", password="pw", timeout=0.2)


class TestParseBrokerAddress:
    def test_tcp_uri(self):
        addr = parse_broker_address("tcp://broker.local:1884")
        assert (addr.transport, addr.host, addr.port, addr.tls) == ("tcp", "broker.local", 1884, False)

    def test_bare_host_defaults(self):
        addr = parse_broker_address("localhost")
        assert (addr.transport, addr.host, addr.port, addr.tls) == ("tcp", "localhost", 1883, False)

    def test_ssl_default_port(self):
        addr = parse_broker_address("ssl://broker.local")
        assert addr.tls is True
        assert addr.port == 8883

    def test_websockets(self):
        addr = parse_broker_address("wss://broker.local/mqtt")
        assert addr.transport == "websockets"
        assert addr.port == 443
        assert addr.path == "/mqtt"

    def test_unknown_scheme(self):
        with pytest.raises(ValueError, match="scheme"):
            parse_broker_address("http://broker.local")

    def test_missing_host(self):
        with pytest.raises(ValueError):
            parse_broker_address("tcp://:1883")


def _make_client(*, rc: int = 0, connack: bool = True):
    """PahoBrokerClient with a mocked paho Client that acks on loop_start()."""
    broker = PahoBrokerClient("tcp://localhost:1883", "test-bridge")
    paho = MagicMock()
    flags = SimpleNamespace(session_present=False)

    def _ack():
        if connack:
            broker._on_connect(paho, None, flags, rc, None)

    paho.loop_start.side_effect = _ack
    paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return broker, paho


class TestPahoConnect:
    def test_connect_configures_will_and_credentials(self):
        broker, paho = _make_client()
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho) as client_cls:
            info = broker.connect(OPTIONS)

        assert info.session_present is False
        assert broker.is_connected
        assert client_cls.call_args.kwargs["clean_session"] is True
        paho.will_set.assert_called_once_with("avail", "offline", qos=1, retain=True)
        paho.username_pw_set.assert_called_once_with("user", "pw")
        paho.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=5)
        paho.connect.assert_called_once_with("localhost", 1883, keepalive=60)

    def test_unreachable_broker(self):
        broker, paho = _make_client()
        paho.connect.side_effect = ConnectionRefusedError("refused")
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            with pytest.raises(ConnectError, match="Cannot reach broker"):
                broker.connect(OPTIONS)
        assert not broker.is_connected

    def test_refused_credentials(self):
        broker, paho = _make_client(rc=5)
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            with pytest.raises(ConnectError, match="refused"):
                broker.connect(OPTIONS)
        assert not broker.is_connected
        paho.loop_stop.assert_called_once()

    def test_connack_timeout(self):
        broker, paho = _make_client(connack=False)
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            with pytest.raises(ConnectError, match="No CONNACK"):
                broker.connect(OPTIONS)


class TestPahoStream:
    def _connected(self):
        broker, paho = _make_client()
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            broker.connect(OPTIONS)
        return broker, paho

    def test_messages_then_stop(self):
        broker, paho = self._connected()
        broker._on_message(paho, None, SimpleNamespace(topic="tx", payload=b"\x01\x02"))
        broker._on_message(paho, None, SimpleNamespace(topic="rxctl", payload=b"2"))
        broker.stop_consuming()

        assert list(broker.consume()) == [
            InboundMessage("tx", b"\x01\x02"),
            InboundMessage("rxctl", b"2"),
        ]

    def test_unexpected_disconnect_emits_connection_lost(self):
        broker, paho = self._connected()
        broker._on_disconnect(paho, None, None, 7, None)
        broker.stop_consuming()

        events = list(broker.consume())
        assert len(events) == 1
        assert isinstance(events[0], ConnectionLost)
        assert not broker.is_connected

    def test_requested_disconnect_is_not_a_loss(self):
        broker, paho = self._connected()
        broker.disconnect()
        broker._on_disconnect(paho, None, None, 0, None)
        broker.stop_consuming()

        assert list(broker.consume()) == []
        paho.disconnect.assert_called_once()

    def test_stop_from_other_thread_unblocks_consume(self):
        broker, _ = self._connected()
        timer = threading.Timer(0.05, broker.stop_consuming)
        timer.start()
        assert list(broker.consume()) == []
        timer.join()


class TestPahoPublishSubscribe:
    def _connected(self):
        broker, paho = _make_client()
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            broker.connect(OPTIONS)
        return broker, paho

    def test_publish_waits_for_ack(self):
        broker, paho = self._connected()
        info = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
        info.is_published.return_value = True
        paho.publish.return_value = info

        assert broker.publish("rx", b"\x01", qos=1) is True
        info.wait_for_publish.assert_called_once()

    def test_publish_rejected(self):
        broker, paho = self._connected()
        paho.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
        assert broker.publish("rx", b"\x01", qos=1) is False

    def test_publish_before_connect(self):
        broker = PahoBrokerClient("localhost", "test-bridge")
        assert broker.publish("rx", b"") is False

    def test_subscribe_failure_raises(self):
        broker, paho = self._connected()
        paho.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        with pytest.raises(BrokerError, match="Subscribe"):
            broker.subscribe("tx", qos=2)


class TestPahoReconnect:
    def _lost(self, *, timeout: float = 0.2):
        broker, paho = _make_client()
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            broker.connect(dataclasses.replace(OPTIONS, timeout=timeout))
        broker._on_disconnect(paho, None, None, 7, None)
        return broker, paho

    def test_reconnect_before_connect(self):
        broker = PahoBrokerClient("localhost", "test-bridge")
        with pytest.raises(ConnectError):
            broker.reconnect()

    def test_reconnect_waits_for_network_thread(self):
        broker, paho = self._lost(timeout=5.0)
        flags = SimpleNamespace(session_present=False)
        timer = threading.Timer(0.05, broker._on_connect, args=(paho, None, flags, 0, None))
        timer.start()

        broker.reconnect()
        timer.join()

        assert broker.is_connected
        paho.reconnect.assert_not_called()
        paho.loop_stop.assert_not_called()

    def test_no_connack_within_timeout(self):
        broker, _ = self._lost()
        with pytest.raises(ConnectError, match="No CONNACK"):
            broker.reconnect()

    def test_refused_on_reconnect(self):
        broker, paho = self._lost(timeout=5.0)
        timer = threading.Timer(0.05, broker._on_connect, args=(paho, None, None, 5, None))
        timer.start()

        with pytest.raises(ConnectError, match="refused"):
            broker.reconnect()
        timer.join()

    def test_restarts_stopped_loop_without_blocking_connect(self):
        broker, paho = self._lost()
        broker._stop_loop()
        paho.loop_start.reset_mock()

        broker.reconnect()

        paho.connect_async.assert_called_once_with("localhost", 1883, keepalive=60)
        paho.loop_start.assert_called_once()
        paho.reconnect.assert_not_called()
        assert broker.is_connected

    def test_already_reconnected_by_transport(self):
        broker, paho = _make_client()
        with patch("serialbridge.broker_client.mqtt.Client", return_value=paho):
            broker.connect(OPTIONS)

        broker.reconnect()
        paho.connect_async.assert_not_called()

    def test_stop_aborts_connack_wait(self):
        broker, _ = self._lost(timeout=30.0)
        timer = threading.Timer(0.1, broker.stop_consuming)
        timer.start()

        started = time.monotonic()
        with pytest.raises(ConnectError, match="Stop requested"):
            broker.reconnect()
        timer.join()

        assert time.monotonic() - started < 1.0


@pytest.mark.e2e
class TestLiveBroker:
    def test_round_trip(self):
        address = os.environ["SERIALTOMQTT_TEST_BROKER"]
        topic = f"serialtomqtt-test/{uuid.uuid4().hex}"
        broker = PahoBrokerClient(address, f"serialtomqtt-{uuid.uuid4().hex[:8]}")
        broker.connect(ConnectOptions(will_topic=f"{topic}/avail", will_payload="offline"))
        try:
            broker.subscribe(topic, qos=2)
            assert broker.publish(topic, b"ping", qos=1)
            threading.Timer(2.0, broker.stop_consuming).start()
            for event in broker.consume():
                assert event == InboundMessage(topic, b"ping")
                break
        finally:
            broker.disconnect()

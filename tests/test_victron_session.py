"""
Victron broker session tests.
"""
import threading

import pytest

import mqtt
from conftest import mqtt_message
from victron_session import (
  BrokerDisconnected, DeviceIdentity, DiscoveryTimeout, SessionNotReady, SessionState, VictronSession,
  parse_identity
)

STATUS_ONLINE = '{"clientId":"sma","connected":1,"version":"1.0","services":{"sma":"pvinverter"}}'
STATUS_OFFLINE = '{"clientId":"sma","connected":0,"version":"1.0","services":{"sma":"pvinverter"}}'


def subscribed_queue(mqtt_client):
  return mqtt_client.set_message_queue.call_args.kwargs["subscribed_queue"]


class TestParseIdentity:

  def test_identity(self):
    identity = parse_identity(b'{"portalId":"P1","deviceInstance":{"sma":5}}', "sma")

    assert identity == DeviceIdentity("P1", 5)
    assert identity.topic_prefix == "W/P1/pvinverter/5/"

  @pytest.mark.parametrize("payload", [
    b'not json',
    b'[]',
    b'{"portalId":"P1"}',
    b'{"portalId":"P1","deviceInstance":{"other":3}}',
    b'{"portalId":null,"deviceInstance":{"sma":5}}',
  ])
  def test_invalid(self, payload):
    assert parse_identity(payload, "sma") is None


class TestConnect:

  def test_last_will_marks_device_offline(self, mqtt_client):
    VictronSession(mqtt_client=mqtt_client, client_id="sma")

    mqtt_client.will_set.assert_called_once_with(topic="device/sma/Status", payload=STATUS_OFFLINE,
                                                 qos=1, retain=True)

  def test_connect_starts_client(self, mqtt_client):
    session = VictronSession(mqtt_client=mqtt_client, client_id="sma")

    assert session.connect(timeout=1) is True
    assert session.state is SessionState.CONNECTING
    mqtt_client.start.assert_called_once()
    mqtt_client.wait_for_connection.assert_called_once_with(1)


class TestDiscover:

  def test_discover(self, session, mqtt_client):
    identity = session.discover(timeout=1)

    assert identity == DeviceIdentity("P1", 5)
    assert session.identity == identity
    assert session.state is SessionState.READY
    mqtt_client.subscribe.assert_called_once_with("device/sma/DBus")
    mqtt_client.set_status.assert_called_once_with("device/sma/Status", payload=STATUS_ONLINE, retain=True)

  def test_discovery_topic_closed_after_handshake(self, session, mqtt_client):
    session.discover(timeout=1)

    mqtt_client.unsubscribe.assert_called_once_with("device/sma/DBus")
    mqtt_client.set_message_queue.assert_called_with(subscribed_queue=None)

  def test_invalid_and_foreign_messages_are_ignored(self, mqtt_client):
    session = VictronSession(mqtt_client=mqtt_client, client_id="sma")
    session.connect(timeout=1)
    messages = subscribed_queue(mqtt_client)
    messages.put(mqtt_message("device/other/DBus", b'{"portalId":"X","deviceInstance":{"other":1}}'))
    messages.put(mqtt_message("device/sma/DBus", b'garbage'))
    messages.put(mqtt_message("device/sma/DBus", b'{"portalId":"P2","deviceInstance":{"sma":7}}'))

    assert session.discover(timeout=1) == DeviceIdentity("P2", 7)

  def test_timeout(self, mqtt_client):
    session = VictronSession(mqtt_client=mqtt_client, client_id="sma")
    session.connect(timeout=1)

    with pytest.raises(DiscoveryTimeout):
      session.discover(timeout=0.05)
    assert session.identity is None

  def test_aborted_by_stopper(self, mqtt_client):
    stopper = threading.Event()
    stopper.set()
    session = VictronSession(mqtt_client=mqtt_client, client_id="sma", stopper=stopper)
    session.connect(timeout=1)

    with pytest.raises(DiscoveryTimeout):
      session.discover(timeout=60)


class TestPublish:

  def test_publish_before_discovery_is_refused(self, session, mqtt_client):
    with pytest.raises(SessionNotReady):
      session.publish("Ac/Power", 2346)

    mqtt_client.do_publish.assert_not_called()

  def test_publish_under_prefix(self, session, mqtt_client):
    session.discover(timeout=1)

    session.publish("Ac/Power", 2346)

    mqtt_client.do_publish.assert_called_once_with(topic="W/P1/pvinverter/5/Ac/Power",
                                                   message='{"value":2346}', retain=False)

  def test_retain_flag(self, mqtt_client):
    session = VictronSession(mqtt_client=mqtt_client, client_id="sma", retain=True)
    session.connect(timeout=1)
    subscribed_queue(mqtt_client).put(mqtt_message("device/sma/DBus", b'{"portalId":"P1","deviceInstance":{"sma":5}}'))
    session.discover(timeout=1)

    session.publish("Ac/Current", 10.3)

    mqtt_client.do_publish.assert_called_once_with(topic="W/P1/pvinverter/5/Ac/Current",
                                                   message='{"value":10.3}', retain=True)

  def test_not_connected(self, session, mqtt_client):
    session.discover(timeout=1)
    mqtt_client.is_connected.return_value = False

    with pytest.raises(BrokerDisconnected):
      session.publish("Ac/Power", 2346)

    assert session.state is SessionState.DISCONNECTED
    mqtt_client.do_publish.assert_not_called()

  def test_connection_lost_during_publish(self, session, mqtt_client):
    session.discover(timeout=1)
    mqtt_client.do_publish.return_value = mqtt.MQTT_ERR_NO_CONN

    with pytest.raises(BrokerDisconnected):
      session.publish("Ac/Power", 2346)


class TestAnnounce:

  def test_announce_is_not_retained(self, session, mqtt_client):
    session.discover(timeout=1)

    session.announce()

    mqtt_client.do_publish.assert_called_once_with(topic="device/sma/Status", message=STATUS_ONLINE, retain=False)

  def test_announce_not_connected(self, session, mqtt_client):
    mqtt_client.is_connected.return_value = False

    with pytest.raises(BrokerDisconnected):
      session.announce()


class TestReconnect:

  def test_reconnect_keeps_identity(self, session, mqtt_client):
    session.discover(timeout=1)
    mqtt_client.is_connected.return_value = False
    with pytest.raises(BrokerDisconnected):
      session.publish("Ac/Power", 1)

    mqtt_client.is_connected.return_value = True
    session.reconnect()

    mqtt_client.reconnect.assert_called_once()
    assert session.state is SessionState.READY
    assert session.identity == DeviceIdentity("P1", 5)
    mqtt_client.subscribe.assert_called_once()

    session.publish("Ac/Power", 1)
    mqtt_client.do_publish.assert_called_once_with(topic="W/P1/pvinverter/5/Ac/Power",
                                                   message='{"value":1}', retain=False)

  def test_ready_after_broker_confirms_reconnect(self, session, mqtt_client):
    session.discover(timeout=1)
    mqtt_client.is_connected.return_value = False

    session.reconnect()

    assert session.state is SessionState.CONNECTING

    mqtt_client.is_connected.return_value = True
    session.publish("Ac/Power", 1)

    assert session.state is SessionState.READY

  def test_reconnect_failure_propagates(self, session, mqtt_client):
    session.discover(timeout=1)
    mqtt_client.reconnect.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(OSError):
      session.reconnect()


def test_close_marks_device_offline(session, mqtt_client):
  session.discover(timeout=1)

  session.close()

  mqtt_client.set_status.assert_called_with("device/sma/Status", payload=STATUS_OFFLINE, retain=True)
  assert session.state is SessionState.DISCONNECTED

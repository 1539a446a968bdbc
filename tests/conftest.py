"""
Pytest configuration and fixtures.

paho and requests are replaced by mocks; no network access.
"""
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

import mqtt
import sma_api as sma
from victron_session import VictronSession

DISCOVERY_PAYLOAD = b'{"portalId":"P1","deviceInstance":{"sma":5}}'


def mqtt_message(topic, payload):
  """Stand-in for paho's MQTTMessage; only topic and payload are used"""
  return SimpleNamespace(topic=topic, payload=payload)


@pytest.fixture
def mqtt_client():
  """Connected MQTT client; every publish succeeds."""
  client = Mock(spec=mqtt.MQTTClient)
  client.is_connected.return_value = True
  client.wait_for_connection.return_value = True
  client.do_publish.return_value = mqtt.MQTT_ERR_SUCCESS
  return client


@pytest.fixture
def session(mqtt_client):
  """Connected session; discovery answer of the GX is already waiting in the queue."""
  session = VictronSession(mqtt_client=mqtt_client, client_id="sma")
  session.connect(timeout=1)
  subscribed_queue = mqtt_client.set_message_queue.call_args.kwargs["subscribed_queue"]
  subscribed_queue.put(mqtt_message("device/sma/DBus", DISCOVERY_PAYLOAD))
  return session


@pytest.fixture
def inverter():
  """Inverter which accepts the login and has no live data configured."""
  inverter = Mock(spec=sma.SMAWebAPI)
  inverter.login.return_value = sma.ApiResult.success("token-1")
  inverter.fetch_metadata.return_value = sma.ApiResult.success({"product": "STP 10.0-3SE-40"})
  inverter.fetch_live.return_value = sma.ApiResult.success([])
  return inverter

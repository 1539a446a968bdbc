"""
  Victron GX broker session

  Registers the bridge as pvinverter with the GX device via dbus-mqtt-devices
  (https://github.com/freakent/dbus-mqtt-devices) and publishes values under
  the topic prefix which the GX assigns.

  Discovery handshake:
  - subscribe  device/<clientId>/DBus    <- {"portalId": ..., "deviceInstance": {"<clientId>": <id>}}
  - publish    device/<clientId>/Status  -> {"clientId": ..., "connected": 1, "version": "1.0",
                                             "services": {"<clientId>": "pvinverter"}}
  Values:
  - publish    W/<portalId>/pvinverter/<id>/<suffix>  -> {"value": <number>}

        This program is free software: you can redistribute it and/or modify
        it under the terms of the GNU General Public License as published by
        the Free Software Foundation, either version 3 of the License, or
        (at your option) any later version.

        This program is distributed in the hope that it will be useful,
        but WITHOUT ANY WARRANTY; without even the implied warranty of
        MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
        GNU General Public License for more details.

        You should have received a copy of the GNU General Public License
        along with this program.  If not, see <http://www.gnu.org/licenses/>.
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass
from enum import Enum
import json
import queue
import threading
import time

import mqtt as mqtt
from sma_channels import Number, encode_payload

# Logging
import __main__
import logging
import os
logger = logging.getLogger(f"{os.path.splitext(os.path.basename(getattr(__main__, '__file__', 'sma-victron')))[0]}.{__name__}")


# ----------------------------------------------------------------------------------------------------------------------
# Exceptions
# ----------------------------------------------------------------------------------------------------------------------
class BrokerDisconnected(Exception):
  """Not connected to the broker; recover with VictronSession.reconnect()"""


class SessionNotReady(RuntimeError):
  """Publish attempted before the discovery handshake resolved the device identity"""


class DiscoveryTimeout(Exception):
  """GX device did not answer the discovery handshake in time"""


# ----------------------------------------------------------------------------------------------------------------------
# SessionState / DeviceIdentity
# ----------------------------------------------------------------------------------------------------------------------
class SessionState(Enum):
  DISCONNECTED = "disconnected"
  CONNECTING = "connecting"
  DISCOVERING = "discovering"
  READY = "ready"


@dataclass(frozen=True)
class DeviceIdentity:
  portal_id: str
  device_instance: int

  @property
  def topic_prefix(self) -> str:
    return f"W/{self.portal_id}/pvinverter/{self.device_instance}/"


def parse_identity(payload: Any, client_id: str) -> Optional[DeviceIdentity]:
  """
  Parse the DBus message of dbus-mqtt-devices.

  :param payload: raw message payload (bytes or str)
  :param client_id: victron client id the device instance is registered for
  :return: DeviceIdentity, or None if the message does not hold one for client_id
  """
  try:
    data = json.loads(payload)
    portal_id = data["portalId"]
    device_instance = data["deviceInstance"][client_id]
  except (ValueError, TypeError, KeyError) as e:
    logger.warning(f"Invalid discovery message {payload!r}: {type(e).__name__} {e}")
    return None

  if portal_id is None or device_instance is None:
    logger.warning(f"Incomplete discovery message {payload!r}")
    return None

  return DeviceIdentity(portal_id=str(portal_id), device_instance=device_instance)


# ----------------------------------------------------------------------------------------------------------------------
# class VictronSession
# ----------------------------------------------------------------------------------------------------------------------
class VictronSession:
  """
  Session with the MQTT broker of a Victron GX device.

  State: DISCONNECTED -> CONNECTING -> DISCOVERING -> READY; on a lost connection back to
  DISCONNECTED, and to READY again once the broker has confirmed the reconnect. The device identity survives reconnects.
  Publishing values is only possible once the identity is resolved.
  """

  VERSION = "1.0"
  SERVICE = "pvinverter"

  def __init__(self,
               mqtt_client: mqtt.MQTTClient,
               client_id: str,
               retain: bool = False,
               stopper: Optional[threading.Event] = None) -> None:
    """
    :param mqtt_client: configured, not yet started MQTT client
    :param client_id: victron client id; name of the device in the GX console
    :param retain: retain flag for value messages
    :param stopper: aborts a pending discovery when set
    """
    self.__stopper = stopper if stopper is not None else threading.Event()
    self.__mqtt = mqtt_client
    self.__client_id = client_id
    self.__retain = retain
    self.__state = SessionState.DISCONNECTED
    self.__identity: Optional[DeviceIdentity] = None
    self.__queue: queue.Queue = queue.Queue()

    # GX removes the device when the bridge disappears without saying goodbye
    self.__mqtt.will_set(topic=self.status_topic, payload=self.__status_payload(connected=0),
                         qos=1, retain=True)

  @property
  def state(self) -> SessionState:
    return self.__state

  @property
  def identity(self) -> Optional[DeviceIdentity]:
    return self.__identity

  @property
  def status_topic(self) -> str:
    return f"device/{self.__client_id}/Status"

  @property
  def discovery_topic(self) -> str:
    return f"device/{self.__client_id}/DBus"

  def __status_payload(self, connected: int = 1) -> str:
    status: Dict[str, Any] = {
      "clientId": self.__client_id,
      "connected": connected,
      "version": self.VERSION,
      "services": {self.__client_id: self.SERVICE}
    }
    return json.dumps(status, separators=(',', ':'))

  # --------------------------------------------------------------------------------------------------------------------
  # connect
  # --------------------------------------------------------------------------------------------------------------------
  def connect(self, timeout: float) -> bool:
    """
    Start the MQTT client thread and wait for the broker to accept the connection.

    :param timeout: seconds to wait for the connection
    :return: True when connected
    """
    logger.debug(">>")

    self.__state = SessionState.CONNECTING
    self.__mqtt.set_message_queue(subscribed_queue=self.__queue)
    self.__mqtt.start()

    connected = self.__mqtt.wait_for_connection(timeout)
    if not connected:
      logger.warning(f"No connection with MQTT broker after {timeout}s")

    logger.debug(f"<< connected={connected}")
    return connected

  # --------------------------------------------------------------------------------------------------------------------
  # discover
  # --------------------------------------------------------------------------------------------------------------------
  def discover(self, timeout: float) -> DeviceIdentity:
    """
    Announce the bridge as pvinverter and wait for the GX to assign portal id and device instance.

    :param timeout: seconds to wait for the answer of the GX
    :return: resolved device identity
    :raises DiscoveryTimeout: no valid answer within timeout
    """
    logger.debug(">>")

    self.__state = SessionState.DISCOVERING
    self.__mqtt.subscribe(self.discovery_topic)

    # Retained; also re-published by the mqtt client on every reconnect
    self.__mqtt.set_status(self.status_topic, payload=self.__status_payload(), retain=True)

    deadline = time.monotonic() + timeout
    while True:
      remaining = deadline - time.monotonic()
      if remaining <= 0:
        raise DiscoveryTimeout(f"No answer on {self.discovery_topic} within {timeout}s")

      if self.__stopper.is_set():
        raise DiscoveryTimeout("Discovery aborted")

      try:
        message = self.__queue.get(timeout=min(remaining, 1))
      except queue.Empty:
        continue

      if message.topic != self.discovery_topic:
        logger.debug(f"Ignore message on {message.topic}")
        continue

      identity = parse_identity(message.payload, self.__client_id)
      if identity is not None:
        break

    # GX answers again on every reconnect; the identity is kept, so stop listening
    self.__mqtt.unsubscribe(self.discovery_topic)
    self.__mqtt.set_message_queue(subscribed_queue=None)

    self.__identity = identity
    self.__state = SessionState.READY
    logger.info(f"Discovered portal id {identity.portal_id}, device instance {identity.device_instance}; "
                f"topic prefix = {identity.topic_prefix}")
    return identity

  # --------------------------------------------------------------------------------------------------------------------
  # publish
  # --------------------------------------------------------------------------------------------------------------------
  def publish(self, topic_suffix: str, value: Number) -> None:
    """
    Publish one value under the discovered topic prefix.

    :raises SessionNotReady: discovery has not resolved the device identity
    :raises BrokerDisconnected: no connection with the broker
    """
    if self.__identity is None:
      raise SessionNotReady(f"Cannot publish {topic_suffix}; device identity not yet discovered")

    self.__check_connected()

    rc = self.__mqtt.do_publish(topic=f"{self.__identity.topic_prefix}{topic_suffix}",
                                message=encode_payload(value),
                                retain=self.__retain)
    if rc == mqtt.MQTT_ERR_NO_CONN:
      self.__state = SessionState.DISCONNECTED
      raise BrokerDisconnected(f"Publish {topic_suffix} failed; not connected")

  # --------------------------------------------------------------------------------------------------------------------
  # announce
  # --------------------------------------------------------------------------------------------------------------------
  def announce(self) -> None:
    """Periodic liveness message; not retained"""
    logger.debug(">>")
    self.__check_connected()

    rc = self.__mqtt.do_publish(topic=self.status_topic, message=self.__status_payload(), retain=False)
    if rc == mqtt.MQTT_ERR_NO_CONN:
      self.__state = SessionState.DISCONNECTED
      raise BrokerDisconnected("Announce failed; not connected")

  def __check_connected(self) -> None:
    if not self.__mqtt.is_connected():
      self.__state = SessionState.DISCONNECTED
      raise BrokerDisconnected("Not connected with MQTT broker")

    # Connection (re)confirmed by the broker
    if self.__state is not SessionState.READY and self.__identity is not None:
      self.__state = SessionState.READY

  # --------------------------------------------------------------------------------------------------------------------
  # reconnect
  # --------------------------------------------------------------------------------------------------------------------
  def reconnect(self) -> None:
    """
    Re-establish the broker connection. Discovery is not repeated; the identity is kept.
    Status is restored by the mqtt client on connect. The state stays CONNECTING till the
    broker has confirmed the connection.

    :raises OSError: broker not reachable
    """
    logger.info("Reconnect to MQTT broker")
    self.__state = SessionState.CONNECTING
    self.__mqtt.reconnect()
    if self.__identity is not None and self.__mqtt.is_connected():
      self.__state = SessionState.READY

  # --------------------------------------------------------------------------------------------------------------------
  # close
  # --------------------------------------------------------------------------------------------------------------------
  def close(self) -> None:
    """Tell the GX the device is gone; the caller stops the mqtt thread afterwards"""
    logger.debug(">>")
    self.__mqtt.set_status(self.status_topic, payload=self.__status_payload(connected=0), retain=True)
    self.__state = SessionState.DISCONNECTED

"""
  MQTT class using paho-mqtt

  https://github.com/eclipse/paho.mqtt.python/blob/master/src/paho/mqtt/client.py
  https://eclipse.dev/paho/files/paho.mqtt.python/html/migrations.html
  http://www.steves-internet-guide.com/mqtt-clean-sessions-example/
  http://www.steves-internet-guide.com/mqttv5/

  v1.0.0: initial version
  v1.0.1: add last will
  v1.1.0: Add subscribing to MQTT server
  v2.0.0: Parameterize clean session; remove mqtt-rate
  v3.0.0: paho-mqtt 2.x callback API; TLS; connection event; explicit reconnect; publish returns rc;
          MQTT v3.1.1 only

  LIMITATIONS
  * Only transport = TCP supported; websockets is not supported
  * Clean_session and clean-start partially implemented (not relevant for publishing clients)


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

__version__ = "3.0.0"

import time
import threading
import random
import string
import socket
import ssl
import paho.mqtt.client as mqtt_client
import paho.mqtt as paho_mqtt

# Logging
import __main__
import logging
import os
script = os.path.basename(getattr(__main__, "__file__", "sma-victron"))
script = os.path.splitext(script)[0]
logger = logging.getLogger(script + "." + __name__)


class MQTTClient(threading.Thread):
  """
  Manages an MQTT client as a separate thread.

  paho's network loop runs in its own thread (loop_start); this thread waits for network
  connectivity, connects, and forces a reconnect when the client stays disconnected for longer
  than MQTT_CONNECTION_TIMEOUT. Received messages of subscribed topics are handed to the
  application via a queue (set_message_queue), connection state via wait_for_connection().

  :ivar __mqtt: The underlying `paho-mqtt` client instance
  :type __mqtt: paho.mqtt.client.Client
  :ivar __connected: Set while connected to the broker
  :type __connected: threading.Event
  :ivar __status_topic: Topic re-published on every (re)connect
  :type __status_topic: str
  :ivar __subscribed_queue: Queue for storing received subscribed messages
  :type __subscribed_queue: queue.Queue
  """
  def __init__(self,
               mqtt_broker,
               mqtt_stopper,
               mqtt_port=1883,
               mqtt_client_id=None,
               mqtt_qos=1,
               mqtt_cleansession=True,
               username="",
               password="",
               tls=False,
               tls_insecure=False,
               ca_certs=None,
               worker_threads_stopper=None):

    """
    Args:
      :param str mqtt_broker: ip or dns
      :param threading.Event() mqtt_stopper: indicate to stop the mqtt thread; typically as last thread
      in main loop to flush out all mqtt messages
      :param int mqtt_port:
      :param str mqtt_client_id:
      :param int mqtt_qos: MQTT QoS 0,1,2 for publish
      :param bool mqtt_cleansession:
      :param str username:
      :param str password:
      :param bool tls: connect with TLS (MQTTS)
      :param bool tls_insecure: accept self-signed broker certificates; no certificate or hostname check
      :param str ca_certs: CA bundle to verify the broker; system default when None
      :param threading.Event() worker_threads_stopper: stopper event for other worker threads;
      mqtt thread sets this in case of failure

    Returns:
      None
    """

    logger.info(f">> paho-mqtt version = {paho_mqtt.__version__}")
    super().__init__(name="mqtt")

    self.__mqtt_broker = mqtt_broker
    self.__mqtt_stopper = mqtt_stopper
    self.__mqtt_port = mqtt_port

    # Generate random client id if not specified;
    # Basename ('script', from log module) and extended with 10 random characters
    if mqtt_client_id is None:
      self.__mqtt_client_id = script + '_' + ''.join(random.choice(string.ascii_lowercase) for _i in range(10))
    else:
      self.__mqtt_client_id = mqtt_client_id

    logger.info(f"MQTT Client ID = {self.__mqtt_client_id}")

    if mqtt_qos not in [0, 1, 2]:
      logger.error(f"Invalid QoS level = {mqtt_qos}; reset to qos=1")
      mqtt_qos = 1

    self.__qos = mqtt_qos

    if worker_threads_stopper is None:
      self.__worker_threads_stopper = self.__mqtt_stopper
    else:
      self.__worker_threads_stopper = worker_threads_stopper

    # MQTT v3.1.1; dbus-mqtt-devices on the GX needs no v5 features
    self.__mqtt = mqtt_client.Client(mqtt_client.CallbackAPIVersion.VERSION2,
                                     client_id=self.__mqtt_client_id,
                                     clean_session=mqtt_cleansession,
                                     protocol=mqtt_client.MQTTv311)

    if tls:
      if tls_insecure:
        self.__mqtt.tls_set(ca_certs=ca_certs, cert_reqs=ssl.CERT_NONE)
        self.__mqtt.tls_insecure_set(True)
        logger.info("MQTT TLS enabled; broker certificate is NOT verified")
      else:
        self.__mqtt.tls_set(ca_certs=ca_certs, cert_reqs=ssl.CERT_REQUIRED)
        logger.info("MQTT TLS enabled")

    # Indicate whether thread has started - run() has been called
    self.__run = False

    self.__keepalive = 60

    # MQTT client tries to force a reconnection if
    # Client remains disconnected for more than MQTT_CONNECTION_TIMEOUT seconds
    self.__MQTT_CONNECTION_TIMEOUT = 60

    # Call back functions
    self.__mqtt.on_connect = self.__on_connect
    self.__mqtt.on_disconnect = self.__on_disconnect
    self.__mqtt.on_message = self.__on_message
    self.__mqtt.on_subscribe = self.__on_subscribe
    self.__mqtt.on_unsubscribe = self.__on_unsubscribe

    # Keeps track of connected status; managed via __set_connected()
    self.__connected = threading.Event()

    # Keep track how long client is disconnected
    # When threshold is exceeded, try to recover
    self.__disconnect_start_time = int(time.time())

    # Maintain a mqtt message count
    self.__mqtt_counter = 0

    if username:
      self.__mqtt.username_pw_set(username, password)

    # status topic & message
    self.__status_topic = None
    self.__status_payload = None
    self.__status_retain = None

    # Maintain last return code MQTT publish
    # Can be used to print update message if successful after error
    self.__last_rc = mqtt_client.MQTT_ERR_SUCCESS

    # Queue to store received subscribed messages
    self.__subscribed_queue = None

    # list of subscribed topics
    self.__list_of_subscribed_topics = []

  def __internet_on(self):
    """
    Check network connectivity to the MQTT broker by opening a plain socket.

    :return: True if the broker port accepts connections
    :rtype: bool
    """
    logger.debug(f">>")

    socket_connection = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    socket_connection.settimeout(5)
    try:
      socket_connection.connect((f"{self.__mqtt_broker}", int(self.__mqtt_port)))
      socket_connection.shutdown(socket.SHUT_RDWR)
      logger.debug(f"Connectivity to MQTT broker {self.__mqtt_broker} at port {self.__mqtt_port} available")
      return True
    except OSError as e:
      logger.info(f"Connectivity to MQTT broker {self.__mqtt_broker} at port {self.__mqtt_port} "
                  f"NOT yet available; Exception {e}")
      return False
    finally:
      socket_connection.close()

  def __set_connected(self, flag=True):
    logger.debug(f">> flag={flag}; connected={self.__connected.is_set()}")

    # Start disconnect timer on transition connected --> disconnected
    if not flag and self.__connected.is_set():
      self.__disconnect_start_time = int(time.time())
      logger.debug("Disconnect TIMER started")

    if flag:
      self.__connected.set()
    else:
      self.__connected.clear()
    return

  def __on_connect(self, _client, userdata, flags, reason_code, _properties=None):
    """
    On successful connect: re-publish status and re-subscribe to all topics, as
    both are lost when the connection was lost.
    """
    logger.debug(f">>")
    if not reason_code.is_failure:
      logger.info(f"Connected to {self.__mqtt_broker}: flags={flags}; reason={reason_code}")
      self.__set_connected(True)
      self.__set_status()

      for topic in self.__list_of_subscribed_topics:
        logger.debug(f"Resubscribe topic: {topic}")
        self.__mqtt.subscribe(topic, self.__qos)

    else:
      logger.error(f"userdata={userdata}; flags={flags}; reason={reason_code}")
      self.__set_connected(False)

  def __on_disconnect(self, _client, userdata, _disconnect_flags, reason_code, _properties=None):
    if reason_code.is_failure:
      logger.warning(f"Unexpected disconnect, userdata = {userdata}; reason = {reason_code}")
    else:
      logger.info(f"Expected disconnect, userdata = {userdata}; reason = {reason_code}")

    self.__set_connected(False)
    return

  def __on_message(self, _client, _userdata, message):
    """
    Store received message of a subscribed topic in the queue.

    :param message: The received message instance, containing topic and payload.
    :type message: MQTTMessage
    """
    logger.debug(f">> message = {message.topic}  {message.payload}")

    if self.__subscribed_queue is None:
      logger.warning(f"No message queue set; message on {message.topic} dropped")
      return

    self.__subscribed_queue.put(message)

  def __on_subscribe(self, _client, _userdata, mid, reason_code_list, _properties=None):
    logger.debug(f"Subscribed mid variable: {mid}")

    for rc in reason_code_list:
      if rc.is_failure:
        logger.warning(f"Subscription refused by broker; reason = {rc}")
      else:
        logger.debug(f"reasonCode = {rc}")

  def __on_unsubscribe(self, _client, _userdata, mid, _reason_code_list, _properties=None):
    logger.debug(f">> Unsubscribed: {mid}")

  def __set_status(self):
    logger.debug(">>")

    if self.__status_topic is not None:
      self.do_publish(self.__status_topic, self.__status_payload, self.__status_retain)

    return

  @property
  def message_count(self):
    return self.__mqtt_counter

  def is_connected(self):
    return self.__connected.is_set()

  def wait_for_connection(self, timeout=None):
    """
    Block till connected to the broker.

    :param float timeout: seconds; None waits forever
    :return: True when connected, False on timeout
    :rtype: bool
    """
    return self.__connected.wait(timeout)

  def set_status(self, topic, payload=None, retain=False):
    """
    Set the status message, which is published now and re-published on every (re)connect.

    :param topic: The MQTT topic to which the status will be published.
    :type topic: str
    :param payload: The payload to be sent as the status message. Defaults to None.
    :type payload: Optional[Any]
    :param retain: Specifies if the message should be retained by the broker.
    :type retain: bool
    :return: None
    """
    logger.debug(">>")
    self.__status_topic = topic
    self.__status_payload = payload
    self.__status_retain = retain
    self.__set_status()

  def will_set(self, topic, payload=None, qos=1, retain=False):
    """
    Set the Last Will and Testament, published by the broker when the client disconnects unexpectedly.

    .. note::
       Has to be set before the thread is started.

    :param topic: The topic on which the Last Will message will be published.
    :param payload: The message payload for the Last Will (default is None).
    :param qos: Quality of Service level for the Last Will message (default is 1).
    :param retain: Retain flag of the Last Will message (default is False).
    :return: None
    """
    logger.debug(f">>")

    if self.__run:
      logger.warning(f"Last Will/testament is set after run() is called. Not advised per documentation")

    self.__mqtt.will_set(topic, payload, qos, retain)

  def do_publish(self, topic, message, retain=False):
    """
    Publishes a message to a specified MQTT topic.

    Hands the message to paho; does not wait for delivery.

    :param topic: The topic to which the message is published.
    :type topic: str
    :param message: The payload message to be published to the topic.
    :type message: str
    :param retain: Specifies whether to retain the message on the broker. Defaults to False.
    :type retain: bool
    :return: paho return code, MQTT_ERR_SUCCESS or eg MQTT_ERR_NO_CONN
    :rtype: int
    """
    logger.debug(f">> TOPIC={topic}; MESSAGE={message}")

    try:
      mqttmessageinfo = self.__mqtt.publish(topic=topic, payload=message, qos=self.__qos, retain=retain)
    except ValueError as e:
      logger.warning(f"MQTT publish on topic {topic} rejected: {e}")
      return mqtt_client.MQTT_ERR_INVAL

    self.__mqtt_counter += 1

    if mqttmessageinfo.rc != mqtt_client.MQTT_ERR_SUCCESS:
      # Log only first failure, to prevent flooding of messages
      if mqttmessageinfo.rc != self.__last_rc:
        logger.warning(f"MQTT publish was not successful, rc = {mqttmessageinfo.rc}:"
                       f"{mqtt_client.error_string(mqttmessageinfo.rc)}")
    else:
      # Print only successful if previous publish was not successful
      if self.__last_rc != mqtt_client.MQTT_ERR_SUCCESS:
        logger.info(f"MQTT publish was successful, rc = {mqttmessageinfo.rc}:"
                    f"{mqtt_client.error_string(mqttmessageinfo.rc)}")

    self.__last_rc = mqttmessageinfo.rc
    return mqttmessageinfo.rc

  def set_message_queue(self, subscribed_queue):
    """
    Set the queue receiving messages of subscribed topics.

    :param subscribed_queue: queue.Queue receiving MQTTMessage objects; None drops received messages
    :return: None
    """

    self.__subscribed_queue = subscribed_queue

    return

  def subscribe(self, topic):
    """
    Subscribe to topic. The topic is stored, and (re)subscribed on every connect; when
    not yet connected, the subscription becomes active on connect.

    :param topic: The MQTT topic to subscribe to.
    :type topic: str
    :return: None
    """
    logger.debug(f">> topic = {topic}")

    self.__list_of_subscribed_topics.append(topic)

    if self.__subscribed_queue is None:
      logger.error(f"Subscription message queue has not been set --> call set_message_queue")
      return

    if self.__connected.is_set():
      self.__mqtt.subscribe(topic, self.__qos)
    return

  def unsubscribe(self, topic):
    logger.debug(f">> topic = {topic}")
    self.__mqtt.unsubscribe(topic)

    try:
      self.__list_of_subscribed_topics.remove(topic)
    except ValueError:
      logger.warning(f"MQTT client was not subscribed to topic '{topic}'; "
                     f"did you use exact same topic as when subscribing?")
    return

  def reconnect(self):
    """
    Force a reconnect to the broker, using the original connect parameters.

    :raises OSError: when the broker cannot be reached
    """
    logger.info(f"Reconnect to {self.__mqtt_broker}:{self.__mqtt_port}")
    self.__disconnect_start_time = int(time.time())
    self.__mqtt.reconnect()

  def __connect(self):
    # Set queue to unlimited (=65535) when qos>0
    self.__mqtt.max_queued_messages_set(0)
    self.__mqtt.reconnect_delay_set(min_delay=1, max_delay=360)

    self.__mqtt.connect_async(host=self.__mqtt_broker,
                              port=self.__mqtt_port,
                              keepalive=self.__keepalive)

  def run(self):
    logger.info(f"Broker = {self.__mqtt_broker}>>")
    self.__run = True

    # Wait till there is network connectivity to mqtt broker
    # Start with a small delay and incrementally (+20%) make larger
    delay = 0.1
    while not self.__internet_on():
      if self.__mqtt_stopper.wait(delay):
        return
      delay = delay * 1.2

      # Timeout after 60min
      if delay > 3600:
        logger.error(f"No connection to MQTT broker - EXIT")
        self.__mqtt_stopper.set()
        self.__worker_threads_stopper.set()
        return

    try:
      self.__connect()
    except (OSError, ValueError) as e:
      logger.warning(f"Exception {format(e)}")
      self.__mqtt_stopper.set()
      self.__worker_threads_stopper.set()
      return

    logger.info(f"Start mqtt loop...")
    self.__mqtt.loop_start()

    # Supervise connection; paho reconnects itself, but not always after a lost connection
    while not self.__mqtt_stopper.is_set():
      if not self.__connected.is_set():
        disconnect_time = int(time.time()) - self.__disconnect_start_time
        logger.debug(f"Disconnect TIMER = {disconnect_time}")
        if disconnect_time > self.__MQTT_CONNECTION_TIMEOUT:
          try:
            self.reconnect()
          except OSError as e:
            logger.warning(f"Exception {format(e)}")

            # reconnect failed....reset disconnect time, and retry after self.__MQTT_CONNECTION_TIMEOUT
            self.__disconnect_start_time = int(time.time())

      self.__mqtt_stopper.wait(0.1)

    # Close mqtt broker
    logger.debug(f"Close down MQTT client & connection to broker")
    self.__mqtt.disconnect()
    self.__mqtt.loop_stop()
    self.__mqtt_stopper.set()
    self.__worker_threads_stopper.set()

    logger.info(f"Shutting down MQTT Client... {self.__mqtt_counter} MQTT messages have been published")

    logger.info(f"<<")

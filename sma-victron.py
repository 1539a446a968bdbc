#!/usr/bin/python3

"""
 DESCRIPTION
   Read SMA Tripower X inverter via its web API and publish power and energy
   to a Victron GX device via MQTT, where the SMA shows up as PV inverter.
   The GX can then calculate household consumption:
     GRID-POWER + (PV-POWER - BATTERY-POWER)

   Requires on the GX device:
   - MQTT on LAN (Settings->Services->MQTT on LAN (SSL & plaintext))
   - https://github.com/freakent/dbus-mqtt-devices

  Worker threads:
  - SMA reader, channel mapper, publisher
  - MQTT client

  USAGE
    sma-victron.py [interval_ms] [--debug]

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

  VERSIONS: See README.md
"""
__version__ = "1.0.0"
__license__ = "GPLv3"

import argparse
import signal
import socket
import time
import sys
import threading
import platform
import os
from dataclasses import dataclass


# ----------------------------------------------------------------------------------------------------------------------
# Local imports
# ----------------------------------------------------------------------------------------------------------------------
import config as cfg
import mqtt as mqtt
import sma_api as sma
import sma_bridge as bridge
import victron_session as victron
from log import logger
logger.setLevel(cfg.loglevel)


# ----------------------------------------------------------------------------------------------------------------------
# Constants
# ----------------------------------------------------------------------------------------------------------------------
@dataclass
class CONSTANTS:
  LOCK_FILE_PREFIX: str = "\0"
  MQTT_SHUTDOWN_DELAY: int = 1
  EXIT_SUCCESS: int = 0
  EXIT_FAILURE: int = 1


# ----------------------------------------------------------------------------------------------------------------------
# Globals
# ----------------------------------------------------------------------------------------------------------------------
__exit_code = CONSTANTS.EXIT_FAILURE

# To flag that all worker threads (except mqtt) have to stop
t_threads_stopper = threading.Event()


# ----------------------------------------------------------------------------------------------------------------------
# SMAVictronManager
# ----------------------------------------------------------------------------------------------------------------------
class SMAVictronManager:
  """
  Set up the MQTT client, the Victron session, the SMA web API client and the bridge thread;
  start them in order and shut them down.
  """
  def __init__(self, stopper: threading.Event, poll_interval: float) -> None:
    logger.debug(">>")

    self.mqtt_stopper: threading.Event = threading.Event()
    self.threads_stopper: threading.Event = stopper
    self.poll_interval = poll_interval
    self.mqtt_client: mqtt.MQTTClient | None = None
    self.session: victron.VictronSession | None = None
    self.inverter: sma.SMAWebAPI | None = None
    self.bridge: bridge.SMABridge | None = None

    logger.debug("<<")
    return

  # --------------------------------------------------------------------------------------------------------------------
  # initialize_mqtt
  # --------------------------------------------------------------------------------------------------------------------
  def initialize_mqtt(self) -> mqtt.MQTTClient:
    """Initialize and configure MQTT client"""
    return mqtt.MQTTClient(
      mqtt_broker=cfg.MQTT_BROKER,
      mqtt_port=cfg.MQTT_PORT,
      mqtt_client_id=cfg.MQTT_CLIENT_UNIQ,
      mqtt_qos=cfg.MQTT_QOS,
      mqtt_cleansession=True,
      username=cfg.MQTT_USERNAME,
      password=cfg.MQTT_PASSWORD,
      tls=cfg.MQTT_TLS,
      tls_insecure=cfg.MQTT_TLS_INSECURE,
      ca_certs=cfg.MQTT_CA_CERTS,
      mqtt_stopper=self.mqtt_stopper,
      worker_threads_stopper=self.threads_stopper
    )

  # --------------------------------------------------------------------------------------------------------------------
  # setup
  # --------------------------------------------------------------------------------------------------------------------
  def setup(self) -> None:
    logger.debug(">>")

    self.mqtt_client = self.initialize_mqtt()
    self.session = victron.VictronSession(mqtt_client=self.mqtt_client,
                                          client_id=cfg.VICTRON_CLIENT_ID,
                                          retain=cfg.MQTT_RETAIN,
                                          stopper=self.threads_stopper)

    self.inverter = sma.SMAWebAPI(host=cfg.SMA_HOST,
                                  username=cfg.SMA_USER,
                                  password=cfg.SMA_PASSWORD,
                                  verify_tls=cfg.SMA_VERIFY_TLS,
                                  timeout=cfg.SMA_TIMEOUT)

    self.bridge = bridge.SMABridge(stopper=self.threads_stopper,
                                   inverter=self.inverter,
                                   session=self.session,
                                   poll_interval=self.poll_interval,
                                   announce_interval=cfg.ANNOUNCE_INTERVAL,
                                   discovery_timeout=cfg.DISCOVERY_TIMEOUT,
                                   login_retries=cfg.LOGIN_RETRY)

    logger.debug("<<")
    return

  # --------------------------------------------------------------------------------------------------------------------
  # start_components
  # --------------------------------------------------------------------------------------------------------------------
  def start_components(self) -> None:
    """
    Connect to the broker, register with the GX, log in on the inverter and start polling.

    :raises bridge.FatalStartupError: GX did not answer or inverter login failed
    """
    logger.debug(">>")

    self.session.connect(timeout=cfg.MQTT_CONNECT_TIMEOUT)
    self.bridge.startup()
    self.bridge.start()

    logger.debug("<<")
    return

  # --------------------------------------------------------------------------------------------------------------------
  # wait_till_done
  # --------------------------------------------------------------------------------------------------------------------
  def wait_till_done(self) -> None:
    logger.debug(">>")
    self.bridge.join()
    logger.debug("<<")
    return

  # --------------------------------------------------------------------------------------------------------------------
  # shutdown
  # --------------------------------------------------------------------------------------------------------------------
  def shutdown(self) -> None:
    """Gracefully shutdown all components"""
    logger.debug(">>")

    self.threads_stopper.set()

    if self.session is not None and self.mqtt_client is not None and self.mqtt_client.is_alive():
      self.session.close()

      # Allow for some time for MQTT to broadcast buffers
      time.sleep(CONSTANTS.MQTT_SHUTDOWN_DELAY)

    self.mqtt_stopper.set()

    if self.inverter is not None:
      self.inverter.close()

    logger.debug("<<")
    return


# ----------------------------------------------------------------------------------------------------------------------
# check_single_instance
# ----------------------------------------------------------------------------------------------------------------------
def check_single_instance() -> bool:
  """
  Checks if the script is already running to enforce a single instance of the application.

  Linux only: an abstract UNIX socket, named after the script, acts as lock. The lock is
  released by the OS when the process exits.

  :return: True if no other instance is running, False otherwise
  :rtype: bool
  """
  logger.debug(">>")

  if sys.platform == "linux":
    script_name = os.path.splitext(os.path.basename(__file__))[0]
    lockfile = f"{CONSTANTS.LOCK_FILE_PREFIX}{script_name}_lockfile"
    try:
      s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
      s.bind(lockfile)
      # Keep socket alive for the lifetime of the process
      check_single_instance.lock = s
      logger.info(f"Starting {__file__}; version = {__version__}")
    except OSError as err:
      logger.info(f"{lockfile} already running. Exiting; {err}")
      return False

  logger.debug("<<")
  return True


# ----------------------------------------------------------------------------------------------------------------------
# exit_gracefully
# ----------------------------------------------------------------------------------------------------------------------
def exit_gracefully(signum, _stackframe) -> None:
  """
  Signal handler; sets exit code to SUCCESS and stops all worker threads.

  :param signum: Signal number indicating the type of signal that was received.
  :type signum: int
  :param _stackframe: Current stack frame at the time the signal was received.
  :type _stackframe: FrameType
  :return: None
  """

  logger.debug(f"Signal {signum} {signal.Signals(signum).name}: >>")

  # status=0/SUCCESS
  global __exit_code
  __exit_code = CONSTANTS.EXIT_SUCCESS

  t_threads_stopper.set()
  logger.info("<<")

  return None


# ----------------------------------------------------------------------------------------------------------------------
# parse_arguments
# ----------------------------------------------------------------------------------------------------------------------
def parse_arguments(argv=None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="Publish SMA Tripower X measurements to a Victron GX device")
  parser.add_argument("interval", nargs="?", type=int, default=cfg.POLL_INTERVAL_MS,
                      help=f"milliseconds between two reads of the inverter (default {cfg.POLL_INTERVAL_MS})")
  parser.add_argument("--debug", action="store_true", help="log token, device data and live data")
  return parser.parse_args(argv)


# ----------------------------------------------------------------------------------------------------------------------
# main
# ----------------------------------------------------------------------------------------------------------------------
def main(args: argparse.Namespace) -> None:
  """
  Set up and start all components, then wait till the bridge thread stops (signal).
  A failing startup (GX does not answer, inverter login fails) is logged and returns,
  which leaves the exit code at FAILURE.
  """
  logger.debug(">>")

  manager = SMAVictronManager(stopper=t_threads_stopper, poll_interval=args.interval / 1000)

  try:
    manager.setup()
    manager.start_components()
    manager.wait_till_done()

  except bridge.FatalStartupError as e:
    logger.error(f"{e}")

  except Exception as e:
    logger.error(f"Error in main execution: {type(e).__name__}: {e}")

  finally:
    manager.shutdown()

  logger.debug("<<")
  return


# ----------------------------------------------------------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------------------------------------------------------
"""
Sets exitcode to SUCCESS when gracefully exited (CTRL-C, systemd stop, kill process)
Sets exitcode to FAILURE when main() returns (on error)
"""
if __name__ == '__main__':
  logger.debug("__main__: >>")

  arguments = parse_arguments()
  if arguments.debug:
    logger.setLevel("DEBUG")

  # CTRL-C
  signal.signal(signal.SIGINT, exit_gracefully)

  # Kill process / systemd stop / reload
  signal.signal(signal.SIGTERM, exit_gracefully)

  if platform.system() == 'Linux':
    signal.signal(signal.SIGHUP, exit_gracefully)

  # Check if another instance is not running and start main program
  if check_single_instance():
    main(arguments)

  # Exit code is default FAILURE.
  # Will be SUCCESS if stopped via CTRL-C, systemd stop, kill process.
  logger.debug(f"__main__: exit_code = {__exit_code} <<")
  sys.exit(__exit_code)

# ----------------------------------------------------------------------------------------------------------------------
# EOF
# ----------------------------------------------------------------------------------------------------------------------

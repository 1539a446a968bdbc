"""
  Bridge SMA live measurements to the Victron GX

  One worker thread: poll inverter -> map channels -> publish, at a fixed interval.
  Recovers from every failure in the loop; only startup (discovery, first login) is fatal.

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

from typing import Callable, Optional
from dataclasses import dataclass
import json
import threading
import time
import tenacity

import sma_api as sma
import sma_channels as channels
from victron_session import BrokerDisconnected, DeviceIdentity, DiscoveryTimeout, VictronSession

# Logging
import __main__
import logging
import os
logger = logging.getLogger(f"{os.path.splitext(os.path.basename(getattr(__main__, '__file__', 'sma-victron')))[0]}.{__name__}")


class FatalStartupError(Exception):
  """Bridge cannot start: GX did not answer discovery, or inverter login keeps failing"""


# ----------------------------------------------------------------------------------------------------------------------
# BridgeState
# ----------------------------------------------------------------------------------------------------------------------
@dataclass
class BridgeState:
  token: Optional[str] = None
  identity: Optional[DeviceIdentity] = None
  last_announce: Optional[float] = None


# ----------------------------------------------------------------------------------------------------------------------
# class SMABridge
# ----------------------------------------------------------------------------------------------------------------------
class SMABridge(threading.Thread):
  """
  Poll the inverter and publish the mapped values to the GX.

  Token handling: an AUTH or PROTOCOL failure on a poll drops the token; the next cycle
  performs one login attempt before fetching again. TRANSIENT failures keep the token and
  the poll is retried next cycle.
  """

  DEFAULT_POLL_INTERVAL = 0.5
  DEFAULT_ANNOUNCE_INTERVAL = 180
  DEFAULT_DISCOVERY_TIMEOUT = 300
  DEFAULT_LOGIN_RETRIES = 5

  def __init__(self,
               stopper: threading.Event,
               inverter: sma.SMAWebAPI,
               session: VictronSession,
               poll_interval: float = DEFAULT_POLL_INTERVAL,
               announce_interval: float = DEFAULT_ANNOUNCE_INTERVAL,
               discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
               login_retries: int = DEFAULT_LOGIN_RETRIES,
               clock: Callable[[], float] = time.monotonic) -> None:
    """
    :param threading.Event() stopper: stops thread
    :param inverter: SMA web API client
    :param session: Victron broker session, connected
    :param poll_interval: seconds between two polls
    :param announce_interval: seconds between two status announcements
    :param discovery_timeout: seconds to wait for the GX discovery answer
    :param login_retries: login attempts at startup before giving up
    :param clock: monotonic time source
    """
    logger.debug(">>")
    super().__init__(name="sma-bridge")

    self.__stopper = stopper
    self.__inverter = inverter
    self.__session = session
    self.__poll_interval = poll_interval
    self.__announce_interval = announce_interval
    self.__discovery_timeout = discovery_timeout
    self.__login_retries = max(1, login_retries)
    self.__clock = clock
    self.__state = BridgeState()
    self.__counter = 0

    logger.debug("<<")

  @property
  def state(self) -> BridgeState:
    return self.__state

  # --------------------------------------------------------------------------------------------------------------------
  # startup
  # --------------------------------------------------------------------------------------------------------------------
  def startup(self) -> None:
    """
    Discovery handshake, first login and diagnostic read of device metadata.

    :raises FatalStartupError: discovery timed out or login kept failing
    """
    logger.debug(">>")

    try:
      self.__state.identity = self.__session.discover(self.__discovery_timeout)
    except DiscoveryTimeout as e:
      raise FatalStartupError(f"Discovery failed: {e}") from e

    retrying = tenacity.Retrying(wait=tenacity.wait_exponential(multiplier=1, min=1, max=60),
                                 stop=(tenacity.stop_after_attempt(self.__login_retries) |
                                       tenacity.stop_when_event_set(self.__stopper)),
                                 sleep=self.__stopper.wait,
                                 retry=tenacity.retry_if_result(lambda result: not result.ok))
    try:
      result = retrying(self.__inverter.login)
    except tenacity.RetryError as e:
      last = e.last_attempt.result()
      raise FatalStartupError(f"Failed to retrieve access token ({last.failure.value}): {last.reason}") from e

    self.__state.token = result.data
    logger.info("Logged in on inverter")
    logger.debug(f"ACCESS-TOKEN: {self.__state.token}")

    metadata = self.__inverter.fetch_metadata(self.__state.token)
    if metadata.ok:
      logger.debug(f"DEVICE-DATA: {json.dumps(metadata.data)}")
    else:
      logger.info(f"Failed to retrieve device data ({metadata.failure.value}): {metadata.reason}")

    logger.debug("<<")

  # --------------------------------------------------------------------------------------------------------------------
  # __login
  # --------------------------------------------------------------------------------------------------------------------
  def __login(self) -> bool:
    result = self.__inverter.login()
    if not result.ok:
      return False

    self.__state.token = result.data
    logger.info("Renewed access token")
    logger.debug(f"ACCESS-TOKEN: {self.__state.token}")
    return True

  # --------------------------------------------------------------------------------------------------------------------
  # __poll
  # --------------------------------------------------------------------------------------------------------------------
  def __poll(self) -> None:
    """Fetch live data and publish; handles the token lifecycle"""
    if self.__state.token is None and not self.__login():
      return

    result = self.__inverter.fetch_live(self.__state.token)
    if not result.ok:
      if result.failure is sma.FailureKind.TRANSIENT:
        logger.warning(f"Live data not available: {result.reason}; retry next cycle")
      else:
        logger.warning(f"Live data request failed ({result.failure.value}): {result.reason}; login next cycle")
        self.__state.token = None
      return

    self.__counter += 1
    logger.debug(f"LIVE-DATA #{self.__counter}: {result.data}")

    for publication in channels.map_measurements(result.data):
      self.__session.publish(publication.topic_suffix, publication.value)
      if publication.topic_suffix == "Ac/Power":
        logger.debug(f"{publication.value} W")

  # --------------------------------------------------------------------------------------------------------------------
  # __announce_if_due
  # --------------------------------------------------------------------------------------------------------------------
  def __announce_if_due(self) -> None:
    now = self.__clock()
    if self.__state.last_announce is not None and now - self.__state.last_announce < self.__announce_interval:
      return

    self.__state.last_announce = now
    self.__session.announce()

  # --------------------------------------------------------------------------------------------------------------------
  # poll_once
  # --------------------------------------------------------------------------------------------------------------------
  def poll_once(self) -> None:
    """
    One cycle: poll and publish, then announce when due.
    Never raises; a lost broker connection triggers a reconnect.
    """
    if self.__state.identity is None:
      logger.error("Device identity not discovered; call startup() first")
      return

    # Announce also when polling failed, so the GX keeps the device while the inverter is unreachable
    for step in (self.__poll, self.__announce_if_due):
      try:
        step()

      except BrokerDisconnected as e:
        logger.warning(f"{e}; reconnecting")
        try:
          self.__session.reconnect()
        except OSError as err:
          logger.warning(f"Reconnect failed: {err}; retry next cycle")
        return

      except Exception as e:
        logger.error(f"Unspecified exception: {type(e).__name__}: {e}")

  # --------------------------------------------------------------------------------------------------------------------
  # run
  # --------------------------------------------------------------------------------------------------------------------
  def run(self) -> None:
    logger.info(f"Start polling every {self.__poll_interval}s")

    while not self.__stopper.is_set():
      self.poll_once()
      self.__stopper.wait(self.__poll_interval)

    logger.info(f"Stopped after {self.__counter} live data reads")

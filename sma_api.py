"""
  Read SMA Tripower X measurements via the inverter's web API

  Endpoints (https, self-signed certificate):
  - POST /api/v1/token                              -> {"access_token": ...}
  - GET  /api/v1/plants/Plant:1/devices/IGULD:SELF   -> device metadata
  - POST /api/v1/measurements/live                   -> [{"channelId": ..., "values": [{"value": ...}]}]

  Requests never raise to the caller; the outcome is returned as ApiResult
  with a FailureKind, so the caller decides between re-login and retry.

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

from typing import Any, Dict, Generic, List, Optional, TypeVar
from dataclasses import dataclass
from enum import Enum
import math
import requests
import urllib3

# Logging
import __main__
import logging
import os
logger = logging.getLogger(f"{os.path.splitext(os.path.basename(getattr(__main__, '__file__', 'sma-victron')))[0]}.{__name__}")

T = TypeVar("T")


# ----------------------------------------------------------------------------------------------------------------------
# FailureKind
# ----------------------------------------------------------------------------------------------------------------------
class FailureKind(Enum):
  """Why an inverter request failed"""
  AUTH = "auth"            # bad credentials or expired token
  TRANSIENT = "transient"  # timeout, unreachable host, server error
  PROTOCOL = "protocol"    # unexpected status, malformed or unexpected JSON


# ----------------------------------------------------------------------------------------------------------------------
# ApiResult
# ----------------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class ApiResult(Generic[T]):
  data: Optional[T] = None
  failure: Optional[FailureKind] = None
  reason: str = ""

  @property
  def ok(self) -> bool:
    return self.failure is None

  @classmethod
  def success(cls, data: T) -> "ApiResult[T]":
    return cls(data=data)

  @classmethod
  def fail(cls, failure: FailureKind, reason: str) -> "ApiResult[T]":
    return cls(failure=failure, reason=reason)


# ----------------------------------------------------------------------------------------------------------------------
# ChannelValue
# ----------------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class ChannelValue:
  """One entry of a live measurement record; value is None when the inverter did not report one"""
  channel_id: str
  value: Optional[float]


# ----------------------------------------------------------------------------------------------------------------------
# class SMAWebAPI
# ----------------------------------------------------------------------------------------------------------------------
class SMAWebAPI:
  """
  Client for the SMA Tripower X web API.

  Owns the HTTP session and the request primitives (login, device metadata, live measurements).
  The access token is not stored here; it is passed in by the caller, which owns the token lifecycle.
  """

  COMPONENT_ID = "IGULD:SELF"
  TOKEN_PATH = "/api/v1/token"
  DEVICE_PATH = "/api/v1/plants/Plant:1/devices/IGULD:SELF"
  LIVE_PATH = "/api/v1/measurements/live"
  DEFAULT_TIMEOUT = 5

  def __init__(self,
               host: str,
               username: str,
               password: str,
               verify_tls: bool = False,
               timeout: float = DEFAULT_TIMEOUT,
               session: Optional[requests.Session] = None) -> None:
    """
    :param host: ip or dns name of the inverter
    :param username: inverter web user
    :param password: inverter web password
    :param verify_tls: verify the inverter certificate; the device ships a self-signed certificate
    :param timeout: timeout in seconds for every request
    :param session: requests session, created when not specified
    """
    logger.debug(f"{host}: >>")

    self.__host = host
    self.__username = username
    self.__password = password
    self.__timeout = timeout
    self.__base_url = f"https://{host}"

    self.__session = session if session is not None else requests.Session()
    self.__session.verify = verify_tls

    if not verify_tls:
      # Self-signed certificate; would otherwise warn on every request
      urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
      logger.info(f"{host}: TLS certificate verification is disabled")

    logger.debug(f"{host}: <<")

  # --------------------------------------------------------------------------------------------------------------------
  # __request
  # --------------------------------------------------------------------------------------------------------------------
  def __request(self, method: str, path: str, **kwargs) -> ApiResult[Any]:
    """
    Perform one request and decode the JSON body.

    :param method: HTTP method
    :param path: path on the inverter, starting with /
    :return: ApiResult with decoded JSON body, or the classified failure
    """
    url = f"{self.__base_url}{path}"
    logger.debug(f"{self.__host}: >> {method} {path}")

    try:
      response = self.__session.request(method, url, timeout=self.__timeout, **kwargs)
    except requests.exceptions.Timeout as e:
      return ApiResult.fail(FailureKind.TRANSIENT, f"timeout: {e}")
    except requests.exceptions.ConnectionError as e:
      return ApiResult.fail(FailureKind.TRANSIENT, f"connection error: {e}")
    except requests.exceptions.RequestException as e:
      return ApiResult.fail(FailureKind.TRANSIENT, f"{type(e).__name__}: {e}")

    status = response.status_code
    if status in (401, 403):
      return ApiResult.fail(FailureKind.AUTH, f"HTTP {status}")
    if status >= 500:
      return ApiResult.fail(FailureKind.TRANSIENT, f"HTTP {status}")
    if status != 200:
      return ApiResult.fail(FailureKind.PROTOCOL, f"HTTP {status}")

    try:
      body = response.json()
    except ValueError as e:
      return ApiResult.fail(FailureKind.PROTOCOL, f"invalid JSON: {e}")

    logger.debug(f"{self.__host}: <<")
    return ApiResult.success(body)

  def __bearer(self, token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}

  # --------------------------------------------------------------------------------------------------------------------
  # login
  # --------------------------------------------------------------------------------------------------------------------
  def login(self) -> ApiResult[str]:
    """
    Exchange the configured credentials for an access token.

    :return: ApiResult with the token; AUTH failure when the response holds no token
    """
    logger.debug(f"{self.__host}: >>")

    result = self.__request("POST", self.TOKEN_PATH,
                            data={"grant_type": "password",
                                  "username": self.__username,
                                  "password": self.__password},
                            headers={"Accept": "application/json, text/plain, */*"})
    if not result.ok:
      logger.warning(f"{self.__host}: login failed ({result.failure.value}): {result.reason}")
      return result

    if not isinstance(result.data, dict) or not result.data.get("access_token"):
      logger.warning(f"{self.__host}: login response holds no access_token")
      return ApiResult.fail(FailureKind.AUTH, "no access_token in response")

    logger.debug(f"{self.__host}: <<")
    return ApiResult.success(result.data["access_token"])

  # --------------------------------------------------------------------------------------------------------------------
  # fetch_metadata
  # --------------------------------------------------------------------------------------------------------------------
  def fetch_metadata(self, token: str) -> ApiResult[Dict[str, Any]]:
    """Read device metadata; diagnostic only"""
    result = self.__request("GET", self.DEVICE_PATH, headers=self.__bearer(token))
    if result.ok and not isinstance(result.data, dict):
      return ApiResult.fail(FailureKind.PROTOCOL, "device metadata is not a JSON object")
    return result

  # --------------------------------------------------------------------------------------------------------------------
  # fetch_live
  # --------------------------------------------------------------------------------------------------------------------
  def fetch_live(self, token: str) -> ApiResult[List[ChannelValue]]:
    """
    Read the current measurements.

    :param token: access token from login()
    :return: ApiResult with the measurement record, one ChannelValue per channel entry
    """
    result = self.__request("POST", self.LIVE_PATH,
                            json=[{"componentId": self.COMPONENT_ID}],
                            headers=self.__bearer(token))
    if not result.ok:
      return result

    if not isinstance(result.data, list):
      return ApiResult.fail(FailureKind.PROTOCOL, "live measurements are not a JSON array")

    record = []
    for entry in result.data:
      if not isinstance(entry, dict) or not isinstance(entry.get("channelId"), str):
        logger.debug(f"Live measurement entry without channel id ignored: {entry}")
        continue
      record.append(ChannelValue(channel_id=entry["channelId"], value=self.__first_value(entry)))

    return ApiResult.success(record)

  @staticmethod
  def __first_value(entry: Dict[str, Any]) -> Optional[float]:
    """First numeric value of an entry; None if absent (eg at night) or not a number"""
    values = entry.get("values")
    if not isinstance(values, list) or not values or not isinstance(values[0], dict):
      return None

    value = values[0].get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
      if value is not None:
        logger.debug(f"Channel {entry['channelId']}: non numeric value {value} ignored")
      return None
    return value

  def close(self) -> None:
    self.__session.close()

"""
  Map SMA live measurement channels to Victron pvinverter topics

  Pure functions; no state. A channel entry without value results in no publication.

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

from typing import Callable, Dict, Iterable, List, NamedTuple, Tuple, Union
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, localcontext
import json

from sma_api import ChannelValue

# Logging
import __main__
import logging
import os
logger = logging.getLogger(f"{os.path.splitext(os.path.basename(getattr(__main__, '__file__', 'sma-victron')))[0]}.{__name__}")

Number = Union[int, float]


# ----------------------------------------------------------------------------------------------------------------------
# Transforms
# ----------------------------------------------------------------------------------------------------------------------
def _round_half_up(value: Number, digits: int) -> Decimal:
  # Half away from zero, on the decimal representation (2.5 -> 3, 4.115 -> 4.1)
  number = Decimal(repr(value))
  with localcontext() as ctx:
    # quantize fails when the result has more digits than the context precision
    ctx.prec = max(ctx.prec, number.adjusted() + digits + 2)
    return number.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)


def identity(value: Number) -> Number:
  return value


def round_integer(value: Number) -> int:
  return int(_round_half_up(value, 0))


def round_one_decimal(value: Number) -> float:
  return float(_round_half_up(value, 1))


def wh_to_kwh(value: Number) -> float:
  return round_one_decimal(value / 1000)


def wh_to_kwh_per_phase(value: Number) -> float:
  """Energy is only reported in total; assume an even split over three phases"""
  return round_one_decimal(value / 3000)


# ----------------------------------------------------------------------------------------------------------------------
# Mapping table
# ----------------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class ChannelRule:
  channel_id: str
  targets: Tuple[Tuple[str, Callable[[Number], Number]], ...]


class Publication(NamedTuple):
  topic_suffix: str
  value: Number


CHANNEL_RULES: Tuple[ChannelRule, ...] = (
  ChannelRule("Measurement.Operation.HealthStt.Ok", (("Ac/MaxPower", identity),)),
  ChannelRule("Measurement.GridMs.TotW.Pv", (("Ac/Power", round_integer),)),
  ChannelRule("Measurement.Metering.TotWhOut.Pv", (("Ac/Energy/Forward", wh_to_kwh),
                                                   ("Ac/L1/Energy/Forward", wh_to_kwh_per_phase),
                                                   ("Ac/L2/Energy/Forward", wh_to_kwh_per_phase),
                                                   ("Ac/L3/Energy/Forward", wh_to_kwh_per_phase))),
  ChannelRule("Measurement.GridMs.TotA", (("Ac/Current", round_one_decimal),)),
  ChannelRule("Measurement.GridMs.PhV.phsA", (("Ac/L1/Voltage", round_integer),)),
  ChannelRule("Measurement.GridMs.PhV.phsB", (("Ac/L2/Voltage", round_integer),)),
  ChannelRule("Measurement.GridMs.PhV.phsC", (("Ac/L3/Voltage", round_integer),)),
  ChannelRule("Measurement.GridMs.A.phsA", (("Ac/L1/Current", round_one_decimal),)),
  ChannelRule("Measurement.GridMs.A.phsB", (("Ac/L2/Current", round_one_decimal),)),
  ChannelRule("Measurement.GridMs.A.phsC", (("Ac/L3/Current", round_one_decimal),)),
  ChannelRule("Measurement.GridMs.W.phsA", (("Ac/L1/Power", round_integer),)),
  ChannelRule("Measurement.GridMs.W.phsB", (("Ac/L2/Power", round_integer),)),
  ChannelRule("Measurement.GridMs.W.phsC", (("Ac/L3/Power", round_integer),)),
)

_RULES_BY_CHANNEL: Dict[str, ChannelRule] = {rule.channel_id: rule for rule in CHANNEL_RULES}


# ----------------------------------------------------------------------------------------------------------------------
# map_measurements
# ----------------------------------------------------------------------------------------------------------------------
def map_measurements(record: Iterable[ChannelValue]) -> List[Publication]:
  """
  Convert a live measurement record into publications, in record order.

  :param record: channel entries as returned by SMAWebAPI.fetch_live()
  :return: list of (topic suffix, value); unknown channels and entries without value are dropped
  """
  publications = []

  for entry in record:
    rule = _RULES_BY_CHANNEL.get(entry.channel_id)
    if rule is None:
      continue

    if entry.value is None:
      logger.debug(f"Channel {entry.channel_id} has no value, ignored")
      continue

    for topic_suffix, transform in rule.targets:
      publications.append(Publication(topic_suffix, transform(entry.value)))

  return publications


def encode_payload(value: Number) -> str:
  """Victron dbus-mqtt-devices value message, eg {"value":2346}"""
  return json.dumps({"value": value}, separators=(',', ':'))

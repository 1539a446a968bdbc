"""
  Process logger

  Creates the logger named after the started script; other modules log to a child logger
  <script>.<module>, so one handler and one level setting covers all of them.

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

import __main__
import logging
import os
import sys

script = os.path.splitext(os.path.basename(getattr(__main__, "__file__", "sma-victron")))[0]

logger = logging.getLogger(script)

# Prevent duplicate handlers when module is imported more than once (eg tests)
if not logger.handlers:
  handler = logging.StreamHandler(sys.stdout)
  formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(name)s.%(funcName)s: %(message)s")
  handler.setFormatter(formatter)
  logger.addHandler(handler)

logger.setLevel(logging.INFO)
logger.propagate = False

# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Grace period clock for the account setup category.

Account setup can sit in a pending state long after the device is usable.
Once a fixed allowance (one hour by default) has passed since Autopilot
started, a still-pending account setup category is treated as finished.

The start time is recorded as the *name* of a single subkey under a marker
key. Reading it has three distinct failure modes, and each of them leaves
the grace period un-elapsed so the device is never declared provisioned by
accident:

- AmbiguousStartTime: no marker subkey
- MultipleStartTimes: more than one marker subkey
- UnparsableStartTime: the subkey name is not a date-time
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import re

DEFAULT_GRACE_PERIOD = timedelta(hours=1)

# Accepted marker formats as (strptime, .NET ParseExact) pairs. The generated
# PowerShell script parses with the .NET column, so both sides accept the
# same markers.
START_TIME_FORMATS = (
    ("%Y-%m-%dT%H:%M:%S", "yyyy-MM-dd'T'HH:mm:ss"),
    ("%Y-%m-%dT%H:%M:%S.%f", "yyyy-MM-dd'T'HH:mm:ss.FFFFFFF"),
    ("%Y-%m-%dT%H:%M:%S%z", "yyyy-MM-dd'T'HH:mm:ssK"),
    ("%Y-%m-%dT%H:%M:%S.%f%z", "yyyy-MM-dd'T'HH:mm:ss.FFFFFFFK"),
    ("%m/%d/%Y %I:%M:%S %p", "M/d/yyyy h:mm:ss tt"),
    ("%m/%d/%Y %H:%M:%S", "M/d/yyyy H:mm:ss"),
    ("%Y-%m-%d %H:%M:%S", "yyyy-MM-dd HH:mm:ss"),
    ("%Y%m%d%H%M%S", "yyyyMMddHHmmss"),
)

# Get-Date -Format o writes 7 fraction digits; strptime reads at most 6
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


class StartTimeFailure(str, Enum):
    AMBIGUOUS = "AmbiguousStartTime"
    MULTIPLE = "MultipleStartTimes"
    UNPARSABLE = "UnparsableStartTime"


@dataclass(frozen=True)
class StartTimeReading:
    """Autopilot start time resolved from the marker subkey names.

    Attributes:
        start_time: Parsed start time, or None on failure.
        failure: Failure mode, or None when start_time is set.
        markers: The raw subkey names that were read.
    """

    start_time: datetime | None
    failure: StartTimeFailure | None = None
    markers: tuple[str, ...] = ()

    @classmethod
    def at(cls, start_time: datetime) -> StartTimeReading:
        """Build a reading for a known start time."""
        return cls(start_time, None, (start_time.isoformat(),))


@dataclass(frozen=True)
class GraceCheck:
    """Result of a grace period check.

    Attributes:
        elapsed: True when now >= start_time + period.
        deadline: start_time + period, or None when the start time is unknown.
        failure: Why the start time is unknown, or None.
    """

    elapsed: bool
    deadline: datetime | None = None
    failure: StartTimeFailure | None = None


def parse_start_time(text: str) -> datetime | None:
    """Parse a start time marker. Returns None if no format matches."""
    value = _LONG_FRACTION.sub(r"\1", text.strip())
    if not value:
        return None
    for fmt, _ in START_TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def read_start_time(markers: list[str] | tuple[str, ...] | None) -> StartTimeReading:
    """Resolve the Autopilot start time from marker subkey names.

    Args:
        markers: Subkey names under the start time marker key. None or
            empty when the key does not exist.

    Returns:
        StartTimeReading with either start_time or failure set.

    Example:
        ```python
        reading = read_start_time(["2025-03-01T08:15:00"])
        assert reading.failure is None
        ```
    """
    names = tuple(markers or ())
    if not names:
        return StartTimeReading(None, StartTimeFailure.AMBIGUOUS, names)
    if len(names) > 1:
        return StartTimeReading(None, StartTimeFailure.MULTIPLE, names)
    start_time = parse_start_time(names[0])
    if start_time is None:
        return StartTimeReading(None, StartTimeFailure.UNPARSABLE, names)
    return StartTimeReading(start_time, None, names)


def _comparable(start: datetime, now: datetime) -> tuple[datetime, datetime]:
    # Naive values are local time; only convert when the two kinds are mixed.
    if (start.tzinfo is None) != (now.tzinfo is None):
        return start.astimezone(), now.astimezone()
    return start, now


class GracePeriodClock:
    """Decides whether the grace period after Autopilot start has elapsed.

    Example:
        ```python
        clock = GracePeriodClock()
        check = clock.check(StartTimeReading.at(start), now=start + timedelta(hours=2))
        assert check.elapsed
        ```
    """

    def __init__(self, period: timedelta = DEFAULT_GRACE_PERIOD) -> None:
        self.period = period

    def check(self, reading: StartTimeReading, now: datetime) -> GraceCheck:
        if reading.start_time is None:
            return GraceCheck(
                False, failure=reading.failure or StartTimeFailure.AMBIGUOUS
            )
        try:
            start, current = _comparable(reading.start_time, now)
            deadline = start + self.period
        except OverflowError:
            # Marker too close to the datetime range limits to compute a deadline
            return GraceCheck(False, failure=StartTimeFailure.UNPARSABLE)
        return GraceCheck(current >= deadline, deadline)

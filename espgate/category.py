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

"""Parsing of ESP category status blobs.

Windows records the progress of each ESP category (device preparation,
device setup, account setup) as a JSON string under
HKLM:\\SOFTWARE\\Microsoft\\Provisioning\\AutopilotSettings, for example::

    {"categoryState": "inProgress", "subcategories": [...]}
    {"categoryState": "succeeded", "categorySucceeded": "True"}
    {"categoryStatusMessage": "Complete"}

Mapping Rules (first match wins):
    1. Missing or empty value: NotStarted, not reported yet.
    2. Malformed JSON or a non-object: Unknown, pending (parse failure).
    3. categoryStatusMessage / categoryStatusText is "Complete" or "Failed":
       Succeeded / Failed, finished.
    4. categorySucceeded is true, or categoryState is "succeeded":
       Succeeded, finished. categoryState "failed": Failed, finished.
    5. Any other categoryState outside {notStarted, inProgress}: Unknown,
       finished.
    6. Otherwise pending: InProgress or NotStarted.

All string comparisons are case-insensitive, matching PowerShell ``-eq``.
Only "finished or not" drives the ESP verdict; Succeeded versus Failed is
kept for logging.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import Any

from espgate.results import FailureKind, Issue

DEVICE_PREPARATION = "DevicePreparation"
DEVICE_SETUP = "DeviceSetup"
ACCOUNT_SETUP = "AccountSetup"

CATEGORY_NAMES = (DEVICE_PREPARATION, DEVICE_SETUP, ACCOUNT_SETUP)

_TERMINAL_MESSAGES = {"complete", "failed"}
_PENDING_STATES = {"notstarted", "inprogress"}


class CategoryState(str, Enum):
    """Progress of a single ESP category."""

    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class CategoryStatus:
    """Parsed status of one ESP category.

    Attributes:
        name: Category name (DevicePreparation, DeviceSetup, AccountSetup).
        state: Mapped category state.
        message: categoryStatusMessage or categoryStatusText, if present.
        reported: False when the registry value was missing or empty.
        finished: True when the category reached a terminal state.
    """

    name: str
    state: CategoryState
    message: str | None = None
    reported: bool = True
    finished: bool = False

    @property
    def pending(self) -> bool:
        return not self.finished


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip()


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().casefold() == "true"


def parse_category_status(
    name: str, raw: str | None, issues: list[Issue] | None = None
) -> CategoryStatus:
    """Parse one raw category status value.

    Args:
        name: Category name, used for the result and for issue records.
        raw: Raw registry string (JSON), or None when the value is absent.
        issues: Optional list that receives an Issue for a missing value or
            a parse failure.

    Returns:
        The parsed CategoryStatus. Never raises for bad input.

    Example:
        ```python
        status = parse_category_status("DeviceSetup", '{"categoryStatusText": "Complete"}')
        assert status.finished
        ```
    """
    if raw is None or not str(raw).strip():
        if issues is not None:
            issues.append(
                Issue(FailureKind.MISSING_INPUT, name, "category has not reported")
            )
        return CategoryStatus(name, CategoryState.NOT_STARTED, reported=False)

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as err:
        if issues is not None:
            issues.append(
                Issue(FailureKind.PARSE_FAILURE, name, f"malformed status JSON: {err}")
            )
        return CategoryStatus(name, CategoryState.UNKNOWN)

    if not isinstance(data, dict):
        if issues is not None:
            issues.append(
                Issue(
                    FailureKind.PARSE_FAILURE,
                    name,
                    f"status JSON is a {type(data).__name__}, expected an object",
                )
            )
        return CategoryStatus(name, CategoryState.UNKNOWN)

    message = _text(data.get("categoryStatusMessage")) or _text(
        data.get("categoryStatusText")
    )
    state_text = _text(data.get("categoryState"))
    state_key = state_text.casefold() if state_text else None

    if message and message.casefold() in _TERMINAL_MESSAGES:
        state = (
            CategoryState.SUCCEEDED
            if message.casefold() == "complete"
            else CategoryState.FAILED
        )
        return CategoryStatus(name, state, message, finished=True)

    if _is_true(data.get("categorySucceeded")) or state_key == "succeeded":
        return CategoryStatus(name, CategoryState.SUCCEEDED, message, finished=True)
    if state_key == "failed":
        return CategoryStatus(name, CategoryState.FAILED, message, finished=True)

    if state_key and state_key not in _PENDING_STATES:
        return CategoryStatus(name, CategoryState.UNKNOWN, message, finished=True)

    if state_key == "inprogress":
        return CategoryStatus(name, CategoryState.IN_PROGRESS, message)
    return CategoryStatus(name, CategoryState.NOT_STARTED, message)

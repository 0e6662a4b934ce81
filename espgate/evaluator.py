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

"""ESP state evaluation.

This module fuses the three parsed ESP categories, the userless enrollment
signal and the grace period clock into one verdict.

Evaluation Logic:
    - Device preparation and device setup are not running when finished,
      or when they have not reported at all.
    - Account setup is not running when finished, when the device is a
      userless enrollment and the category is NotStarted (if the profile
      enables userless handling), or when the grace period after Autopilot
      start has elapsed. The clock is only consulted for that last case.
    - All three not running: Complete or NotRunning, depending on the
      profile's phrasing. Otherwise: Running.

The evaluator is a pure function of an ESPSnapshot; it reads nothing and
writes nothing except log lines.

Example:
    ```python
    from datetime import datetime
    from espgate.category import parse_category_status
    from espgate.clock import read_start_time
    from espgate.config import load_effective_config, resolve_profile
    from espgate.evaluator import ESPSnapshot, ESPStateEvaluator

    snapshot = ESPSnapshot(
        device_prep=parse_category_status("DevicePreparation", '{"categoryState": "succeeded"}'),
        device_setup=parse_category_status("DeviceSetup", '{"categoryStatusText": "Complete"}'),
        account_setup=parse_category_status("AccountSetup", None),
        is_userless_enrollment=True,
        autopilot_start=read_start_time([]),
        now=datetime.now(),
    )
    profile = resolve_profile(load_effective_config(), "detection")
    result = ESPStateEvaluator(profile).evaluate(snapshot)
    print(result.status_line)  # "ESP is complete"
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from espgate.category import CategoryState, CategoryStatus
from espgate.clock import GraceCheck, GracePeriodClock, StartTimeFailure, StartTimeReading
from espgate.config.profiles import EvaluatorProfile
from espgate.logging import Logger, get_global_logger
from espgate.results import ESPVerdict, EvaluationResult, FailureKind, Issue
from espgate.tenant import GuardDecision

STATUS_LINES = {
    ESPVerdict.RUNNING: "ESP is running",
    ESPVerdict.COMPLETE: "ESP is complete",
    ESPVerdict.NOT_RUNNING: "ESP is not running",
}

_CLOCK_FAILURE_KINDS = {
    StartTimeFailure.AMBIGUOUS: FailureKind.AMBIGUITY_FAILURE,
    StartTimeFailure.MULTIPLE: FailureKind.AMBIGUITY_FAILURE,
    StartTimeFailure.UNPARSABLE: FailureKind.PARSE_FAILURE,
}


@dataclass(frozen=True)
class ESPSnapshot:
    """Everything one evaluation looks at, taken at call time.

    Attributes:
        device_prep: Parsed device preparation category.
        device_setup: Parsed device setup category.
        account_setup: Parsed account setup category.
        is_userless_enrollment: True for userless (self-deploying) enrollments.
        autopilot_start: Autopilot start time reading.
        now: Evaluation time.
    """

    device_prep: CategoryStatus
    device_setup: CategoryStatus
    account_setup: CategoryStatus
    is_userless_enrollment: bool
    autopilot_start: StartTimeReading
    now: datetime


def finished_verdict(profile: EvaluatorProfile) -> ESPVerdict:
    """The verdict meaning "provisioning is done" in this profile's phrasing."""
    return ESPVerdict.COMPLETE if profile.phrasing == "complete" else ESPVerdict.NOT_RUNNING


def build_result(
    profile: EvaluatorProfile,
    verdict: ESPVerdict,
    *,
    error_reason: str | None = None,
    **details,
) -> EvaluationResult:
    """Build an EvaluationResult with the profile's status line and exit code."""
    if verdict is ESPVerdict.ERROR:
        status_line = f"ESP state unknown: {error_reason or 'unspecified error'}"
        exit_code = profile.exit_code("error")
    elif verdict is ESPVerdict.RUNNING:
        status_line = STATUS_LINES[verdict]
        exit_code = profile.exit_code("running")
    else:
        status_line = STATUS_LINES[verdict]
        exit_code = profile.exit_code("finished")
    return EvaluationResult(
        verdict=verdict,
        status_line=status_line,
        exit_code=exit_code,
        profile=profile.name,
        error_reason=error_reason,
        **details,
    )


class ESPStateEvaluator:
    """Fuses an ESPSnapshot into a verdict for one profile."""

    def __init__(
        self,
        profile: EvaluatorProfile,
        clock: GracePeriodClock | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.profile = profile
        self.clock = clock or GracePeriodClock(profile.grace_period)
        self.logger = logger

    def _device_category_not_running(self, status: CategoryStatus) -> bool:
        return status.finished or not status.reported

    def _account_setup_not_running(
        self, snapshot: ESPSnapshot, issues: list[Issue]
    ) -> tuple[bool, GraceCheck | None]:
        logger = self.logger or get_global_logger()
        status = snapshot.account_setup
        if status.finished:
            return True, None

        if (
            self.profile.userless_handling
            and snapshot.is_userless_enrollment
            and status.state is CategoryState.NOT_STARTED
        ):
            logger.verbose(
                "EVALUATE", "Userless enrollment: account setup not expected to start"
            )
            return True, None

        grace = self.clock.check(snapshot.autopilot_start, snapshot.now)
        if grace.failure is not None:
            issues.append(
                Issue(
                    _CLOCK_FAILURE_KINDS[grace.failure],
                    "start_time",
                    f"{grace.failure.value}: markers={list(snapshot.autopilot_start.markers)}",
                )
            )
            logger.verbose(
                "CLOCK", f"Start time unavailable ({grace.failure.value}), grace not applied"
            )
        elif grace.elapsed:
            logger.verbose(
                "CLOCK", f"Grace period elapsed at {grace.deadline}, account setup assumed finished"
            )
        else:
            logger.verbose("CLOCK", f"Grace period runs until {grace.deadline}")
        return grace.elapsed, grace

    def evaluate(
        self,
        snapshot: ESPSnapshot,
        *,
        identity: GuardDecision | None = None,
        issues: list[Issue] | tuple[Issue, ...] = (),
    ) -> EvaluationResult:
        """Evaluate a snapshot.

        Args:
            snapshot: Parsed inputs of this evaluation.
            identity: Tenant guard decision to attach to the result.
            issues: Issues already found while building the snapshot; they
                are carried into the result ahead of the evaluator's own.

        Returns:
            EvaluationResult with verdict Running, Complete or NotRunning.
        """
        logger = self.logger or get_global_logger()
        found = list(issues)

        categories = (snapshot.device_prep, snapshot.device_setup, snapshot.account_setup)
        not_running = {
            snapshot.device_prep.name: self._device_category_not_running(snapshot.device_prep),
            snapshot.device_setup.name: self._device_category_not_running(snapshot.device_setup),
        }
        account_done, grace = self._account_setup_not_running(snapshot, found)
        not_running[snapshot.account_setup.name] = account_done

        for status in categories:
            logger.verbose(
                "CATEGORY",
                f"{status.name}: state={status.state.value} reported={status.reported} "
                f"finished={status.finished} not_running={not_running[status.name]}",
            )

        verdict = (
            finished_verdict(self.profile) if all(not_running.values()) else ESPVerdict.RUNNING
        )
        logger.verbose("RESULT", f"{verdict.value} (profile: {self.profile.name})")

        return build_result(
            self.profile,
            verdict,
            categories=categories,
            not_running=not_running,
            userless=snapshot.is_userless_enrollment,
            grace=grace,
            identity=identity,
            issues=tuple(found),
        )

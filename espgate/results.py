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

"""Public API return types for ESPGate.

This module defines the verdict vocabulary, the failure taxonomy and the
dataclasses returned from public API functions.

All dataclasses are frozen (immutable); a result describes one evaluation
and is never updated afterwards.

Example:
    Using result types:
        ```python
        from espgate.core import evaluate_device
        from espgate.results import ESPVerdict

        result = evaluate_device(profile="detection")
        if result.verdict is ESPVerdict.COMPLETE:
            print(result.status_line)
        ```

Note:
    Only public API return types belong in this module. Domain types
    (like CategoryStatus or StartTimeReading) stay co-located with the
    logic that produces them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from espgate.category import CategoryStatus
    from espgate.clock import GraceCheck
    from espgate.tenant import GuardDecision


class ESPVerdict(str, Enum):
    """Outcome of one ESP evaluation."""

    RUNNING = "Running"
    COMPLETE = "Complete"
    NOT_RUNNING = "NotRunning"
    ERROR = "Error"

    @property
    def is_finished(self) -> bool:
        """True for the two spellings of "provisioning is done"."""
        return self in (ESPVerdict.COMPLETE, ESPVerdict.NOT_RUNNING)


class FailureKind(str, Enum):
    """Failure taxonomy for locally handled problems."""

    MISSING_INPUT = "MissingInput"
    PARSE_FAILURE = "ParseFailure"
    AMBIGUITY_FAILURE = "AmbiguityFailure"
    IDENTITY_MISMATCH = "IdentityMismatch"


@dataclass(frozen=True)
class Issue:
    """A problem that was handled instead of raised.

    Attributes:
        kind: Taxonomy bucket of the problem.
        source: What was being read (e.g., "AccountSetup", "tenant", "start_time").
        detail: Human-readable explanation for logs.
    """

    kind: FailureKind
    source: str
    detail: str

    def __str__(self) -> str:
        return f"{self.kind.value} ({self.source}): {self.detail}"


@dataclass(frozen=True)
class EvaluationResult:
    """Result from evaluating the ESP state of a device.

    Attributes:
        verdict: Final verdict.
        status_line: Human-readable line printed for the rule runner
            (e.g., "ESP is running").
        exit_code: Process exit code the profile maps the verdict to.
        profile: Name of the profile used.
        categories: Parsed device preparation, device setup and account
            setup statuses, in that order. Empty when evaluation stopped
            at the tenant guard or at a registry failure.
        not_running: Per-category not-running flags keyed by category name.
        userless: Whether the device was detected as a userless enrollment.
        grace: Grace period check, if the clock was consulted.
        identity: Tenant guard decision, if the guard ran.
        issues: Every handled problem, in the order it was found.
        error_reason: Why the verdict is Error, or None.
    """

    verdict: ESPVerdict
    status_line: str
    exit_code: int
    profile: str
    categories: tuple[CategoryStatus, ...] = ()
    not_running: dict[str, bool] = field(default_factory=dict)
    userless: bool = False
    grace: GraceCheck | None = None
    identity: GuardDecision | None = None
    issues: tuple[Issue, ...] = ()
    error_reason: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    """Result from validating a configuration file.

    Attributes:
        status: Validation status ("valid" or "invalid").
        errors: List of error messages (empty if valid).
        warnings: List of warning messages.
        profile_count: Number of profiles that resolved.
        config_path: String path to the validated config file.
    """

    status: str
    errors: list[str]
    warnings: list[str]
    profile_count: int
    config_path: str

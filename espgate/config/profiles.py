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

"""Evaluator profiles.

A profile is one call site's choice of evaluator behaviour: which phrase to
report, what a tenant mismatch means, how registry failures are treated,
and which exit codes the rule runner expects. The effective profile is the
config's ``defaults`` mapping deep-merged with ``profiles.<name>``.

Example:
    ```python
    from espgate.config import load_effective_config, resolve_profile

    profile = resolve_profile(load_effective_config(), "detection")
    print(profile.phrasing)  # "complete"
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import math
from typing import Any, Literal

from espgate.config.loader import _deep_merge_dicts
from espgate.exceptions import ConfigError
from espgate.registry import RegistryLocations

Phrasing = Literal["complete", "not_running"]
IdentityFallback = Literal["not_running", "running", "error"]

_PHRASINGS = ("complete", "not_running")
_FALLBACKS = ("not_running", "running", "error")
_MATCH_MODES = ("any", "last")
_EXIT_CODE_KEYS = ("running", "finished", "error")
_BOOL_KEYS = (
    "gate_on_identity_mismatch",
    "fail_open_on_error",
    "userless_handling",
)


@dataclass(frozen=True)
class EvaluatorProfile:
    """Resolved evaluator settings for one call site.

    Attributes:
        name: Profile name.
        phrasing: "complete" reports Complete / "ESP is complete";
            "not_running" reports NotRunning / "ESP is not running".
        gate_on_identity_mismatch: Stop evaluating when the tenant guard aborts.
        identity_fallback: Verdict reported when the tenant guard stops evaluation.
        fail_open_on_error: Report the not-running verdict instead of Error
            when the registry cannot be read.
        userless_handling: Treat a NotStarted account setup as finished on
            userless enrollments.
        tenant_match: Tenant guard match mode ("any" or "last").
        grace_period: Allowance after Autopilot start for account setup.
        userless_upn_prefix: Enrollment UPN prefix that marks a userless enrollment.
        exit_codes: Exit code per outcome ("running", "finished", "error").
        registry: Registry locations to read.
    """

    name: str
    phrasing: Phrasing = "not_running"
    gate_on_identity_mismatch: bool = True
    identity_fallback: IdentityFallback = "not_running"
    fail_open_on_error: bool = False
    userless_handling: bool = True
    tenant_match: Literal["any", "last"] = "any"
    grace_period: timedelta = timedelta(hours=1)
    userless_upn_prefix: str = "foouser@"
    exit_codes: tuple[tuple[str, int], ...] = (("running", 1), ("finished", 0), ("error", 1))
    registry: RegistryLocations = RegistryLocations()

    def exit_code(self, outcome: str) -> int:
        """Exit code for "running", "finished" or "error"."""
        return dict(self.exit_codes)[outcome]


def _choice(data: dict[str, Any], key: str, choices: tuple[str, ...], name: str) -> str:
    value = data.get(key)
    if value not in choices:
        raise ConfigError(
            f"Profile '{name}': {key} must be one of {', '.join(choices)} (got {value!r})"
        )
    return value


def profile_names(config: dict[str, Any]) -> list[str]:
    """Names of the profiles defined in a merged config, sorted."""
    profiles = config.get("profiles") or {}
    if not isinstance(profiles, dict):
        raise ConfigError("Field 'profiles' must be a mapping")
    return sorted(profiles)


def resolve_profile(config: dict[str, Any], name: str) -> EvaluatorProfile:
    """Resolve a named profile from a merged configuration.

    Args:
        config: Output of load_effective_config().
        name: Profile name.

    Returns:
        The resolved EvaluatorProfile.

    Raises:
        ConfigError: If the profile does not exist or a value is invalid.
    """
    profiles = config.get("profiles") or {}
    if not isinstance(profiles, dict):
        raise ConfigError("Field 'profiles' must be a mapping")
    if name not in profiles:
        available = ", ".join(sorted(profiles)) or "none"
        raise ConfigError(f"Unknown profile '{name}' (available: {available})")

    defaults = config.get("defaults") or {}
    overrides = profiles[name] or {}
    if not isinstance(defaults, dict) or not isinstance(overrides, dict):
        raise ConfigError(f"Profile '{name}' and 'defaults' must be mappings")
    data = _deep_merge_dicts(defaults, overrides)

    for key in _BOOL_KEYS:
        if not isinstance(data.get(key), bool):
            raise ConfigError(f"Profile '{name}': {key} must be true or false")

    minutes = data.get("grace_period_minutes")
    if (
        isinstance(minutes, bool)
        or not isinstance(minutes, (int, float))
        or (isinstance(minutes, float) and not math.isfinite(minutes))
        or minutes < 0
    ):
        raise ConfigError(
            f"Profile '{name}': grace_period_minutes must be a non-negative number"
        )
    try:
        grace_period = timedelta(minutes=minutes)
    except OverflowError as err:
        raise ConfigError(
            f"Profile '{name}': grace_period_minutes is too large: {minutes}"
        ) from err

    prefix = data.get("userless_upn_prefix")
    if not isinstance(prefix, str):
        raise ConfigError(f"Profile '{name}': userless_upn_prefix must be a string")

    codes = data.get("exit_codes") or {}
    if not isinstance(codes, dict):
        raise ConfigError(f"Profile '{name}': exit_codes must be a mapping")
    exit_codes = []
    for key in _EXIT_CODE_KEYS:
        code = codes.get(key)
        if isinstance(code, bool) or not isinstance(code, int) or not 0 <= code <= 255:
            raise ConfigError(
                f"Profile '{name}': exit_codes.{key} must be an integer from 0 to 255"
            )
        exit_codes.append((key, code))

    registry = data.get("registry") or {}
    if not isinstance(registry, dict):
        raise ConfigError(f"Profile '{name}': registry must be a mapping")

    return EvaluatorProfile(
        name=name,
        phrasing=_choice(data, "phrasing", _PHRASINGS, name),
        gate_on_identity_mismatch=data["gate_on_identity_mismatch"],
        identity_fallback=_choice(data, "identity_fallback", _FALLBACKS, name),
        fail_open_on_error=data["fail_open_on_error"],
        userless_handling=data["userless_handling"],
        tenant_match=_choice(data, "tenant_match", _MATCH_MODES, name),
        grace_period=grace_period,
        userless_upn_prefix=prefix,
        exit_codes=tuple(exit_codes),
        registry=RegistryLocations.from_mapping(registry),
    )

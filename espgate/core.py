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

"""Core orchestration for ESPGate.

This module provides the high-level workflow that turns the current
registry contents into an ESP verdict.

Workflow:

1. Read raw inputs from the registry source
2. Check the tenant identity (stop with the profile's fallback if the
   profile gates on it)
3. Parse the three category statuses, the userless signal and the start
   time marker into an ESPSnapshot
4. Evaluate the snapshot

Design Principles:

- Every problem with the registry contents becomes an Issue on the result;
  none of them is raised
- A registry that cannot be read at all (RegistryError) becomes the
  profile's fail-open or Error verdict
- Configuration problems (ConfigError) are raised to the caller

Example:
    Evaluate the live registry with the detection profile:
        ```python
        from espgate.core import evaluate_device

        result = evaluate_device(profile="detection")
        print(result.status_line)
        raise SystemExit(result.exit_code)
        ```

    Evaluate a captured snapshot:
        ```python
        from pathlib import Path
        from espgate.core import evaluate_device
        from espgate.registry import load_snapshot_file

        result = evaluate_device(
            load_snapshot_file(Path("snapshot.yaml")), profile="requirement"
        )
        ```
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from espgate.category import (
    ACCOUNT_SETUP,
    DEVICE_PREPARATION,
    DEVICE_SETUP,
    parse_category_status,
)
from espgate.clock import read_start_time
from espgate.config import EvaluatorProfile, load_effective_config, resolve_profile
from espgate.evaluator import (
    ESPSnapshot,
    ESPStateEvaluator,
    build_result,
    finished_verdict,
)
from espgate.exceptions import RegistryError
from espgate.logging import Logger, get_global_logger
from espgate.registry import (
    RawStatusSources,
    RegistrySource,
    WinRegSource,
    is_userless_enrollment,
    read_status_sources,
)
from espgate.results import ESPVerdict, EvaluationResult, FailureKind, Issue
from espgate.tenant import GuardReason, TenantIdentity, check_tenant

_IDENTITY_FALLBACKS = {
    "running": ESPVerdict.RUNNING,
    "error": ESPVerdict.ERROR,
}


def build_snapshot(
    raw: RawStatusSources,
    profile: EvaluatorProfile,
    now: datetime,
    issues: list[Issue] | None = None,
) -> ESPSnapshot:
    """Parse raw registry inputs into an ESPSnapshot.

    Args:
        raw: Raw inputs from read_status_sources().
        profile: Profile supplying the userless UPN prefix.
        now: Evaluation time.
        issues: Optional list that receives parse and missing-input issues.

    Returns:
        The snapshot for this evaluation.
    """
    return ESPSnapshot(
        device_prep=parse_category_status(DEVICE_PREPARATION, raw.device_preparation, issues),
        device_setup=parse_category_status(DEVICE_SETUP, raw.device_setup, issues),
        account_setup=parse_category_status(ACCOUNT_SETUP, raw.account_setup, issues),
        is_userless_enrollment=is_userless_enrollment(
            raw.enrollment_upns, profile.userless_upn_prefix
        ),
        autopilot_start=read_start_time(raw.start_time_markers),
        now=now,
    )


def _identity_issue(reason: GuardReason) -> Issue:
    if reason is GuardReason.TENANT_ID_NOT_FOUND:
        return Issue(FailureKind.MISSING_INPUT, "tenant", "tenant id not found")
    return Issue(
        FailureKind.IDENTITY_MISMATCH,
        "tenant",
        "cloud assigned tenant id does not match the joined tenant",
    )


def evaluate_device(
    source: RegistrySource | None = None,
    *,
    profile: str | EvaluatorProfile = "requirement",
    config: dict[str, Any] | None = None,
    config_path: Path | None = None,
    now: datetime | None = None,
    logger: Logger | None = None,
) -> EvaluationResult:
    """Evaluate the ESP state of a device.

    Args:
        source: Registry source. Default is the live registry (WinRegSource).
        profile: Profile name, or an already resolved EvaluatorProfile.
        config: Merged configuration to resolve the profile name in. If
            omitted, loaded from config_path (or the built-in config).
        config_path: Config file used when config is not given.
        now: Evaluation time (default: current local time).
        logger: Logger to use (default: global logger).

    Returns:
        EvaluationResult for the profile.

    Raises:
        ConfigError: If the profile cannot be resolved.

    Example:
        ```python
        from espgate.core import evaluate_device
        from espgate.registry import DictRegistrySource

        result = evaluate_device(DictRegistrySource({}), profile="requirement")
        print(result.verdict)
        ```
    """
    logger = logger or get_global_logger()

    if isinstance(profile, EvaluatorProfile):
        resolved = profile
    else:
        if config is None:
            config = load_effective_config(config_path)
        resolved = resolve_profile(config, profile)

    now = now or datetime.now()
    logger.verbose("EVALUATE", f"Profile: {resolved.name} at {now.isoformat()}")

    logger.step(1, 4, "Reading registry...")
    try:
        if source is None:
            source = WinRegSource()
        raw = read_status_sources(source, resolved.registry)
    except RegistryError as err:
        logger.verbose("REGISTRY", f"Registry read failed: {err}")
        if resolved.fail_open_on_error:
            logger.verbose("REGISTRY", "Failing open: reporting ESP as finished")
            return build_result(
                resolved,
                finished_verdict(resolved),
                issues=(Issue(FailureKind.MISSING_INPUT, "registry", str(err)),),
            )
        return build_result(
            resolved,
            ESPVerdict.ERROR,
            error_reason=f"registry unavailable: {err}",
            issues=(Issue(FailureKind.MISSING_INPUT, "registry", str(err)),),
        )
    logger.debug("REGISTRY", f"Raw inputs: {raw}")

    logger.step(2, 4, "Checking tenant identity...")
    issues: list[Issue] = []
    decision = check_tenant(
        TenantIdentity(raw.cloud_assigned_tenant_id, raw.joined_tenant_ids),
        match=resolved.tenant_match,
    )
    if not decision.proceed:
        issues.append(_identity_issue(decision.reason))
        logger.verbose("TENANT", f"Tenant guard aborted: {decision.reason.value}")
        if resolved.gate_on_identity_mismatch:
            fallback = _IDENTITY_FALLBACKS.get(
                resolved.identity_fallback, finished_verdict(resolved)
            )
            return build_result(
                resolved,
                fallback,
                error_reason=decision.reason.value if fallback is ESPVerdict.ERROR else None,
                identity=decision,
                issues=tuple(issues),
            )
        logger.verbose("TENANT", "Profile does not gate on identity, continuing")
    else:
        logger.verbose("TENANT", f"Tenant matched: {decision.matched_tenant_id}")

    logger.step(3, 4, "Parsing ESP categories...")
    snapshot = build_snapshot(raw, resolved, now, issues)
    logger.verbose("EVALUATE", f"Userless enrollment: {snapshot.is_userless_enrollment}")

    logger.step(4, 4, "Evaluating ESP state...")
    evaluator = ESPStateEvaluator(resolved, logger=logger)
    result = evaluator.evaluate(snapshot, identity=decision, issues=issues)
    for issue in result.issues:
        logger.debug("ISSUE", str(issue))
    return result

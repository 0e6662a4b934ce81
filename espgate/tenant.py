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

"""Tenant identity guard.

ESP status values are only meaningful on a device that Autopilot
provisioned for *this* tenant. The guard compares the Autopilot profile's
CloudAssignedTenantId with the TenantId values recorded under
CloudDomainJoin\\JoinInfo (one subkey per join, keyed by certificate
thumbprint).

Match Modes:
    - "any": proceed if any joined tenant id equals the cloud id.
    - "last": compare only the last enumerated join record. Registry
      enumeration order decides which record that is.

Tenant ids are GUID strings; they are compared trimmed and case-insensitive.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

TenantMatchMode = Literal["any", "last"]


class GuardReason(str, Enum):
    TENANT_ID_NOT_FOUND = "TenantIdNotFound"
    TENANT_ID_MISMATCH = "TenantIdMismatch"


@dataclass(frozen=True)
class TenantIdentity:
    """Tenant ids read from the registry.

    Attributes:
        cloud_assigned_tenant_id: Tenant id from the Autopilot profile.
        joined_tenant_ids: TenantId of every join record, in enumeration order.
    """

    cloud_assigned_tenant_id: str | None
    joined_tenant_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of the tenant guard.

    Attributes:
        proceed: True when evaluation may continue.
        reason: Why evaluation must stop, or None when proceeding.
        matched_tenant_id: The joined tenant id that matched.
    """

    proceed: bool
    reason: GuardReason | None = None
    matched_tenant_id: str | None = None


def _normalize(tenant_id: str | None) -> str:
    return (tenant_id or "").strip().casefold()


def check_tenant(
    identity: TenantIdentity, match: TenantMatchMode = "any"
) -> GuardDecision:
    """Decide whether ESP evaluation should proceed for this device.

    Args:
        identity: Tenant ids read from the registry.
        match: Which joined tenant ids to compare ("any" or "last").

    Returns:
        GuardDecision with proceed=True, or proceed=False and a reason.

    Raises:
        ValueError: If match is not "any" or "last".

    Example:
        ```python
        identity = TenantIdentity("1111-aaaa", ("1111-AAAA", "2222-bbbb"))
        assert check_tenant(identity).proceed
        assert not check_tenant(identity, match="last").proceed
        ```
    """
    if match not in ("any", "last"):
        raise ValueError(f"Unknown tenant match mode: {match!r}")

    cloud_id = _normalize(identity.cloud_assigned_tenant_id)
    candidates = [c for c in identity.joined_tenant_ids if _normalize(c)]
    if not cloud_id or not candidates:
        return GuardDecision(False, GuardReason.TENANT_ID_NOT_FOUND)

    if match == "last":
        candidates = candidates[-1:]

    for candidate in candidates:
        if _normalize(candidate) == cloud_id:
            return GuardDecision(True, matched_tenant_id=candidate)
    return GuardDecision(False, GuardReason.TENANT_ID_MISMATCH)

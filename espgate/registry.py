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

"""Registry access for ESP evaluation.

This module reads the raw inputs of an ESP evaluation from the Windows
registry, or from an in-memory stand-in, without interpreting them.

Registry Locations (defaults, all HKLM):
    - SOFTWARE\\Microsoft\\Provisioning\\AutopilotSettings
        DevicePreparationCategory.Status, DeviceSetupCategory.Status,
        AccountSetupCategory.Status (JSON strings)
    - SOFTWARE\\Microsoft\\Provisioning\\Diagnostics\\Autopilot
        CloudAssignedTenantId
    - SYSTEM\\CurrentControlSet\\Control\\CloudDomainJoin\\JoinInfo\\<thumbprint>
        TenantId (one per join record)
    - SOFTWARE\\Microsoft\\Enrollments\\<guid>
        UPN (userless enrollments use a sentinel UPN prefix)
    - SOFTWARE\\Microsoft\\Provisioning\\AutopilotStartTime\\<timestamp>
        start time marker, encoded as the subkey name

Sources:
    - WinRegSource: the live registry through winreg (64-bit view).
    - DictRegistrySource: a mapping of key path to values, used for tests
      and for snapshot files captured on a device.

Key paths accept "HKLM:\\...", "HKLM\\..." and "HKEY_LOCAL_MACHINE\\..."
and are matched case-insensitively, like the registry itself.

Example:
    Evaluate against a captured snapshot:
        ```python
        from pathlib import Path
        from espgate.registry import RegistryLocations, load_snapshot_file, read_status_sources

        source = load_snapshot_file(Path("device-snapshot.yaml"))
        raw = read_status_sources(source, RegistryLocations())
        print(raw.account_setup)
        ```
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import sys
from typing import Any, Mapping, Protocol

import yaml

from espgate.exceptions import ConfigError, RegistryError

try:
    import winreg  # type: ignore[import-not-found]
except ImportError:  # not available off Windows
    winreg = None  # type: ignore[assignment]

_HIVE_ALIASES = {
    "HKLM": "HKLM",
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKCU": "HKCU",
    "HKEY_CURRENT_USER": "HKCU",
    "HKU": "HKU",
    "HKEY_USERS": "HKU",
}


def normalize_key_path(path: str) -> str:
    """Normalize a key path to "HIVE\\sub\\key" with a short hive name.

    Raises:
        RegistryError: If the path has no hive or an unsupported hive.

    Example:
        ```python
        normalize_key_path("HKEY_LOCAL_MACHINE\\SOFTWARE\\Foo\\")  # "HKLM\\SOFTWARE\\Foo"
        ```
    """
    # "/" is legal inside key names (e.g. "3/1/2025 8:15:00 AM")
    cleaned = path.strip()
    hive, _, subkey = cleaned.partition("\\")
    hive = hive.rstrip(":").upper()
    if hive not in _HIVE_ALIASES:
        raise RegistryError(f"Unsupported registry hive in path: {path}")
    parts = [p for p in subkey.split("\\") if p]
    return "\\".join([_HIVE_ALIASES[hive], *parts])


class RegistrySource(Protocol):
    """Read-only view of registry keys and values."""

    def get_value(self, key: str, name: str) -> Any | None:
        """Return the named value of a key, or None if key or value is missing."""
        ...

    def subkey_names(self, key: str) -> list[str] | None:
        """Return the subkey names of a key, or None if the key is missing."""
        ...


class WinRegSource:
    """Registry source backed by winreg.

    Keys are opened read-only in the 64-bit registry view so results do not
    depend on the bitness of the Python process.

    Raises:
        RegistryError: On construction when winreg is unavailable, and from
            reads that fail for reasons other than a missing key or value.
    """

    def __init__(self) -> None:
        if winreg is None:
            raise RegistryError(
                f"winreg not available on this platform ({sys.platform}); "
                "use a snapshot file instead"
            )
        self._hives = {
            "HKLM": winreg.HKEY_LOCAL_MACHINE,
            "HKCU": winreg.HKEY_CURRENT_USER,
            "HKU": winreg.HKEY_USERS,
        }

    def _open(self, key: str):
        hive, _, subkey = normalize_key_path(key).partition("\\")
        return winreg.OpenKey(
            self._hives[hive], subkey, 0, winreg.KEY_READ | winreg.KEY_WOW64_64KEY
        )

    def get_value(self, key: str, name: str) -> Any | None:
        try:
            with self._open(key) as handle:
                value, _ = winreg.QueryValueEx(handle, name)
                return value
        except FileNotFoundError:
            return None
        except OSError as err:
            raise RegistryError(f"Failed to read {key}\\{name}: {err}") from err

    def subkey_names(self, key: str) -> list[str] | None:
        try:
            with self._open(key) as handle:
                count = winreg.QueryInfoKey(handle)[0]
                return [winreg.EnumKey(handle, i) for i in range(count)]
        except FileNotFoundError:
            return None
        except OSError as err:
            raise RegistryError(f"Failed to enumerate {key}: {err}") from err


class DictRegistrySource:
    """Registry source backed by a mapping of key path to values.

    Subkeys do not need their own entries: a key exists if it, or any key
    below it, is present in the mapping. Subkey order follows insertion
    order, which stands in for registry enumeration order.

    Example:
        ```python
        source = DictRegistrySource({
            r"HKLM\\SOFTWARE\\Microsoft\\Enrollments\\ABC": {"UPN": "foouser@contoso.com"},
        })
        source.subkey_names(r"HKLM:\\SOFTWARE\\Microsoft\\Enrollments")  # ["ABC"]
        ```
    """

    def __init__(self, keys: Mapping[str, Mapping[str, Any] | None]) -> None:
        self._keys: dict[str, dict[str, Any]] = {}
        self._names: dict[str, str] = {}
        for path, values in keys.items():
            normalized = normalize_key_path(path)
            self._keys[normalized.casefold()] = {
                str(k).casefold(): v for k, v in (values or {}).items()
            }
            self._names[normalized.casefold()] = normalized

    def get_value(self, key: str, name: str) -> Any | None:
        values = self._keys.get(normalize_key_path(key).casefold())
        if values is None:
            return None
        return values.get(name.casefold())

    def subkey_names(self, key: str) -> list[str] | None:
        base = normalize_key_path(key).casefold()
        prefix = base + "\\"
        found = base in self._keys
        names: list[str] = []
        seen: set[str] = set()
        for folded, original in self._names.items():
            if not folded.startswith(prefix):
                continue
            found = True
            child = original[len(prefix):].split("\\", 1)[0]
            if child.casefold() not in seen:
                seen.add(child.casefold())
                names.append(child)
        return names if found else None


@dataclass(frozen=True)
class RegistryLocations:
    """Registry keys and value names read for one evaluation."""

    autopilot_settings_key: str = r"HKLM\SOFTWARE\Microsoft\Provisioning\AutopilotSettings"
    device_preparation_value: str = "DevicePreparationCategory.Status"
    device_setup_value: str = "DeviceSetupCategory.Status"
    account_setup_value: str = "AccountSetupCategory.Status"
    tenant_key: str = r"HKLM\SOFTWARE\Microsoft\Provisioning\Diagnostics\Autopilot"
    tenant_value: str = "CloudAssignedTenantId"
    join_info_key: str = r"HKLM\SYSTEM\CurrentControlSet\Control\CloudDomainJoin\JoinInfo"
    join_tenant_value: str = "TenantId"
    enrollments_key: str = r"HKLM\SOFTWARE\Microsoft\Enrollments"
    enrollment_upn_value: str = "UPN"
    start_time_key: str = r"HKLM\SOFTWARE\Microsoft\Provisioning\AutopilotStartTime"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> RegistryLocations:
        """Build locations from a config mapping, ignoring unknown keys.

        Raises:
            ConfigError: If a known key has a non-string value.
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, str] = {}
        for key, value in (data or {}).items():
            if key not in known:
                continue
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"registry.{key} must be a non-empty string")
            values[key] = value
        return cls(**values)


@dataclass(frozen=True)
class RawStatusSources:
    """Uninterpreted registry inputs of one evaluation.

    Attributes:
        cloud_assigned_tenant_id: Tenant id from the Autopilot profile.
        joined_tenant_ids: TenantId of every join record, in enumeration order.
        device_preparation: Raw DevicePreparationCategory.Status value.
        device_setup: Raw DeviceSetupCategory.Status value.
        account_setup: Raw AccountSetupCategory.Status value.
        enrollment_upns: UPN of every enrollment record that has one.
        start_time_markers: Subkey names under the start time marker key.
    """

    cloud_assigned_tenant_id: str | None
    joined_tenant_ids: tuple[str, ...]
    device_preparation: str | None
    device_setup: str | None
    account_setup: str | None
    enrollment_upns: tuple[str, ...]
    start_time_markers: tuple[str, ...]


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-16-le", errors="replace").rstrip("\x00")
    return str(value)


def _child_values(source: RegistrySource, key: str, value_name: str) -> tuple[str, ...]:
    results = []
    for child in source.subkey_names(key) or []:
        value = _as_text(source.get_value(f"{key}\\{child}", value_name))
        if value:
            results.append(value)
    return tuple(results)


def read_status_sources(
    source: RegistrySource, locations: RegistryLocations | None = None
) -> RawStatusSources:
    """Read every raw input of an ESP evaluation.

    Args:
        source: Registry source to read from.
        locations: Keys and value names to read (default: built-in locations).

    Returns:
        RawStatusSources. Missing keys and values read as None or empty.

    Raises:
        RegistryError: If the source fails to read (not for missing data).
    """
    loc = locations or RegistryLocations()
    settings = loc.autopilot_settings_key
    return RawStatusSources(
        cloud_assigned_tenant_id=_as_text(
            source.get_value(loc.tenant_key, loc.tenant_value)
        ),
        joined_tenant_ids=_child_values(source, loc.join_info_key, loc.join_tenant_value),
        device_preparation=_as_text(source.get_value(settings, loc.device_preparation_value)),
        device_setup=_as_text(source.get_value(settings, loc.device_setup_value)),
        account_setup=_as_text(source.get_value(settings, loc.account_setup_value)),
        enrollment_upns=_child_values(source, loc.enrollments_key, loc.enrollment_upn_value),
        start_time_markers=tuple(source.subkey_names(loc.start_time_key) or ()),
    )


def is_userless_enrollment(upns: tuple[str, ...] | list[str], prefix: str) -> bool:
    """True if any enrollment UPN starts with the userless sentinel prefix."""
    folded = prefix.casefold()
    return bool(folded) and any(u.strip().casefold().startswith(folded) for u in upns)


def capture_snapshot(
    source: RegistrySource, locations: RegistryLocations | None = None
) -> dict[str, Any]:
    """Copy the keys an evaluation reads into the snapshot file shape.

    Returns:
        {"keys": {key_path: {value_name: value}}}, suitable for
        yaml.safe_dump and for load_snapshot_file.
    """
    loc = locations or RegistryLocations()
    keys: dict[str, dict[str, Any]] = {}

    settings_values = {}
    for name in (
        loc.device_preparation_value,
        loc.device_setup_value,
        loc.account_setup_value,
    ):
        value = _as_text(source.get_value(loc.autopilot_settings_key, name))
        if value is not None:
            settings_values[name] = value
    keys[loc.autopilot_settings_key] = settings_values

    tenant = _as_text(source.get_value(loc.tenant_key, loc.tenant_value))
    keys[loc.tenant_key] = {loc.tenant_value: tenant} if tenant is not None else {}

    for parent, value_name in (
        (loc.join_info_key, loc.join_tenant_value),
        (loc.enrollments_key, loc.enrollment_upn_value),
    ):
        for child in source.subkey_names(parent) or []:
            child_key = f"{parent}\\{child}"
            value = _as_text(source.get_value(child_key, value_name))
            keys[child_key] = {value_name: value} if value is not None else {}

    for marker in source.subkey_names(loc.start_time_key) or []:
        keys[f"{loc.start_time_key}\\{marker}"] = {}

    return {"keys": keys}


def load_snapshot_file(path: Path) -> DictRegistrySource:
    """Load a registry snapshot YAML file.

    File format:
        ```yaml
        keys:
          HKLM\\SOFTWARE\\Microsoft\\Provisioning\\AutopilotSettings:
            DeviceSetupCategory.Status: '{"categoryState": "succeeded"}'
          HKLM\\SOFTWARE\\Microsoft\\Provisioning\\AutopilotStartTime\\2025-03-01T08:15:00: {}
        ```

    Raises:
        ConfigError: If the file is missing or unreadable, is not valid YAML,
            has no "keys" mapping, or a key does not map to values.
        RegistryError: If a key path uses an unsupported hive.
    """
    if not path.exists():
        raise ConfigError(f"Snapshot file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in snapshot {path}: {err}") from err
    except OSError as err:
        raise ConfigError(f"Cannot read snapshot {path}: {err}") from err
    if not isinstance(data, dict) or not isinstance(data.get("keys"), dict):
        raise ConfigError(f"Snapshot must contain a 'keys' mapping: {path}")
    for key_path, values in data["keys"].items():
        if not isinstance(key_path, str):
            raise ConfigError(f"Snapshot key {key_path!r} must be a registry path")
        if values is not None and not isinstance(values, dict):
            raise ConfigError(f"Snapshot key {key_path} must map to values")
    return DictRegistrySource(data["keys"])

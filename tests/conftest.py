"""
Pytest configuration and shared fixtures for ESPGate tests.

This module provides reusable fixtures and test utilities used across
the test suite.
"""

from __future__ import annotations

from datetime import datetime
import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from espgate.config import load_effective_config, resolve_profile
from espgate.logging import SilentLogger, set_global_logger
from espgate.registry import DictRegistrySource

TENANT_ID = "0b3c7a52-1f7e-4c6a-9d2e-5a8f3b1c9e70"
OTHER_TENANT_ID = "9e1d2c3b-4a5f-6e7d-8c9b-0a1f2e3d4c5b"

SETTINGS_KEY = r"HKLM\SOFTWARE\Microsoft\Provisioning\AutopilotSettings"
TENANT_KEY = r"HKLM\SOFTWARE\Microsoft\Provisioning\Diagnostics\Autopilot"
JOIN_INFO_KEY = r"HKLM\SYSTEM\CurrentControlSet\Control\CloudDomainJoin\JoinInfo"
ENROLLMENTS_KEY = r"HKLM\SOFTWARE\Microsoft\Enrollments"
START_TIME_KEY = r"HKLM\SOFTWARE\Microsoft\Provisioning\AutopilotStartTime"


@pytest.fixture(autouse=True)
def silent_global_logger():
    """Reset the global logger so CLI tests do not leak into others."""
    set_global_logger(SilentLogger())
    yield
    set_global_logger(SilentLogger())


@pytest.fixture
def tmp_test_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test artifacts.

    Automatically cleaned up after test completion.
    """
    return tmp_path


@pytest.fixture
def now() -> datetime:
    """Fixed evaluation time."""
    return datetime(2025, 3, 1, 10, 0, 0)


@pytest.fixture
def builtin_config() -> dict[str, Any]:
    return load_effective_config()


@pytest.fixture
def requirement_profile(builtin_config):
    return resolve_profile(builtin_config, "requirement")


@pytest.fixture
def detection_profile(builtin_config):
    return resolve_profile(builtin_config, "detection")


@pytest.fixture
def registry_data():
    """
    Factory fixture building registry key mappings for DictRegistrySource.

    Usage:
        keys = registry_data(device_setup={"categoryState": "succeeded"})

    Category arguments accept a dict (dumped to JSON), a raw string, or
    None (value absent). Tenant ids default to a matching pair.
    """

    def _build(
        device_prep: Any = None,
        device_setup: Any = None,
        account_setup: Any = None,
        cloud_tenant_id: str | None = TENANT_ID,
        joined_tenant_ids: tuple[str, ...] = (TENANT_ID,),
        upns: tuple[str, ...] = ("user@contoso.com",),
        start_markers: tuple[str, ...] = (),
    ) -> dict[str, dict[str, Any]]:
        keys: dict[str, dict[str, Any]] = {}
        settings: dict[str, Any] = {}
        for name, value in (
            ("DevicePreparationCategory.Status", device_prep),
            ("DeviceSetupCategory.Status", device_setup),
            ("AccountSetupCategory.Status", account_setup),
        ):
            if value is None:
                continue
            settings[name] = json.dumps(value) if isinstance(value, dict) else value
        keys[SETTINGS_KEY] = settings
        keys[TENANT_KEY] = (
            {"CloudAssignedTenantId": cloud_tenant_id} if cloud_tenant_id else {}
        )
        for index, tenant_id in enumerate(joined_tenant_ids):
            keys[f"{JOIN_INFO_KEY}\\THUMBPRINT{index}"] = {"TenantId": tenant_id}
        for index, upn in enumerate(upns):
            keys[f"{ENROLLMENTS_KEY}\\ENROLLMENT-{index}"] = {"UPN": upn}
        for marker in start_markers:
            keys[f"{START_TIME_KEY}\\{marker}"] = {}
        return keys

    return _build


@pytest.fixture
def make_source(registry_data):
    """Factory fixture returning a DictRegistrySource from registry_data kwargs."""

    def _make(**kwargs) -> DictRegistrySource:
        return DictRegistrySource(registry_data(**kwargs))

    return _make


@pytest.fixture
def create_yaml_file(tmp_test_dir: Path):
    """
    Factory fixture for creating temporary YAML files.

    Usage:
        yaml_path = create_yaml_file("espgate.yaml", {"key": "value"})
    """

    def _create(filename: str, data: dict[str, Any]) -> Path:
        path = tmp_test_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)
        return path

    return _create

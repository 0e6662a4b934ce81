"""
Tests for espgate.registry module.

Tests registry access including:
- Key path normalization
- DictRegistrySource lookups and subkey enumeration
- Raw status source reading
- Userless enrollment detection
- Snapshot capture and loading
"""

from __future__ import annotations

import pytest
import yaml

from espgate.exceptions import ConfigError, RegistryError
from espgate.registry import (
    DictRegistrySource,
    RegistryLocations,
    WinRegSource,
    capture_snapshot,
    is_userless_enrollment,
    load_snapshot_file,
    normalize_key_path,
    read_status_sources,
)
import espgate.registry as registry_module

pytestmark = pytest.mark.unit


class TestNormalizeKeyPath:
    """Tests for normalize_key_path."""

    @pytest.mark.parametrize(
        "path",
        [
            r"HKLM:\SOFTWARE\Microsoft",
            r"HKLM\SOFTWARE\Microsoft",
            r"HKEY_LOCAL_MACHINE\SOFTWARE\Microsoft\\",
            r"hklm\SOFTWARE\\Microsoft",
        ],
    )
    def test_hive_spellings(self, path):
        """Test that every hive spelling normalizes to the short form."""
        assert normalize_key_path(path) == r"HKLM\SOFTWARE\Microsoft"

    def test_keeps_forward_slashes(self):
        """Test that forward slashes stay part of key names."""
        result = normalize_key_path(r"HKLM\SOFTWARE\3/1/2025 8:15:00 AM")

        assert result == r"HKLM\SOFTWARE\3/1/2025 8:15:00 AM"

    def test_hive_only(self):
        """Test a path naming only a hive."""
        assert normalize_key_path("HKEY_USERS") == "HKU"

    def test_unsupported_hive(self):
        """Test that an unknown hive raises RegistryError."""
        with pytest.raises(RegistryError, match="Unsupported registry hive"):
            normalize_key_path(r"HKCR\foo")


class TestDictRegistrySource:
    """Tests for DictRegistrySource."""

    def test_get_value_is_case_insensitive(self):
        """Test that key paths and value names ignore case."""
        source = DictRegistrySource({r"HKLM\SOFTWARE\Foo": {"Bar": "baz"}})

        assert source.get_value(r"HKEY_LOCAL_MACHINE\software\foo", "BAR") == "baz"

    def test_missing_key_and_value(self):
        """Test that missing keys and values read as None."""
        source = DictRegistrySource({r"HKLM\SOFTWARE\Foo": {"Bar": "baz"}})

        assert source.get_value(r"HKLM\SOFTWARE\Missing", "Bar") is None
        assert source.get_value(r"HKLM\SOFTWARE\Foo", "Missing") is None

    def test_subkeys_from_descendants(self):
        """Test that subkeys are derived from deeper paths in insertion order."""
        source = DictRegistrySource(
            {
                r"HKLM\SOFTWARE\Enrollments\B": {},
                r"HKLM\SOFTWARE\Enrollments\A\Deep": {},
                r"HKLM\SOFTWARE\Enrollments\b\Other": {},
            }
        )

        assert source.subkey_names(r"HKLM\SOFTWARE\Enrollments") == ["B", "A"]

    def test_subkeys_of_missing_key(self):
        """Test that a missing key has no subkey list."""
        source = DictRegistrySource({r"HKLM\SOFTWARE\Foo": {}})

        assert source.subkey_names(r"HKLM\SOFTWARE\Bar") is None
        assert source.subkey_names(r"HKLM\SOFTWARE\Foo") == []

    def test_none_values_mapping(self):
        """Test that a key with a null values mapping still exists."""
        source = DictRegistrySource({r"HKLM\SOFTWARE\Foo": None})

        assert source.subkey_names(r"HKLM\SOFTWARE\Foo") == []


class TestReadStatusSources:
    """Tests for read_status_sources."""

    def test_reads_every_input(self, registry_data):
        """Test that all raw inputs are read from default locations."""
        source = DictRegistrySource(
            registry_data(
                device_prep={"categoryState": "succeeded"},
                device_setup={"categoryState": "inProgress"},
                upns=("foouser@contoso.com", "alice@contoso.com"),
                start_markers=("2025-03-01T08:15:00",),
            )
        )

        raw = read_status_sources(source)

        assert raw.cloud_assigned_tenant_id == "0b3c7a52-1f7e-4c6a-9d2e-5a8f3b1c9e70"
        assert raw.joined_tenant_ids == ("0b3c7a52-1f7e-4c6a-9d2e-5a8f3b1c9e70",)
        assert raw.device_preparation == '{"categoryState": "succeeded"}'
        assert raw.device_setup == '{"categoryState": "inProgress"}'
        assert raw.account_setup is None
        assert raw.enrollment_upns == ("foouser@contoso.com", "alice@contoso.com")
        assert raw.start_time_markers == ("2025-03-01T08:15:00",)

    def test_empty_registry(self):
        """Test that an empty registry reads as missing data, not an error."""
        raw = read_status_sources(DictRegistrySource({}))

        assert raw.cloud_assigned_tenant_id is None
        assert raw.joined_tenant_ids == ()
        assert raw.enrollment_upns == ()
        assert raw.start_time_markers == ()

    def test_custom_locations(self):
        """Test reading from overridden locations."""
        locations = RegistryLocations(autopilot_settings_key=r"HKLM\SOFTWARE\Lab\ESP")
        source = DictRegistrySource(
            {r"HKLM\SOFTWARE\Lab\ESP": {"AccountSetupCategory.Status": "{}"}}
        )

        raw = read_status_sources(source, locations)

        assert raw.account_setup == "{}"

    def test_utf16_bytes_are_decoded(self):
        """Test that binary values are decoded as UTF-16."""
        source = DictRegistrySource(
            {
                r"HKLM\SOFTWARE\Microsoft\Provisioning\Diagnostics\Autopilot": {
                    "CloudAssignedTenantId": "abc\x00".encode("utf-16-le")
                }
            }
        )

        assert read_status_sources(source).cloud_assigned_tenant_id == "abc"

    def test_source_errors_propagate(self):
        """Test that a failing source raises RegistryError."""

        class BrokenSource:
            def get_value(self, key, name):
                raise RegistryError("access denied")

            def subkey_names(self, key):
                return None

        with pytest.raises(RegistryError, match="access denied"):
            read_status_sources(BrokenSource())


class TestRegistryLocations:
    """Tests for RegistryLocations.from_mapping."""

    def test_overrides_and_ignores_unknown(self):
        """Test that known keys override and unknown keys are ignored."""
        locations = RegistryLocations.from_mapping(
            {"tenant_value": "TenantGuid", "something_else": 1}
        )

        assert locations.tenant_value == "TenantGuid"
        assert locations.join_tenant_value == "TenantId"

    def test_empty_mapping(self):
        """Test that None yields the defaults."""
        assert RegistryLocations.from_mapping(None) == RegistryLocations()

    def test_non_string_value(self):
        """Test that a non-string location raises ConfigError."""
        with pytest.raises(ConfigError, match="registry.tenant_key"):
            RegistryLocations.from_mapping({"tenant_key": 42})


class TestUserlessEnrollment:
    """Tests for is_userless_enrollment."""

    def test_prefix_match(self):
        """Test that any UPN with the prefix marks a userless enrollment."""
        assert is_userless_enrollment(("alice@contoso.com", "FooUser@contoso.com"), "foouser@")

    def test_no_match(self):
        """Test that ordinary UPNs are not userless."""
        assert not is_userless_enrollment(("alice@contoso.com",), "foouser@")

    def test_empty_prefix_never_matches(self):
        """Test that an empty prefix disables detection."""
        assert not is_userless_enrollment(("alice@contoso.com",), "")


class TestSnapshots:
    """Tests for snapshot capture and loading."""

    def test_capture_and_reload(self, registry_data, tmp_test_dir):
        """Test that a captured snapshot reads back the same raw inputs."""
        source = DictRegistrySource(
            registry_data(
                device_setup={"categoryStatusText": "Complete"},
                start_markers=("2025-03-01T08:15:00",),
            )
        )
        snapshot_path = tmp_test_dir / "snapshot.yaml"
        with snapshot_path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(capture_snapshot(source), f)

        reloaded = load_snapshot_file(snapshot_path)

        assert read_status_sources(reloaded) == read_status_sources(source)

    def test_capture_skips_missing_values(self):
        """Test that values that are not present are not captured."""
        data = capture_snapshot(DictRegistrySource({}))

        settings = data["keys"][RegistryLocations().autopilot_settings_key]
        assert settings == {}

    def test_load_missing_file(self, tmp_test_dir):
        """Test that a missing snapshot raises ConfigError."""
        with pytest.raises(ConfigError, match="Snapshot file not found"):
            load_snapshot_file(tmp_test_dir / "missing.yaml")

    def test_load_without_keys(self, create_yaml_file):
        """Test that a snapshot without a keys mapping raises ConfigError."""
        path = create_yaml_file("snapshot.yaml", {"captured_at": "now"})

        with pytest.raises(ConfigError, match="'keys' mapping"):
            load_snapshot_file(path)

    def test_load_invalid_yaml(self, tmp_test_dir):
        """Test that invalid YAML raises ConfigError."""
        path = tmp_test_dir / "snapshot.yaml"
        path.write_text("keys: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_snapshot_file(path)

    @pytest.mark.parametrize("values", ["just-a-string", ["a", "b"], 7])
    def test_load_key_without_values(self, create_yaml_file, values):
        """Test that a key mapped to a scalar or list raises ConfigError."""
        path = create_yaml_file("snapshot.yaml", {"keys": {r"HKLM\SOFTWARE\X": values}})

        with pytest.raises(ConfigError, match=r"Snapshot key HKLM\\SOFTWARE\\X must map to values"):
            load_snapshot_file(path)

    def test_load_empty_key(self, create_yaml_file):
        """Test that a key with no values loads as an existing key."""
        path = create_yaml_file("snapshot.yaml", {"keys": {r"HKLM\SOFTWARE\X\Sub": None}})

        source = load_snapshot_file(path)

        assert source.subkey_names(r"HKLM\SOFTWARE\X") == ["Sub"]

    def test_load_unreadable(self, tmp_test_dir):
        """Test that a snapshot path that cannot be read raises ConfigError."""
        folder = tmp_test_dir / "snapshot.yaml"
        folder.mkdir()

        with pytest.raises(ConfigError, match="Cannot read snapshot"):
            load_snapshot_file(folder)


class TestWinRegSource:
    """Tests for WinRegSource off Windows."""

    def test_unavailable_without_winreg(self, monkeypatch):
        """Test that construction fails cleanly when winreg is missing."""
        monkeypatch.setattr(registry_module, "winreg", None)

        with pytest.raises(RegistryError, match="winreg not available"):
            WinRegSource()

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

"""Config validation module.

This module checks an ESPGate config file without touching the registry.
This is useful for quick feedback while editing profiles and as a CI/CD
pre-check before config is shipped to devices.

Validation Checks:

- YAML syntax is valid and the document is a mapping
- apiVersion is present and supported
- 'defaults' and 'profiles' are mappings when present
- Every profile (built-in and configured) resolves with valid values
- Registry location overrides are known keys

Example:
    Validate a config and handle results:
        ```python
        from pathlib import Path
        from espgate.validation import validate_config

        result = validate_config(Path("espgate.yaml"))
        if result.status == "valid":
            print(f"Config is valid with {result.profile_count} profile(s)")
        else:
            for error in result.errors:
                print(f"Error: {error}")
        ```

"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path

import yaml

from espgate.config.loader import API_VERSION, load_effective_config
from espgate.config.profiles import profile_names, resolve_profile
from espgate.exceptions import ConfigError, RegistryError
from espgate.logging import get_global_logger
from espgate.registry import RegistryLocations, normalize_key_path
from espgate.results import ValidationResult

__all__ = ["validate_config"]


def _invalid(config_path: Path, errors: list[str], warnings: list[str]) -> ValidationResult:
    return ValidationResult(
        status="invalid",
        errors=errors,
        warnings=warnings,
        profile_count=0,
        config_path=str(config_path),
    )


def validate_config(config_path: Path) -> ValidationResult:
    """Validate a config file without reading the registry.

    Args:
        config_path: Path to the config YAML file.

    Returns:
        ValidationResult with status "valid" or "invalid", error and
        warning messages, and the number of profiles that resolved.

    """
    logger = get_global_logger()
    errors: list[str] = []
    warnings: list[str] = []

    logger.verbose("VALIDATE", f"Validating config: {config_path}")

    if not config_path.exists():
        errors.append(f"Config file not found: {config_path}")
        return _invalid(config_path, errors, warnings)

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as err:
        errors.append(f"Invalid YAML syntax: {err}")
        return _invalid(config_path, errors, warnings)
    except OSError as err:
        errors.append(f"Failed to read config file: {err}")
        return _invalid(config_path, errors, warnings)

    if not isinstance(raw, dict):
        errors.append("Config must be a YAML dictionary/mapping")
        return _invalid(config_path, errors, warnings)

    logger.verbose("VALIDATE", "[OK] YAML syntax is valid")

    if "apiVersion" not in raw:
        errors.append("Missing required field: apiVersion")
    elif raw["apiVersion"] != API_VERSION:
        warnings.append(
            f"apiVersion '{raw['apiVersion']}' may not be supported (expected: {API_VERSION})"
        )

    for section in ("defaults", "profiles"):
        if section in raw and not isinstance(raw[section], dict):
            errors.append(f"Field '{section}' must be a mapping")
    if errors:
        return _invalid(config_path, errors, warnings)

    known_locations = {f.name for f in fields(RegistryLocations)}
    registry_sections = [("defaults", (raw.get("defaults") or {}).get("registry"))]
    for name, overrides in (raw.get("profiles") or {}).items():
        if isinstance(overrides, dict):
            registry_sections.append((f"profiles.{name}", overrides.get("registry")))
    for where, registry in registry_sections:
        if not isinstance(registry, dict):
            continue
        for key, value in registry.items():
            if key not in known_locations:
                warnings.append(f"{where}.registry: unknown key '{key}' is ignored")
            elif key.endswith("_key") and isinstance(value, str):
                try:
                    normalize_key_path(value)
                except RegistryError as err:
                    errors.append(f"{where}.registry.{key}: {err}")

    try:
        config = load_effective_config(config_path)
    except ConfigError as err:
        errors.append(str(err))
        return _invalid(config_path, errors, warnings)

    profile_count = 0
    for name in profile_names(config):
        try:
            resolve_profile(config, name)
        except ConfigError as err:
            errors.append(str(err))
            continue
        profile_count += 1
        logger.verbose("VALIDATE", f"[OK] Profile '{name}'")

    return ValidationResult(
        status="invalid" if errors else "valid",
        errors=errors,
        warnings=warnings,
        profile_count=profile_count,
        config_path=str(config_path),
    )

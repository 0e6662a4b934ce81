"""
Configuration loading and merging for ESPGate.

Configuration is layered so that an organisation can keep one set of
defaults (registry locations, grace period, userless UPN prefix) and tune
individual call-site profiles on top of it.

Configuration Layers
--------------------
1. **Built-in defaults** (BUILTIN_CONFIG)
   - Default registry locations and evaluation settings
   - The four built-in profiles (requirement, detection,
     requirement-strict, detection-legacy)

2. **Organization defaults** (defaults/org.yaml)
   - Found by walking upward from the config file
   - Optional; overrides built-in defaults

3. **Config file** (e.g. espgate.yaml)
   - Optional; overrides organization defaults
   - May add new profiles or tweak built-in ones

Merge Behavior
--------------
The loader performs deep merging with "last wins" semantics:
  - **Dicts**: Recursively merged (keys from overlay override base)
  - **Lists**: Completely replaced (NOT appended/extended)
  - **Scalars**: Overwritten (strings, numbers, booleans)

Functions
---------
load_effective_config : function
    Load and merge configuration (main public API).

Error Handling
--------------
- ConfigError: Config file missing, YAML parse errors, non-mapping documents
- All errors are chained with "from err" for better debugging

Examples
--------
Built-in configuration only:

    >>> from espgate.config import load_effective_config
    >>> cfg = load_effective_config()
    >>> cfg["defaults"]["grace_period_minutes"]
    60

With a config file:

    >>> cfg = load_effective_config(Path("config/espgate.yaml"))
    >>> sorted(cfg["profiles"])
    ['detection', 'detection-legacy', 'kiosk', 'requirement', 'requirement-strict']
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from espgate.exceptions import ConfigError
from espgate.logging import get_global_logger

API_VERSION = "espgate/v1"

# -------------------------------
# Built-in defaults
# -------------------------------

BUILTIN_CONFIG: dict[str, Any] = {
    "apiVersion": API_VERSION,
    "defaults": {
        "phrasing": "not_running",
        "gate_on_identity_mismatch": True,
        "identity_fallback": "not_running",
        "fail_open_on_error": False,
        "userless_handling": True,
        "tenant_match": "any",
        "grace_period_minutes": 60,
        "userless_upn_prefix": "foouser@",
        "exit_codes": {"running": 1, "finished": 0, "error": 1},
        "registry": {},
    },
    "profiles": {
        "requirement": {},
        "detection": {
            "phrasing": "complete",
        },
        "requirement-strict": {
            "identity_fallback": "running",
            "userless_handling": False,
        },
        "detection-legacy": {
            "phrasing": "complete",
            "tenant_match": "last",
            "identity_fallback": "error",
        },
    },
}


# -------------------------------
# YAML helpers
# -------------------------------


def _load_yaml_file(p: Path) -> dict[str, Any]:
    """
    Load a YAML file that must contain a mapping.

    Raises:
      ConfigError - missing file, invalid YAML, or a non-mapping document
    """
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error parsing YAML: {p}: {err}") from err
    except OSError as err:
        raise ConfigError(f"Error reading config file: {p}: {err}") from err
    if data is None:
        raise ConfigError(f"YAML file is empty: {p}")
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping (dict): {p}")
    return data


# -------------------------------
# Merge logic
# -------------------------------


def _deep_merge_dicts(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Deep-merge two dicts with "overlay wins".

    Rules:
      - dict + dict -> deep merge
      - list + list -> overlay REPLACES base (not concatenated)
      - everything else -> overlay overwrites base

    This function does not mutate inputs; returns a new dict.
    """
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


# -------------------------------
# Defaults discovery
# -------------------------------


def _find_defaults_root(start_dir: Path) -> Path | None:
    """
    Walk upward from 'start_dir' looking for a 'defaults/org.yaml'.
    Returns the 'defaults' directory or None if not found.
    """
    for parent in [start_dir] + list(start_dir.parents):
        candidate = parent / "defaults" / "org.yaml"
        if candidate.exists():
            return parent / "defaults"
    return None


# -------------------------------
# Public API
# -------------------------------


def load_effective_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load and merge the effective configuration.

    Steps
      1) Start from a deep copy of BUILTIN_CONFIG.
      2) If a config file is given, find defaults root by scanning upwards
         for 'defaults/org.yaml' and merge it.
      3) Merge the config file on top.

    Returns
      A merged configuration dict with 'defaults' and 'profiles' mappings.

    Raises
      ConfigError on a missing config file, YAML parse errors or
      non-mapping documents.
    """
    logger = get_global_logger()
    merged = copy.deepcopy(BUILTIN_CONFIG)
    if config_path is None:
        logger.debug("CONFIG", "No config file, using built-in configuration")
        return merged

    config_path = config_path.resolve()
    logger.verbose("CONFIG", f"Loading config: {config_path}")
    config_obj = _load_yaml_file(config_path)

    defaults_root = _find_defaults_root(config_path.parent)
    if defaults_root is not None:
        org_path = defaults_root / "org.yaml"
        if org_path != config_path:
            logger.verbose("CONFIG", f"Loading: {org_path}")
            merged = _deep_merge_dicts(merged, _load_yaml_file(org_path))

    merged = _deep_merge_dicts(merged, config_obj)

    logger.debug(
        "CONFIG",
        f"Profiles available: {', '.join(sorted(merged.get('profiles') or {}))}",
    )
    return merged

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

"""Configuration loading and profile resolution for ESPGate.

This module provides tools for loading, merging, and validating YAML-based
configuration with a layered approach:

  - Built-in defaults and profiles
  - Organization-wide defaults (defaults/org.yaml)
  - A config file (e.g. espgate.yaml)

The loader performs deep merging where dicts are merged recursively and
lists/scalars are replaced (last wins).

Public API:

- load_effective_config: Load and merge configuration
- resolve_profile: Turn a named profile into an EvaluatorProfile
- profile_names: List the profiles of a merged configuration

Example:
    Basic usage:

        from pathlib import Path
        from espgate.config import load_effective_config, resolve_profile

        config = load_effective_config(Path("espgate.yaml"))
        profile = resolve_profile(config, "requirement")
        print(profile.grace_period)  # 1:00:00

"""

from .loader import BUILTIN_CONFIG, load_effective_config
from .profiles import EvaluatorProfile, profile_names, resolve_profile

__all__ = [
    "BUILTIN_CONFIG",
    "EvaluatorProfile",
    "load_effective_config",
    "profile_names",
    "resolve_profile",
]

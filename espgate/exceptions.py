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

"""Exception hierarchy for ESPGate.

Only conditions that cannot be turned into a verdict are raised. Problems
with the registry *contents* (missing values, malformed JSON, ambiguous
start-time markers, tenant mismatches) are never raised; they are recorded
as ``Issue`` entries on the evaluation result instead.

- ConfigError: Configuration-related errors (YAML parse, unknown profile, invalid values)
- RegistryError: The registry could not be read at all (access denied, not Windows)
- ScriptGenerationError: A requirement script could not be written

All exceptions inherit from ESPGateError.

Example:
    Catching specific error types:
        ```python
        from espgate.config import load_effective_config
        from espgate.exceptions import ConfigError

        try:
            config = load_effective_config(Path("espgate.yaml"))
        except ConfigError as e:
            print(f"Configuration error: {e}")
        ```
"""

from __future__ import annotations

__all__ = [
    "ESPGateError",
    "ConfigError",
    "RegistryError",
    "ScriptGenerationError",
]


class ESPGateError(Exception):
    """Base exception for all ESPGate errors."""

    pass


class ConfigError(ESPGateError):
    """Raised for configuration-related errors.

    This exception is raised when there are problems with:

    - YAML parsing (syntax errors, invalid structure)
    - Unknown profile names
    - Invalid profile values (phrasing, tenant match mode, exit codes)
    - Missing config or snapshot files
    """

    pass


class RegistryError(ESPGateError):
    """Raised when the registry cannot be read.

    A value or key that simply does not exist is NOT an error; sources
    return None for those. This is for failures of the read itself:

    - winreg unavailable (not running on Windows)
    - Access denied or other OS-level failures while opening a key
    - Unsupported hive names in a key path

    Example:
        ```python
        from espgate.exceptions import RegistryError
        from espgate.registry import WinRegSource

        try:
            source = WinRegSource()
        except RegistryError as e:
            print(f"Registry unavailable: {e}")
        ```
    """

    pass


class ScriptGenerationError(ESPGateError):
    """Raised when a requirement script cannot be generated or written."""

    pass

"""
ESPGate - Enrollment Status Page gating for Intune

A Python-based tool that decides whether a Windows device's Autopilot
Enrollment Status Page (ESP) is still running, so Intune requirement and
detection rules can hold back software installs during provisioning.

ESPGate provides:
  - One parameterized ESP evaluator, selected per call site through profiles
  - Tenant identity guard, category status parsing, userless enrollment
    handling and an account setup grace period
  - Declarative YAML-based configuration with layered defaults
  - Registry snapshots for reproducing device states off-device
  - PowerShell requirement script generation with CMTrace logging

Quick Start
-----------
Evaluate the live registry as an Intune requirement rule:

    $ espgate evaluate --profile requirement

Evaluate a captured snapshot:

    $ espgate evaluate --snapshot device.yaml --profile detection -v

For full CLI documentation:

    $ espgate --help

Package Structure
-----------------
cli : module
    Command-line interface with argparse.
core : module
    High-level orchestration (registry -> verdict).
registry : module
    Registry sources and the raw status reader.
tenant : module
    Tenant identity guard.
category : module
    ESP category status parsing.
clock : module
    Grace period clock.
evaluator : module
    ESP state evaluator.
config : package
    YAML configuration loading and profile resolution.
requirements : module
    PowerShell requirement script generation.

Public API
----------
    from espgate.core import evaluate_device
    from espgate.config import load_effective_config, resolve_profile
    from espgate.validation import validate_config
    from espgate.requirements import generate_requirement_script

For more details, see the individual module docstrings.
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"
__description__ = "ESPGate - Enrollment Status Page gating for Intune"

# Re-export commonly used functions for convenience
from espgate.config import load_effective_config, resolve_profile
from espgate.core import evaluate_device
from espgate.requirements import generate_requirement_script
from espgate.results import ESPVerdict, EvaluationResult
from espgate.validation import validate_config

__all__ = [
    "__version__",
    "__license__",
    "__description__",
    "evaluate_device",
    "load_effective_config",
    "resolve_profile",
    "validate_config",
    "generate_requirement_script",
    "ESPVerdict",
    "EvaluationResult",
]

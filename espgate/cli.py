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

"""Command-line interface for ESPGate.

This module provides the main CLI entry point for the espgate tool.

Commands:

    evaluate: Evaluate the ESP state and print one status line
    validate: Validate a config file
    generate: Generate the PowerShell requirement script for a profile
    snapshot: Capture the registry keys an evaluation reads into a YAML file
    profiles: List resolved profiles

Example:
    Evaluate the live registry as an Intune requirement rule:
        ```bash
        $ espgate evaluate --profile requirement
        ESP is not running
        ```

    Evaluate a snapshot captured on a device:
        ```bash
        $ espgate evaluate --snapshot device.yaml --profile detection -v
        ```

    Generate the requirement script:
        ```bash
        $ espgate generate --profile requirement --output scripts/
        ```

Exit Codes:

- evaluate: the profile's exit code for the verdict (default: 0 finished,
  1 running or error), 2 for configuration errors
- other commands: 0 on success, 1 on error

Note:
    The CLI uses argparse for command parsing (stdlib, zero dependencies).
    Intune reads STDOUT, so 'evaluate' prints only the status line there;
    progress and verbose output go to stderr.

"""

from __future__ import annotations

import argparse
from datetime import datetime
from importlib.metadata import version
from pathlib import Path
import sys

import yaml

from espgate.clock import parse_start_time
from espgate.config import load_effective_config, profile_names, resolve_profile
from espgate.core import evaluate_device
from espgate.exceptions import ConfigError, ESPGateError, RegistryError
from espgate.logging import (
    CMTraceLogger,
    Logger,
    SilentLogger,
    TeeLogger,
    get_logger,
    set_global_logger,
)
from espgate.registry import WinRegSource, capture_snapshot, load_snapshot_file
from espgate.requirements import generate_requirement_script, requirement_script_name
from espgate.validation import validate_config

CONFIG_ERROR_EXIT = 2


def _print_error(args: argparse.Namespace, err: Exception) -> None:
    print(f"Error: {err}", file=sys.stderr)
    if getattr(args, "verbose", False) or getattr(args, "debug", False):
        import traceback

        traceback.print_exc()


def _config_path(args: argparse.Namespace) -> Path | None:
    return Path(args.config).resolve() if getattr(args, "config", None) else None


def cmd_evaluate(args: argparse.Namespace) -> int:
    """Handler for 'espgate evaluate' command.

    Reads the registry (or a snapshot file), evaluates the ESP state with
    the selected profile and prints the status line.

    Args:
        args: Parsed command-line arguments.

    Returns:
        The profile's exit code for the verdict, or 2 on configuration errors.

    """
    console: Logger = (
        get_logger(verbose=args.verbose, debug=args.debug, stream=sys.stderr)
        if args.verbose or args.debug
        else SilentLogger()
    )
    logger: Logger = console
    if args.log_file:
        logger = TeeLogger(
            console,
            CMTraceLogger(
                Path(args.log_file), component=f"ESPGate-{args.profile}", debug=args.debug
            ),
        )
    set_global_logger(logger)

    now = None
    if args.now:
        now = parse_start_time(args.now)
        if now is None:
            print(f"Error: --now is not a valid date-time: {args.now}", file=sys.stderr)
            return CONFIG_ERROR_EXIT

    try:
        config = load_effective_config(_config_path(args))
        source = load_snapshot_file(Path(args.snapshot)) if args.snapshot else None
        result = evaluate_device(
            source, profile=args.profile, config=config, now=now, logger=logger
        )
    except (ConfigError, RegistryError) as err:
        # Evaluation itself never raises RegistryError; this is a bad snapshot file
        _print_error(args, err)
        return CONFIG_ERROR_EXIT

    print(result.status_line)
    return result.exit_code


def cmd_validate(args: argparse.Namespace) -> int:
    """Handler for 'espgate validate' command.

    Args:
        args: Parsed command-line arguments containing
            config path and verbose flag.

    Returns:
        Exit code (0 for valid config, 1 for invalid).

    """
    logger = get_logger(verbose=args.verbose, debug=False)
    set_global_logger(logger)

    config_path = Path(args.config).resolve()

    print(f"Validating config: {config_path}")
    print()

    result = validate_config(config_path)

    print("=" * 70)
    print("VALIDATION RESULTS")
    print("=" * 70)
    print(f"Config:        {result.config_path}")
    print(f"Status:        {result.status.upper()}")
    print(f"Profile Count: {result.profile_count}")
    print()

    if result.warnings:
        print(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            print(f"  [WARNING] {warning}")
        print()

    if result.errors:
        print(f"Errors ({len(result.errors)}):")
        for error in result.errors:
            print(f"  [X] {error}")
        print()

    print("=" * 70)

    if result.status == "valid":
        print()
        print("[SUCCESS] Config is valid!")
        return 0
    print()
    print(f"[FAILED] Config validation failed with {len(result.errors)} error(s).")
    return 1


def cmd_generate(args: argparse.Namespace) -> int:
    """Handler for 'espgate generate' command.

    Writes the PowerShell requirement script for a profile. If --output is
    an existing directory, the script is named after the profile.

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    logger = get_logger(verbose=args.verbose, debug=args.debug)
    set_global_logger(logger)

    try:
        config = load_effective_config(_config_path(args))
        profile = resolve_profile(config, args.profile)
        output = Path(args.output)
        if output.is_dir():
            output = output / requirement_script_name(profile)
        script_path = generate_requirement_script(
            profile, output.resolve(), log_rotation_mb=args.log_rotation_mb
        )
    except ESPGateError as err:
        _print_error(args, err)
        return 1

    print(f"[SUCCESS] Requirement script written: {script_path}")
    return 0


def cmd_snapshot(args: argparse.Namespace) -> int:
    """Handler for 'espgate snapshot' command.

    Captures the live registry keys an evaluation reads into a snapshot
    YAML file that 'espgate evaluate --snapshot' can replay.

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    logger = get_logger(verbose=args.verbose, debug=args.debug)
    set_global_logger(logger)

    output = Path(args.output).resolve()
    try:
        config = load_effective_config(_config_path(args))
        profile = resolve_profile(config, args.profile)
        data = capture_snapshot(WinRegSource(), profile.registry)
    except ESPGateError as err:
        _print_error(args, err)
        return 1

    data["captured_at"] = datetime.now().astimezone().isoformat()
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    except OSError as err:
        _print_error(args, err)
        return 1

    logger.verbose("SNAPSHOT", f"Captured {len(data['keys'])} key(s)")
    print(f"[SUCCESS] Snapshot written: {output}")
    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """Handler for 'espgate profiles' command.

    Returns:
        Exit code (0 for success, 1 for configuration errors).

    """
    try:
        config = load_effective_config(_config_path(args))
        profiles = [resolve_profile(config, name) for name in profile_names(config)]
    except ConfigError as err:
        _print_error(args, err)
        return 1

    print("=" * 70)
    print("PROFILES")
    print("=" * 70)
    for profile in profiles:
        minutes = profile.grace_period.total_seconds() / 60
        print(f"{profile.name}")
        print(f"  Phrasing:          {profile.phrasing}")
        print(
            f"  Identity:          gate={profile.gate_on_identity_mismatch} "
            f"fallback={profile.identity_fallback} match={profile.tenant_match}"
        )
        print(f"  Fail Open:         {profile.fail_open_on_error}")
        print(f"  Userless Handling: {profile.userless_handling}")
        print(f"  Grace Period:      {minutes:g} minute(s)")
        print(
            "  Exit Codes:        "
            + ", ".join(f"{k}={v}" for k, v in profile.exit_codes)
        )
    print("=" * 70)
    return 0


def _add_verbosity(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show progress and high-level status updates",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Show detailed debugging output (implies --verbose)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the espgate CLI."""
    parser = argparse.ArgumentParser(
        prog="espgate",
        description="ESPGate - Enrollment Status Page gating for Intune requirement and detection rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"espgate {version('espgate')}",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
        required=True,
    )

    # 'evaluate' command
    parser_evaluate = subparsers.add_parser(
        "evaluate",
        help="Evaluate the ESP state and print one status line",
        description="Read ESP status from the registry (or a snapshot) and report whether ESP is running.",
    )
    parser_evaluate.add_argument(
        "--profile",
        default="requirement",
        help="Evaluator profile to use (default: requirement)",
    )
    parser_evaluate.add_argument(
        "--config",
        default=None,
        help="Config YAML file (default: built-in configuration)",
    )
    parser_evaluate.add_argument(
        "--snapshot",
        default=None,
        help="Evaluate a registry snapshot YAML file instead of the live registry",
    )
    parser_evaluate.add_argument(
        "--now",
        default=None,
        help="Evaluation time as ISO 8601 (default: current time)",
    )
    parser_evaluate.add_argument(
        "--log-file",
        default=None,
        help="Append CMTrace-format log lines to this file",
    )
    _add_verbosity(parser_evaluate)
    parser_evaluate.set_defaults(func=cmd_evaluate)

    # 'validate' command
    parser_validate = subparsers.add_parser(
        "validate",
        help="Validate a config file (no registry access)",
        description="Check config YAML for syntax errors and invalid profiles.",
    )
    parser_validate.add_argument(
        "config",
        help="Path to the config YAML file",
    )
    parser_validate.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show validation progress and details",
    )
    parser_validate.set_defaults(func=cmd_validate)

    # 'generate' command
    parser_generate = subparsers.add_parser(
        "generate",
        help="Generate the PowerShell requirement script for a profile",
        description="Write a PowerShell requirement script that performs the ESP evaluation on the device.",
    )
    parser_generate.add_argument(
        "--profile",
        default="requirement",
        help="Evaluator profile to bake into the script (default: requirement)",
    )
    parser_generate.add_argument(
        "--config",
        default=None,
        help="Config YAML file (default: built-in configuration)",
    )
    parser_generate.add_argument(
        "--output",
        required=True,
        help="Output file, or an existing directory to write ESPGate-<profile>-Requirements.ps1 into",
    )
    parser_generate.add_argument(
        "--log-rotation-mb",
        type=int,
        default=3,
        help="Maximum script log size in MB before rotation (default: 3)",
    )
    _add_verbosity(parser_generate)
    parser_generate.set_defaults(func=cmd_generate)

    # 'snapshot' command
    parser_snapshot = subparsers.add_parser(
        "snapshot",
        help="Capture the registry keys an evaluation reads",
        description="Copy the ESP-related registry keys of this device into a snapshot YAML file.",
    )
    parser_snapshot.add_argument(
        "--output",
        required=True,
        help="Snapshot YAML file to write",
    )
    parser_snapshot.add_argument(
        "--profile",
        default="requirement",
        help="Profile whose registry locations are captured (default: requirement)",
    )
    parser_snapshot.add_argument(
        "--config",
        default=None,
        help="Config YAML file (default: built-in configuration)",
    )
    _add_verbosity(parser_snapshot)
    parser_snapshot.set_defaults(func=cmd_snapshot)

    # 'profiles' command
    parser_profiles = subparsers.add_parser(
        "profiles",
        help="List resolved evaluator profiles",
        description="Show every profile with its effective settings.",
    )
    parser_profiles.add_argument(
        "--config",
        default=None,
        help="Config YAML file (default: built-in configuration)",
    )
    parser_profiles.set_defaults(func=cmd_profiles)

    return parser


def main() -> None:
    """Main entry point for the espgate CLI.

    This function is registered as the 'espgate' console script in pyproject.toml.
    """
    parser = build_parser()
    args = parser.parse_args()

    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

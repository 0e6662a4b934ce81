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

"""ESP requirement script generation for Intune Win32 apps.

This module generates a PowerShell requirement script that runs the ESP
evaluation on the device itself, for tenants that cannot ship Python to
devices. One template covers every call site; the profile's settings are
baked into the script's parameter block.

Script Behaviour:
    - Reads the same registry locations as espgate.registry
    - Applies the tenant guard, category parsing, userless handling and
      grace period exactly as espgate.evaluator does
    - Writes one status line to STDOUT ("ESP is running", "ESP is complete",
      "ESP is not running" or "ESP state unknown: <reason>")
    - Exits with the profile's exit code for that outcome

Logging:
    - Primary (System): C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\ESPGate.log
    - Primary (User): C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\ESPGateUser.log
    - Fallback (System): C:\\ProgramData\\ESPGate\\ESPGate.log
    - Fallback (User): %LOCALAPPDATA%\\ESPGate\\ESPGateUser.log
    - Log rotation: 2-file rotation (.log and .log.old), configurable max size
        (default: 3MB)
    - Format: CMTrace format for compatibility with Intune diagnostics

Example:
    Generate a requirement script for the detection profile:
        ```python
        from pathlib import Path
        from espgate.config import load_effective_config, resolve_profile
        from espgate.requirements import generate_requirement_script, requirement_script_name

        profile = resolve_profile(load_effective_config(), "detection")
        script_path = generate_requirement_script(
            profile, Path("scripts") / requirement_script_name(profile)
        )
        ```

Note:
    Upload the script to Intune as a custom requirement rule with output
    type String, operator Equals and the finished status line as value
    (for example "ESP is not running").

"""

from __future__ import annotations

from pathlib import Path
import re
import string

from espgate.clock import START_TIME_FORMATS
from espgate.config.profiles import EvaluatorProfile
from espgate.exceptions import ScriptGenerationError
from espgate.logging import get_global_logger
from espgate.registry import normalize_key_path

_PS_HIVES = {
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKCU": "HKEY_CURRENT_USER",
    "HKU": "HKEY_USERS",
}

# PowerShell requirement script template
_REQUIREMENT_SCRIPT_TEMPLATE = """# ESP requirement script (profile: ${profile_name})
# Generated by ESPGate
# Prints one status line and exits with the profile's exit code.

param(
    [string]$$ProfileName = ${profile_name_literal},
    [string]$$Phrasing = ${phrasing},
    [bool]$$GateOnIdentityMismatch = ${gate_on_identity_mismatch},
    [string]$$IdentityFallback = ${identity_fallback},
    [bool]$$FailOpenOnError = ${fail_open_on_error},
    [bool]$$UserlessHandling = ${userless_handling},
    [string]$$TenantMatch = ${tenant_match},
    [double]$$GracePeriodMinutes = ${grace_period_minutes},
    [string]$$UserlessUpnPrefix = ${userless_upn_prefix},
    [int]$$ExitRunning = ${exit_running},
    [int]$$ExitFinished = ${exit_finished},
    [int]$$ExitError = ${exit_error}
)

$$AutopilotSettingsKey = ${autopilot_settings_key}
$$TenantKey = ${tenant_key}
$$JoinInfoKey = ${join_info_key}
$$EnrollmentsKey = ${enrollments_key}
$$StartTimeKey = ${start_time_key}
$$StartTimeFormats = [string[]]@(${start_time_formats})

function Write-CMTraceLog {
    param(
        [string]$$Message,
        [string]$$Type = "INFO"
    )
    if (-not $$script:LogFilePath) { return }
    $$TypeNumber = switch ($$Type.ToUpper()) { "WARNING" { 2 } "ERROR" { 3 } default { 1 } }
    $$Now = [DateTimeOffset](Get-Date)
    $$Time = "$$($$Now.ToString('HH:mm:ss.fff'))$$([int]$$Now.Offset.TotalMinutes)"
    $$Date = $$Now.ToString("M-d-yyyy")
    $$Line = "<![LOG[$$Message]LOG]!><time=""$$Time"" date=""$$Date"" component=""ESPGate-$$ProfileName"" context=""$$($$script:CurrentIdentity.Name)"" type=""$$TypeNumber"" thread=""$$PID"" file=""espgate.ps1"">"
    try {
        Add-Content -Path $$script:LogFilePath -Value $$Line -Encoding UTF8 -ErrorAction SilentlyContinue
    } catch {
        # Logging must never change the verdict
    }
}

function Initialize-LogFile {
    $$script:CurrentIdentity = [System.Security.Principal.WindowsIdentity]::GetCurrent()
    if ($$script:CurrentIdentity.Name -eq "NT AUTHORITY\\SYSTEM") {
        $$Candidates = @(
            "C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\ESPGate.log",
            "C:\\ProgramData\\ESPGate\\ESPGate.log"
        )
    } else {
        $$Candidates = @(
            "C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\ESPGateUser.log",
            (Join-Path $$env:LOCALAPPDATA "ESPGate\\ESPGateUser.log")
        )
    }
    foreach ($$LogFile in $$Candidates) {
        try {
            $$Parent = Split-Path -Path $$LogFile -Parent
            if (-not (Test-Path -Path $$Parent)) {
                New-Item -Path $$Parent -ItemType Directory -Force -ErrorAction Stop | Out-Null
            }
            if ((Test-Path -Path $$LogFile) -and ((Get-Item $$LogFile).Length -ge ${log_rotation_mb} * 1024 * 1024)) {
                Move-Item -Path $$LogFile -Destination "$$LogFile.old" -Force -ErrorAction Stop
            }
            [System.IO.File]::AppendAllText($$LogFile, "")
            $$script:LogFilePath = $$LogFile
            return
        } catch {
            # Try the next location
        }
    }
    $$script:LogFilePath = $$null
}

function Get-RegistryValue {
    param([string]$$Path, [string]$$Name)
    if (-not (Test-Path -Path $$Path)) { return $$null }
    return (Get-Item -Path $$Path -ErrorAction Stop).GetValue($$Name)
}

function Get-SubKeyNames {
    param([string]$$Path)
    if (-not (Test-Path -Path $$Path)) { return @() }
    return @(Get-ChildItem -Path $$Path -ErrorAction Stop | ForEach-Object { $$_.PSChildName })
}

function Get-CategoryStatus {
    param([string]$$Name, [string]$$Raw)
    if ([string]::IsNullOrWhiteSpace($$Raw)) {
        Write-CMTraceLog -Message "[Category] $$Name has not reported" -Type "WARNING"
        return @{ State = "NotStarted"; Reported = $$false; Finished = $$false }
    }
    try {
        $$Data = $$Raw | ConvertFrom-Json -ErrorAction Stop
    } catch {
        Write-CMTraceLog -Message "[Category] $$Name status is not valid JSON" -Type "WARNING"
        return @{ State = "Unknown"; Reported = $$true; Finished = $$false }
    }
    if ($$Data -isnot [System.Management.Automation.PSCustomObject]) {
        Write-CMTraceLog -Message "[Category] $$Name status is not a JSON object" -Type "WARNING"
        return @{ State = "Unknown"; Reported = $$true; Finished = $$false }
    }
    $$Message = if ($$Data.categoryStatusMessage) { "$$($$Data.categoryStatusMessage)".Trim() } else { "$$($$Data.categoryStatusText)".Trim() }
    $$State = "$$($$Data.categoryState)".Trim()
    if ($$Message -eq "Complete") { return @{ State = "Succeeded"; Reported = $$true; Finished = $$true } }
    if ($$Message -eq "Failed") { return @{ State = "Failed"; Reported = $$true; Finished = $$true } }
    if ("$$($$Data.categorySucceeded)".Trim() -eq "True" -or $$State -eq "succeeded") {
        return @{ State = "Succeeded"; Reported = $$true; Finished = $$true }
    }
    if ($$State -eq "failed") { return @{ State = "Failed"; Reported = $$true; Finished = $$true } }
    if ($$State -and $$State -notin @("notStarted", "inProgress")) {
        return @{ State = "Unknown"; Reported = $$true; Finished = $$true }
    }
    if ($$State -eq "inProgress") { return @{ State = "InProgress"; Reported = $$true; Finished = $$false } }
    return @{ State = "NotStarted"; Reported = $$true; Finished = $$false }
}

function Complete-Evaluation {
    param([string]$$Outcome, [string]$$Reason = "")
    switch ($$Outcome) {
        "running" { $$Line = "ESP is running"; $$Code = $$ExitRunning }
        "finished" {
            $$Line = if ($$Phrasing -eq "complete") { "ESP is complete" } else { "ESP is not running" }
            $$Code = $$ExitFinished
        }
        default { $$Line = "ESP state unknown: $$Reason"; $$Code = $$ExitError }
    }
    Write-CMTraceLog -Message "[Result] $$Line (profile: $$ProfileName, exit: $$Code)"
    Write-Output $$Line
    exit $$Code
}

# Main evaluation
Initialize-LogFile
Write-CMTraceLog -Message "[Initialization] ESP evaluation running as user: $$($$script:CurrentIdentity.Name) (profile: $$ProfileName)"

try {
    $$CloudTenantId = "$$(Get-RegistryValue -Path $$TenantKey -Name ${tenant_value})".Trim()
    $$JoinedTenantIds = @()
    foreach ($$Child in Get-SubKeyNames -Path $$JoinInfoKey) {
        $$Value = Get-RegistryValue -Path "$$JoinInfoKey\\$$Child" -Name ${join_tenant_value}
        if ($$Value) { $$JoinedTenantIds += "$$Value".Trim() }
    }
    $$Upns = @()
    foreach ($$Child in Get-SubKeyNames -Path $$EnrollmentsKey) {
        $$Value = Get-RegistryValue -Path "$$EnrollmentsKey\\$$Child" -Name ${enrollment_upn_value}
        if ($$Value) { $$Upns += "$$Value".Trim() }
    }
    $$DevicePrepRaw = Get-RegistryValue -Path $$AutopilotSettingsKey -Name ${device_preparation_value}
    $$DeviceSetupRaw = Get-RegistryValue -Path $$AutopilotSettingsKey -Name ${device_setup_value}
    $$AccountSetupRaw = Get-RegistryValue -Path $$AutopilotSettingsKey -Name ${account_setup_value}
    $$StartMarkers = @(Get-SubKeyNames -Path $$StartTimeKey)
} catch {
    Write-CMTraceLog -Message "[Registry] Read failed: $$($$_.Exception.Message)" -Type "ERROR"
    if ($$FailOpenOnError) { Complete-Evaluation -Outcome "finished" }
    Complete-Evaluation -Outcome "error" -Reason "registry unavailable: $$($$_.Exception.Message)"
}

# Tenant guard
$$TenantReason = $$null
$$Candidates = if ($$TenantMatch -eq "last" -and $$JoinedTenantIds.Count -gt 0) { @($$JoinedTenantIds[-1]) } else { $$JoinedTenantIds }
if (-not $$CloudTenantId -or $$JoinedTenantIds.Count -eq 0) {
    $$TenantReason = "TenantIdNotFound"
} elseif (-not ($$Candidates | Where-Object { $$_ -eq $$CloudTenantId })) {
    $$TenantReason = "TenantIdMismatch"
}
if ($$TenantReason) {
    Write-CMTraceLog -Message "[Tenant] Guard aborted: $$TenantReason" -Type "WARNING"
    if ($$GateOnIdentityMismatch) {
        switch ($$IdentityFallback) {
            "running" { Complete-Evaluation -Outcome "running" }
            "error" { Complete-Evaluation -Outcome "error" -Reason $$TenantReason }
            default { Complete-Evaluation -Outcome "finished" }
        }
    }
}

# Categories
$$DevicePrep = Get-CategoryStatus -Name "DevicePreparation" -Raw $$DevicePrepRaw
$$DeviceSetup = Get-CategoryStatus -Name "DeviceSetup" -Raw $$DeviceSetupRaw
$$AccountSetup = Get-CategoryStatus -Name "AccountSetup" -Raw $$AccountSetupRaw

$$DevicePrepNotRunning = $$DevicePrep.Finished -or -not $$DevicePrep.Reported
$$DeviceSetupNotRunning = $$DeviceSetup.Finished -or -not $$DeviceSetup.Reported

$$IsUserless = [bool]($$UserlessUpnPrefix -and ($$Upns | Where-Object { $$_.StartsWith($$UserlessUpnPrefix, [System.StringComparison]::OrdinalIgnoreCase) }))
$$AccountSetupNotRunning = $$false
if ($$AccountSetup.Finished) {
    $$AccountSetupNotRunning = $$true
} elseif ($$UserlessHandling -and $$IsUserless -and $$AccountSetup.State -eq "NotStarted") {
    Write-CMTraceLog -Message "[Evaluate] Userless enrollment: account setup not expected to start"
    $$AccountSetupNotRunning = $$true
} elseif ($$StartMarkers.Count -eq 0) {
    Write-CMTraceLog -Message "[Clock] AmbiguousStartTime: no start time marker" -Type "WARNING"
} elseif ($$StartMarkers.Count -gt 1) {
    Write-CMTraceLog -Message "[Clock] MultipleStartTimes: $$($$StartMarkers -join ', ')" -Type "WARNING"
} else {
    try {
        $$StartTime = [datetime]::ParseExact($$StartMarkers[0], $$StartTimeFormats, [System.Globalization.CultureInfo]::InvariantCulture, [System.Globalization.DateTimeStyles]::None)
        $$Deadline = $$StartTime.AddMinutes($$GracePeriodMinutes)
        $$AccountSetupNotRunning = (Get-Date) -ge $$Deadline
        Write-CMTraceLog -Message "[Clock] Grace period deadline: $$Deadline (elapsed: $$AccountSetupNotRunning)"
    } catch {
        Write-CMTraceLog -Message "[Clock] UnparsableStartTime: $$($$StartMarkers[0])" -Type "WARNING"
    }
}

Write-CMTraceLog -Message "[Category] DevicePreparation: $$($$DevicePrep.State) (not running: $$DevicePrepNotRunning)"
Write-CMTraceLog -Message "[Category] DeviceSetup: $$($$DeviceSetup.State) (not running: $$DeviceSetupNotRunning)"
Write-CMTraceLog -Message "[Category] AccountSetup: $$($$AccountSetup.State) (not running: $$AccountSetupNotRunning)"

if ($$DevicePrepNotRunning -and $$DeviceSetupNotRunning -and $$AccountSetupNotRunning) {
    Complete-Evaluation -Outcome "finished"
}
Complete-Evaluation -Outcome "running"
"""


def ps_literal(value: str) -> str:
    """Quote a string as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


def ps_bool(value: bool) -> str:
    return "$True" if value else "$False"


def ps_registry_path(key: str) -> str:
    """Convert a key path to a provider path that works for every hive.

    Example:
        ```python
        ps_registry_path(r"HKLM\\SOFTWARE\\Foo")  # "Registry::HKEY_LOCAL_MACHINE\\SOFTWARE\\Foo"
        ```
    """
    hive, _, subkey = normalize_key_path(key).partition("\\")
    return f"Registry::{_PS_HIVES[hive]}\\{subkey}" if subkey else f"Registry::{_PS_HIVES[hive]}"


def requirement_script_name(profile: EvaluatorProfile) -> str:
    """File name for a profile's requirement script.

    Example:
        ```python
        requirement_script_name(profile)  # "ESPGate-requirement-Requirements.ps1"
        ```
    """
    safe = re.sub(r"[^A-Za-z0-9_-]+", "-", profile.name).strip("-") or "profile"
    return f"ESPGate-{safe}-Requirements.ps1"


def render_requirement_script(profile: EvaluatorProfile, log_rotation_mb: int = 3) -> str:
    """Render the requirement script for a profile without writing it."""
    loc = profile.registry
    return string.Template(_REQUIREMENT_SCRIPT_TEMPLATE).substitute(
        profile_name=profile.name.replace("\n", " "),
        profile_name_literal=ps_literal(profile.name),
        phrasing=ps_literal(profile.phrasing),
        gate_on_identity_mismatch=ps_bool(profile.gate_on_identity_mismatch),
        identity_fallback=ps_literal(profile.identity_fallback),
        fail_open_on_error=ps_bool(profile.fail_open_on_error),
        userless_handling=ps_bool(profile.userless_handling),
        tenant_match=ps_literal(profile.tenant_match),
        grace_period_minutes=f"{profile.grace_period.total_seconds() / 60:g}",
        userless_upn_prefix=ps_literal(profile.userless_upn_prefix),
        exit_running=profile.exit_code("running"),
        exit_finished=profile.exit_code("finished"),
        exit_error=profile.exit_code("error"),
        autopilot_settings_key=ps_literal(ps_registry_path(loc.autopilot_settings_key)),
        tenant_key=ps_literal(ps_registry_path(loc.tenant_key)),
        join_info_key=ps_literal(ps_registry_path(loc.join_info_key)),
        enrollments_key=ps_literal(ps_registry_path(loc.enrollments_key)),
        start_time_key=ps_literal(ps_registry_path(loc.start_time_key)),
        start_time_formats=", ".join(ps_literal(fmt) for _, fmt in START_TIME_FORMATS),
        tenant_value=ps_literal(loc.tenant_value),
        join_tenant_value=ps_literal(loc.join_tenant_value),
        enrollment_upn_value=ps_literal(loc.enrollment_upn_value),
        device_preparation_value=ps_literal(loc.device_preparation_value),
        device_setup_value=ps_literal(loc.device_setup_value),
        account_setup_value=ps_literal(loc.account_setup_value),
        log_rotation_mb=log_rotation_mb,
    )


def generate_requirement_script(
    profile: EvaluatorProfile, output_path: Path, log_rotation_mb: int = 3
) -> Path:
    """Generate the PowerShell ESP requirement script for a profile.

    Args:
        profile: Resolved evaluator profile to bake into the script.
        output_path: Path where the script will be saved.
        log_rotation_mb: Maximum log file size in MB before rotation.

    Returns:
        Path to the generated script.

    Raises:
        ScriptGenerationError: If the script file cannot be written.

    Note:
        The script is saved with UTF-8 BOM encoding for proper PowerShell
        execution on Windows systems.

    """
    logger = get_global_logger()

    logger.verbose("REQUIREMENTS", f"Generating requirement script: {output_path.name}")

    script_content = render_requirement_script(profile, log_rotation_mb)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(script_content.encode("utf-8-sig"))
    except OSError as err:
        raise ScriptGenerationError(
            f"Failed to write requirement script to {output_path}: {err}"
        ) from err

    logger.verbose("REQUIREMENTS", f"Requirement script written to: {output_path}")
    return output_path

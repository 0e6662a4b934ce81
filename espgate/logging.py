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

"""Logging interface for ESPGate.

This module provides a configurable logging interface that library modules
can use for output without depending on the CLI. The logger can be configured
globally or passed as a parameter for better isolation.

The logger supports three output levels:
- Step: Always printed (for progress indicators)
- Verbose: Only printed when verbose mode is enabled
- Debug: Only printed when debug mode is enabled (implies verbose)

Intune rule runners read the script's STDOUT, so the CLI points the
console logger at stderr and keeps stdout for the single status line.
Devices are diagnosed from log files, so a CMTrace file logger is also
provided; CMTrace is the format the Intune Management Extension writes and
its log viewers expect.

Example:
    Configure global logger:
        ```python
        import sys
        from espgate.logging import get_logger, set_global_logger

        logger = get_logger(verbose=True, stream=sys.stderr)
        set_global_logger(logger)
        ```

    Log to console and a CMTrace file:
        ```python
        from pathlib import Path
        from espgate.logging import CMTraceLogger, TeeLogger, get_logger

        logger = TeeLogger(
            get_logger(verbose=True),
            CMTraceLogger(Path("C:/ProgramData/ESPGate/ESPGate.log")),
        )
        ```

Note:
    The default logger is silent (verbose=False, debug=False), so library
    functions won't print anything unless explicitly configured. The CLI
    configures the global logger when commands are executed.
"""

from __future__ import annotations

from datetime import datetime
import getpass
import os
from pathlib import Path
import sys
from typing import Protocol, TextIO


class Logger(Protocol):
    """Protocol for logger implementations."""

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator.

        Args:
            step: Current step number (1-based).
            total: Total number of steps.
            message: Step description.
        """
        ...

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message.

        Args:
            prefix: Message prefix (e.g., "TENANT", "CATEGORY").
            message: Log message.
        """
        ...

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message.

        Args:
            prefix: Message prefix (e.g., "REGISTRY", "CLOCK").
            message: Log message.
        """
        ...


class DefaultLogger:
    """Default logger implementation that prints to a text stream.

    This logger respects verbose and debug flags and formats output
    consistently with the CLI output format.
    """

    def __init__(
        self, verbose: bool = False, debug: bool = False, stream: TextIO | None = None
    ) -> None:
        """Initialize logger with verbosity settings.

        Args:
            verbose: If True, print verbose messages.
            debug: If True, print debug messages (implies verbose).
            stream: Stream to print to. Resolved at write time, defaults
                to sys.stdout.
        """
        self._verbose = verbose or debug
        self._debug = debug
        self._stream = stream

    def _write(self, line: str) -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator."""
        self._write(f"[{step}/{total}] {message}")

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message (only when verbose mode is active)."""
        if self._verbose:
            self._write(f"[{prefix}] {message}")

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message (only when debug mode is active)."""
        if self._debug:
            self._write(f"[{prefix}] {message}")


class SilentLogger:
    """Logger that suppresses all output.

    Useful for programmatic usage when output is not desired.
    """

    def step(self, step: int, total: int, message: str) -> None:
        """Suppress step output."""
        pass

    def verbose(self, prefix: str, message: str) -> None:
        """Suppress verbose output."""
        pass

    def debug(self, prefix: str, message: str) -> None:
        """Suppress debug output."""
        pass


# CMTrace numeric types: 1=Info, 2=Warning, 3=Error
_CMTRACE_INFO = 1


class CMTraceLogger:
    """Logger that appends CMTrace-formatted lines to a log file.

    Every step and verbose message is written; debug messages only when
    ``debug`` is True. Before the first write the file is rotated once if it
    has reached ``rotation_mb`` (``X.log`` moves to ``X.log.old``, replacing
    any previous ``.old`` file).

    Line format:
        ``<![LOG[message]LOG]!><time="HH:mm:ss.fff+offset" date="M-d-yyyy"
        component="..." context="..." type="1" thread="pid" file="...">``

    Example:
        ```python
        from pathlib import Path
        from espgate.logging import CMTraceLogger

        logger = CMTraceLogger(Path("ESPGate.log"), component="ESPGate-requirement")
        logger.verbose("RESULT", "ESP is running")
        ```

    Note:
        Logging never changes a verdict. The first failed write (permissions,
        locked file, bad path) prints one warning to stderr and disables the
        logger; later calls are no-ops.
    """

    def __init__(
        self,
        log_file: Path,
        component: str = "ESPGate",
        debug: bool = False,
        rotation_mb: int = 3,
    ) -> None:
        self.log_file = log_file
        self.component = component
        self._debug = debug
        self._rotation_bytes = rotation_mb * 1024 * 1024
        self._prepared = False
        self.disabled = False

    def _prepare(self) -> None:
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        if self.log_file.exists() and self.log_file.stat().st_size >= self._rotation_bytes:
            old = self.log_file.with_name(self.log_file.name + ".old")
            if old.exists():
                old.unlink()
            self.log_file.rename(old)
        self._prepared = True

    def format_line(self, message: str, now: datetime | None = None) -> str:
        """Format a message as one CMTrace line."""
        now = (now or datetime.now()).astimezone()
        offset = now.utcoffset()
        offset_minutes = int(offset.total_seconds() // 60) if offset else 0
        time_part = f"{now:%H:%M:%S}.{now.microsecond // 1000:03d}{offset_minutes:+d}"
        date_part = f"{now.month}-{now.day}-{now.year}"
        return (
            f"<![LOG[{message}]LOG]!>"
            f'<time="{time_part}" date="{date_part}" component="{self.component}" '
            f'context="{_current_user()}" type="{_CMTRACE_INFO}" '
            f'thread="{os.getpid()}" file="espgate">'
        )

    def _append(self, message: str) -> None:
        if self.disabled:
            return
        try:
            if not self._prepared:
                self._prepare()
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(self.format_line(message) + "\n")
        except OSError as err:
            self.disabled = True
            print(
                f"Warning: logging to {self.log_file} disabled: {err}", file=sys.stderr
            )

    def step(self, step: int, total: int, message: str) -> None:
        """Write a step line."""
        self._append(f"[{step}/{total}] {message}")

    def verbose(self, prefix: str, message: str) -> None:
        """Write a verbose line."""
        self._append(f"[{prefix}] {message}")

    def debug(self, prefix: str, message: str) -> None:
        """Write a debug line (only when debug mode is active)."""
        if self._debug:
            self._append(f"[{prefix}] {message}")


class TeeLogger:
    """Logger that forwards every call to several loggers."""

    def __init__(self, *loggers: Logger) -> None:
        self.loggers = loggers

    def step(self, step: int, total: int, message: str) -> None:
        for logger in self.loggers:
            logger.step(step, total, message)

    def verbose(self, prefix: str, message: str) -> None:
        for logger in self.loggers:
            logger.verbose(prefix, message)

    def debug(self, prefix: str, message: str) -> None:
        for logger in self.loggers:
            logger.debug(prefix, message)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "UNKNOWN"


# Global logger instance (defaults to silent)
_global_logger: Logger = SilentLogger()


def get_logger(
    verbose: bool = False, debug: bool = False, stream: TextIO | None = None
) -> Logger:
    """Get a logger instance with specified verbosity.

    Args:
        verbose: If True, logger will print verbose messages.
        debug: If True, logger will print debug messages (implies verbose).
        stream: Stream to print to (default: sys.stdout).

    Returns:
        A logger instance configured with the specified verbosity.

    Example:
        Get a verbose logger that keeps stdout clean:
            ```python
            import sys

            logger = get_logger(verbose=True, stream=sys.stderr)
            logger.verbose("MODULE", "Processing...")
            ```
    """
    return DefaultLogger(verbose=verbose, debug=debug, stream=stream)


def get_global_logger() -> Logger:
    """Get the global logger instance.

    Returns:
        The current global logger instance.

    Note:
        The default global logger is silent. Use set_global_logger() to
        configure it, or pass a logger instance directly to functions.
    """
    return _global_logger


def set_global_logger(logger: Logger) -> None:
    """Set the global logger instance.

    Args:
        logger: Logger instance to use as the global logger.

    Note:
        This affects all library functions that use get_global_logger()
        without passing a logger instance. For better isolation, pass logger
        instances directly to functions instead of using the global logger.
    """
    global _global_logger
    _global_logger = logger

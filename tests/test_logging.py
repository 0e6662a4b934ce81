"""
Tests for espgate.logging module.

Tests logger implementations including:
- DefaultLogger verbosity levels and streams
- CMTraceLogger line format and rotation
- TeeLogger fan-out
- Global logger management
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import io
import re

import pytest

from espgate.logging import (
    CMTraceLogger,
    DefaultLogger,
    SilentLogger,
    TeeLogger,
    get_global_logger,
    get_logger,
    set_global_logger,
)

pytestmark = pytest.mark.unit


class TestDefaultLogger:
    """Tests for DefaultLogger."""

    def test_step_always_printed(self):
        """Test that step lines print regardless of verbosity."""
        stream = io.StringIO()

        DefaultLogger(stream=stream).step(1, 4, "Reading registry...")

        assert stream.getvalue() == "[1/4] Reading registry...\n"

    def test_verbose_suppressed_by_default(self):
        """Test that verbose lines need verbose mode."""
        stream = io.StringIO()
        logger = DefaultLogger(stream=stream)

        logger.verbose("TENANT", "matched")
        logger.debug("REGISTRY", "raw")

        assert stream.getvalue() == ""

    def test_debug_implies_verbose(self):
        """Test that debug mode prints verbose and debug lines."""
        stream = io.StringIO()
        logger = get_logger(debug=True, stream=stream)

        logger.verbose("TENANT", "matched")
        logger.debug("REGISTRY", "raw")

        assert stream.getvalue() == "[TENANT] matched\n[REGISTRY] raw\n"

    def test_defaults_to_stdout(self, capsys):
        """Test that output goes to stdout when no stream is given."""
        DefaultLogger(verbose=True).verbose("RESULT", "Running")

        assert capsys.readouterr().out == "[RESULT] Running\n"


class TestCMTraceLogger:
    """Tests for CMTraceLogger."""

    def test_format_line(self, tmp_test_dir):
        """Test the CMTrace line layout."""
        logger = CMTraceLogger(tmp_test_dir / "ESPGate.log", component="ESPGate-requirement")
        when = datetime(2025, 3, 1, 8, 5, 9, 123456, tzinfo=timezone(timedelta(hours=-5)))

        line = logger.format_line("ESP is running", now=when)

        assert line.startswith("<![LOG[ESP is running]LOG]!>")
        assert 'component="ESPGate-requirement"' in line
        assert 'type="1"' in line
        assert 'file="espgate"' in line
        match = re.search(r'time="(\d\d:\d\d:\d\d\.\d{3}[+-]\d+)" date="(\d+-\d+-\d{4})"', line)
        assert match is not None

    def test_utc_offset_in_minutes(self, tmp_test_dir):
        """Test that the time field carries the UTC offset in minutes."""
        logger = CMTraceLogger(tmp_test_dir / "ESPGate.log")
        when = datetime(2025, 3, 1, 8, 5, 9, 123456, tzinfo=timezone(timedelta(hours=-5)))
        local = when.astimezone()
        offset = int(local.utcoffset().total_seconds() // 60)

        line = logger.format_line("x", now=when)

        assert f'time="{local:%H:%M:%S}.123{offset:+d}"' in line
        assert f'date="{local.month}-{local.day}-{local.year}"' in line

    def test_writes_lines(self, tmp_test_dir):
        """Test that step and verbose lines are appended; debug only in debug mode."""
        log_file = tmp_test_dir / "logs" / "ESPGate.log"
        logger = CMTraceLogger(log_file)

        logger.step(1, 4, "Reading registry...")
        logger.verbose("TENANT", "matched")
        logger.debug("REGISTRY", "raw")

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("<![LOG[[1/4] Reading registry...]LOG]!>")
        assert lines[1].startswith("<![LOG[[TENANT] matched]LOG]!>")

    def test_debug_lines(self, tmp_test_dir):
        """Test that debug lines are written in debug mode."""
        log_file = tmp_test_dir / "ESPGate.log"

        CMTraceLogger(log_file, debug=True).debug("REGISTRY", "raw")

        assert "[REGISTRY] raw" in log_file.read_text(encoding="utf-8")

    def test_rotation(self, tmp_test_dir):
        """Test that an oversized log is rotated to .log.old before writing."""
        log_file = tmp_test_dir / "ESPGate.log"
        old_file = tmp_test_dir / "ESPGate.log.old"
        log_file.write_text("x" * (1024 * 1024 + 1), encoding="utf-8")
        old_file.write_text("previous", encoding="utf-8")

        CMTraceLogger(log_file, rotation_mb=1).verbose("RESULT", "fresh")

        assert old_file.stat().st_size == 1024 * 1024 + 1
        assert log_file.read_text(encoding="utf-8").startswith("<![LOG[[RESULT] fresh")

    def test_no_rotation_below_limit(self, tmp_test_dir):
        """Test that a small log is appended to."""
        log_file = tmp_test_dir / "ESPGate.log"
        log_file.write_text("existing\n", encoding="utf-8")

        CMTraceLogger(log_file).verbose("RESULT", "more")

        content = log_file.read_text(encoding="utf-8")
        assert content.startswith("existing\n")
        assert not (tmp_test_dir / "ESPGate.log.old").exists()


    def test_write_failure_disables_logger(self, tmp_test_dir, capsys):
        """Test that an unwritable log warns once and stops writing."""
        blocker = tmp_test_dir / "file"
        blocker.write_text("not a directory", encoding="utf-8")
        logger = CMTraceLogger(blocker / "sub" / "ESPGate.log")

        logger.step(1, 4, "Reading registry...")
        logger.verbose("RESULT", "ESP is running")

        err = capsys.readouterr().err
        assert logger.disabled is True
        assert err.count("Warning: logging to") == 1
        assert "disabled" in err


class TestTeeLogger:
    """Tests for TeeLogger."""

    def test_forwards_to_all(self, tmp_test_dir):
        """Test that each call reaches every logger."""
        stream = io.StringIO()
        log_file = tmp_test_dir / "ESPGate.log"
        logger = TeeLogger(DefaultLogger(verbose=True, stream=stream), CMTraceLogger(log_file))

        logger.step(2, 4, "Checking tenant identity...")
        logger.verbose("TENANT", "matched")
        logger.debug("REGISTRY", "raw")

        assert stream.getvalue() == "[2/4] Checking tenant identity...\n[TENANT] matched\n"
        assert len(log_file.read_text(encoding="utf-8").splitlines()) == 2


class TestGlobalLogger:
    """Tests for global logger management."""

    def test_set_and_get(self):
        """Test that set_global_logger replaces the global logger."""
        logger = DefaultLogger()
        set_global_logger(logger)

        assert get_global_logger() is logger

    def test_silent_logger_is_silent(self, capsys):
        """Test that SilentLogger prints nothing."""
        logger = SilentLogger()
        logger.step(1, 1, "x")
        logger.verbose("X", "y")
        logger.debug("X", "z")

        assert capsys.readouterr().out == ""

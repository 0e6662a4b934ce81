"""
Tests for espgate.category module.

Tests category status parsing including:
- Missing and empty values
- Malformed JSON
- Terminal message/text fields
- categoryState and categorySucceeded mapping
"""

from __future__ import annotations

import json

import pytest

from espgate.category import CategoryState, parse_category_status
from espgate.results import FailureKind

# All tests in this file are unit tests (fast, mocked)
pytestmark = pytest.mark.unit


class TestMissingValues:
    """Tests for categories that have not reported."""

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing_value_is_not_started(self, raw):
        """Test that an absent value parses to NotStarted and unreported."""
        issues = []
        status = parse_category_status("AccountSetup", raw, issues)

        assert status.state is CategoryState.NOT_STARTED
        assert status.reported is False
        assert status.finished is False
        assert issues[0].kind is FailureKind.MISSING_INPUT
        assert issues[0].source == "AccountSetup"

    def test_issues_list_is_optional(self):
        """Test that parsing works without an issues list."""
        status = parse_category_status("DeviceSetup", None)

        assert status.reported is False


class TestParseFailures:
    """Tests for values that are not usable JSON objects."""

    def test_malformed_json_is_pending(self):
        """Test that malformed JSON is treated as pending, not finished."""
        issues = []
        status = parse_category_status("DeviceSetup", "{categoryState: done", issues)

        assert status.state is CategoryState.UNKNOWN
        assert status.reported is True
        assert status.finished is False
        assert issues[0].kind is FailureKind.PARSE_FAILURE

    def test_json_array_is_parse_failure(self):
        """Test that a JSON value that is not an object is a parse failure."""
        issues = []
        status = parse_category_status("DeviceSetup", '["succeeded"]', issues)

        assert status.finished is False
        assert "list" in issues[0].detail


class TestTerminalMessages:
    """Tests for categoryStatusMessage / categoryStatusText."""

    def test_status_text_complete(self):
        """Test that categoryStatusText Complete is Succeeded."""
        status = parse_category_status(
            "DeviceSetup", '{"categoryStatusText": "Complete"}'
        )

        assert status.state is CategoryState.SUCCEEDED
        assert status.finished is True
        assert status.message == "Complete"

    def test_status_message_failed(self):
        """Test that categoryStatusMessage Failed is a finished failure."""
        status = parse_category_status(
            "DevicePreparation",
            '{"categoryState": "inProgress", "categoryStatusMessage": "Failed"}',
        )

        assert status.state is CategoryState.FAILED
        assert status.finished is True

    def test_message_comparison_is_case_insensitive(self):
        """Test that message matching ignores case."""
        status = parse_category_status("DeviceSetup", '{"categoryStatusText": "COMPLETE"}')

        assert status.finished is True

    def test_other_message_does_not_finish(self):
        """Test that a non-terminal message leaves the category pending."""
        status = parse_category_status(
            "AccountSetup",
            '{"categoryState": "inProgress", "categoryStatusMessage": "Identifying"}',
        )

        assert status.state is CategoryState.IN_PROGRESS
        assert status.finished is False
        assert status.message == "Identifying"


class TestCategoryState:
    """Tests for categoryState and categorySucceeded."""

    def test_succeeded_state(self):
        """Test that categoryState succeeded is finished."""
        status = parse_category_status("DevicePreparation", '{"categoryState": "succeeded"}')

        assert status.state is CategoryState.SUCCEEDED
        assert status.finished is True

    @pytest.mark.parametrize("value", ["True", "true", True])
    def test_category_succeeded_flag(self, value):
        """Test that categorySucceeded true is finished."""
        raw = json.dumps({"categoryState": "inProgress", "categorySucceeded": value})
        status = parse_category_status("DeviceSetup", raw)

        assert status.state is CategoryState.SUCCEEDED
        assert status.finished is True

    def test_failed_state(self):
        """Test that categoryState failed is a finished failure."""
        status = parse_category_status("DeviceSetup", '{"categoryState": "failed"}')

        assert status.state is CategoryState.FAILED
        assert status.finished is True

    def test_unrecognized_terminal_state(self):
        """Test that an unknown categoryState outside the pending set is finished."""
        status = parse_category_status("DeviceSetup", '{"categoryState": "timedOut"}')

        assert status.state is CategoryState.UNKNOWN
        assert status.finished is True

    def test_in_progress(self):
        """Test that inProgress is pending."""
        status = parse_category_status("AccountSetup", '{"categoryState": "inProgress"}')

        assert status.state is CategoryState.IN_PROGRESS
        assert status.pending is True

    def test_not_started_is_case_insensitive(self):
        """Test that NOTSTARTED maps to NotStarted."""
        status = parse_category_status("AccountSetup", '{"categoryState": "NOTSTARTED"}')

        assert status.state is CategoryState.NOT_STARTED
        assert status.reported is True
        assert status.finished is False

    def test_empty_object_is_not_started(self):
        """Test that an object without any known field is pending."""
        status = parse_category_status("AccountSetup", "{}")

        assert status.state is CategoryState.NOT_STARTED
        assert status.finished is False

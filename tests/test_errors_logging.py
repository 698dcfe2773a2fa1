"""
Tests for error helpers and log housekeeping.
"""

import os
import time
from unittest.mock import Mock, patch

import pytest

from place_harvester.utils.errors import (
    KeyMismatchError,
    ExtractionError,
    PlaceHarvesterError,
    handle_error,
    retry_on_error,
)
from place_harvester.utils.logging import cleanup_old_logs, get_log_statistics


class TestErrors:

    def test_hierarchy_and_details(self):
        error = KeyMismatchError("Place id mismatch: x", {"url": "u"})
        assert isinstance(error, ExtractionError)
        assert isinstance(error, PlaceHarvesterError)
        assert error.details == {"url": "u"}
        assert str(error) == "Place id mismatch: x"

    def test_handle_error_logs_details_and_reraises(self):
        logger = Mock()
        error = ExtractionError("Extraction returned no data", {"url": "u"})

        with pytest.raises(ExtractionError):
            handle_error(error, logger, {"attempt": 2})

        kwargs = logger.error.call_args.kwargs
        assert kwargs["error_type"] == "ExtractionError"
        assert kwargs["url"] == "u"
        assert kwargs["attempt"] == 2

    def test_handle_error_can_swallow(self):
        logger = Mock()
        handle_error(ValueError("bad"), logger, reraise=False)
        logger.error.assert_called_once()

    def test_retry_on_error_retries_listed_exceptions(self):
        calls = []

        @retry_on_error(max_attempts=3, delay=0.5, exceptions=(ConnectionError,))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "ok"

        with patch("place_harvester.utils.errors.time.sleep") as mock_sleep:
            assert flaky() == "ok"

        assert len(calls) == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.5, 1.0]

    def test_retry_on_error_passes_other_exceptions(self):
        @retry_on_error(max_attempts=3, exceptions=(ConnectionError,))
        def broken():
            raise KeyError("nope")

        with pytest.raises(KeyError):
            broken()


class TestLogHousekeeping:

    def test_cleanup_removes_only_expired_files(self, tmp_path):
        old = tmp_path / "orchestrator.log.2020-01-01"
        fresh = tmp_path / "panel.log"
        old.write_text("old")
        fresh.write_text("fresh")
        ten_days_ago = time.time() - 10 * 24 * 3600
        os.utime(old, (ten_days_ago, ten_days_ago))

        assert cleanup_old_logs(tmp_path, retention_days=7) == 1
        assert not old.exists()
        assert fresh.exists()

    def test_statistics_group_by_area(self, tmp_path):
        (tmp_path / "panel.log").write_text("a")
        (tmp_path / "panel.log.2024-01-01").write_text("b")
        (tmp_path / "capture.log").write_text("c")

        stats = get_log_statistics(tmp_path)

        assert stats["total_files"] == 3
        assert stats["files_by_business"]["panel"]["count"] == 2
        assert stats["files_by_business"]["capture"]["count"] == 1

    def test_missing_directory(self, tmp_path):
        assert cleanup_old_logs(tmp_path / "absent") == 0
        assert get_log_statistics(tmp_path / "absent")["total_files"] == 0

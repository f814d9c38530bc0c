"""
Unit tests for analytics event logging and the retention sweep.
"""

import importlib.util
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from app.services.analytics import cleanup_old_analytics_events, log_analytics_event

NOW = datetime(2026, 6, 1, 2, 0, tzinfo=timezone.utc)


def _seed(fake_supabase, days_old: int, count: int = 1):
    events = fake_supabase.tables["analytics_events"]
    for _ in range(count):
        events.add(
            event="email_capture_success",
            parameters={},
            source="api",
            created_at=(NOW - timedelta(days=days_old)).isoformat(),
        )


class TestLogAnalyticsEvent:

    def test_inserts_event_row(self, fake_supabase):
        log_analytics_event("email_capture_success", {"email": "ada@gmail.com", "isNew": True})

        assert len(fake_supabase.events) == 1
        row = fake_supabase.events[0]
        assert row["event"] == "email_capture_success"
        assert row["parameters"] == {"email": "ada@gmail.com", "isNew": True}
        assert row["source"] == "api"
        assert row["created_at"]

    def test_insert_failure_is_swallowed(self):
        mock_sb = MagicMock()
        mock_sb.table.return_value.insert.return_value.execute.side_effect = Exception("timeout")

        with patch("app.services.analytics.supabase_admin", mock_sb):
            log_analytics_event("email_capture_error", {"error": "x"})

    def test_missing_client_is_swallowed(self):
        with patch("app.services.analytics.supabase_admin", None):
            log_analytics_event("email_capture_error", {"error": "x"})


class TestCleanupOldAnalyticsEvents:

    def test_deletes_only_events_past_retention(self, fake_supabase):
        _seed(fake_supabase, days_old=45, count=2)
        _seed(fake_supabase, days_old=5, count=3)

        deleted = cleanup_old_analytics_events(now=NOW, retention_days=30)

        assert deleted == 2
        assert len(fake_supabase.events) == 3

    def test_deletes_at_most_one_batch_per_run(self, fake_supabase):
        _seed(fake_supabase, days_old=40, count=5)

        assert cleanup_old_analytics_events(now=NOW, batch_size=2) == 2
        assert cleanup_old_analytics_events(now=NOW, batch_size=2) == 2
        assert cleanup_old_analytics_events(now=NOW, batch_size=2) == 1
        assert cleanup_old_analytics_events(now=NOW, batch_size=2) == 0
        assert fake_supabase.events == []

    def test_nothing_old_enough(self, fake_supabase):
        _seed(fake_supabase, days_old=1)

        assert cleanup_old_analytics_events(now=NOW) == 0
        assert len(fake_supabase.events) == 1

    def test_missing_service_key_raises(self):
        with patch("app.services.analytics.supabase_admin", None):
            with pytest.raises(ValueError, match="SUPABASE_SERVICE_KEY"):
                cleanup_old_analytics_events(now=NOW)

    def test_oversized_batch_is_capped(self, fake_supabase):
        _seed(fake_supabase, days_old=40, count=600)

        assert cleanup_old_analytics_events(now=NOW, batch_size=100_000) == 500
        assert len(fake_supabase.events) == 100

    def test_non_positive_batch_is_rejected(self, fake_supabase):
        with pytest.raises(ValueError, match="batch_size"):
            cleanup_old_analytics_events(now=NOW, batch_size=0)


def _load_cleanup_script():
    path = Path(__file__).resolve().parents[2] / "scripts" / "cleanup_analytics.py"
    spec = importlib.util.spec_from_file_location("cleanup_analytics", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestCleanupScript:

    def test_batch_size_above_cap_is_rejected(self, capsys):
        script = _load_cleanup_script()

        with patch.object(script, "cleanup_old_analytics_events") as cleanup:
            with pytest.raises(SystemExit) as exc_info:
                script.main(["--batch-size", "1000000"])

        assert exc_info.value.code == 2
        assert "must be between 1 and 500" in capsys.readouterr().err
        cleanup.assert_not_called()

    def test_valid_arguments_are_passed_through(self, capsys):
        script = _load_cleanup_script()

        with patch.object(script, "cleanup_old_analytics_events", return_value=7) as cleanup:
            assert script.main(["--retention-days", "14", "--batch-size", "200"]) == 0

        cleanup.assert_called_once_with(retention_days=14, batch_size=200)
        assert "Deleted 7 old analytics events" in capsys.readouterr().out

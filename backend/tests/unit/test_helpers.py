import re
from datetime import datetime, timedelta, timezone

import pytest

from app.utils.run_helpers import create_batches, format_duration, generate_run_id
from app.utils.time_helpers import age_in_days, parse_timestamp, to_iso, utc_now
from app.utils.url_helpers import normalize_repo_url


class TestUrlHelpers:

    def test_normalize_repo_url_forms_agree(self):
        forms = [
            "https://github.com/Owner/Repo",
            "https://github.com/owner/repo.git",
            "http://github.com/owner/repo/",
            "git@github.com:owner/repo.git",
        ]
        assert {normalize_repo_url(url) for url in forms} == {"github.com/owner/repo"}

    def test_normalize_repo_url_empty(self):
        assert normalize_repo_url("") == ""
        assert normalize_repo_url(None) == ""


class TestTimeHelpers:

    def test_utc_now_is_naive(self):
        assert utc_now().tzinfo is None

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, 0)
        assert parse_timestamp("2024-03-01T14:00:00+02:00") == datetime(2024, 3, 1, 12, 0)
        aware = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert parse_timestamp(aware) == datetime(2024, 3, 1, 12, 0)

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_age_in_days(self):
        now = datetime(2024, 1, 11)
        assert age_in_days("2024-01-01T00:00:00Z", now=now) == 10
        # missing timestamps count as very old
        assert age_in_days(None, now=now) > 365 * 50

    def test_to_iso(self):
        assert to_iso(datetime(2024, 1, 1, 8, 30)) == "2024-01-01T08:30:00Z"
        assert to_iso(None) is None


class TestRunHelpers:

    def test_generate_run_id_format(self):
        run_id = generate_run_id("discovery")
        assert re.match(r"^discovery-\d{4}-\d{2}-\d{2}T[\d-]+-[0-9a-f]{8}$", run_id)
        assert ":" not in run_id

    def test_generate_run_id_unique(self):
        assert len({generate_run_id("sync") for _ in range(50)}) == 50

    def test_format_duration(self):
        assert format_duration(5) == "5s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(3725) == "1h 2m 5s"
        assert format_duration(timedelta(minutes=1).total_seconds()) == "1m 0s"

    def test_create_batches(self):
        assert create_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert create_batches([], 3) == []

    def test_create_batches_rejects_zero(self):
        with pytest.raises(ValueError):
            create_batches([1], 0)

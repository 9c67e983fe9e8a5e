from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

import daily_codes
from conftest import NOW
from daily_codes import generate_daily_codes, get_todays_codes
from repository import DailyCodeRepository
from timeutils import as_utc


def test_no_codes_before_generation(session):
    assert get_todays_codes(session, now=NOW) is None


def test_generated_codes_format(session):
    codes = generate_daily_codes(session, now=NOW)
    stamp = int(NOW.timestamp() * 1000)
    assert codes.date == "2025-06-10"
    assert codes.entry_code == f"GYM_ENTRY_20250610_{stamp}"
    assert codes.exit_code == f"GYM_EXIT_20250610_{stamp}"
    assert codes.entry_code != codes.exit_code
    # 23:59:59.999 à Paris = 21:59:59.999 UTC en été
    assert as_utc(codes.valid_until) == datetime(2025, 6, 10, 21, 59, 59, 999000, tzinfo=timezone.utc)


def test_generation_is_idempotent_within_a_day(session):
    first = generate_daily_codes(session, now=NOW)
    second = generate_daily_codes(session, now=NOW + timedelta(hours=5))
    assert second.id == first.id
    assert second.entry_code == first.entry_code
    assert second.exit_code == first.exit_code
    assert get_todays_codes(session, now=NOW).id == first.id


def test_different_days_get_distinct_codes(session):
    monday = generate_daily_codes(session, now=NOW - timedelta(days=1))
    tuesday = generate_daily_codes(session, now=NOW)
    assert monday.date == "2025-06-09"
    assert {monday.entry_code, monday.exit_code}.isdisjoint({tuesday.entry_code, tuesday.exit_code})


def test_day_follows_local_timezone(session):
    # 23:30 UTC le 10 juin = 01:30 le 11 juin à Paris
    late = datetime(2025, 6, 10, 23, 30, tzinfo=timezone.utc)
    codes = generate_daily_codes(session, now=late)
    assert codes.date == "2025-06-11"
    assert "_20250611_" in codes.entry_code


def test_persistence_failure_returns_none(session, monkeypatch):
    def broken(self, codes):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(DailyCodeRepository, "create", broken)
    assert generate_daily_codes(session, now=NOW) is None
    assert get_todays_codes(session, now=NOW) is None


def test_generation_publishes_event(session, monkeypatch):
    sent = []
    monkeypatch.setattr(daily_codes, "publish_after_commit", lambda t, p: sent.append((t, p)))
    generate_daily_codes(session, now=NOW)
    generate_daily_codes(session, now=NOW)
    assert [t for t, _ in sent] == ["DailyCodesGenerated"]
    assert sent[0][1]["date"] == "2025-06-10"

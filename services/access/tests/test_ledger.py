from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

import ledger
from conftest import NOW
from ledger import PresenceConflict, record_access
from models import AccessLog, Presence, ENTRY, EXIT
from repository import PresenceRepository


def enter(session, member_id, at):
    return record_access(session, member_id, ENTRY, "GYM_ENTRY_X", "self_service",
                         expected_inside=False, now=at)


def leave(session, member_id, at):
    return record_access(session, member_id, EXIT, "GYM_EXIT_X", "self_service",
                         expected_inside=True, now=at)


def test_currently_inside_is_latest_entry_per_member(session, make_member):
    for mid in ("alice", "bob", "carol", "dave"):
        make_member(mid)

    enter(session, "alice", NOW - timedelta(hours=3))
    enter(session, "bob", NOW - timedelta(hours=2))
    leave(session, "bob", NOW - timedelta(hours=1))
    enter(session, "carol", NOW - timedelta(hours=5))
    leave(session, "carol", NOW - timedelta(hours=4))
    enter(session, "carol", NOW - timedelta(minutes=10))
    # dave n'a aucun historique

    inside = {v.member_id: v for v in ledger.currently_inside(session)}
    assert set(inside) == {"alice", "carol"}

    carol = inside["carol"]
    assert carol.full_name == "Carol"
    assert carol.email == "carol@example.com"
    assert carol.qr_code == "MEMBER_CAROL"
    assert carol.membership_status == "active"
    assert carol.membership_type == "premium"
    assert carol.entered_at == NOW - timedelta(minutes=10)
    assert carol.inside is True


def test_entry_then_exit_leaves_member_outside(session, make_member):
    make_member("eve")
    enter(session, "eve", NOW)
    leave(session, "eve", NOW + timedelta(minutes=45))
    assert not ledger.is_inside(session, "eve")
    assert ledger.currently_inside(session) == []


def test_empty_ledger(session):
    assert ledger.currently_inside(session) == []
    assert ledger.latest_for_member(session, "nobody") is None


def test_latest_per_member_keeps_first_occurrence():
    rows = [
        AccessLog(id=3, user_id="a", type=EXIT, qr_code_scanned="x", timestamp=NOW),
        AccessLog(id=2, user_id="b", type=ENTRY, qr_code_scanned="x", timestamp=NOW),
        AccessLog(id=1, user_id="a", type=ENTRY, qr_code_scanned="x", timestamp=NOW),
    ]
    latest = ledger.latest_per_member(rows)
    assert latest["a"].id == 3
    assert latest["b"].id == 2


def test_record_access_refuses_a_stale_transition(session, make_member):
    make_member("fred")
    enter(session, "fred", NOW)
    # deuxième écriture basée sur une lecture "dehors" périmée
    with pytest.raises(PresenceConflict):
        enter(session, "fred", NOW)
    assert len(ledger.member_history(session, "fred")) == 1
    assert session.get(Presence, "fred").inside is True


def test_exit_without_presence_row_is_a_conflict(session, make_member):
    make_member("gus")
    with pytest.raises(PresenceConflict):
        leave(session, "gus", NOW)
    assert ledger.member_history(session, "gus") == []


def test_todays_log_uses_local_calendar_day(session, make_member):
    make_member("hana")
    # 9 juin 23:30 à Paris : hier
    enter(session, "hana", datetime(2025, 6, 9, 21, 30, tzinfo=timezone.utc))
    # 10 juin 01:30 à Paris : aujourd'hui
    leave(session, "hana", datetime(2025, 6, 9, 23, 30, tzinfo=timezone.utc))
    enter(session, "hana", NOW)

    logs = ledger.todays_log(session, now=NOW)
    assert [v.action for v in logs] == [ENTRY, EXIT]
    assert logs[0].member_name == "Hana"
    assert logs[0].member_qr_code == "MEMBER_HANA"


def test_all_log_is_limited_and_newest_first(session, make_member):
    make_member("ivan")
    for i in range(6):
        at = NOW + timedelta(minutes=i)
        if i % 2 == 0:
            enter(session, "ivan", at)
        else:
            leave(session, "ivan", at)

    logs = ledger.all_log(session, limit=4)
    assert len(logs) == 4
    assert [v.timestamp for v in logs] == [NOW + timedelta(minutes=i) for i in (5, 4, 3, 2)]


def test_stats_today(session, make_member):
    for mid in ("a1", "a2", "a3"):
        make_member(mid)
    # 08h et 17h heure de Paris (UTC+2 en juin)
    enter(session, "a1", datetime(2025, 6, 10, 6, 10, tzinfo=timezone.utc))
    enter(session, "a2", datetime(2025, 6, 10, 6, 40, tzinfo=timezone.utc))
    leave(session, "a1", datetime(2025, 6, 10, 7, 0, tzinfo=timezone.utc))
    enter(session, "a3", datetime(2025, 6, 10, 15, 0, tzinfo=timezone.utc))

    stats = ledger.stats_today(session, now=NOW)
    assert stats.today_entries == 3
    assert stats.today_exits == 1
    assert stats.currently_inside == 2
    assert stats.peak_hour == "08:00"


def test_peak_hour_tie_goes_to_earliest_hour():
    rows = [
        AccessLog(user_id="a", type=ENTRY, qr_code_scanned="x",
                  timestamp=datetime(2025, 6, 10, 16, 0, tzinfo=timezone.utc)),
        AccessLog(user_id="b", type=ENTRY, qr_code_scanned="x",
                  timestamp=datetime(2025, 6, 10, 5, 0, tzinfo=timezone.utc)),
        AccessLog(user_id="c", type=EXIT, qr_code_scanned="x",
                  timestamp=datetime(2025, 6, 10, 5, 0, tzinfo=timezone.utc)),
    ]
    assert ledger.peak_hour(rows) == "07:00"
    assert ledger.peak_hour([]) is None


def test_rebuild_presence_from_ledger(session, make_member):
    make_member("jade")
    make_member("kim")
    # journal écrit hors protocole (import, migration...)
    session.add(AccessLog(user_id="jade", type=ENTRY, qr_code_scanned="x", timestamp=NOW))
    session.add(AccessLog(user_id="kim", type=ENTRY, qr_code_scanned="x", timestamp=NOW))
    session.add(AccessLog(user_id="kim", type=EXIT, qr_code_scanned="x",
                          timestamp=NOW + timedelta(minutes=1)))
    session.commit()

    assert ledger.rebuild_presence(session, now=NOW) == 1
    rows = {p.member_id: p.inside for p in session.exec(select(Presence)).all()}
    assert rows == {"jade": True, "kim": False}

    # l'index reconstruit autorise à nouveau la sortie de jade
    leave(session, "jade", NOW + timedelta(minutes=5))
    assert not ledger.is_inside(session, "jade")


def test_first_visit_insert_race_is_a_conflict(session, make_member, monkeypatch):
    make_member("gina")

    def lost_race(self, member_id, expected, inside, log_id, now):
        raise IntegrityError("INSERT INTO presence", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(PresenceRepository, "compare_and_set", lost_race)
    with pytest.raises(PresenceConflict):
        enter(session, "gina", NOW)
    assert ledger.member_history(session, "gina") == []
    assert session.get(Presence, "gina") is None

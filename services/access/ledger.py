# ============================================================
# ledger.py - Journal des accès (entrées / sorties)
# ------------------------------------------------------------
# Le journal access_logs est la source de vérité : la présence
# d'un membre est le type de son événement le plus récent.
# La table presence n'en est qu'un index, mis à jour dans la
# même transaction que chaque ajout (compare-and-swap), ce qui
# empêche deux scans simultanés d'enregistrer deux entrées.
# ============================================================
from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from logs import get_logger
from models import (
    AccessLog, AccessLogView, AccessStats, PresenceView, ENTRY, EXIT,
)
from repository import (
    AccessLogRepository, MembershipRepository, PresenceRepository, ProfileRepository,
)
from timeutils import utcnow, day_bounds, to_local, as_utc

log = get_logger("ledger")


class PresenceConflict(Exception):
    """L'état de présence a changé entre la lecture et l'écriture."""

    def __init__(self, member_id: str, action: str):
        super().__init__(f"presence of {member_id} changed before {action} was recorded")
        self.member_id = member_id
        self.action = action


def latest_for_member(session: Session, member_id: str) -> Optional[AccessLog]:
    return AccessLogRepository(session).latest_for(member_id)


def is_inside(session: Session, member_id: str) -> bool:
    last = latest_for_member(session, member_id)
    return last is not None and last.type == ENTRY


# ------------------------------------------------------------
# Seule étape qui modifie l'état : ajout au journal + bascule
# de la présence, puis commit. En cas de conflit on annule tout.
# ------------------------------------------------------------
def record_access(session: Session, member_id: str, action: str, code: str,
                  location: Optional[str], expected_inside: bool,
                  now: Optional[datetime] = None) -> AccessLog:
    now = as_utc(now) if now else utcnow()
    entry = AccessLog(user_id=member_id, type=action, qr_code_scanned=code,
                      location=location, timestamp=now)
    try:
        AccessLogRepository(session).add(entry)
        swapped = PresenceRepository(session).compare_and_set(
            member_id, expected=expected_inside, inside=(action == ENTRY),
            log_id=entry.id, now=now,
        )
    except IntegrityError:
        session.rollback()
        raise PresenceConflict(member_id, action)
    if not swapped:
        session.rollback()
        raise PresenceConflict(member_id, action)
    session.commit()
    session.refresh(entry)
    return entry


# Réduction : on garde le premier (le plus récent) événement par membre
def latest_per_member(logs) -> dict:
    latest = {}
    for entry in logs:
        latest.setdefault(entry.user_id, entry)
    return latest


def currently_inside(session: Session) -> list:
    # parcours complet du journal, du plus récent au plus ancien
    latest = latest_per_member(AccessLogRepository(session).all_newest_first())
    inside = {mid: e for mid, e in latest.items() if e.type == ENTRY}
    if not inside:
        return []

    profiles = ProfileRepository(session).get_many(inside)
    memberships = MembershipRepository(session).active_for_many(inside)

    views = []
    for member_id, entry in inside.items():
        profile = profiles.get(member_id)
        if profile is None:
            log.warning("access log %s references unknown member %s", entry.id, member_id)
            continue
        membership = memberships.get(member_id)
        views.append(PresenceView(
            member_id=member_id,
            full_name=profile.full_name,
            email=profile.email,
            qr_code=profile.qr_code,
            membership_type=membership.type if membership else None,
            membership_status=membership.status if membership else None,
            membership_end_date=as_utc(membership.end_date) if membership else None,
            entered_at=as_utc(entry.timestamp),
        ))
    return views


def _views(session: Session, logs) -> list:
    profiles = ProfileRepository(session).get_many({e.user_id for e in logs})
    out = []
    for e in logs:
        p = profiles.get(e.user_id)
        out.append(AccessLogView(
            id=e.id,
            member_id=e.user_id,
            member_name=p.full_name if p else None,
            member_qr_code=p.qr_code if p else None,
            action=e.type,
            qr_code_scanned=e.qr_code_scanned,
            location=e.location,
            timestamp=as_utc(e.timestamp),
        ))
    return out


def todays_log(session: Session, now: Optional[datetime] = None) -> list:
    start, end = day_bounds(now or utcnow())
    return _views(session, AccessLogRepository(session).between(start, end))


def all_log(session: Session, limit: int = 100) -> list:
    return _views(session, AccessLogRepository(session).recent(limit))


def member_history(session: Session, member_id: str, limit: int = 20) -> list:
    return AccessLogRepository(session).history(member_id, limit)


def peak_hour(logs) -> Optional[str]:
    hours = Counter(to_local(e.timestamp).hour for e in logs if e.type == ENTRY)
    if not hours:
        return None
    # à égalité, l'heure la plus tôt
    hour = min(hours, key=lambda h: (-hours[h], h))
    return f"{hour:02d}:00"


def stats_today(session: Session, now: Optional[datetime] = None) -> AccessStats:
    start, end = day_bounds(now or utcnow())
    logs = AccessLogRepository(session).between(start, end)
    return AccessStats(
        today_entries=sum(1 for e in logs if e.type == ENTRY),
        today_exits=sum(1 for e in logs if e.type == EXIT),
        currently_inside=len(currently_inside(session)),
        peak_hour=peak_hour(logs),
    )


# Recalcule l'index presence depuis le journal (maintenance admin)
def rebuild_presence(session: Session, now: Optional[datetime] = None) -> int:
    latest = latest_per_member(AccessLogRepository(session).all_newest_first())
    states = {mid: (e.type == ENTRY, e.id) for mid, e in latest.items()}
    PresenceRepository(session).replace_all(states, now or utcnow())
    log.info("presence index rebuilt for %d member(s)", len(states))
    return sum(1 for inside, _ in states.values() if inside)

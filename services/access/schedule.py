# ============================================================
# schedule.py - Heures d'accès par type d'abonnement
# ------------------------------------------------------------
# Une ligne AccessPermission par type (basic | premium | vip) :
# jours autorisés + plage horaire HH:MM, en heure locale.
# Pas de ligne pour un type, ou lecture en échec : accès autorisé.
# ============================================================
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from logs import get_logger
from models import AccessPermission
from repository import AccessPermissionRepository
from timeutils import to_local

log = get_logger("schedule")

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _hhmm(value: str) -> str:
    hours, _, minutes = value.partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"invalid hour: {value!r}")
    return f"{h:02d}:{m:02d}"


def parse_days(raw: str) -> list:
    return [d.strip() for d in raw.split(",") if d.strip()]


def is_allowed(perm: AccessPermission, now: datetime) -> bool:
    local = to_local(now)
    if WEEKDAYS[local.weekday()] not in parse_days(perm.allowed_days):
        return False
    current = local.strftime("%H:%M")
    return perm.start_hour <= current <= perm.end_hour


# Lecture impossible des permissions : on laisse entrer
def is_access_allowed(session: Session, membership_type: str, now: datetime) -> bool:
    try:
        perm = AccessPermissionRepository(session).get_for_type(membership_type)
    except SQLAlchemyError:
        session.rollback()
        log.exception("could not read access permissions for %s, allowing", membership_type)
        return True
    if perm is None:
        return True
    return is_allowed(perm, now)


def set_permission(session: Session, membership_type: str, allowed_days: list,
                   start_hour: str, end_hour: str) -> AccessPermission:
    days = [d.strip().capitalize() for d in allowed_days]
    unknown = [d for d in days if d not in WEEKDAYS]
    if unknown:
        raise ValueError(f"unknown weekday(s): {', '.join(unknown)}")
    start, end = _hhmm(start_hour), _hhmm(end_hour)
    if start > end:
        raise ValueError("start_hour must be before end_hour")
    return AccessPermissionRepository(session).upsert(
        membership_type,
        allowed_days=",".join(days),
        start_hour=start,
        end_hour=end,
    )

# ============================================================
# timeutils.py - Horloge et fuseau horaire de la salle
# ------------------------------------------------------------
# Tous les horodatages sont stockés en UTC. Le "jour" d'une
# salle (codes du jour, journal du jour, heures d'ouverture)
# est par contre calculé dans le fuseau local LOCAL_TZ.
# ============================================================
import os
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

LOCAL_TZ = ZoneInfo(os.getenv("LOCAL_TZ", "Europe/Paris"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite rend des datetimes naïfs : on suppose UTC (stockage)
def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_local(dt: datetime) -> datetime:
    return as_utc(dt).astimezone(LOCAL_TZ)


def local_date(now: datetime) -> str:
    """Date calendaire locale au format YYYY-MM-DD."""
    return to_local(now).date().isoformat()


def day_bounds(now: datetime):
    # [minuit local, minuit local du lendemain[ exprimés en UTC
    day = to_local(now).date()
    start = datetime.combine(day, time.min, tzinfo=LOCAL_TZ)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def end_of_day(now: datetime) -> datetime:
    """23:59:59.999 du jour local courant, en UTC."""
    day = to_local(now).date()
    last = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=LOCAL_TZ)
    return last.astimezone(timezone.utc)


# Format d'affichage "fr-FR" : 01/01/2025
def format_fr_date(dt: datetime) -> str:
    return to_local(dt).strftime("%d/%m/%Y")

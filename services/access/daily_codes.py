# ============================================================
# daily_codes.py - Registre des codes QR du jour
# ------------------------------------------------------------
# L'admin génère chaque jour une paire de codes (entrée /
# sortie) affichée à l'accueil et scannée par les membres.
# Format : GYM_ENTRY_<AAAAMMJJ>_<timestamp ms>
#          GYM_EXIT_<AAAAMMJJ>_<timestamp ms>
# ============================================================
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from logs import get_logger
from models import DailyQRCode
from publisher import publish_after_commit
from repository import DailyCodeRepository
from timeutils import utcnow, as_utc, local_date, end_of_day

ENTRY_PREFIX = "GYM_ENTRY"
EXIT_PREFIX = "GYM_EXIT"

log = get_logger("daily_codes")


def build_codes(day: str, now: datetime):
    compact = day.replace("-", "")
    stamp = int(now.timestamp() * 1000)
    return f"{ENTRY_PREFIX}_{compact}_{stamp}", f"{EXIT_PREFIX}_{compact}_{stamp}"


def get_todays_codes(session: Session, now: Optional[datetime] = None) -> Optional[DailyQRCode]:
    now = as_utc(now) if now else utcnow()
    try:
        return DailyCodeRepository(session).get_by_date(local_date(now))
    except SQLAlchemyError:
        log.exception("could not read today's codes")
        return None


# ------------------------------------------------------------
# Génération idempotente
# ------------------------------------------------------------
# Si les codes du jour existent déjà on les renvoie tels quels :
# les codes déjà affichés ou partagés restent valides.
# Deux admins qui génèrent en même temps : la contrainte unique
# sur "date" garde la première ligne, l'autre la relit.
# ------------------------------------------------------------
def generate_daily_codes(session: Session, now: Optional[datetime] = None) -> Optional[DailyQRCode]:
    now = as_utc(now) if now else utcnow()
    day = local_date(now)
    repo = DailyCodeRepository(session)
    try:
        existing = repo.get_by_date(day)
        if existing:
            log.info("daily codes already generated for %s", day)
            return existing

        entry_code, exit_code = build_codes(day, now)
        created = repo.create(DailyQRCode(
            date=day,
            entry_code=entry_code,
            exit_code=exit_code,
            created_at=now,
            valid_until=end_of_day(now),
        ))
    except IntegrityError:
        session.rollback()
        log.warning("daily codes for %s created concurrently, reusing them", day)
        return repo.get_by_date(day)
    except SQLAlchemyError:
        session.rollback()
        log.exception("could not generate daily codes for %s", day)
        return None

    log.info("new daily codes generated for %s", day)
    publish_after_commit("DailyCodesGenerated", {
        "date": created.date,
        "validUntil": as_utc(created.valid_until).isoformat(),
    })
    return created

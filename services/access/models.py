# ============================================================
# models.py - Modèles de données SQLModel (Access Service)
# ------------------------------------------------------------
# Tables de la base PostgreSQL :
#   1. Profile / Membership : réplique locale des membres et de
#      leurs abonnements (alimentée par consumer.py)
#   2. DailyQRCode : paire de codes entrée/sortie du jour
#   3. AccessLog : journal append-only des entrées/sorties
#   4. Presence : index matérialisé "dedans / dehors"
#   5. AccessPermission : heures d'ouverture par type d'abonnement
#   6. ProcessedMessage : messages RabbitMQ déjà traités
# Plus quelques schémas de réponse (non persistés).
# ============================================================
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone
from typing import Optional

ENTRY = "entry"
EXIT = "exit"

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
ROLE_COACH = "coach"

MEMBERSHIP_TYPES = ("basic", "premium", "vip")
STATUS_ACTIVE = "active"      # active | expired | suspended

LOCATION_SELF_SERVICE = "self_service"
LOCATION_FRONT_DESK = "front_desk"


def _now():
    return datetime.now(timezone.utc)


def _ts(**kwargs):
    # horodatage stocké avec fuseau (timestamptz côté PostgreSQL)
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: str = Field(primary_key=True)              # identifiant d'auth du membre
    full_name: str
    email: str = Field(index=True)
    phone: Optional[str] = None
    qr_code: str = Field(unique=True, index=True)  # code personnel (scan accueil)
    role: str = ROLE_MEMBER                        # member | admin | coach
    created_at: datetime = _ts(default_factory=_now)
    updated_at: datetime = _ts(default_factory=_now)


class Membership(SQLModel, table=True):
    __tablename__ = "memberships"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="profiles.id", index=True)
    type: str = "basic"                            # basic | premium | vip
    status: str = STATUS_ACTIVE
    start_date: datetime = _ts(default_factory=_now)
    end_date: datetime = _ts()
    created_at: datetime = _ts(default_factory=_now)


# ------------------------------------------------------------
# DailyQRCode
# ------------------------------------------------------------
# Une ligne par date calendaire locale. Jamais modifiée après
# création : regénérer le même jour renvoie la ligne existante.
# ------------------------------------------------------------
class DailyQRCode(SQLModel, table=True):
    __tablename__ = "daily_qr_codes"

    id: Optional[int] = Field(default=None, primary_key=True)
    date: str = Field(unique=True, index=True)     # YYYY-MM-DD
    entry_code: str = Field(unique=True)
    exit_code: str = Field(unique=True)
    created_at: datetime = _ts(default_factory=_now)
    valid_until: datetime = _ts()                  # 23:59:59.999 locale


# ------------------------------------------------------------
# AccessLog
# ------------------------------------------------------------
# Événement d'accès, jamais modifié. La présence d'un membre
# se déduit du type de son événement le plus récent.
# ------------------------------------------------------------
class AccessLog(SQLModel, table=True):
    __tablename__ = "access_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="profiles.id", index=True)
    type: str                                      # entry | exit
    qr_code_scanned: str
    location: Optional[str] = None
    timestamp: datetime = _ts(default_factory=_now, index=True)


class Presence(SQLModel, table=True):
    __tablename__ = "presence"

    member_id: str = Field(primary_key=True)
    inside: bool = False
    last_log_id: Optional[int] = None
    updated_at: datetime = _ts(default_factory=_now)


class AccessPermission(SQLModel, table=True):
    __tablename__ = "access_permissions"

    id: Optional[int] = Field(default=None, primary_key=True)
    membership_type: str = Field(unique=True)
    allowed_days: str = "Monday,Tuesday,Wednesday,Thursday,Friday,Saturday,Sunday"
    start_hour: str = "00:00"
    end_hour: str = "23:59"
    created_at: datetime = _ts(default_factory=_now)


class ProcessedMessage(SQLModel, table=True):
    __tablename__ = "processed_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    processed_at: datetime = _ts(default_factory=_now)


# ------------------------------------------------------------
# Schémas de réponse
# ------------------------------------------------------------
class PresenceView(SQLModel):
    member_id: str
    full_name: str
    email: str
    qr_code: str
    membership_type: Optional[str] = None
    membership_status: Optional[str] = None
    membership_end_date: Optional[datetime] = None
    entered_at: datetime
    inside: bool = True


class AccessLogView(SQLModel):
    id: int
    member_id: str
    member_name: Optional[str] = None
    member_qr_code: Optional[str] = None
    action: str
    qr_code_scanned: str
    location: Optional[str] = None
    timestamp: datetime


class AccessStats(SQLModel):
    today_entries: int = 0
    today_exits: int = 0
    currently_inside: int = 0
    peak_hour: Optional[str] = None                # "HH:00"


class PermissionUpdate(SQLModel):
    allowed_days: list[str]
    start_hour: str
    end_hour: str

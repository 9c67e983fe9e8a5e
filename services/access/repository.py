# ============================================================
# repository.py - Accès aux données du service Access
# ------------------------------------------------------------
# Design pattern "Repository" : une classe par table, qui isole
# les requêtes SQLModel de la logique métier (protocol, ledger,
# daily_codes) et de la couche API.
# Les repositories n'appellent jamais commit() sauf mention
# contraire : la transaction appartient à l'appelant.
# ============================================================
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, update
from sqlmodel import Session, col, select

from models import (
    Profile, Membership, DailyQRCode, AccessLog, Presence,
    AccessPermission, ProcessedMessage, STATUS_ACTIVE,
)


class ProfileRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, member_id: str) -> Optional[Profile]:
        return self.session.get(Profile, member_id)

    def get_by_qr_code(self, qr_code: str) -> Optional[Profile]:
        return self.session.exec(select(Profile).where(Profile.qr_code == qr_code)).first()

    def get_many(self, member_ids: Iterable[str]) -> dict:
        ids = list(member_ids)
        if not ids:
            return {}
        rows = self.session.exec(select(Profile).where(col(Profile.id).in_(ids))).all()
        return {p.id: p for p in rows}

    def upsert(self, member_id: str, **fields) -> Profile:
        p = self.get(member_id)
        if p is None:
            p = Profile(id=member_id, **fields)
            self.session.add(p)
        else:
            for k, v in fields.items():
                setattr(p, k, v)
        self.session.commit()
        self.session.refresh(p)
        return p

    # Suppression d'un membre : abonnements, journal et présence suivent
    def delete_cascade(self, member_id: str) -> bool:
        p = self.get(member_id)
        if p is None:
            return False
        self.session.exec(delete(Presence).where(Presence.member_id == member_id))
        self.session.exec(delete(AccessLog).where(AccessLog.user_id == member_id))
        self.session.exec(delete(Membership).where(Membership.user_id == member_id))
        self.session.delete(p)
        self.session.commit()
        return True


class MembershipRepository:
    def __init__(self, session: Session):
        self.session = session

    # Premier abonnement "active", le plus récent d'abord
    def active_for(self, member_id: str) -> Optional[Membership]:
        return self.session.exec(
            select(Membership)
            .where(Membership.user_id == member_id, Membership.status == STATUS_ACTIVE)
            .order_by(col(Membership.created_at).desc(), col(Membership.id).desc())
        ).first()

    def active_for_many(self, member_ids: Iterable[str]) -> dict:
        ids = list(member_ids)
        if not ids:
            return {}
        rows = self.session.exec(
            select(Membership)
            .where(col(Membership.user_id).in_(ids), Membership.status == STATUS_ACTIVE)
            .order_by(col(Membership.created_at).desc(), col(Membership.id).desc())
        ).all()
        found = {}
        for m in rows:
            found.setdefault(m.user_id, m)
        return found

    def upsert(self, membership_id: Optional[int], **fields) -> Membership:
        m = self.session.get(Membership, membership_id) if membership_id is not None else None
        if m is None:
            m = Membership(id=membership_id, **fields)
            self.session.add(m)
        else:
            for k, v in fields.items():
                setattr(m, k, v)
        self.session.commit()
        self.session.refresh(m)
        return m


class DailyCodeRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_date(self, day: str) -> Optional[DailyQRCode]:
        return self.session.exec(select(DailyQRCode).where(DailyQRCode.date == day)).first()

    def create(self, codes: DailyQRCode) -> DailyQRCode:
        self.session.add(codes)
        self.session.commit()
        self.session.refresh(codes)
        return codes


class AccessLogRepository:
    def __init__(self, session: Session):
        self.session = session

    def _newest_first(self, stmt):
        return stmt.order_by(col(AccessLog.timestamp).desc(), col(AccessLog.id).desc())

    def latest_for(self, member_id: str) -> Optional[AccessLog]:
        return self.session.exec(
            self._newest_first(select(AccessLog).where(AccessLog.user_id == member_id)).limit(1)
        ).first()

    def add(self, log: AccessLog) -> AccessLog:
        self.session.add(log)
        self.session.flush()
        return log

    def all_newest_first(self) -> list:
        return list(self.session.exec(self._newest_first(select(AccessLog))).all())

    def recent(self, limit: int) -> list:
        return list(self.session.exec(self._newest_first(select(AccessLog)).limit(limit)).all())

    def between(self, start: datetime, end: datetime) -> list:
        return list(self.session.exec(
            self._newest_first(select(AccessLog).where(AccessLog.timestamp >= start, AccessLog.timestamp < end))
        ).all())

    def history(self, member_id: str, limit: int) -> list:
        return list(self.session.exec(
            self._newest_first(select(AccessLog).where(AccessLog.user_id == member_id)).limit(limit)
        ).all())


class PresenceRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, member_id: str) -> Optional[Presence]:
        return self.session.get(Presence, member_id)

    # ------------------------------------------------------------
    # Compare-and-swap sur la colonne "inside"
    # ------------------------------------------------------------
    # UPDATE ... WHERE inside = <attendu> : si une autre requête a
    # déjà basculé l'état, aucune ligne n'est touchée -> False.
    # Premier passage d'un membre : INSERT, la clé primaire
    # départage deux requêtes concurrentes (IntegrityError au flush).
    # ------------------------------------------------------------
    def compare_and_set(self, member_id: str, expected: bool, inside: bool,
                        log_id: Optional[int], now: datetime) -> bool:
        if self.get(member_id) is None:
            if expected:
                return False
            self.session.add(Presence(member_id=member_id, inside=inside, last_log_id=log_id, updated_at=now))
            self.session.flush()
            return True
        result = self.session.exec(
            update(Presence)
            .where(Presence.member_id == member_id, Presence.inside == expected)
            .values(inside=inside, last_log_id=log_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def replace_all(self, states: dict, now: datetime):
        # states : member_id -> (inside, last_log_id)
        self.session.exec(delete(Presence))
        for member_id, (inside, log_id) in states.items():
            self.session.add(Presence(member_id=member_id, inside=inside, last_log_id=log_id, updated_at=now))
        self.session.commit()


class AccessPermissionRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_for_type(self, membership_type: str) -> Optional[AccessPermission]:
        return self.session.exec(
            select(AccessPermission).where(AccessPermission.membership_type == membership_type)
        ).first()

    def upsert(self, membership_type: str, **fields) -> AccessPermission:
        perm = self.get_for_type(membership_type)
        if perm is None:
            perm = AccessPermission(membership_type=membership_type, **fields)
            self.session.add(perm)
        else:
            for k, v in fields.items():
                setattr(perm, k, v)
        self.session.commit()
        self.session.refresh(perm)
        return perm


class ProcessedMessageRepository:
    def __init__(self, session: Session):
        self.session = session

    def already_processed(self, message_id: str) -> bool:
        return self.session.exec(
            select(ProcessedMessage).where(ProcessedMessage.message_id == message_id)
        ).first() is not None

    def mark_processed(self, message_id: str):
        self.session.add(ProcessedMessage(message_id=message_id))
        self.session.commit()

# ============================================================
# protocol.py - Contrôle d'accès par scan de QR code
# ------------------------------------------------------------
# Machine à états d'un membre, déduite du journal :
#   OUTSIDE (aucun événement, ou dernier = sortie)
#   INSIDE  (dernier événement = entrée)
# Seul un scan accepté fait changer d'état.
#
# Deux contextes de scan partagent la même machine :
#   - SELF_SERVICE : le membre connecté scanne le code du jour
#     affiché à l'accueil (entrée ou sortie selon le code)
#   - STAFF : l'accueil scanne le code personnel du membre ;
#     l'action (entrée / sortie) est déduite de sa présence
#
# Chaque refus renvoie un ScanRejected (jamais d'exception) et
# ne modifie rien : l'ajout au journal est la dernière étape.
# ============================================================
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel

from ledger import PresenceConflict, latest_for_member, record_access
from logs import get_logger
from models import (
    Profile, Membership, ENTRY, EXIT, LOCATION_SELF_SERVICE, LOCATION_FRONT_DESK,
)
from publisher import publish_after_commit
from repository import DailyCodeRepository, MembershipRepository, ProfileRepository
from schedule import is_access_allowed
from timeutils import utcnow, as_utc, format_fr_date, local_date

log = get_logger("protocol")


class ScanContext(str, Enum):
    SELF_SERVICE = "self_service"
    STAFF = "staff"


class RejectionKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    PROFILE_NOT_FOUND = "profile_not_found"
    UNKNOWN_MEMBER_CODE = "unknown_member_code"
    MEMBERSHIP_INACTIVE = "membership_inactive"
    MEMBERSHIP_EXPIRED = "membership_expired"
    OUTSIDE_OPENING_HOURS = "outside_opening_hours"
    NO_DAILY_CODE = "no_daily_code"
    INVALID_CODE = "invalid_code"
    ALREADY_INSIDE = "already_inside"
    NOT_INSIDE = "not_inside"
    PERSISTENCE_FAILED = "persistence_failed"
    TECHNICAL_ERROR = "technical_error"


MESSAGES = {
    RejectionKind.NOT_AUTHENTICATED: "Vous devez être connecté pour scanner",
    RejectionKind.PROFILE_NOT_FOUND: "Profil membre introuvable",
    RejectionKind.UNKNOWN_MEMBER_CODE: "QR code invalide",
    RejectionKind.MEMBERSHIP_INACTIVE: "Abonnement expiré ou suspendu",
    RejectionKind.OUTSIDE_OPENING_HOURS: "Accès non autorisé à cette heure",
    RejectionKind.NO_DAILY_CODE: "Aucun code QR généré pour aujourd'hui",
    RejectionKind.INVALID_CODE: "Code QR invalide ou expiré",
    RejectionKind.ALREADY_INSIDE: "Vous êtes déjà à l'intérieur de la salle",
    RejectionKind.NOT_INSIDE: "Vous n'êtes pas à l'intérieur de la salle",
    RejectionKind.PERSISTENCE_FAILED: "Erreur lors de l'enregistrement",
    RejectionKind.TECHNICAL_ERROR: "Erreur technique lors du scan",
}

ACTION_LABELS = {ENTRY: "Entrée", EXIT: "Sortie"}


# ------------------------------------------------------------
# Résultats : variante étiquetée Accepted / Rejected
# ------------------------------------------------------------
class ScanAccepted(SQLModel):
    success: Literal[True] = True
    action: str
    member_id: str
    member_name: str
    message: str
    location: str
    timestamp: datetime


class ScanRejected(SQLModel):
    success: Literal[False] = False
    kind: RejectionKind
    message: str
    action: Optional[str] = None
    member_name: Optional[str] = None
    timestamp: datetime


ScanResult = Union[ScanAccepted, ScanRejected]


# ------------------------------------------------------------
# Quelles vérifications s'appliquent dans quel contexte
# ------------------------------------------------------------
@dataclass(frozen=True)
class ScanPolicy:
    requires_session: bool        # identité = membre connecté
    requires_daily_code: bool     # le code scanné doit être un code du jour
    checks_expiry_date: bool      # la date de fin fait foi sur le statut
    checks_opening_hours: bool    # heures d'accès du type d'abonnement (entrées)
    default_location: str


POLICIES = {
    ScanContext.SELF_SERVICE: ScanPolicy(
        requires_session=True, requires_daily_code=True, checks_expiry_date=True,
        checks_opening_hours=True, default_location=LOCATION_SELF_SERVICE,
    ),
    ScanContext.STAFF: ScanPolicy(
        requires_session=False, requires_daily_code=False, checks_expiry_date=True,
        checks_opening_hours=True, default_location=LOCATION_FRONT_DESK,
    ),
}


class Rejection(Exception):
    def __init__(self, kind: RejectionKind, message: Optional[str] = None,
                 action: Optional[str] = None, member_name: Optional[str] = None):
        super().__init__(kind.value)
        self.kind = kind
        self.message = message or MESSAGES[kind]
        self.action = action
        self.member_name = member_name

    def result(self, now: datetime) -> ScanRejected:
        return ScanRejected(kind=self.kind, message=self.message, action=self.action,
                            member_name=self.member_name, timestamp=now)


def _resolve_member(session: Session, policy: ScanPolicy, code: str,
                    member_id: Optional[str]) -> Profile:
    profiles = ProfileRepository(session)
    if policy.requires_session:
        if not member_id:
            raise Rejection(RejectionKind.NOT_AUTHENTICATED)
        profile = profiles.get(member_id)
        if profile is None:
            raise Rejection(RejectionKind.PROFILE_NOT_FOUND)
        return profile
    profile = profiles.get_by_qr_code(code)
    if profile is None:
        raise Rejection(RejectionKind.UNKNOWN_MEMBER_CODE)
    return profile


def _check_membership(session: Session, policy: ScanPolicy, profile: Profile,
                      now: datetime) -> Membership:
    membership = MembershipRepository(session).active_for(profile.id)
    if membership is None:
        raise Rejection(RejectionKind.MEMBERSHIP_INACTIVE, member_name=profile.full_name)
    # statut "active" mais date dépassée : la date fait foi
    if policy.checks_expiry_date and as_utc(membership.end_date) < now:
        raise Rejection(
            RejectionKind.MEMBERSHIP_EXPIRED,
            message=f"Abonnement expiré depuis le {format_fr_date(membership.end_date)}",
            member_name=profile.full_name,
        )
    return membership


# Correspondance exacte avec le code d'entrée ou de sortie du jour
def _match_daily_code(session: Session, code: str, profile: Profile, now: datetime) -> str:
    codes = DailyCodeRepository(session).get_by_date(local_date(now))
    if codes is None:
        raise Rejection(RejectionKind.NO_DAILY_CODE, member_name=profile.full_name)
    if now <= as_utc(codes.valid_until):
        if code == codes.entry_code:
            return ENTRY
        if code == codes.exit_code:
            return EXIT
    raise Rejection(RejectionKind.INVALID_CODE, member_name=profile.full_name)


def _toggle_rejection(action: str, member_name: Optional[str]) -> Rejection:
    kind = RejectionKind.ALREADY_INSIDE if action == ENTRY else RejectionKind.NOT_INSIDE
    return Rejection(kind, action=action, member_name=member_name)


def _success_message(context: ScanContext, action: str, name: str) -> str:
    if context is ScanContext.STAFF:
        return f"Bienvenue {name}!" if action == ENTRY else f"Au revoir {name}!"
    return f"{ACTION_LABELS[action]} enregistrée avec succès !"


def process_scan(session: Session, code: str, context: ScanContext,
                 member_id: Optional[str] = None, location: Optional[str] = None,
                 now: Optional[datetime] = None) -> ScanResult:
    now = as_utc(now) if now else utcnow()
    policy = POLICIES[context]
    try:
        return _run(session, policy, context, code, member_id, location, now)
    except Rejection as r:
        log.info("scan rejected (%s): %s", context.value, r.kind.value)
        return r.result(now)
    except Exception:
        log.exception("unexpected error while processing %s scan", context.value)
        session.rollback()
        return Rejection(RejectionKind.TECHNICAL_ERROR).result(now)


def _run(session: Session, policy: ScanPolicy, context: ScanContext, code: str,
         member_id: Optional[str], location: Optional[str], now: datetime) -> ScanAccepted:
    profile = _resolve_member(session, policy, code, member_id)
    name = profile.full_name
    membership = _check_membership(session, policy, profile, now)

    action = _match_daily_code(session, code, profile, now) if policy.requires_daily_code else None

    last = latest_for_member(session, profile.id)
    inside = last is not None and last.type == ENTRY
    if action is None:
        action = EXIT if inside else ENTRY

    if (action == ENTRY and inside) or (action == EXIT and not inside):
        raise _toggle_rejection(action, name)

    # on ne bloque jamais une sortie
    if action == ENTRY and policy.checks_opening_hours \
            and not is_access_allowed(session, membership.type, now):
        raise Rejection(RejectionKind.OUTSIDE_OPENING_HOURS, action=action, member_name=name)

    where = location or policy.default_location
    try:
        entry = record_access(session, profile.id, action, code, where,
                              expected_inside=inside, now=now)
    except PresenceConflict:
        log.warning("concurrent scan for %s, %s refused", profile.id, action)
        raise _toggle_rejection(action, name)
    except SQLAlchemyError:
        session.rollback()
        log.exception("could not record %s for %s", action, profile.id)
        raise Rejection(RejectionKind.PERSISTENCE_FAILED, action=action, member_name=name)

    log.info("%s recorded for %s (log %s, %s)", action, profile.id, entry.id, where)
    publish_after_commit("AccessLogged", {
        "memberId": profile.id,
        "type": action,
        "location": where,
        "timestamp": now.isoformat(),
    })
    return ScanAccepted(
        action=action,
        member_id=profile.id,
        member_name=name,
        message=_success_message(context, action, name),
        location=where,
        timestamp=now,
    )


# Scan libre-service : le membre connecté scanne le code du jour
def scan_daily_code(session: Session, scanned_code: str, member_id: Optional[str],
                    now: Optional[datetime] = None) -> ScanResult:
    return process_scan(session, scanned_code, ScanContext.SELF_SERVICE,
                        member_id=member_id, now=now)


# Scan accueil : le personnel scanne le code personnel du membre
def staff_scan_code(session: Session, scanned_code: str, location: Optional[str] = None,
                    now: Optional[datetime] = None) -> ScanResult:
    return process_scan(session, scanned_code, ScanContext.STAFF,
                        location=location, now=now)

# ============================================================
# Access API Router
# ------------------------------------------------------------
# Expose les endpoints REST du contrôle d'accès :
#   - codes QR du jour (génération admin, consultation)
#   - scan libre-service (membre connecté) et scan accueil
#   - journal, membres présents, statistiques du jour
# L'identité est transmise explicitement par la passerelle
# dans l'en-tête X-Member-Id.
# ============================================================
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlmodel import Session

import ledger
from daily_codes import generate_daily_codes, get_todays_codes
from db import get_session
from models import (
    AccessLog, AccessLogView, AccessPermission, AccessStats, DailyQRCode,
    PermissionUpdate, PresenceView, Profile, MEMBERSHIP_TYPES, ROLE_ADMIN, ROLE_COACH,
)
from protocol import ScanResult, scan_daily_code, staff_scan_code
from repository import ProfileRepository
from schedule import set_permission

router = APIRouter()


def current_member_id(x_member_id: Optional[str] = Header(default=None, alias="X-Member-Id")) -> Optional[str]:
    return x_member_id or None


# Dépendance : membre connecté, éventuellement restreint à certains rôles
def require_member(*roles: str):
    def dependency(member_id: Optional[str] = Depends(current_member_id),
                   s: Session = Depends(get_session)) -> Profile:
        if not member_id:
            raise HTTPException(401, "not authenticated")
        profile = ProfileRepository(s).get(member_id)
        if not profile:
            raise HTTPException(401, "unknown member")
        if roles and profile.role not in roles:
            raise HTTPException(403, "forbidden")
        return profile
    return dependency


staff_only = require_member(ROLE_ADMIN, ROLE_COACH)
admin_only = require_member(ROLE_ADMIN)


# ------------------------------------------------------------
# POST /v1/daily-codes - Générer les codes du jour (admin)
# ------------------------------------------------------------
# Idempotent : renvoie les codes existants s'ils ont déjà été
# générés aujourd'hui.
# ------------------------------------------------------------
@router.post("/v1/daily-codes", response_model=DailyQRCode)
def create_daily_codes(s: Session = Depends(get_session), _: Profile = Depends(admin_only)):
    codes = generate_daily_codes(s)
    if codes is None:
        raise HTTPException(503, "daily codes could not be generated")
    return codes


@router.get("/v1/daily-codes/today", response_model=DailyQRCode)
def read_todays_codes(s: Session = Depends(get_session), _: Profile = Depends(staff_only)):
    codes = get_todays_codes(s)
    if codes is None:
        raise HTTPException(404, "no codes generated today")
    return codes


# ------------------------------------------------------------
# POST /v1/access/scan - Scan libre-service
# ------------------------------------------------------------
# Répond toujours 200 : succès ou refus structuré, dont le
# message est affiché tel quel par l'application.
# ------------------------------------------------------------
@router.post("/v1/access/scan", response_model=ScanResult)
def scan(code: str, s: Session = Depends(get_session),
         member_id: Optional[str] = Depends(current_member_id)):
    return scan_daily_code(s, code, member_id)


# POST /v1/access/staff-scan - Scan du code personnel à l'accueil
@router.post("/v1/access/staff-scan", response_model=ScanResult)
def staff_scan(code: str, location: Optional[str] = None, s: Session = Depends(get_session),
               _: Profile = Depends(staff_only)):
    return staff_scan_code(s, code, location=location)


@router.get("/v1/access/me/presence")
def my_presence(s: Session = Depends(get_session), me: Profile = Depends(require_member())):
    last = ledger.latest_for_member(s, me.id)
    return {
        "member_id": me.id,
        "inside": ledger.is_inside(s, me.id),
        "since": last.timestamp if last else None,
    }


@router.get("/v1/access/me/history", response_model=list[AccessLog])
def my_history(limit: int = Query(20, ge=1, le=200), s: Session = Depends(get_session),
               me: Profile = Depends(require_member())):
    return ledger.member_history(s, me.id, limit)


# ------------------------------------------------------------
# Journal et présence (personnel)
# ------------------------------------------------------------
@router.get("/v1/access/logs/today", response_model=list[AccessLogView])
def logs_today(s: Session = Depends(get_session), _: Profile = Depends(staff_only)):
    return ledger.todays_log(s)


@router.get("/v1/access/logs", response_model=list[AccessLogView])
def logs(limit: int = Query(100, ge=1, le=1000), s: Session = Depends(get_session),
         _: Profile = Depends(staff_only)):
    return ledger.all_log(s, limit)


@router.get("/v1/access/inside", response_model=list[PresenceView])
def members_inside(s: Session = Depends(get_session), _: Profile = Depends(staff_only)):
    return ledger.currently_inside(s)


@router.get("/v1/access/stats/today", response_model=AccessStats)
def stats_today(s: Session = Depends(get_session), _: Profile = Depends(staff_only)):
    return ledger.stats_today(s)


@router.post("/v1/access/presence/rebuild")
def rebuild_presence(s: Session = Depends(get_session), _: Profile = Depends(admin_only)):
    return {"inside": ledger.rebuild_presence(s)}


# PUT /v1/access/permissions/{type} - Heures d'accès d'un type d'abonnement
@router.put("/v1/access/permissions/{membership_type}", response_model=AccessPermission)
def update_permission(membership_type: str, body: PermissionUpdate,
                      s: Session = Depends(get_session), _: Profile = Depends(admin_only)):
    if membership_type not in MEMBERSHIP_TYPES:
        raise HTTPException(404, "unknown membership type")
    try:
        return set_permission(s, membership_type, body.allowed_days, body.start_hour, body.end_hour)
    except ValueError as e:
        raise HTTPException(400, str(e))

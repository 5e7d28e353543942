import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from auth import require_user
from db_core import get_db
from ledger import to_money
from models import VipLevel, Deposit, RequestStatus, Profile

logger = logging.getLogger(__name__)


def level_out(v: VipLevel) -> dict:
    return {
        "id": v.id,
        "level": v.level,
        "name": v.name,
        "deposit_required": v.deposit_required,
        "monthly_limit": v.monthly_limit,
        "retiros_cantidad": v.retiros_cantidad,
        "color": v.color,
        "interest_rate": v.interest_rate,
        "withdrawal_fee": v.withdrawal_fee,
        "benefits": v.benefits or [],
    }


def all_levels(db: Session) -> List[VipLevel]:
    return db.query(VipLevel).order_by(VipLevel.level.asc()).all()

def level_for(db: Session, level: Optional[int]) -> Optional[VipLevel]:
    return db.query(VipLevel).filter(VipLevel.level == (level or 0)).first()

def total_approved_deposits(db: Session, user_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(Deposit.amount), 0))
        .filter(Deposit.user_id == user_id, Deposit.status == RequestStatus.APPROVED)
        .scalar()
    )
    return to_money(total or 0)

def calculate_vip_level(db: Session, user_id: int) -> int:
    total = total_approved_deposits(db, user_id)
    best = 0
    for lvl in all_levels(db):
        if to_money(lvl.deposit_required) <= total:
            best = max(best, lvl.level)
    return best

def recalculate_vip_level(db: Session, user: Profile) -> int:
    """Promote only; withdrawals never cost a reached level. Caller commits."""
    new_level = calculate_vip_level(db, user.id)
    if new_level > (user.vip_level or 0):
        logger.info("[vip] user %s promoted %s -> %s", user.id, user.vip_level, new_level)
        user.vip_level = new_level
    return user.vip_level


def vip_status(db: Session, user: Profile) -> dict:
    levels = all_levels(db)
    total = total_approved_deposits(db, user.id)
    current = user.vip_level or 0

    nxt = next((l for l in levels if l.level > current), None)
    progress = Decimal(100)
    if nxt is not None:
        cur = next((l for l in levels if l.level == current), None)
        cur_required = to_money(cur.deposit_required) if cur else Decimal(0)
        span = to_money(nxt.deposit_required) - cur_required
        if span > 0:
            progress = min(Decimal(100), max(Decimal(0), (total - cur_required) / span * 100))
    return {
        "current_level": current,
        "total_deposits": total,
        "next_level": level_out(nxt) if nxt else None,
        "progress_to_next": round(float(progress), 2),
    }


router = APIRouter(prefix="/vip-levels", tags=["vip"])


@router.get("")
def get_vip_levels(db: Session = Depends(get_db)):
    return {"items": [level_out(v) for v in all_levels(db)]}


@router.get("/me")
def get_user_vip_status(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    return vip_status(db, user)


@router.post("/me/recalculate")
def recalculate_user_vip_level(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    level = recalculate_vip_level(db, user)
    db.commit()
    return {"ok": True, "new_level": level}

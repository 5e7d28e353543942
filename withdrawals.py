import os
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth import require_user
from db_core import get_db
from ledger import LedgerError, InsufficientFunds, adjust_balance, to_money
from models import Withdrawal, RequestStatus, Profile, VipLevel, utcnow

logger = logging.getLogger(__name__)

MIN_WITHDRAWAL = Decimal(os.getenv("MIN_WITHDRAWAL") or "10")
WITHDRAWAL_WINDOW_DAYS = int(os.getenv("WITHDRAWAL_WINDOW_DAYS") or 30)

# statuses that occupy a withdrawal slot
SLOT_STATUSES = [RequestStatus.PENDING, RequestStatus.APPROVED]


def withdrawal_out(w: Withdrawal) -> dict:
    return {
        "id": w.id,
        "user_id": w.user_id,
        "user_name": w.user_name,
        "user_email": w.user_email,
        "amount": w.amount,
        "method": w.method,
        "method_name": w.method_name,
        "crypto_address": w.crypto_address,
        "crypto_type": w.crypto_type,
        "status": w.status,
        "created_at": w.created_at,
        "updated_at": w.updated_at,
    }


def max_withdrawals_for(db: Session, vip_level: Optional[int]) -> int:
    lvl = db.query(VipLevel).filter(VipLevel.level == (vip_level or 0)).first()
    return int(lvl.retiros_cantidad) if lvl and lvl.retiros_cantidad else 1


def withdrawal_stats(db: Session, user: Profile, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Rolling window: each used slot frees up WITHDRAWAL_WINDOW_DAYS after its creation."""
    now = now or utcnow()
    window = timedelta(days=WITHDRAWAL_WINDOW_DAYS)
    recent: List[Withdrawal] = (
        db.query(Withdrawal)
        .filter(
            Withdrawal.user_id == user.id,
            Withdrawal.status.in_(SLOT_STATUSES),
            Withdrawal.created_at > now - window,
        )
        .order_by(Withdrawal.created_at.asc(), Withdrawal.id.asc())
        .all()
    )
    max_w = max_withdrawals_for(db, user.vip_level)
    return {
        "monthly_withdrawals_used": len(recent),
        "monthly_withdrawal_amount": to_money(sum((Decimal(w.amount) for w in recent), Decimal(0))),
        "available_withdrawals": max(0, max_w - len(recent)),
        "max_withdrawals": max_w,
        "withdrawals_by_date": [
            {
                "id": w.id,
                "created_at": w.created_at,
                "expires_at": w.created_at + window,
            }
            for w in recent
        ],
    }


class WithdrawalIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: str = Field(..., min_length=1)
    method_name: Optional[str] = None
    crypto_address: Optional[str] = None
    crypto_type: Optional[str] = None


router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])


@router.post("")
def create_withdrawal(body: WithdrawalIn, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    amount = to_money(body.amount)
    if amount < MIN_WITHDRAWAL:
        raise HTTPException(400, f"El monto mínimo de retiro es de ${MIN_WITHDRAWAL}")

    stats = withdrawal_stats(db, user)
    if stats["available_withdrawals"] <= 0:
        raise HTTPException(
            400,
            f"Ya has alcanzado el límite de {stats['max_withdrawals']} retiros "
            f"en {WITHDRAWAL_WINDOW_DAYS} días para tu nivel VIP",
        )

    try:
        adjust_balance(db, user.id, -amount)
        w = Withdrawal(
            user_id=user.id,
            user_name=user.name or user.email.split("@")[0] or "Usuario",
            user_email=user.email or "",
            amount=amount,
            method=body.method,
            method_name=body.method_name,
            crypto_address=body.crypto_address,
            crypto_type=body.crypto_type,
            status=RequestStatus.PENDING,
        )
        db.add(w)
        db.commit()
    except InsufficientFunds:
        db.rollback()
        raise HTTPException(400, "No tienes saldo suficiente para realizar este retiro.")
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))

    logger.info("[withdrawals] user %s requested withdrawal %s of %s", user.id, w.id, amount)
    return {"ok": True, "item": withdrawal_out(w), "balance": user.balance}


@router.get("")
def get_user_withdrawals(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(Withdrawal)
        .filter(Withdrawal.user_id == user.id)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        .all()
    )
    return {"items": [withdrawal_out(w) for w in rows]}


@router.get("/stats")
def get_user_withdrawal_stats(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    return withdrawal_stats(db, user)

import os
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.orm import Session

from auth import require_user, require_admin
from db_core import get_db
from ledger import LedgerError, adjust_balance, record_transaction, to_money
from models import (
    Referral, ReferralStatus, ReferralWithdrawal, ReferralWithdrawalStatus,
    Profile, TxType, utcnow
)
from vip_levels import level_for

logger = logging.getLogger(__name__)

REFERRAL_COMMISSION_PCT = Decimal(os.getenv("REFERRAL_COMMISSION_PCT") or "2")
REFERRAL_HOLD_DAYS = int(os.getenv("REFERRAL_HOLD_DAYS") or 14)


def referral_out(r: Referral) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "referred_user_id": r.referred_user_id,
        "referred_user_name": r.referred_user_name,
        "referred_user_email": r.referred_user_email,
        "amount": r.amount,
        "status": r.status,
        "deposit_date": r.deposit_date,
        "available_date": r.available_date,
        "join_date": r.join_date,
        "created_at": r.created_at,
        "updated_at": r.updated_at,
    }

def referral_withdrawal_out(w: ReferralWithdrawal) -> dict:
    return {
        "id": w.id,
        "user_id": w.user_id,
        "amount": w.amount,
        "amount_after_fee": w.amount_after_fee,
        "fee_percentage": w.fee_percentage,
        "status": w.status,
        "type": w.type,
        "method": w.method,
        "crypto_address": w.crypto_address,
        "vip_level": w.vip_level,
        "created_at": w.created_at,
    }


def pending_referral(db: Session, referrer_id: int, referred: Profile) -> Referral:
    """The referrer's open (pending) item for ``referred``; a new one when none is open.

    Available and withdrawn items are never reopened. Caller commits.
    """
    r = (
        db.query(Referral)
        .filter(
            Referral.user_id == referrer_id,
            Referral.referred_user_id == referred.id,
            Referral.status == ReferralStatus.PENDING,
        )
        .order_by(Referral.id.desc())
        .first()
    )
    if r is None:
        r = Referral(
            user_id=referrer_id,
            referred_user_id=referred.id,
            referred_user_name=referred.name,
            referred_user_email=referred.email,
            amount=to_money(0),
            join_date=referred.created_at or utcnow(),
            status=ReferralStatus.PENDING,
        )
        db.add(r)
    return r


def credit_referral_commission(db: Session, referred: Profile, deposit_amount: Decimal) -> Optional[Referral]:
    """Adds the referrer's commission on an approved deposit. Caller commits."""
    if not referred.referred_by:
        return None
    referrer = db.query(Profile).filter(Profile.referral_code == referred.referred_by).first()
    if referrer is None or referrer.id == referred.id:
        return None

    commission = to_money(to_money(deposit_amount) * REFERRAL_COMMISSION_PCT / Decimal(100))
    if commission <= 0:
        return None

    r = pending_referral(db, referrer.id, referred)
    r.amount = to_money(Decimal(r.amount or 0) + commission)
    r.deposit_date = utcnow()
    referrer.referral_earnings = to_money(Decimal(referrer.referral_earnings or 0) + commission)
    logger.info("[referrals] commission %s for referrer %s (referred %s)", commission, referrer.id, referred.id)
    return r


def promote_matured_referrals(db: Session, user_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """pending -> available once REFERRAL_HOLD_DAYS passed since the deposit. Caller commits."""
    now = now or utcnow()
    stmt = (
        update(Referral)
        .where(
            Referral.status == ReferralStatus.PENDING,
            Referral.deposit_date.is_not(None),
            Referral.deposit_date <= now - timedelta(days=REFERRAL_HOLD_DAYS),
            Referral.amount > 0,
        )
        .values(status=ReferralStatus.AVAILABLE, available_date=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if user_id is not None:
        stmt = stmt.where(Referral.user_id == user_id)
    res = db.execute(stmt)
    return res.rowcount or 0


# ---------- API payloads ----------
class ReferralIn(BaseModel):
    user_id: int
    referred_user_id: int
    amount: Decimal = Field(Decimal(0), ge=0)
    deposit_date: Optional[datetime] = None

class ReferralWithdrawalIn(BaseModel):
    type: Literal["withdrawal", "transfer"]
    method: Optional[str] = None
    crypto_address: Optional[str] = None


router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("")
def get_user_referrals(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(Referral)
        .filter(Referral.user_id == user.id)
        .order_by(Referral.join_date.asc(), Referral.id.asc())
        .all()
    )
    return {"items": [referral_out(r) for r in rows]}


@router.get("/stats")
def get_referral_stats(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = db.query(Referral).filter(Referral.user_id == user.id).all()
    now = utcnow()

    def total(items) -> Decimal:
        return to_money(sum((Decimal(r.amount or 0) for r in items), Decimal(0)))

    available = [r for r in rows if r.status == ReferralStatus.AVAILABLE]
    pending = [r for r in rows if r.status == ReferralStatus.PENDING]
    this_month = [
        r for r in rows
        if r.deposit_date and r.deposit_date.year == now.year and r.deposit_date.month == now.month
    ]
    return {
        "total_referrals": len(rows),
        "active_referrals": len(available),
        "pending_referrals": len(pending),
        "total_available_amount": total(available),
        "total_pending_amount": total(pending),
        "total_earnings": total(rows),
        "monthly_earnings": total(this_month),
    }


@router.post("")
def create_or_update_referral(body: ReferralIn, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    referrer = db.get(Profile, body.user_id)
    referred = db.get(Profile, body.referred_user_id)
    if referrer is None or referred is None:
        raise HTTPException(404, "Usuario no encontrado")
    if referred.referred_by != referrer.referral_code:
        raise HTTPException(400, "El usuario no fue referido por este perfil")
    r = pending_referral(db, referrer.id, referred)
    r.amount = to_money(body.amount)
    if body.deposit_date is not None:
        r.deposit_date = body.deposit_date
    db.commit()
    logger.info("[referrals] item %s set to %s by admin %s", r.id, r.amount, admin.id)
    return {"ok": True, "item": referral_out(r)}


@router.post("/refresh")
def update_referral_statuses(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    n = promote_matured_referrals(db, user.id)
    db.commit()
    return {"ok": True, "updated": n}


@router.get("/withdrawals")
def get_withdrawal_history(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(ReferralWithdrawal)
        .filter(ReferralWithdrawal.user_id == user.id)
        .order_by(ReferralWithdrawal.created_at.desc(), ReferralWithdrawal.id.desc())
        .all()
    )
    return {"items": [referral_withdrawal_out(w) for w in rows]}


@router.post("/withdrawals")
def create_referral_withdrawal(
    body: ReferralWithdrawalIn,
    db: Session = Depends(get_db),
    user: Profile = Depends(require_user),
):
    if body.type == "withdrawal" and not body.crypto_address:
        raise HTTPException(400, "crypto_address required for withdrawals")

    available_ids = [
        rid for (rid,) in db.query(Referral.id)
        .filter(Referral.user_id == user.id, Referral.status == ReferralStatus.AVAILABLE)
        .all()
    ]
    if not available_ids:
        raise HTTPException(400, "No hay comisiones disponibles para retirar")

    try:
        # every available item must flip to withdrawn in this one statement
        db.flush()
        claimed = db.execute(
            update(Referral)
            .where(Referral.id.in_(available_ids), Referral.status == ReferralStatus.AVAILABLE)
            .values(status=ReferralStatus.WITHDRAWN, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != len(available_ids):
            db.rollback()
            raise HTTPException(409, "Las comisiones cambiaron de estado; intenta de nuevo")

        amount = to_money(
            sum((Decimal(r.amount or 0) for r in
                 db.query(Referral).filter(Referral.id.in_(available_ids)).all()), Decimal(0))
        )
        lvl = level_for(db, user.vip_level)
        fee_pct = Decimal(lvl.withdrawal_fee) if lvl else Decimal(0)
        net = to_money(amount * (Decimal(100) - fee_pct) / Decimal(100))

        w = ReferralWithdrawal(
            user_id=user.id,
            amount=amount,
            amount_after_fee=net,
            fee_percentage=fee_pct,
            status=ReferralWithdrawalStatus.COMPLETED if body.type == "transfer" else ReferralWithdrawalStatus.PROCESSING,
            type=body.type,
            method=body.method,
            crypto_address=body.crypto_address,
            vip_level=user.vip_level or 0,
        )
        db.add(w)
        db.flush()

        if body.type == "transfer" and net > 0:
            adjust_balance(db, user.id, net)
            record_transaction(
                db,
                user_id=user.id,
                user_name=user.name,
                user_email=user.email,
                type=TxType.REFERRAL_TRANSFER,
                amount=net,
                status="completed",
                method="referral",
                reference_table="referral_withdrawals",
                reference_id=w.id,
                notes=f"Transferencia de comisiones - Comisión: {fee_pct.normalize()}%",
            )
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))

    logger.info("[referrals] user %s %s of %s (net %s)", user.id, body.type, amount, net)
    return {"ok": True, "item": referral_withdrawal_out(w)}

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import require_user, require_admin
from db_core import get_db
from deposits import deposit_out
from ledger import LedgerError, adjust_balance, claim_row, record_transaction
from models import (
    Deposit, Withdrawal, Transaction, RequestStatus, Profile, Role, TxType
)
from referrals import credit_referral_commission
from vip_levels import recalculate_vip_level
from withdrawals import withdrawal_out

logger = logging.getLogger(__name__)


def transaction_out(t: Transaction) -> dict:
    return {
        "id": t.id,
        "user_id": t.user_id,
        "user_name": t.user_name,
        "user_email": t.user_email,
        "type": t.type,
        "amount": t.amount,
        "status": t.status,
        "method": t.method,
        "method_name": t.method_name,
        "reference_table": t.reference_table,
        "reference_id": t.reference_id,
        "approved_by": t.approved_by,
        "approved_at": t.approved_at,
        "notes": t.notes,
        "created_at": t.created_at,
    }


class DecisionIn(BaseModel):
    notes: Optional[str] = None


router = APIRouter(tags=["transactions"])


@router.get("/transactions")
def get_transactions(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    q = db.query(Transaction)
    if user.role != Role.ADMIN:
        q = q.filter(Transaction.user_id == user.id)
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()
    return {"items": [transaction_out(t) for t in rows]}


@router.get("/admin/deposits/pending")
def get_pending_deposits(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = (
        db.query(Deposit)
        .filter(Deposit.status == RequestStatus.PENDING)
        .order_by(Deposit.created_at.asc(), Deposit.id.asc())
        .all()
    )
    return {"items": [deposit_out(d) for d in rows]}


@router.get("/admin/withdrawals/pending")
def get_pending_withdrawals(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = (
        db.query(Withdrawal)
        .filter(Withdrawal.status == RequestStatus.PENDING)
        .order_by(Withdrawal.created_at.asc(), Withdrawal.id.asc())
        .all()
    )
    return {"items": [withdrawal_out(w) for w in rows]}


# ---------- deposits ----------
def _deposit_or_404(db: Session, deposit_id: int) -> Deposit:
    d = db.get(Deposit, deposit_id)
    if d is None:
        raise HTTPException(404, "Depósito no encontrado")
    return d

def _deposit_tx(db: Session, d: Deposit, status: str, admin: Profile, notes: Optional[str]) -> Transaction:
    owner = db.get(Profile, d.user_id)
    return record_transaction(
        db,
        user_id=d.user_id,
        user_name=d.user_name,
        user_email=owner.email if owner else None,
        type=TxType.DEPOSIT,
        amount=d.amount,
        status=status,
        method=d.method,
        method_name=d.method_name,
        reference_table="deposits",
        reference_id=d.id,
        approved_by=admin.id,
        notes=notes,
    )


@router.post("/admin/deposits/{deposit_id}/approve")
def approve_deposit(
    deposit_id: int,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    d = _deposit_or_404(db, deposit_id)
    try:
        if not claim_row(db, Deposit, d.id, RequestStatus.PENDING, status=RequestStatus.APPROVED):
            raise HTTPException(409, "El depósito ya fue procesado")
        balance = adjust_balance(db, d.user_id, d.amount)
        _deposit_tx(db, d, "approved", admin, body.notes if body else None)

        owner = db.get(Profile, d.user_id)
        new_level = recalculate_vip_level(db, owner)
        credit_referral_commission(db, owner, d.amount)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))
    except HTTPException:
        db.rollback()
        raise

    logger.info("[transactions] deposit %s approved by %s: +%s for user %s",
                d.id, admin.id, d.amount, d.user_id)
    return {"ok": True, "item": deposit_out(d), "balance": balance, "vip_level": new_level}


@router.post("/admin/deposits/{deposit_id}/reject")
def reject_deposit(
    deposit_id: int,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    d = _deposit_or_404(db, deposit_id)
    if not claim_row(db, Deposit, d.id, RequestStatus.PENDING, status=RequestStatus.REJECTED):
        db.rollback()
        raise HTTPException(409, "El depósito ya fue procesado")
    _deposit_tx(db, d, "rejected", admin, body.notes if body else None)
    db.commit()
    logger.info("[transactions] deposit %s rejected by %s", d.id, admin.id)
    return {"ok": True, "item": deposit_out(d)}


# ---------- withdrawals ----------
def _withdrawal_or_404(db: Session, withdrawal_id: int) -> Withdrawal:
    w = db.get(Withdrawal, withdrawal_id)
    if w is None:
        raise HTTPException(404, "Retiro no encontrado")
    return w

def _withdrawal_tx(db: Session, w: Withdrawal, status: str, admin: Profile, notes: Optional[str]) -> Transaction:
    return record_transaction(
        db,
        user_id=w.user_id,
        user_name=w.user_name,
        user_email=w.user_email,
        type=TxType.WITHDRAWAL,
        amount=w.amount,
        status=status,
        method=w.method,
        method_name=w.method_name,
        reference_table="withdrawals",
        reference_id=w.id,
        approved_by=admin.id,
        notes=notes,
    )


@router.post("/admin/withdrawals/{withdrawal_id}/approve")
def approve_withdrawal(
    withdrawal_id: int,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    # balance was already debited when the withdrawal was requested
    w = _withdrawal_or_404(db, withdrawal_id)
    if not claim_row(db, Withdrawal, w.id, RequestStatus.PENDING, status=RequestStatus.APPROVED):
        db.rollback()
        raise HTTPException(409, "El retiro ya fue procesado")
    _withdrawal_tx(db, w, "approved", admin, body.notes if body else None)
    db.commit()
    logger.info("[transactions] withdrawal %s approved by %s", w.id, admin.id)
    return {"ok": True, "item": withdrawal_out(w)}


@router.post("/admin/withdrawals/{withdrawal_id}/reject")
def reject_withdrawal(
    withdrawal_id: int,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    w = _withdrawal_or_404(db, withdrawal_id)
    try:
        if not claim_row(db, Withdrawal, w.id, RequestStatus.PENDING, status=RequestStatus.REJECTED):
            raise HTTPException(409, "El retiro ya fue procesado")
        balance = adjust_balance(db, w.user_id, w.amount)
        _withdrawal_tx(db, w, "rejected", admin, body.notes if body else None)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))
    except HTTPException:
        db.rollback()
        raise

    logger.info("[transactions] withdrawal %s rejected by %s: refunded %s to user %s",
                w.id, admin.id, w.amount, w.user_id)
    return {"ok": True, "item": withdrawal_out(w), "balance": balance}

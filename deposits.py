import os
import logging
from decimal import Decimal
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import storage
from auth import require_user, require_admin
from db_core import get_db
from ledger import LedgerError, to_positive_money
from models import Deposit, RequestStatus, Profile, PaymentMethods

logger = logging.getLogger(__name__)

MAX_PROOF_BYTES = int(os.getenv("MAX_PROOF_BYTES") or 5 * 1024 * 1024)
PROOF_MIME_TYPES = {"image/jpeg", "image/png", "image/jpg", "image/webp", "application/pdf"}


def deposit_out(d: Deposit) -> dict:
    return {
        "id": d.id,
        "user_id": d.user_id,
        "user_name": d.user_name,
        "amount": d.amount,
        "method": d.method,
        "method_name": d.method_name,
        "status": d.status,
        "proof_url": d.proof_url,
        "bank_name": d.bank_name,
        "account_number": d.account_number,
        "account_holder": d.account_holder,
        "created_at": d.created_at,
        "updated_at": d.updated_at,
    }


class BankDetails(BaseModel):
    bank_name: str
    account_number: str
    account_holder: str

class DepositIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: str = Field(..., min_length=1)
    method_name: Optional[str] = None
    proof_url: Optional[str] = None
    bank_details: Optional[BankDetails] = None


router = APIRouter(tags=["deposits"])


@router.post("/deposits")
def create_deposit(body: DepositIn, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    try:
        amount = to_positive_money(body.amount)
    except LedgerError as e:
        raise HTTPException(400, str(e))
    d = Deposit(
        user_id=user.id,
        user_name=user.name or user.email.split("@")[0] or "Usuario",
        amount=amount,
        method=body.method,
        method_name=body.method_name,
        status=RequestStatus.PENDING,
        proof_url=body.proof_url,
    )
    if body.method == "bank" and body.bank_details:
        d.bank_name = body.bank_details.bank_name
        d.account_number = body.bank_details.account_number
        d.account_holder = body.bank_details.account_holder
    db.add(d)
    db.commit()
    logger.info("[deposits] user %s requested deposit %s of %s via %s", user.id, d.id, d.amount, d.method)
    return {"ok": True, "item": deposit_out(d)}


@router.post("/deposits/{deposit_id}/proof")
async def upload_payment_proof(
    deposit_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: Profile = Depends(require_user),
):
    d = db.query(Deposit).filter(Deposit.id == deposit_id, Deposit.user_id == user.id).first()
    if not d:
        raise HTTPException(404, "Depósito no encontrado")

    data = await file.read()
    content_type = file.content_type or ""
    try:
        storage.check_upload(data, content_type, MAX_PROOF_BYTES, PROOF_MIME_TYPES)
        local_part = (user.email or "user").split("@")[0]
        path = f"{user.id}/{local_part}_{d.id}.{storage.file_ext(content_type)}"
        storage.remove(storage.PROOF_BUCKET, path)
        url = storage.upload(storage.PROOF_BUCKET, path, data)
    except storage.StorageError as e:
        raise HTTPException(400, str(e))

    d.proof_url = url
    db.commit()
    return {"ok": True, "item": deposit_out(d)}


@router.get("/deposits")
def get_user_deposits(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(Deposit)
        .filter(Deposit.user_id == user.id)
        .order_by(Deposit.created_at.desc(), Deposit.id.desc())
        .all()
    )
    return {"items": [deposit_out(d) for d in rows]}


@router.get("/payment-methods")
def get_payment_methods(db: Session = Depends(get_db)):
    pm = db.query(PaymentMethods).order_by(PaymentMethods.id.asc()).first()
    if not pm:
        raise HTTPException(404, "Error al cargar los métodos de pago")
    return {
        "item": {
            "bank_name": pm.bank_name,
            "account_number": pm.account_number,
            "account_holder": pm.account_holder,
            "crypto_addresses": pm.crypto_addresses or {},
            "instructions": pm.instructions,
            "updated_at": pm.updated_at,
        }
    }


class PaymentMethodsIn(BaseModel):
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_holder: Optional[str] = None
    crypto_addresses: Optional[Dict[str, str]] = None
    instructions: Optional[str] = None


@router.put("/admin/payment-methods")
def update_payment_methods(body: PaymentMethodsIn, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    pm = db.query(PaymentMethods).order_by(PaymentMethods.id.asc()).first()
    if not pm:
        pm = PaymentMethods(crypto_addresses={})
        db.add(pm)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(pm, field, value)
    db.commit()
    logger.info("[deposits] payment methods updated by %s", admin.id)
    return get_payment_methods(db)

import os
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from auth import require_user
from db_core import get_db
from ledger import LedgerError, InsufficientFunds, adjust_balance, claim_row, to_money, to_positive_money
from models import Bet, BetStatus, Profile, utcnow
from settlement import Direction, next_pending_schedule, scheduled_at, schedule_out

logger = logging.getLogger(__name__)

BET_CANCEL_WINDOW_HOURS = int(os.getenv("BET_CANCEL_WINDOW_HOURS") or 24)
BET_CLOSE_MARGIN_MINUTES = int(os.getenv("BET_CLOSE_MARGIN_MINUTES") or 5)


def bet_out(b: Bet) -> dict:
    return {
        "id": b.id,
        "user_id": b.user_id,
        "user_name": b.user_name,
        "asset": b.asset,
        "amount": b.amount,
        "shares": b.shares,
        "price": b.price,
        "type": b.type,
        "direction": b.direction,
        "status": b.status,
        "is_processed": b.is_processed,
        "result": b.result,
        "payout": b.payout,
        "created_at": b.created_at,
        "updated_at": b.updated_at,
        "cancelled_at": b.cancelled_at,
    }


class BetIn(BaseModel):
    asset: str = Field(..., min_length=1, max_length=32)
    amount: Decimal = Field(..., gt=0)
    shares: Decimal = Field(Decimal(0), ge=0)
    price: Decimal = Field(Decimal(0), ge=0)
    type: str = Field(..., min_length=1)
    direction: Direction


router = APIRouter(prefix="/bets", tags=["bets"])


@router.post("")
def create_bet(body: BetIn, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    try:
        amount = to_positive_money(body.amount)
        adjust_balance(db, user.id, -amount)
        b = Bet(
            user_id=user.id,
            user_name=user.name,
            asset=body.asset.upper(),
            amount=amount,
            shares=body.shares,
            price=body.price,
            type=body.type,
            direction=body.direction,
            status=BetStatus.PENDING,
            is_processed=False,
        )
        db.add(b)
        db.commit()
    except InsufficientFunds:
        db.rollback()
        raise HTTPException(400, "Saldo insuficiente")
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))

    logger.info("[bets] user %s bet %s on %s (%s)", user.id, amount, b.asset, b.direction)
    return {"ok": True, "item": bet_out(b), "balance": user.balance}


@router.get("")
def get_user_bets(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(Bet)
        .filter(Bet.user_id == user.id, Bet.status != BetStatus.CANCELLED)
        .order_by(Bet.created_at.desc(), Bet.id.desc())
        .all()
    )
    return {"items": [bet_out(b) for b in rows]}


@router.get("/stats")
def get_bet_stats(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    total, amount = (
        db.query(func.count(Bet.id), func.coalesce(func.sum(Bet.amount), 0))
        .filter(Bet.user_id == user.id)
        .one()
    )
    by_status = dict(
        db.query(Bet.status, func.count(Bet.id))
        .filter(Bet.user_id == user.id)
        .group_by(Bet.status)
        .all()
    )
    return {
        "total_bets": int(total or 0),
        "total_amount": to_money(amount or 0),
        "active_bets": int(by_status.get(BetStatus.PENDING, 0)),
        "cancelled_bets": int(by_status.get(BetStatus.CANCELLED, 0)),
    }


@router.get("/schedule")
def get_scheduled_processing_time(db: Session = Depends(get_db)):
    return {"item": schedule_out(next_pending_schedule(db))}


@router.post("/{bet_id}/cancel")
def cancel_bet(bet_id: int, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    b: Optional[Bet] = db.query(Bet).filter(Bet.id == bet_id, Bet.user_id == user.id).first()
    if not b:
        raise HTTPException(404, "Apuesta no encontrada")
    if b.is_processed:
        raise HTTPException(400, "Esta apuesta ya ha sido procesada y no puede ser cancelada")
    if b.status != BetStatus.PENDING:
        raise HTTPException(400, "Esta apuesta ya fue cancelada")

    now = utcnow()
    if now - b.created_at > timedelta(hours=BET_CANCEL_WINDOW_HOURS):
        raise HTTPException(400, f"Esta apuesta ya no puede ser cancelada (pasaron más de {BET_CANCEL_WINDOW_HOURS} horas)")

    sched = next_pending_schedule(db)
    if sched is not None:
        when = scheduled_at(sched)
        if when <= now:
            raise HTTPException(400, "El período de apuestas ya ha cerrado")
        if when - now < timedelta(minutes=BET_CLOSE_MARGIN_MINUTES):
            raise HTTPException(400, f"El período de apuestas está cerrado (menos de {BET_CLOSE_MARGIN_MINUTES} minutos para el cierre)")

    try:
        claimed = claim_row(
            db, Bet, b.id, BetStatus.PENDING,
            status=BetStatus.CANCELLED,
            where=(Bet.is_processed == False,),
            cancelled_at=now,
        )
        if not claimed:
            db.rollback()
            raise HTTPException(409, "La apuesta cambió de estado; intenta de nuevo")
        refund = to_money(b.amount)
        adjust_balance(db, user.id, refund)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise HTTPException(400, str(e))

    logger.info("[bets] user %s cancelled bet %s; refunded %s", user.id, b.id, refund)
    return {"ok": True, "refund_amount": refund, "balance": user.balance}

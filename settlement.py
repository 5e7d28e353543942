# settlement.py
import os
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Literal, Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth import require_admin, profile_out
from db_core import get_db
from ledger import adjust_balance, claim_row, record_transaction, to_money
from models import (
    Bet, BetStatus, BetResult, BetProcessingSchedule, Profile, TxType, utcnow
)

logger = logging.getLogger(__name__)

# ========================
# ENV / CONFIG
# ========================
DEFAULT_PROCESSING_TIME = os.getenv("DEFAULT_PROCESSING_TIME", "02:00")

Direction = Literal["a_favor", "en_contra"]
DIRECTIONS = ("a_favor", "en_contra")

# percent paid on top of the stake, by VIP level
INTEREST_RATES = [
    Decimal("1.7"), Decimal("1.87"), Decimal("2.04"), Decimal("2.21"),
    Decimal("2.38"), Decimal("2.55"), Decimal("2.72"), Decimal("2.89"),
    Decimal("3.06"), Decimal("3.23"), Decimal("3.4"),
]


# ========================
# Small utils
# ========================
def interest_rate_for(vip_level: Optional[int]) -> Decimal:
    idx = min(max(0, int(vip_level or 0)), len(INTEREST_RATES) - 1)
    return INTEREST_RATES[idx]

def winning_payout(amount: Any, vip_level: Optional[int]) -> tuple[Decimal, Decimal, Decimal]:
    """Returns (payout, interest, rate) for a winning stake."""
    stake = to_money(amount)
    rate = interest_rate_for(vip_level)
    interest = to_money(stake * rate / Decimal(100))
    return stake + interest, interest, rate

def scheduled_at(s: BetProcessingSchedule) -> datetime:
    hh, mm = (s.scheduled_time or DEFAULT_PROCESSING_TIME).split(":")[:2]
    return datetime.combine(s.scheduled_date, datetime.min.time()).replace(hour=int(hh), minute=int(mm))

def latest_schedule(db: Session) -> Optional[BetProcessingSchedule]:
    return (
        db.query(BetProcessingSchedule)
        .order_by(BetProcessingSchedule.created_at.desc(), BetProcessingSchedule.id.desc())
        .first()
    )

def next_pending_schedule(db: Session) -> Optional[BetProcessingSchedule]:
    return (
        db.query(BetProcessingSchedule)
        .filter(BetProcessingSchedule.is_processed == False)
        .order_by(BetProcessingSchedule.scheduled_date.asc(), BetProcessingSchedule.scheduled_time.asc())
        .first()
    )

def schedule_out(s: Optional[BetProcessingSchedule]) -> Optional[Dict[str, Any]]:
    if s is None:
        return None
    return {
        "id": s.id,
        "scheduled_date": s.scheduled_date.isoformat(),
        "scheduled_time": s.scheduled_time,
        "scheduled_at": scheduled_at(s).isoformat() + "Z",
        "winning_direction": s.winning_direction,
        "is_processed": s.is_processed,
        "processed_at": s.processed_at,
        "created_at": s.created_at,
    }


# ========================
# API payloads
# ========================
class ScheduleIn(BaseModel):
    scheduled_date: date
    scheduled_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    winning_direction: Direction

class ProcessIn(BaseModel):
    winning_direction: Direction

class ProcessResponse(BaseModel):
    ok: bool
    winning_bets: int
    losing_bets: int
    total_processed: int
    failed: int
    total_paid: float
    next_schedule: Optional[Dict[str, Any]] = None


# ========================
# Core
# ========================
class NothingToProcess(Exception):
    pass


def _settle_single_bet(db: Session, bet: Bet, profile: Optional[Profile], winner: str) -> Optional[Decimal]:
    """Settles ONE bet inside the current transaction.

    Returns the amount credited (0 for a loss) or None when another run
    already claimed the bet.
    """
    won = bet.direction == winner
    name = bet.user_name or (profile.name if profile else None)
    email = profile.email if profile else None

    if won:
        payout, interest, rate = winning_payout(bet.amount, profile.vip_level if profile else 0)
    else:
        payout, interest, rate = Decimal(0), Decimal(0), Decimal(0)

    claimed = claim_row(
        db, Bet, bet.id, False,
        column="is_processed",
        where=(Bet.status == BetStatus.PENDING,),
        is_processed=True,
        status=BetStatus.COMPLETED,
        result=BetResult.WON if won else BetResult.LOST,
        payout=payout,
    )
    if not claimed:
        return None

    if won:
        adjust_balance(db, bet.user_id, payout)
        record_transaction(
            db,
            user_id=bet.user_id,
            user_name=name,
            user_email=email,
            type=TxType.BET_WIN,
            amount=payout,
            status="completed",
            method="bet",
            reference_table="bets",
            reference_id=bet.id,
            notes=f"Ganancia de apuesta - Interés: {rate.normalize()}%",
        )
        logger.info("[settlement] bet %s won: %s + %s = %s", bet.id, bet.amount, interest, payout)
    else:
        record_transaction(
            db,
            user_id=bet.user_id,
            user_name=name,
            user_email=email,
            type=TxType.BET_LOSS,
            amount=0,
            status="completed",
            method="bet",
            reference_table="bets",
            reference_id=bet.id,
            notes="Pérdida de apuesta",
        )
        logger.info("[settlement] bet %s lost", bet.id)
    return payout


def advance_schedule(db: Session, winner: str, current: Optional[BetProcessingSchedule] = None) -> BetProcessingSchedule:
    """Marks the current schedule processed and books the next run one day later.

    Only the run that flips ``is_processed`` books the next slot; a concurrent
    run gets the already-booked one back.
    """
    current = current or latest_schedule(db)
    if current is not None:
        if not claim_row(db, BetProcessingSchedule, current.id, False,
                         column="is_processed", is_processed=True, processed_at=utcnow()):
            db.commit()
            return next_pending_schedule(db) or current
        base_date = current.scheduled_date
        base_time = current.scheduled_time
    else:
        base_date = utcnow().date()
        base_time = DEFAULT_PROCESSING_TIME

    nxt = BetProcessingSchedule(
        scheduled_date=base_date + timedelta(days=1),
        scheduled_time=base_time,
        winning_direction=winner,
        is_processed=False,
    )
    db.add(nxt)
    db.commit()
    logger.info("[settlement] schedule advanced from %s %s to %s %s",
                base_date, base_time, nxt.scheduled_date, nxt.scheduled_time)
    return nxt


def process_bet_results(
    db: Session,
    winning_direction: str,
    schedule: Optional[BetProcessingSchedule] = None,
) -> Dict[str, Any]:
    if winning_direction not in DIRECTIONS:
        raise ValueError(f"invalid winning direction '{winning_direction}'")

    logger.info("[settlement] starting bet results processing (winner=%s)", winning_direction)
    active: List[Bet] = (
        db.query(Bet)
        .filter(Bet.is_processed == False, Bet.status == BetStatus.PENDING)
        .order_by(Bet.id.asc())
        .all()
    )
    if not active:
        raise NothingToProcess("No hay apuestas activas para procesar")

    user_ids = {b.user_id for b in active}
    profiles = {p.id: p for p in db.query(Profile).filter(Profile.id.in_(user_ids)).all()}
    logger.info("[settlement] found %d active bets", len(active))

    won = lost = failed = 0
    total_paid = Decimal(0)
    for bet in active:
        try:
            paid = _settle_single_bet(db, bet, profiles.get(bet.user_id), winning_direction)
            db.commit()
        except Exception:
            db.rollback()
            failed += 1
            logger.exception("[settlement] error processing bet %s", bet.id)
            continue
        if paid is None:
            logger.warning("[settlement] bet %s already processed; skipped", bet.id)
            continue
        if bet.direction == winning_direction:
            won += 1
            total_paid += paid
        else:
            lost += 1

    nxt = advance_schedule(db, winning_direction, schedule)
    logger.info("[settlement] done: won=%d lost=%d failed=%d paid=%s", won, lost, failed, total_paid)
    return {
        "winning_bets": won,
        "losing_bets": lost,
        "total_processed": won + lost,
        "failed": failed,
        "total_paid": total_paid,
        "next_schedule": schedule_out(nxt),
    }


# ========================
# Router
# ========================
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/bets/schedule")
def get_bet_processing_schedule(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return {"item": schedule_out(latest_schedule(db))}


@router.put("/bets/schedule")
def update_bet_processing_schedule(
    body: ScheduleIn,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    s = latest_schedule(db)
    if s is None:
        s = BetProcessingSchedule()
        db.add(s)
    s.scheduled_date = body.scheduled_date
    s.scheduled_time = body.scheduled_time
    s.winning_direction = body.winning_direction
    s.is_processed = False
    s.processed_at = None
    db.commit()
    logger.info("[settlement] schedule set by %s: %s %s -> %s",
                admin.id, s.scheduled_date, s.scheduled_time, s.winning_direction)
    return {"ok": True, "item": schedule_out(s)}


@router.get("/bets")
def get_all_bets_for_admin(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = (
        db.query(Bet, Profile)
        .outerjoin(Profile, Profile.id == Bet.user_id)
        .order_by(Bet.created_at.desc(), Bet.id.desc())
        .all()
    )
    items = []
    for b, p in rows:
        items.append({
            "id": b.id,
            "user_id": b.user_id,
            "user_name": b.user_name or (p.name if p else None) or "Usuario desconocido",
            "user_email": p.email if p else None,
            "vip_level": p.vip_level if p else 0,
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
        })
    return {"items": items}


@router.get("/users")
def get_all_users(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = db.query(Profile).order_by(Profile.created_at.desc(), Profile.id.desc()).all()
    return {"items": [profile_out(p) for p in rows]}


@router.post("/bets/process", response_model=ProcessResponse)
def process_bets(body: ProcessIn, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    try:
        res = process_bet_results(db, body.winning_direction)
    except NothingToProcess as e:
        raise HTTPException(status_code=400, detail=str(e))
    res["total_paid"] = float(res["total_paid"])
    return ProcessResponse(ok=True, **res)

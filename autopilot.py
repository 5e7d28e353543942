# autopilot.py
import os
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from db_core import SessionLocal
from models import BetProcessingSchedule, utcnow
from referrals import promote_matured_referrals
from settlement import (
    NothingToProcess, DIRECTIONS, advance_schedule, next_pending_schedule,
    process_bet_results, scheduled_at,
)

logger = logging.getLogger(__name__)

AUTOPILOT_ENABLED = os.getenv("AUTOPILOT_ENABLED", "1").lower() in ("1", "true", "yes", "on")
TICK_SECONDS = int(os.getenv("AUTOPILOT_TICK_SECONDS", "30"))


def due_schedule(db: Session, now: Optional[datetime] = None) -> Optional[BetProcessingSchedule]:
    s = next_pending_schedule(db)
    if s is None or scheduled_at(s) > (now or utcnow()):
        return None
    return s


def process_due_schedule(db: Session, now: Optional[datetime] = None) -> Optional[dict]:
    """Runs settlement for the due schedule, if any. Returns the settlement summary."""
    s = due_schedule(db, now)
    if s is None:
        return None
    if s.winning_direction not in DIRECTIONS:
        logger.warning("[autopilot] schedule %s has no valid winning direction (%r); skipped",
                       s.id, s.winning_direction)
        return None
    try:
        return process_bet_results(db, s.winning_direction, s)
    except NothingToProcess:
        # close the empty slot, otherwise it stays due forever
        advance_schedule(db, s.winning_direction, s)
        logger.info("[autopilot] schedule %s had no active bets; advanced", s.id)
        return None


def tick(db: Session, now: Optional[datetime] = None) -> dict:
    summary = process_due_schedule(db, now)
    promoted = promote_matured_referrals(db, now=now)
    db.commit()
    return {"settlement": summary, "referrals_promoted": promoted}


async def autopilot_loop():
    logger.info("[autopilot] starting; tick=%ss", TICK_SECONDS)
    while True:
        db = None
        try:
            db = SessionLocal()
            res = tick(db)
            if res["settlement"] or res["referrals_promoted"]:
                logger.info("[autopilot] tick: %s", res)
        except Exception:
            logger.exception("[autopilot] tick failed")
        finally:
            if db:
                db.close()
        await asyncio.sleep(TICK_SECONDS)

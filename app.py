from __future__ import annotations

import os
import time
import asyncio
import logging
from typing import Optional

import requests
from dotenv import load_dotenv, find_dotenv
load_dotenv(find_dotenv(), override=False)

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy import inspect

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("app")

# ---- shared DB + models (single source of truth) ----
from db_core import engine, DB_URL, init_schema
import autopilot
import storage
from auth import router as auth_router
from bets import router as bets_router
from deposits import router as deposits_router
from market_price import router as market_router
from market_rankings import fetch_rankings
from messages import router as messages_router
from profiles import router as profiles_router
from referrals import router as referrals_router
from settlement import router as settlement_router
from transactions import router as transactions_router
from user_roles import router as roles_router
from vip_levels import router as vip_router
from watchlist import router as watchlist_router
from withdrawals import router as withdrawals_router

CORS_ORIGINS = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]


def _log_db_state():
    if DB_URL.startswith("sqlite:///"):
        logger.info("[db] using %s", os.path.abspath(DB_URL.replace("sqlite:///", "")))
    logger.info("[db] tables: %s", inspect(engine).get_table_names())


# ---------- FastAPI ----------
app = FastAPI(title="CryptBet API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(settlement_router)
app.include_router(bets_router)
app.include_router(deposits_router)
app.include_router(withdrawals_router)
app.include_router(transactions_router)
app.include_router(referrals_router)
app.include_router(vip_router)
app.include_router(profiles_router)
app.include_router(roles_router)
app.include_router(messages_router)
app.include_router(watchlist_router)
app.include_router(market_router)

storage.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount(storage.PUBLIC_UPLOAD_URL, StaticFiles(directory=str(storage.UPLOAD_DIR)), name="uploads")


@app.on_event("startup")
def _init():
    init_schema()
    _log_db_state()

@app.on_event("startup")
async def _start_autopilot():
    if not autopilot.AUTOPILOT_ENABLED:
        logger.info("[app] autopilot disabled")
        return
    if getattr(app.state, "autopilot_task", None) and not app.state.autopilot_task.done():
        logger.info("[app] autopilot already running; skipping")
        return
    app.state.autopilot_task = asyncio.create_task(autopilot.autopilot_loop())
    logger.info("[app] autopilot started")

@app.on_event("shutdown")
async def _stop_autopilot():
    t = getattr(app.state, "autopilot_task", None)
    if t:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


# ---------- PUBLIC: markets ----------
@app.get("/markets")
def markets(ids: Optional[str] = Query(None, description="comma separated coin ids")):
    wanted = [i for i in ids.split(",") if i.strip()] if ids else None
    try:
        return {"items": fetch_rankings(wanted)}
    except (requests.RequestException, ValueError) as e:
        logger.warning("[app] rankings fetch failed: %s", e)
        raise HTTPException(status_code=502, detail="Unable to fetch market rankings")


# ---------- HEALTH ----------
@app.get("/health")
def health():
    return {"ok": True, "ts": int(time.time() * 1000)}


@app.get("/__debug__/autopilot")
def debug_autopilot():
    t = getattr(app.state, "autopilot_task", None)
    return {
        "enabled": autopilot.AUTOPILOT_ENABLED,
        "task_exists": bool(t),
        "task_done": (t.done() if t else None),
    }

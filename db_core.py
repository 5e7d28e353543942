import os
import logging
from decimal import Decimal

from dotenv import load_dotenv, find_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv(find_dotenv(), override=False)

logger = logging.getLogger(__name__)


DB_URL = (
    os.getenv("DATABASE_URL")
    or os.getenv("DB_URL")
    or "sqlite:///./cryptbet.db"
)

engine = create_engine(
    DB_URL,
    connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {},
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# level, name, deposit_required, monthly_limit, retiros_cantidad, color, interest_rate, withdrawal_fee
DEFAULT_VIP_LEVELS = [
    (0, "Básico",   "0",     "15",    1,  "bg-gray-400",   "0",   "9.6"),
    (1, "Plata",    "500",   "100",   2,  "bg-gray-500",   "0.5", "5"),
    (2, "Oro",      "2000",  "500",   4,  "bg-yellow-500", "1",   "3"),
    (3, "Platino",  "5000",  "2000",  8,  "bg-blue-400",   "1.5", "1"),
    (4, "Diamante", "15000", "10000", 15, "bg-black",      "3",   "0.5"),
]

def init_schema():
    from models import Base, VipLevel, PaymentMethods

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        if db.query(VipLevel).count() == 0:
            for lvl, name, dep, limit, count, color, rate, fee in DEFAULT_VIP_LEVELS:
                db.add(VipLevel(
                    level=lvl,
                    name=name,
                    deposit_required=Decimal(dep),
                    monthly_limit=Decimal(limit),
                    retiros_cantidad=count,
                    color=color,
                    interest_rate=Decimal(rate),
                    withdrawal_fee=Decimal(fee),
                ))
            logger.info("[db] seeded %d VIP levels", len(DEFAULT_VIP_LEVELS))
        if db.query(PaymentMethods).count() == 0:
            db.add(PaymentMethods())
            logger.info("[db] seeded empty payment methods row")
        db.commit()
    finally:
        db.close()

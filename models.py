from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Numeric, JSON,
    Enum as SAEnum, ForeignKey, Boolean, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# money columns; 8 dp matches the rounding used everywhere else
Money = Numeric(20, 8)


def utcnow() -> datetime:
    """Naive UTC timestamp (what SQLite hands back for DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------- Enums ----------
class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

class BetStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class BetResult(str, Enum):
    WON = "won"
    LOST = "lost"

class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class TxType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BET_WIN = "bet_win"
    BET_LOSS = "bet_loss"
    REFERRAL_TRANSFER = "referral_transfer"

class ReferralStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"

class ReferralWithdrawalStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------- Models ----------
class Profile(Base):
    __tablename__ = "profiles"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(SAEnum(Role), default=Role.USER, nullable=False)
    status = Column(String, default="En espera", nullable=False)

    balance = Column(Money, default=0, nullable=False)
    vip_level = Column(Integer, default=0, nullable=False)

    referral_code = Column(String, nullable=False, unique=True, index=True)
    referred_by = Column(String, nullable=True)
    referral_earnings = Column(Money, default=0, nullable=False)

    avatar_url = Column(String, nullable=True)

class AuthSession(Base):
    __tablename__ = "auth_sessions"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    token = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    user = relationship("Profile")

class Bet(Base):
    __tablename__ = "bets"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    user_name = Column(String, nullable=True)

    asset = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    shares = Column(Numeric(28, 10), default=0, nullable=False)
    price = Column(Numeric(28, 10), default=0, nullable=False)
    type = Column(String, nullable=False)
    direction = Column(String, nullable=False)

    status = Column(SAEnum(BetStatus), default=BetStatus.PENDING, nullable=False)
    is_processed = Column(Boolean, default=False, nullable=False)
    result = Column(SAEnum(BetResult), nullable=True)
    payout = Column(Money, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

class BetProcessingSchedule(Base):
    __tablename__ = "bet_processing_schedule"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)   # "HH:MM", UTC
    winning_direction = Column(String, nullable=False)
    is_processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)

class Deposit(Base):
    __tablename__ = "deposits"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    user_name = Column(String, nullable=True)
    amount = Column(Money, nullable=False)
    method = Column(String, nullable=False)
    method_name = Column(String, nullable=True)
    status = Column(SAEnum(RequestStatus), default=RequestStatus.PENDING, nullable=False)
    proof_url = Column(String, nullable=True)

    # bank transfers only
    bank_name = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    account_holder = Column(String, nullable=True)

class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    user_name = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    amount = Column(Money, nullable=False)
    method = Column(String, nullable=False)
    method_name = Column(String, nullable=True)
    crypto_address = Column(String, nullable=True)
    crypto_type = Column(String, nullable=True)
    status = Column(SAEnum(RequestStatus), default=RequestStatus.PENDING, nullable=False)

class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    user_name = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    type = Column(SAEnum(TxType), nullable=False)
    amount = Column(Money, nullable=False)
    status = Column(String, nullable=False)
    method = Column(String, nullable=True)
    method_name = Column(String, nullable=True)

    reference_table = Column(String, nullable=True)
    reference_id = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

class Referral(Base):
    __tablename__ = "referrals"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    referred_user_name = Column(String, nullable=True)
    referred_user_email = Column(String, nullable=True)
    amount = Column(Money, default=0, nullable=False)
    status = Column(SAEnum(ReferralStatus), default=ReferralStatus.PENDING, nullable=False)
    deposit_date = Column(DateTime, nullable=True)
    available_date = Column(DateTime, nullable=True)
    join_date = Column(DateTime, default=utcnow, nullable=False)

class ReferralWithdrawal(Base):
    __tablename__ = "referral_withdrawals"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    amount_after_fee = Column(Money, nullable=True)
    fee_percentage = Column(Numeric(6, 2), nullable=True)
    status = Column(SAEnum(ReferralWithdrawalStatus), nullable=False)
    type = Column(String, nullable=False)  # withdrawal | transfer
    method = Column(String, nullable=True)
    crypto_address = Column(String, nullable=True)
    vip_level = Column(Integer, default=0, nullable=False)

class VipLevel(Base):
    __tablename__ = "vip_levels"
    id = Column(Integer, primary_key=True)
    level = Column(Integer, nullable=False, unique=True)
    name = Column(String, nullable=False)
    deposit_required = Column(Money, default=0, nullable=False)
    monthly_limit = Column(Money, default=0, nullable=False)
    retiros_cantidad = Column(Integer, default=1, nullable=False)
    color = Column(String, nullable=True)
    interest_rate = Column(Numeric(6, 2), default=0, nullable=False)
    withdrawal_fee = Column(Numeric(6, 2), default=0, nullable=False)
    benefits = Column(JSON, default=list, nullable=False)

class BroadcastMessage(Base):
    __tablename__ = "broadcast_messages"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    subject = Column(String, nullable=False)
    content = Column(Text, nullable=False)

class UserMessageRead(Base):
    __tablename__ = "user_message_reads"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    message_id = Column(Integer, ForeignKey("broadcast_messages.id"), nullable=False)
    read_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="ux_message_reads_user_message"),
    )

class WatchlistItem(Base):
    __tablename__ = "watchlist"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    crypto_id = Column(String, nullable=False)
    crypto_symbol = Column(String, nullable=False)
    crypto_name = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "crypto_id", name="ux_watchlist_user_crypto"),
    )

class PaymentMethods(Base):
    __tablename__ = "payment_methods"
    id = Column(Integer, primary_key=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    bank_name = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    account_holder = Column(String, nullable=True)
    crypto_addresses = Column(JSON, default=dict, nullable=False)
    instructions = Column(Text, nullable=True)

class ProfilePhoto(Base):
    __tablename__ = "profile_photos"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    photo_url = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

# ---------- Indexes ----------


Index("ix_bets_unprocessed", Bet.is_processed, Bet.status)
Index("ix_withdrawals_user_created", Withdrawal.user_id, Withdrawal.created_at)
Index("ix_deposits_status", Deposit.status)
Index("ix_schedule_pending", BetProcessingSchedule.is_processed, BetProcessingSchedule.scheduled_date)
Index("ix_referrals_user_referred", Referral.user_id, Referral.referred_user_id)

"""
kWh Marketplace - Database Schema
=================================

Schema for the peer-to-peer charging marketplace:
- Sell/buy announcements published in the marketplace groups
- Offers negotiated between a buyer and a seller (the charging lifecycle)
- Completed transactions, reputation counters and kWh balances
- Seller donations to the admin credit pool
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# Precision shared by kWh quantities, balances and prices
KWH_NUMERIC = Numeric(18, 6)
AMOUNT_NUMERIC = Numeric(18, 6)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class AnnouncementType(Enum):
    SELL = "sell"
    BUY = "buy"


class AnnouncementStatus(Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class ConnectorType(Enum):
    AC = "AC"
    DC = "DC"
    BOTH = "both"


class OfferStatus(Enum):
    """Offer (charging session) lifecycle states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    READY_TO_CHARGE = "ready_to_charge"
    CHARGING_STARTED = "charging_started"
    CHARGING = "charging"
    CHARGING_COMPLETED = "charging_completed"
    KWH_CONFIRMED = "kwh_confirmed"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SENT = "payment_sent"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class TransactionStatus(Enum):
    COMPLETED = "completed"
    DISPUTED = "disputed"


class FeedbackSide(Enum):
    """Which party of an offer submits feedback"""
    BUYER = "buyer"
    SELLER = "seller"

    @property
    def counterpart(self) -> "FeedbackSide":
        return FeedbackSide.SELLER if self is FeedbackSide.BUYER else FeedbackSide.BUYER


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Marketplace participant - Telegram-based identity"""
    __tablename__ = 'users'

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    registration_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    # Reputation counters
    positive_ratings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # kWh credit
    balance: Mapped[Decimal] = mapped_column(KWH_NUMERIC, default=Decimal("0"), nullable=False)

    # Active announcement pointers (one per type)
    active_sell_announcement_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    active_buy_announcement_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    transactions_as_buyer: Mapped[list["Transaction"]] = relationship(
        "Transaction", foreign_keys="Transaction.buyer_id", back_populates="buyer"
    )
    transactions_as_seller: Mapped[list["Transaction"]] = relationship(
        "Transaction", foreign_keys="Transaction.seller_id", back_populates="seller"
    )

    __table_args__ = (
        CheckConstraint('positive_ratings >= 0', name='ck_users_positive_ratings_nonneg'),
        CheckConstraint('positive_ratings <= total_ratings', name='ck_users_positive_le_total'),
    )

    @property
    def transaction_ids(self) -> list[int]:
        """Ids of every transaction the user took part in, oldest first"""
        ids = {tx.id for tx in self.transactions_as_buyer} | {tx.id for tx in self.transactions_as_seller}
        return sorted(ids)

    def active_announcement_id(self, announcement_type: AnnouncementType) -> Optional[str]:
        if announcement_type is AnnouncementType.SELL:
            return self.active_sell_announcement_id
        return self.active_buy_announcement_id

    def __repr__(self):
        return f"<User(user_id={self.user_id}, username={self.username})>"


class Announcement(Base):
    """Standing sell/buy listing"""
    __tablename__ = 'announcements'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    owner_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.user_id'), nullable=False, index=True)
    message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    price: Mapped[str] = mapped_column(Text, nullable=False)
    connector_type: Mapped[str] = mapped_column(String(10), nullable=False)
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    non_activatable_brands: Mapped[str] = mapped_column(Text, default="", nullable=False)
    additional_info: Mapped[str] = mapped_column(Text, default="", nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=AnnouncementStatus.ACTIVE.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    offers: Mapped[list["Offer"]] = relationship("Offer", back_populates="announcement")

    __table_args__ = (
        CheckConstraint("type IN ('sell', 'buy')", name='ck_announcement_type_valid'),
        CheckConstraint("connector_type IN ('AC', 'DC', 'both')", name='ck_announcement_connector_valid'),
        CheckConstraint("status IN ('active', 'archived', 'completed')", name='ck_announcement_status_valid'),
        Index('ix_announcements_owner_type_status', 'owner_user_id', 'type', 'status'),
    )

    @property
    def offer_ids(self) -> list[int]:
        return [offer.id for offer in self.offers]

    def __repr__(self):
        return f"<Announcement(id={self.id}, type={self.type}, status={self.status})>"


class Offer(Base):
    """A single negotiated charging session between a buyer and a seller"""
    __tablename__ = 'offers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    announcement_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('announcements.id'), nullable=True, index=True)

    # Participants
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    # Scheduling
    charge_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    charge_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    additional_info: Mapped[str] = mapped_column(Text, default="", nullable=False)

    status: Mapped[str] = mapped_column(String(30), default=OfferStatus.PENDING.value, nullable=False)

    # Charge and payment figures (write-once)
    kwh_charged: Mapped[Optional[Decimal]] = mapped_column(KWH_NUMERIC, nullable=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(AMOUNT_NUMERIC, nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT_NUMERIC, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Part of total_amount the buyer paid with balance, set at most once
    balance_used: Mapped[Optional[Decimal]] = mapped_column(AMOUNT_NUMERIC, nullable=True)

    # Reasons for terminal or side-channel events
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    charger_connector: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    charger_photo: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # Telegram file id

    # Feedback left BY each party about the other
    buyer_feedback_rating: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    buyer_feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seller_feedback_rating: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    seller_feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    announcement: Mapped[Optional["Announcement"]] = relationship("Announcement", back_populates="offers")

    __table_args__ = (
        CheckConstraint('buyer_id <> seller_id', name='ck_offer_distinct_parties'),
        CheckConstraint('kwh_charged IS NULL OR kwh_charged > 0', name='ck_offer_kwh_positive'),
        CheckConstraint('total_amount IS NULL OR total_amount > 0', name='ck_offer_total_positive'),
        Index('ix_offers_buyer_status', 'buyer_id', 'status'),
        Index('ix_offers_seller_status', 'seller_id', 'status'),
        Index('ix_offers_status_expires', 'status', 'expires_at'),
    )

    @property
    def amount_to_pay(self) -> Optional[Decimal]:
        if self.total_amount is None:
            return None
        return self.total_amount - (self.balance_used or Decimal("0"))

    @property
    def status_enum(self) -> OfferStatus:
        return OfferStatus(self.status)

    @property
    def scheduled_at(self) -> datetime:
        hours, minutes = (int(part) for part in self.charge_time.split(":"))
        return self.charge_date.replace(hour=hours, minute=minutes, second=0, microsecond=0)

    def feedback_rating(self, side: FeedbackSide) -> Optional[bool]:
        if side is FeedbackSide.BUYER:
            return self.buyer_feedback_rating
        return self.seller_feedback_rating

    def counterpart_of(self, user_id: int) -> int:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or get_naive_utc_now()) > self.expires_at

    def __repr__(self):
        return f"<Offer(id={self.id}, buyer={self.buyer_id}, seller={self.seller_id}, status={self.status})>"


class Transaction(Base):
    """Immutable record of a completed kWh exchange"""
    __tablename__ = 'transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    offer_id: Mapped[int] = mapped_column(Integer, ForeignKey('offers.id'), nullable=False)
    seller_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.user_id'), nullable=False, index=True)
    buyer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.user_id'), nullable=False, index=True)

    kwh_amount: Mapped[Decimal] = mapped_column(KWH_NUMERIC, nullable=False)
    price: Mapped[Decimal] = mapped_column(AMOUNT_NUMERIC, nullable=False)  # unit price per kWh
    total_amount: Mapped[Decimal] = mapped_column(AMOUNT_NUMERIC, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.COMPLETED.value, nullable=False)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    buyer: Mapped["User"] = relationship("User", foreign_keys=[buyer_id], back_populates="transactions_as_buyer")
    seller: Mapped["User"] = relationship("User", foreign_keys=[seller_id], back_populates="transactions_as_seller")
    offer: Mapped["Offer"] = relationship("Offer")

    __table_args__ = (
        UniqueConstraint('offer_id', name='uq_transactions_offer'),
        CheckConstraint("status IN ('completed', 'disputed')", name='ck_transaction_status_valid'),
        CheckConstraint('kwh_amount > 0', name='ck_transaction_kwh_positive'),
    )

    @property
    def price_per_kwh(self) -> Decimal:
        if self.kwh_amount and self.kwh_amount > 0:
            return self.total_amount / self.kwh_amount
        return Decimal("0")

    def __repr__(self):
        return f"<Transaction(id={self.id}, offer_id={self.offer_id}, kwh={self.kwh_amount})>"


class Donation(Base):
    """kWh credit donated by a seller to the admin pool"""
    __tablename__ = 'donations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    donor_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    admin_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kwh_amount: Mapped[Decimal] = mapped_column(KWH_NUMERIC, nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_in_offer_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('offers.id'), nullable=True)
    # Completed offer the donation was made after; at most one donation per offer
    source_offer_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('offers.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('kwh_amount > 0', name='ck_donation_kwh_positive'),
        CheckConstraint('NOT is_used OR used_in_offer_id IS NOT NULL', name='ck_donation_used_has_offer'),
        UniqueConstraint('source_offer_id', name='uq_donations_source_offer'),
        Index('ix_donations_pair_unused', 'admin_id', 'donor_user_id', 'is_used', 'created_at'),
    )

    def __repr__(self):
        return f"<Donation(id={self.id}, donor={self.donor_user_id}, kwh={self.kwh_amount}, used={self.is_used})>"

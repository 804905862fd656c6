"""
Ledger-backed Escrow - Database Schema
======================================

Schema for escrow deals whose funds are custodied by an on-chain escrow contract:
- Deal lifecycle metadata (parties, terms, status, ledger correlation)
- Dispute evidence and moderator assignments
- Moderator grants and the admin audit trail
- Registered users and their payout wallets

The ledger holds the money; these tables hold everything else.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStatus(Enum):
    """Deal lifecycle states"""
    PENDING_DEPOSIT = "pending_deposit"
    FUNDED = "funded"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EvidenceRole(Enum):
    """Role tag attached to a piece of dispute evidence"""
    SELLER = "Seller"
    BUYER = "Buyer"
    ADMIN = "Admin"


class Resolution(Enum):
    """Admin decision closing a dispute"""
    RELEASE = "release"
    REFUND = "refund"


class AdminAction(Enum):
    """Audited admin-class actions"""
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"
    CANCEL_DISPUTE = "cancel_dispute"
    ADD_MODERATOR = "add_moderator"
    REMOVE_MODERATOR = "remove_moderator"
    MESSAGE_PARTY = "message_party"
    BROADCAST = "broadcast"


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in DealStatus)


# ============================================================================
# MODELS
# ============================================================================

class Deal(Base):
    """Escrow deal between a seller and a buyer"""
    __tablename__ = 'deals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(16), unique=True, nullable=False, index=True)  # Public facing code, e.g. TL-7Q2K

    # Participants - handles stored in canonical form (no '@', lower-case)
    seller_platform_id = Column(BigInteger, nullable=False, index=True)
    seller_handle = Column(String(64), nullable=True)
    buyer_platform_id = Column(BigInteger, nullable=True, index=True)  # Bound on first buyer action
    buyer_handle = Column(String(64), nullable=False, index=True)

    # Terms - amount is immutable after creation
    amount = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    description = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=DealStatus.PENDING_DEPOSIT.value, index=True)

    # Ledger correlation
    ledger_deal_id = Column(BigInteger, nullable=True, index=True)
    ledger_tx_hash = Column(String(100), nullable=True)
    resolution_tx_hash = Column(String(100), nullable=True)
    ledger_dispute_marked = Column(Boolean, nullable=False, default=False)  # Advisory only

    # Dispute
    disputed_by_platform_id = Column(BigInteger, nullable=True)
    disputed_by_handle = Column(String(64), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    disputed_at = Column(DateTime, nullable=True)

    # Moderator assignment - single slot, replaced on reassignment
    assigned_moderator_id = Column(BigInteger, nullable=True, index=True)
    assigned_moderator_handle = Column(String(64), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    assigned_by = Column(BigInteger, nullable=True)

    # Resolution
    resolved_by = Column(BigInteger, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution = Column(String(10), nullable=True)  # release|refund

    # Lifecycle timestamps
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    funded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    funded_reminder_sent_at = Column(DateTime, nullable=True)

    # Reviews - seller_* left by the seller, buyer_* left by the buyer
    seller_rating = Column(Integer, nullable=True)
    seller_review = Column(Text, nullable=True)
    buyer_rating = Column(Integer, nullable=True)
    buyer_review = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name='ck_deal_status'),
        CheckConstraint('amount > 0', name='ck_deal_amount_positive'),
        CheckConstraint('seller_rating IS NULL OR (seller_rating BETWEEN 1 AND 5)', name='ck_deal_seller_rating'),
        CheckConstraint('buyer_rating IS NULL OR (buyer_rating BETWEEN 1 AND 5)', name='ck_deal_buyer_rating'),
        Index('ix_deal_status_funded_at', 'status', 'funded_at'),
    )

    @property
    def status_enum(self) -> DealStatus:
        return DealStatus(self.status)

    def __repr__(self):
        return f"<Deal(code='{self.code}', status='{self.status}', amount={self.amount})>"


class Evidence(Base):
    """Append-only dispute evidence"""
    __tablename__ = 'evidence'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_code = Column(String(16), nullable=False, index=True)
    submitted_by_platform_id = Column(BigInteger, nullable=True)
    submitted_by_handle = Column(String(64), nullable=True)
    role = Column(String(10), nullable=False)  # Seller|Buyer|Admin
    content = Column(Text, nullable=False)
    attachment_ref = Column(String(255), nullable=True)  # e.g. Telegram photo file_id
    attachment_type = Column(String(20), nullable=True)  # photo|document
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        Index('ix_evidence_deal_created', 'deal_code', 'created_at'),
    )

    def __repr__(self):
        return f"<Evidence(deal='{self.deal_code}', role='{self.role}')>"


class ModeratorGrant(Base):
    """Moderator role grant; revocation flips is_active, rows are never deleted"""
    __tablename__ = 'moderators'

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_id = Column(BigInteger, unique=True, nullable=False, index=True)
    handle = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    granted_by = Column(BigInteger, nullable=True)
    granted_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    revoked_by = Column(BigInteger, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ModeratorGrant(platform_id={self.platform_id}, active={self.is_active})>"


class AdminAuditLog(Base):
    """Append-only record of admin-class actions"""
    __tablename__ = 'admin_audit_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False)
    deal_code = Column(String(16), nullable=True, index=True)
    actor_platform_id = Column(BigInteger, nullable=True)
    actor_handle = Column(String(64), nullable=True)
    target = Column(String(128), nullable=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now, index=True)

    def __repr__(self):
        return f"<AdminAuditLog(action='{self.action}', deal='{self.deal_code}')>"


class User(Base):
    """Registered platform user and payout wallet"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_id = Column(BigInteger, unique=True, nullable=False, index=True)
    handle = Column(String(64), nullable=True, index=True)
    wallet_address = Column(String(42), nullable=True)  # Lower-cased 0x address
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    def __repr__(self):
        return f"<User(platform_id={self.platform_id}, handle='{self.handle}')>"

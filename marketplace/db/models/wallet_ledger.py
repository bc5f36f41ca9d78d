"""
Wallet Ledger Model - Immutable Transaction History

Balance is SUM(amount) per user. Rows are never updated or deleted;
corrections are new entries.
"""
import enum
from sqlalchemy import Column, Integer, DateTime, ForeignKey, String, Numeric, Enum as SQLEnum, Index

from marketplace.db.database import Base, utcnow


class LedgerEntryType(str, enum.Enum):
    TOPUP = "topup"
    SPEND = "spend"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REWARD = "reward"


class WalletLedgerEntry(Base):
    __tablename__ = "wallet_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    entry_type = Column(
        SQLEnum(LedgerEntryType, name="ledger_entry_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)  # Positive for credit, negative for debit

    description = Column(String(500), nullable=True)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_wallet_ledger_reference", "reference_type", "reference_id"),
    )

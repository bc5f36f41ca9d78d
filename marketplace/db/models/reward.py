"""
Reward Models - rules and the events that record each issuance
"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, Boolean, ForeignKey, UniqueConstraint

from marketplace.db.database import Base, utcnow


class RewardRule(Base):
    __tablename__ = "reward_rules"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(50), unique=True, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    description = Column(String(300), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RewardEvent(Base):
    """An issued reward. One row per (user, rule, triggering fact)."""

    __tablename__ = "reward_events"

    id = Column(Integer, primary_key=True, index=True)
    rule_key = Column(String(50), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    issued_amount = Column(Numeric(12, 2), nullable=False)
    reference_type = Column(String(50), nullable=False)
    reference_id = Column(String(64), nullable=False)
    ledger_entry_id = Column(Integer, ForeignKey("wallet_ledger.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    # Prevent double issuance for the same triggering fact
    __table_args__ = (
        UniqueConstraint("user_id", "rule_key", "reference_id", name="uq_reward_user_rule_reference"),
    )

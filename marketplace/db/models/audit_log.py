"""
Audit Log Model - append-only record of admin actions
"""
import enum
from sqlalchemy import Column, Integer, DateTime, ForeignKey, String, Enum as SQLEnum
from sqlalchemy.types import JSON

from marketplace.db.database import Base, utcnow


class AuditAction(str, enum.Enum):
    CODES_GENERATED = "codes_generated"
    CODE_VOIDED = "code_voided"
    SETTLEMENT_PAID = "settlement_paid"
    CASH_CONFIRMED = "cash_confirmed"
    WALLET_ADJUSTED = "wallet_adjusted"
    PLATFORM_SETTING_UPDATED = "platform_setting_updated"
    REWARD_RULE_UPDATED = "reward_rule_updated"
    ORDER_STATUS_OVERRIDDEN = "order_status_overridden"


class AuditLog(Base):
    """Who changed what, from X to Y"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    action = Column(
        SQLEnum(AuditAction, name="audit_action", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

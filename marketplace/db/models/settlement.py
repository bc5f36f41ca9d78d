"""
Settlement Model - platform/driver/seller split of a delivered order
"""
import enum
from sqlalchemy import Column, Integer, DateTime, Enum as SQLEnum, Numeric, ForeignKey

from marketplace.db.database import Base, utcnow


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class Settlement(Base):
    """platform_fee + driver_fee + seller_amount == order_amount, always"""

    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=False)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    order_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee_rate = Column(Numeric(5, 4), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    driver_fee = Column(Numeric(12, 2), nullable=False)
    seller_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(
        SQLEnum(SettlementStatus, name="settlement_status", values_callable=lambda x: [e.value for e in x]),
        default=SettlementStatus.PENDING,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    paid_by = Column(Integer, ForeignKey("users.id"), nullable=True)

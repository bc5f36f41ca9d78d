"""
Delivery Model - one per order, claimed by exactly one driver
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey

from marketplace.db.database import Base, utcnow


class DeliveryStatus(str, enum.Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    # unique - makes creation idempotent under concurrent triggers
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    status = Column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=lambda x: [e.value for e in x]),
        default=DeliveryStatus.AVAILABLE,
        nullable=False,
        index=True,
    )

    delivery_address = Column(String(300), nullable=False)
    delivery_phone = Column(String(20), nullable=False)
    # Declared by the driver at the door; reconciled through CashCollection
    cash_collected = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

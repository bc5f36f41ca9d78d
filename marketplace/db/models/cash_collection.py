"""
Cash Collection Model - physical cash the driver took at the door
"""
import enum
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, Integer, DateTime, Enum as SQLEnum, Numeric, ForeignKey

from marketplace.db.database import Base, utcnow


class CashCollectionStatus(str, enum.Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    CONFIRMED = "confirmed"


class CashCollection(Base):
    __tablename__ = "cash_collections"

    id = Column(Integer, primary_key=True, index=True)
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=False, unique=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    amount_expected = Column(Numeric(12, 2), nullable=False)
    amount_collected = Column(Numeric(12, 2), nullable=True)

    status = Column(
        SQLEnum(CashCollectionStatus, name="cash_collection_status", values_callable=lambda x: [e.value for e in x]),
        default=CashCollectionStatus.PENDING,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime, default=utcnow)
    collected_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    @property
    def discrepancy(self) -> Optional[Decimal]:
        """collected - expected; negative means the driver is short"""
        if self.amount_collected is None:
            return None
        return Decimal(self.amount_collected) - Decimal(self.amount_expected)

"""
Top-up Code Model - single-use QANZ codes
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey

from marketplace.db.database import Base, utcnow


class TopupCodeStatus(str, enum.Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    VOIDED = "voided"


class TopupCode(Base):
    """active -> redeemed or active -> voided, exactly once"""

    __tablename__ = "topup_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(14), unique=True, nullable=False, index=True)  # XXXX-XXXX-XXXX
    amount = Column(Numeric(12, 2), nullable=False)

    status = Column(
        SQLEnum(TopupCodeStatus, name="topup_code_status", values_callable=lambda x: [e.value for e in x]),
        default=TopupCodeStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    redeemed_by = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    redeemed_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)

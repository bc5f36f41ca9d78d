"""
User Model - buyers, sellers, drivers and admins
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from marketplace.db.database import Base, utcnow


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    DRIVER = "driver"
    ADMIN = "admin"


class User(Base):
    """Account record. Credentials live with the identity provider."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    phone_number = Column(String(20), unique=True, index=True, nullable=True)
    role = Column(
        SQLEnum(UserRole, name="user_role", values_callable=lambda x: [e.value for e in x]),
        default=UserRole.BUYER,
        nullable=False,
    )
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

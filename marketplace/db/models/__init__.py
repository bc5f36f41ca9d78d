"""
Database Models
"""
from marketplace.db.models.user import User, UserRole
from marketplace.db.models.product import Product
from marketplace.db.models.order import Order, OrderItem, OrderStatus
from marketplace.db.models.delivery import Delivery, DeliveryStatus
from marketplace.db.models.settlement import Settlement, SettlementStatus
from marketplace.db.models.cash_collection import CashCollection, CashCollectionStatus
from marketplace.db.models.wallet_ledger import WalletLedgerEntry, LedgerEntryType
from marketplace.db.models.topup_code import TopupCode, TopupCodeStatus
from marketplace.db.models.reward import RewardRule, RewardEvent
from marketplace.db.models.platform_setting import PlatformSetting
from marketplace.db.models.audit_log import AuditLog, AuditAction

__all__ = [
    "User",
    "UserRole",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Delivery",
    "DeliveryStatus",
    "Settlement",
    "SettlementStatus",
    "CashCollection",
    "CashCollectionStatus",
    "WalletLedgerEntry",
    "LedgerEntryType",
    "TopupCode",
    "TopupCodeStatus",
    "RewardRule",
    "RewardEvent",
    "PlatformSetting",
    "AuditLog",
    "AuditAction",
]

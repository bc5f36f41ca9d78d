"""
Domain Services
"""
from marketplace.domain.services.notification_service import ChangeNotifier, change_notifier
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.platform_settings_service import PlatformSettingsService
from marketplace.domain.services.wallet_service import WalletService
from marketplace.domain.services.topup_code_service import TopupCodeService
from marketplace.domain.services.reward_service import RewardService
from marketplace.domain.services.settlement_service import SettlementService
from marketplace.domain.services.cash_service import CashService
from marketplace.domain.services.delivery_service import DeliveryService
from marketplace.domain.services.order_service import OrderService

__all__ = [
    "ChangeNotifier",
    "change_notifier",
    "AuditService",
    "PlatformSettingsService",
    "WalletService",
    "TopupCodeService",
    "RewardService",
    "SettlementService",
    "CashService",
    "DeliveryService",
    "OrderService",
]

"""
Helpers for end-to-end scenarios.

Provides:
- Fresh-from-DB assertions (order status, wallet balance, ledger rows)
- A redeemable code fixture
"""
import pytest
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.models.order import Order, OrderStatus
from marketplace.db.models.topup_code import TopupCode, TopupCodeStatus
from marketplace.db.models.wallet_ledger import WalletLedgerEntry, LedgerEntryType
from marketplace.domain.services.wallet_service import WalletService


async def assert_order_status(
    db_session: AsyncSession,
    order_id: int,
    expected: OrderStatus,
) -> None:
    status = await db_session.scalar(select(Order.status).where(Order.id == order_id))
    assert status == expected, f"expected {expected.value}, got {status}"


async def assert_wallet_balance(
    db_session: AsyncSession,
    user_id: int,
    expected: str,
) -> None:
    balance = await WalletService(db_session).balance(user_id)
    assert balance == Decimal(expected), f"expected {expected}, got {balance}"


async def assert_ledger_count(
    db_session: AsyncSession,
    user_id: int,
    expected: int,
    entry_type: LedgerEntryType | None = None,
) -> None:
    query = select(func.count(WalletLedgerEntry.id)).where(WalletLedgerEntry.user_id == user_id)
    if entry_type is not None:
        query = query.where(WalletLedgerEntry.entry_type == entry_type)
    count = await db_session.scalar(query)
    assert count == expected, f"expected {expected} ledger rows, got {count}"


@pytest.fixture
def code_factory(db_session: AsyncSession):
    """Insert a code directly, bypassing generation"""
    async def _create(code: str, amount: str, created_by: int) -> int:
        row = TopupCode(code=code, amount=Decimal(amount), status=TopupCodeStatus.ACTIVE, created_by=created_by)
        db_session.add(row)
        await db_session.commit()
        return row.id

    return _create

"""
Transition tables for every status machine.

Services consult these before issuing a conditional UPDATE; the UPDATE's
``WHERE status = <current>`` is what makes the transition safe under
concurrency, the table only decides whether it is legal at all.
"""
from enum import Enum
from typing import Mapping, TypeVar

from marketplace.db.models.order import OrderStatus
from marketplace.db.models.delivery import DeliveryStatus
from marketplace.db.models.settlement import SettlementStatus
from marketplace.db.models.cash_collection import CashCollectionStatus
from marketplace.db.models.topup_code import TopupCodeStatus

S = TypeVar("S", bound=Enum)


ORDER_TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PLACED: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.PICKED_UP, OrderStatus.CANCELLED}),
    OrderStatus.PICKED_UP: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses a seller (or an admin acting for one) may request directly.
# assigned / picked_up / delivered are driven by the delivery lifecycle.
SELLER_ORDER_TARGETS = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.CANCELLED,
})

ORDER_TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

DELIVERY_TRANSITIONS: Mapping[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.AVAILABLE: frozenset({DeliveryStatus.ASSIGNED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.PICKED_UP}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.DELIVERED}),
    DeliveryStatus.DELIVERED: frozenset(),
}

# Order status that mirrors each delivery status once the driver moves it
DELIVERY_TO_ORDER_STATUS: Mapping[DeliveryStatus, OrderStatus] = {
    DeliveryStatus.ASSIGNED: OrderStatus.ASSIGNED,
    DeliveryStatus.PICKED_UP: OrderStatus.PICKED_UP,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
}

SETTLEMENT_TRANSITIONS: Mapping[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({SettlementStatus.PAID}),
    SettlementStatus.PAID: frozenset(),
}

CASH_TRANSITIONS: Mapping[CashCollectionStatus, frozenset[CashCollectionStatus]] = {
    CashCollectionStatus.PENDING: frozenset({CashCollectionStatus.COLLECTED}),
    CashCollectionStatus.COLLECTED: frozenset({CashCollectionStatus.CONFIRMED}),
    CashCollectionStatus.CONFIRMED: frozenset(),
}

TOPUP_CODE_TRANSITIONS: Mapping[TopupCodeStatus, frozenset[TopupCodeStatus]] = {
    TopupCodeStatus.ACTIVE: frozenset({TopupCodeStatus.REDEEMED, TopupCodeStatus.VOIDED}),
    TopupCodeStatus.REDEEMED: frozenset(),
    TopupCodeStatus.VOIDED: frozenset(),
}


def can_transition(table: Mapping[S, frozenset[S]], current: S, target: S) -> bool:
    """True if ``current -> target`` is an edge of ``table``"""
    return target in table.get(current, frozenset())


def predecessors(table: Mapping[S, frozenset[S]], target: S) -> frozenset[S]:
    """Every state with an edge into ``target``"""
    return frozenset(state for state, targets in table.items() if target in targets)

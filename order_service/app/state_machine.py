"""Order status transitions shared by the pay flow and the webhook reconciler.

Payment transitions only ever leave ``pending_payment``:

    pending_payment --approved--> processing   (paid_at set)
    pending_payment --rejected--> failed       (reserved stock released)
    pending_payment --other-----> pending_payment (payment detail stored)

From any other status a payment result is a no-op, which is what makes
duplicate or late notifications harmless. So is a result for a payment
other than the one the order already records, and a non-final result
identical to the one already stored. Admin transitions move paid
orders on to shipped and delivered.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Tuple

import structlog

from .errors import InvalidTransitionError
from .gateway import APPROVED, REJECTED, GatewayResult
from .inventory import InventoryLedger
from .models import Order, OrderStatus
from .repository import OrderRepository

logger = structlog.get_logger(__name__)

PAYMENT_TRANSITIONS: Dict[str, OrderStatus] = {
    APPROVED: OrderStatus.PROCESSING,
    REJECTED: OrderStatus.FAILED,
}

ADMIN_TRANSITIONS: Dict[OrderStatus, Tuple[OrderStatus, ...]] = {
    OrderStatus.SHIPPED: (OrderStatus.PROCESSING, OrderStatus.PAID),
    OrderStatus.DELIVERED: (OrderStatus.SHIPPED,),
}


@dataclass(frozen=True)
class TransitionOutcome:
    previous_status: str
    status: str
    applied: bool  # False when the guard turned the call into a no-op.
    stock_released: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status


class OrderStateMachine:
    def __init__(self, orders: OrderRepository, ledger: InventoryLedger):
        self.orders = orders
        self.ledger = ledger

    def apply_payment(self, order: Order, result: GatewayResult) -> TransitionOutcome:
        """Apply a gateway-reported payment status to ``order``.

        The order row is flushed (with its version check) before any stock is
        released, so a concurrent writer that loses the race raises
        ConcurrentUpdateError without touching inventory. Committing is the
        caller's job.
        """
        previous = order.status
        if previous != OrderStatus.PENDING_PAYMENT.value:
            logger.info(
                "payment_transition_skipped",
                order_id=order.order_id,
                status=previous,
                gateway_status=result.status,
            )
            return TransitionOutcome(previous, previous, applied=False)

        # One payment attempt per order: results for any other attempt are ignored.
        if order.gateway_payment_id is not None and order.gateway_payment_id != result.id:
            logger.warning(
                "payment_transition_mismatch",
                order_id=order.order_id,
                order_payment_id=order.gateway_payment_id,
                payment_id=result.id,
            )
            return TransitionOutcome(previous, previous, applied=False)

        target = PAYMENT_TRANSITIONS.get(result.status)
        payment_result = result.payment_result()
        if target is None and order.gateway_payment_id == result.id and order.payment_result == payment_result:
            logger.info("payment_transition_unchanged", order_id=order.order_id, payment_id=result.id)
            return TransitionOutcome(previous, previous, applied=False)

        if order.gateway_payment_id is None:
            order.gateway_payment_id = result.id
        order.payment_result = payment_result
        if result.installments:
            order.installments = result.installments

        if target is OrderStatus.PROCESSING:
            order.status = target.value
            order.paid_at = datetime.now(timezone.utc)
        elif target is OrderStatus.FAILED:
            order.status = target.value

        self.orders.save(order)

        released = False
        if target is OrderStatus.FAILED:
            for item in order.items:
                self.ledger.release(item.product_id, item.quantity)
            released = True

        logger.info(
            "payment_transition_applied",
            order_id=order.order_id,
            payment_id=result.id,
            gateway_status=result.status,
            previous_status=previous,
            status=order.status,
            stock_released=released,
        )
        return TransitionOutcome(previous, order.status, applied=True, stock_released=released)

    def ship(self, order: Order) -> TransitionOutcome:
        return self._admin_transition(order, OrderStatus.SHIPPED)

    def deliver(self, order: Order) -> TransitionOutcome:
        return self._admin_transition(order, OrderStatus.DELIVERED)

    def _admin_transition(self, order: Order, target: OrderStatus) -> TransitionOutcome:
        previous = order.status
        allowed = {status.value for status in ADMIN_TRANSITIONS[target]}
        if previous not in allowed:
            raise InvalidTransitionError(previous, target.value)

        order.status = target.value
        if target is OrderStatus.DELIVERED and order.delivered_at is None:
            order.delivered_at = datetime.now(timezone.utc)
        self.orders.save(order)

        logger.info("order_transition_applied", order_id=order.order_id, previous_status=previous, status=order.status)
        return TransitionOutcome(previous, order.status, applied=True)

"""Synchronous payment initiation for a pending order."""

from typing import Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings
from .database import UnitOfWork
from .errors import (
    ConcurrentUpdateError,
    GatewayCallError,
    GatewayUnavailableError,
    OrderNotFoundError,
    OrderNotPendingError,
    PaymentAlreadyInitiatedError,
    PaymentPersistenceError,
)
from .gateway import GatewayResult, PaymentGatewayClient
from .inventory import SqlInventoryLedger
from .models import Order, OrderStatus
from .repository import OrderRepository
from .schemas import PayOrderRequest
from .state_machine import OrderStateMachine, TransitionOutcome

logger = structlog.get_logger(__name__)


def publish_payment_outcome(producer, order: Order, outcome: Optional[TransitionOutcome]) -> None:
    """Post-commit notification for orders whose payment reached a final state."""
    if outcome is None or not outcome.status_changed:
        return
    if order.status == OrderStatus.PROCESSING.value:
        routing_key = "payment.succeeded"
    elif order.status == OrderStatus.FAILED.value:
        routing_key = "payment.failed"
    else:
        return
    producer.publish(
        routing_key,
        {
            "order_id": order.order_id,
            "payment_id": order.gateway_payment_id,
            "status": order.status,
            "stock_released": outcome.stock_released,
        },
    )


class PaymentInitiator:
    def __init__(
        self,
        session: Session,
        gateway: Optional[PaymentGatewayClient],
        settings: Settings,
        producer,
    ):
        self.session = session
        self.gateway = gateway
        self.settings = settings
        self.producer = producer
        self.orders = OrderRepository(session)
        self.state_machine = OrderStateMachine(self.orders, SqlInventoryLedger(session))

    def pay(self, order_id: str, user_id: str, details: PayOrderRequest) -> Tuple[Order, Optional[TransitionOutcome]]:
        """Submit the order's payment and apply the gateway's immediate answer.

        Returns the updated order and the transition outcome. The outcome is
        None when a concurrent webhook already resolved the order and this
        call deferred to it.
        """
        if self.gateway is None or not self.gateway.is_configured:
            raise GatewayUnavailableError()

        order = self.orders.get_for_user(order_id, user_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise OrderNotPendingError(order.status)
        if order.gateway_payment_id:
            raise PaymentAlreadyInitiatedError()

        request = self._payment_request(order, details)
        log = logger.bind(order_id=order.order_id, user_id=user_id)
        log.info("payment_submitting", amount=request["transaction_amount"])

        # GatewayRequestError (4xx) propagates as-is; nothing has been changed yet.
        try:
            result = self.gateway.create_payment(request, idempotency_key=order.order_id)
        except GatewayCallError as exc:
            log.error("payment_gateway_call_failed", error=exc.message)
            raise

        log.info("payment_submitted", payment_id=result.id, gateway_status=result.status)

        try:
            order, outcome = self._apply(order, result)
        except SQLAlchemyError as exc:
            # The payment exists at the gateway but not locally; the webhook closes this gap.
            log.critical(
                "payment_reconciliation_gap",
                payment_id=result.id,
                gateway_status=result.status,
                error=repr(exc),
            )
            raise PaymentPersistenceError() from exc

        publish_payment_outcome(self.producer, order, outcome)
        return order, outcome

    def _apply(self, order: Order, result: GatewayResult) -> Tuple[Order, Optional[TransitionOutcome]]:
        try:
            with UnitOfWork(self.session) as uow:
                outcome = self.state_machine.apply_payment(order, result)
                uow.commit()
            return order, outcome
        except ConcurrentUpdateError:
            logger.warning("payment_apply_conflict", order_id=order.order_id, payment_id=result.id)

        # A webhook touched the order between our read and our write.
        current = self.orders.get(order.order_id)
        if current.status != OrderStatus.PENDING_PAYMENT.value:
            return current, None
        if current.gateway_payment_id and current.gateway_payment_id != result.id:
            logger.warning(
                "payment_attempt_superseded",
                order_id=current.order_id,
                payment_id=result.id,
                order_payment_id=current.gateway_payment_id,
            )
            raise PaymentAlreadyInitiatedError()
        with UnitOfWork(self.session) as uow:
            outcome = self.state_machine.apply_payment(current, result)
            uow.commit()
        return current, outcome

    def _payment_request(self, order: Order, details: PayOrderRequest) -> dict:
        request = {
            "transaction_amount": float(order.total_price),
            "token": details.token,
            "description": f"Order #{order.order_id[-6:]}",
            "installments": details.installments,
            "payment_method_id": details.payment_method_id,
            "payer": {"email": details.payer.email},
            "external_reference": order.order_id,
        }
        if details.issuer_id:
            request["issuer_id"] = details.issuer_id
        if self.settings.mp_notification_url:
            request["notification_url"] = self.settings.mp_notification_url
        return request

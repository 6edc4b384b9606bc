"""Inbound payment notifications: signature verification and reconciliation.

The gateway signs ``id:<data.id>;ts:<ts>`` (plus ``request-id:<id>`` when it
sends an ``x-request-id`` header) with HMAC-SHA256 and puts the result in
``x-signature: ts=<unix-ms>,v1=<hex>``. The body itself is not signed; the
reconciler never trusts it for anything but the payment id and always reads
the payment back from the gateway.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import UnitOfWork
from .errors import (
    ConcurrentUpdateError,
    InvalidSignatureError,
    MissingSignatureError,
    OrderServiceError,
    StaleSignatureError,
)
from .gateway import PaymentGatewayClient
from .inventory import SqlInventoryLedger
from .models import OrderStatus
from .payments import publish_payment_outcome
from .repository import OrderRepository
from .state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


def parse_signature_header(header: str) -> Tuple[str, str]:
    """Split ``ts=...,v1=...`` into (ts, v1)."""
    parts = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    timestamp, signature = parts.get("ts"), parts.get("v1")
    if not timestamp or not signature:
        raise InvalidSignatureError("Malformed 'x-signature' header (ts or v1 missing).")
    return timestamp, signature


class WebhookSignatureVerifier:
    def __init__(
        self,
        secret: Optional[str],
        tolerance_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    @staticmethod
    def signing_string(event_id: str, timestamp: str, request_id: Optional[str] = None) -> str:
        parts = [f"id:{event_id}"]
        if request_id:
            parts.append(f"request-id:{request_id}")
        parts.append(f"ts:{timestamp}")
        return ";".join(parts)

    def sign(self, event_id: str, timestamp: str, request_id: Optional[str] = None) -> str:
        message = self.signing_string(event_id, timestamp, request_id)
        return hmac.new(self.secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(
        self,
        signature_header: Optional[str],
        event_id: Optional[str],
        request_id: Optional[str] = None,
    ) -> None:
        """Raise unless the header carries a valid signature for ``event_id``."""
        if not signature_header:
            raise MissingSignatureError()
        if not self.secret:
            logger.critical("webhook_secret_missing")
            raise InvalidSignatureError("Webhook secret not configured.")

        timestamp, received = parse_signature_header(signature_header)
        if not event_id:
            raise InvalidSignatureError("Missing 'data.id' query parameter.")

        expected = self.sign(event_id, timestamp, request_id)
        if not hmac.compare_digest(expected.encode("utf-8"), received.lower().encode("utf-8")):
            logger.warning("webhook_signature_mismatch", event_id=event_id, ts=timestamp)
            raise InvalidSignatureError()

        if self.tolerance_seconds > 0:
            try:
                sent_at_ms = int(timestamp)
            except ValueError:
                raise InvalidSignatureError("Signature timestamp is not a number.") from None
            age = abs(self.clock() * 1000 - sent_at_ms) / 1000
            if age > self.tolerance_seconds:
                raise StaleSignatureError()


def parse_notification(body: bytes, query: Mapping[str, str]) -> dict:
    """Notification payload from the body, falling back to the query string.

    The query ``data.id`` is the one covered by the signature, so it wins
    over the body's whenever both are present.
    """
    try:
        payload = json.loads(body) if body else {}
    except (ValueError, UnicodeDecodeError):
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    return {
        "type": payload.get("type") or query.get("type"),
        "action": payload.get("action"),
        "data": {"id": query.get("data.id") or data.get("id")},
    }


@dataclass(frozen=True)
class ReconciliationResult:
    processed: bool
    message: Optional[str] = None
    error: Optional[str] = None

    def to_response(self) -> dict:
        body = {"received": True, "processed": self.processed}
        if self.message:
            body["message"] = self.message
        if self.error:
            body["error"] = self.error
        return body


class WebhookReconciler:
    def __init__(self, session: Session, gateway: Optional[PaymentGatewayClient], producer):
        self.session = session
        self.gateway = gateway
        self.producer = producer
        self.orders = OrderRepository(session)
        self.state_machine = OrderStateMachine(self.orders, SqlInventoryLedger(session))

    def reconcile(self, notification: dict) -> ReconciliationResult:
        event_type = notification.get("type")
        payment_id = (notification.get("data") or {}).get("id")
        if event_type != "payment" or not payment_id:
            logger.info("webhook_ignored", type=event_type, payment_id=payment_id)
            return ReconciliationResult(False, message="Event type ignored or data id missing.")

        payment_id = str(payment_id)
        log = logger.bind(payment_id=payment_id)

        if self.gateway is None or not self.gateway.is_configured:
            log.error("webhook_gateway_unavailable")
            return ReconciliationResult(False, error="Payment gateway not configured.")

        try:
            result = self.gateway.get_payment(payment_id)
        except OrderServiceError as exc:
            # The sender is acked anyway; the log is the operator's signal.
            log.error("webhook_payment_fetch_failed", error=exc.message)
            return ReconciliationResult(False, error=exc.message)

        if not result.external_reference:
            log.warning("webhook_payment_without_reference", gateway_status=result.status)
            return ReconciliationResult(False, message="Payment has no external reference.")

        log = log.bind(order_id=result.external_reference, gateway_status=result.status)
        order = self.orders.get(result.external_reference)
        if order is None:
            log.warning("webhook_order_not_found")
            return ReconciliationResult(False, message="Order not found.")

        if order.status != OrderStatus.PENDING_PAYMENT.value:
            log.info("webhook_noop_order_settled", status=order.status)
            return ReconciliationResult(False, message=f"Order already {order.status}; nothing to do.")
        if order.gateway_payment_id and order.gateway_payment_id != result.id:
            log.warning("webhook_payment_mismatch", order_payment_id=order.gateway_payment_id)
            return ReconciliationResult(False, message="Payment does not match the order's payment attempt.")

        try:
            with UnitOfWork(self.session) as uow:
                outcome = self.state_machine.apply_payment(order, result)
                uow.commit()
        except ConcurrentUpdateError:
            log.info("webhook_noop_concurrent_update")
            return ReconciliationResult(False, message="Order updated concurrently; nothing to do.")
        except SQLAlchemyError as exc:
            log.error("webhook_persist_failed", error=repr(exc))
            return ReconciliationResult(False, error="Internal processing error occurred.")

        if not outcome.applied:
            log.info("webhook_noop_already_recorded")
            return ReconciliationResult(False, message="Payment already recorded; nothing to do.")

        publish_payment_outcome(self.producer, order, outcome)
        log.info("webhook_processed", status=order.status)
        return ReconciliationResult(True, message=f"Order status: {order.status}.")

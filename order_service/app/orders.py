"""Order creation: cart snapshot -> priced order -> stock reservation -> cart clear."""

import uuid
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .carts import AddressBook, CartStore
from .config import Settings
from .database import UnitOfWork
from .errors import (
    CartNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    InvalidAddressError,
    OrderNotFoundError,
    ValidationError,
)
from .inventory import SqlInventoryLedger, shortage_line
from .models import Order, OrderItem, OrderStatus, Product
from .repository import OrderRepository
from .state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def shipping_price_for(items_price: Decimal, fee: Decimal, free_threshold: Decimal) -> Decimal:
    """Flat-rate shipping: free strictly above the threshold."""
    return money(0) if items_price > free_threshold else money(fee)


class OrderCreationTransaction:
    def __init__(self, session: Session, settings: Settings, producer):
        self.session = session
        self.settings = settings
        self.producer = producer
        self.carts = CartStore(session)
        self.addresses = AddressBook(session)
        self.ledger = SqlInventoryLedger(session)
        self.orders = OrderRepository(session)

    def create(self, user_id: str, shipping_address_id: int, payment_method: str) -> Order:
        payment_method = (payment_method or "").strip()
        if not payment_method:
            raise ValidationError("Payment method is required.")

        with UnitOfWork(self.session) as uow:
            cart = self.carts.load(user_id)
            if cart is None:
                raise CartNotFoundError()
            if cart.is_empty:
                raise EmptyCartError()

            address = self.addresses.get_for_user(shipping_address_id, user_id)
            if address is None:
                raise InvalidAddressError(shipping_address_id)

            items = self._price_lines(cart.lines)

            items_price = money(sum((item.unit_price * item.quantity for item in items), Decimal(0)))
            shipping_price = shipping_price_for(
                items_price, self.settings.shipping_fee, self.settings.free_shipping_threshold
            )
            order = Order(
                order_id=str(uuid.uuid4()),
                user_id=user_id,
                items=items,
                shipping_address=address,
                payment_method=payment_method,
                items_price=items_price,
                shipping_price=shipping_price,
                total_price=items_price + shipping_price,
                status=OrderStatus.PENDING_PAYMENT.value,
            )
            self.orders.add(order)

            for item in order.items:
                self.ledger.reserve(item.product_id, item.quantity)

            self.carts.clear(user_id)
            uow.commit()

        logger.info(
            "order_created",
            order_id=order.order_id,
            user_id=user_id,
            items=len(order.items),
            total_price=str(order.total_price),
        )
        self.producer.publish(
            "order.created",
            {
                "order_id": order.order_id,
                "user_id": user_id,
                "total_price": str(order.total_price),
                "items": [
                    {"product_id": item.product_id, "quantity": item.quantity}
                    for item in order.items
                ],
            },
        )
        return order

    def _price_lines(self, lines):
        """Build order items from cart lines, failing with every short line at once."""
        product_ids = [line.product_id for line in lines]
        products = {
            product.id: product
            for product in self.session.execute(
                select(Product).where(Product.id.in_(product_ids))
            ).scalars()
        }

        # The same product may appear on several lines; check the total.
        requested = {}
        for line in lines:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        shortages = []
        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                shortages.append(shortage_line(f"Product {product_id}", 0, quantity))
            elif product.stock < quantity:
                shortages.append(shortage_line(product.name, product.stock, quantity))
        if shortages:
            logger.info("order_rejected_insufficient_stock", shortages=shortages)
            raise InsufficientStockError(shortages)

        return [
            OrderItem(
                product_id=line.product_id,
                name=products[line.product_id].name,
                quantity=line.quantity,
                unit_price=money(products[line.product_id].price),
                image=products[line.product_id].image,
            )
            for line in lines
        ]


class OrderFulfillment:
    """Admin moves of a paid order: ship, then deliver."""

    def __init__(self, session: Session, producer):
        self.session = session
        self.producer = producer
        self.orders = OrderRepository(session)
        self.state_machine = OrderStateMachine(self.orders, SqlInventoryLedger(session))

    def ship(self, order_id: str) -> Order:
        return self._move(order_id, self.state_machine.ship, "order.shipped")

    def deliver(self, order_id: str) -> Order:
        return self._move(order_id, self.state_machine.deliver, "order.delivered")

    def _move(self, order_id: str, transition, routing_key: str) -> Order:
        with UnitOfWork(self.session) as uow:
            order = self.orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            transition(order)
            uow.commit()

        self.producer.publish(routing_key, {"order_id": order.order_id, "status": order.status})
        return order

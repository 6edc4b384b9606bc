import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Stock-bearing catalog entry. Catalog CRUD lives elsewhere; this service
# only reads names/prices and moves stock through the inventory ledger.
class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)  # Units available to reserve.
    image = Column(String)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)

    items = relationship("CartItem", cascade="all, delete-orphan", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    label = Column(String)
    street = Column(String, nullable=False)
    number = Column(String, nullable=False)
    complement = Column(String)
    neighborhood = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    country = Column(String, nullable=False, default="Brasil")
    phone = Column(String)

    SNAPSHOT_FIELDS = (
        "label", "street", "number", "complement", "neighborhood",
        "city", "state", "postal_code", "country", "phone",
    )

    def snapshot(self) -> dict:
        """Copy of the address as it is now, for embedding in an order."""
        return {field: getattr(self, field) for field in self.SNAPSHOT_FIELDS}


# Defines the ORM model for an 'Order' stored in the database.
class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)  # Auto-incrementing primary key.
    order_id = Column(String, unique=True, index=True, nullable=False)  # Business-level id, sent as external_reference.
    user_id = Column(String, index=True, nullable=False)

    shipping_address = Column(JSON, nullable=False)  # Snapshot taken at creation.
    payment_method = Column(String, nullable=False)

    items_price = Column(Numeric(10, 2), nullable=False)
    shipping_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    installments = Column(Integer, nullable=False, default=1)

    status = Column(String, index=True, nullable=False, default=OrderStatus.PENDING_PAYMENT.value)
    gateway_payment_id = Column(String, index=True)  # Unset until a payment attempt begins.
    payment_result = Column(JSON)  # Last gateway-reported payment detail.

    paid_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # Optimistic concurrency: every UPDATE checks and bumps this column.
    version = Column(Integer, nullable=False)

    items = relationship(
        "OrderItem", cascade="all, delete-orphan", order_by="OrderItem.id", lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)  # Copied at purchase time.
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)  # Copied at purchase time.
    image = Column(String)

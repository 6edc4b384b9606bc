"""Inventory ledger: the single source of truth for stock counts.

Reserve and release are single conditional UPDATE statements, so each one
is atomic per product row without any application-level locking. They run
inside the caller's transaction and are undone with it.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import InsufficientStockError, ProductNotFoundError, ValidationError
from .models import Product

logger = structlog.get_logger(__name__)


def shortage_line(name: str, available: int, requested: int) -> str:
    return f"{name} (available: {available}, requested: {requested})"


class InventoryLedger(ABC):
    @abstractmethod
    def available(self, product_id: int) -> Optional[int]:
        """Current stock, or None if the product does not exist."""

    @abstractmethod
    def reserve(self, product_id: int, quantity: int) -> int:
        """Take ``quantity`` units out of stock; returns the remaining stock."""

    @abstractmethod
    def release(self, product_id: int, quantity: int) -> int:
        """Return units held by an order that will not be paid; returns the new stock."""

    @abstractmethod
    def restock(self, product_id: int, quantity: int) -> int:
        """Add newly received units to stock; returns the new stock."""


class SqlInventoryLedger(InventoryLedger):
    def __init__(self, session: Session):
        self.session = session

    def available(self, product_id: int) -> Optional[int]:
        return self.session.execute(
            select(Product.stock).where(Product.id == product_id)
        ).scalar_one_or_none()

    def reserve(self, product_id: int, quantity: int) -> int:
        _check_quantity(quantity)
        # Conditional decrement: never lets stock go negative.
        result = self.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
        )
        if result.rowcount != 1:
            row = self.session.execute(
                select(Product.name, Product.stock).where(Product.id == product_id)
            ).first()
            if row is None:
                raise ProductNotFoundError(product_id)
            raise InsufficientStockError([shortage_line(row.name, row.stock, quantity)])

        remaining = self.available(product_id)
        logger.info("stock_reserved", product_id=product_id, quantity=quantity, remaining=remaining)
        return remaining

    def release(self, product_id: int, quantity: int) -> int:
        stock = self._add(product_id, quantity)
        logger.info("stock_released", product_id=product_id, quantity=quantity, stock=stock)
        return stock

    def restock(self, product_id: int, quantity: int) -> int:
        stock = self._add(product_id, quantity)
        logger.info("stock_restocked", product_id=product_id, quantity=quantity, stock=stock)
        return stock

    def _add(self, product_id: int, quantity: int) -> int:
        _check_quantity(quantity)
        result = self.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
        )
        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)
        return self.available(product_id)


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValidationError(f"Quantity must be at least 1, got {quantity}.")

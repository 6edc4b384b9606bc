"""Read-side adapters over the cart and the address book.

Both are owned by other parts of the shop; the order flows only need to
snapshot them and, for the cart, empty it once an order is placed.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Address, Cart


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class CartSnapshot:
    user_id: str
    lines: List[CartLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines


class CartStore:
    def __init__(self, session: Session):
        self.session = session

    def _cart(self, user_id: str) -> Optional[Cart]:
        return self.session.execute(
            select(Cart).where(Cart.user_id == user_id)
        ).scalar_one_or_none()

    def load(self, user_id: str) -> Optional[CartSnapshot]:
        cart = self._cart(user_id)
        if cart is None:
            return None
        return CartSnapshot(
            user_id=user_id,
            lines=[CartLine(item.product_id, item.quantity) for item in cart.items],
        )

    def clear(self, user_id: str) -> None:
        cart = self._cart(user_id)
        if cart is not None:
            cart.items.clear()
            self.session.flush()


class AddressBook:
    def __init__(self, session: Session):
        self.session = session

    def get_for_user(self, address_id: int, user_id: str) -> Optional[dict]:
        """Snapshot of the address, or None when it is missing or owned by someone else."""
        address = self.session.execute(
            select(Address).where(Address.id == address_id, Address.user_id == user_id)
        ).scalar_one_or_none()
        return address.snapshot() if address is not None else None

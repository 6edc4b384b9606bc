from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrentUpdateError, DuplicateOrderError, ValidationError
from .models import Order

# Accepted values for the admin listing "sort" parameter.
SORT_FIELDS = {
    "created_at": Order.created_at,
    "total_price": Order.total_price,
    "status": Order.status,
}


class OrderRepository:
    """Storage adapter for orders.

    Translates storage-engine failures into typed domain conflicts so the
    flows above never inspect SQLAlchemy exceptions.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, order_id: str) -> Optional[Order]:
        return self.session.execute(
            select(Order).where(Order.order_id == order_id)
        ).scalar_one_or_none()

    def get_for_user(self, order_id: str, user_id: str) -> Optional[Order]:
        return self.session.execute(
            select(Order).where(Order.order_id == order_id, Order.user_id == user_id)
        ).scalar_one_or_none()

    def list_for_user(self, user_id: str) -> List[Order]:
        return list(
            self.session.execute(
                select(Order)
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
            ).scalars()
        )

    def list_all(self, page: int = 1, limit: int = 20, sort: str = "-created_at") -> Tuple[List[Order], int]:
        """One page of all orders plus the total count."""
        descending = sort.startswith("-")
        column = SORT_FIELDS.get(sort.lstrip("-"))
        if column is None:
            raise ValidationError(
                f"Invalid sort field '{sort}'. Use one of: {', '.join(sorted(SORT_FIELDS))}."
            )
        ordering = column.desc() if descending else column.asc()
        tiebreak = Order.id.desc() if descending else Order.id.asc()

        total = self.session.execute(select(func.count(Order.id))).scalar_one()
        orders = self.session.execute(
            select(Order).order_by(ordering, tiebreak).offset((page - 1) * limit).limit(limit)
        ).scalars()
        return list(orders), total

    def add(self, order: Order) -> Order:
        self.session.add(order)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateOrderError() from exc
        return order

    def save(self, order: Order) -> Order:
        """Flush pending changes to ``order``, enforcing the version check."""
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdateError() from exc
        return order

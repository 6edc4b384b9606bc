from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .models import Order


class CreateOrderRequest(BaseModel):
    """Body of POST /orders."""
    shipping_address_id: int
    payment_method: str = Field(min_length=1)

    @field_validator("payment_method")
    @classmethod
    def strip_payment_method(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("payment method is required")
        return value


class Payer(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PayOrderRequest(BaseModel):
    """Tokenized payment data produced by the gateway's browser SDK."""
    token: str = Field(min_length=1)
    payment_method_id: str = Field(min_length=1)
    installments: int = Field(default=1, ge=1)
    issuer_id: Optional[str] = None
    payer: Payer


class RestockRequest(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _timestamp(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_order(order: Order) -> dict:
    return {
        "order_id": order.order_id,
        "user_id": order.user_id,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": _money(item.unit_price),
                "image": item.image,
            }
            for item in order.items
        ],
        "shipping_address": order.shipping_address,
        "payment_method": order.payment_method,
        "items_price": _money(order.items_price),
        "shipping_price": _money(order.shipping_price),
        "total_price": _money(order.total_price),
        "installments": order.installments,
        "status": order.status,
        "gateway_payment_id": order.gateway_payment_id,
        "payment_result": order.payment_result,
        "paid_at": _timestamp(order.paid_at),
        "delivered_at": _timestamp(order.delivered_at),
        "created_at": _timestamp(order.created_at),
        "updated_at": _timestamp(order.updated_at),
    }

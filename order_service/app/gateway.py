"""Payment gateway client.

The order flows only need two calls: create a payment and read a payment
back. ``PaymentGatewayClient`` is that capability set; ``MercadoPagoClient``
implements it over the gateway's REST API with ``requests``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests
import structlog

from .errors import GatewayCallError, GatewayRequestError, GatewayUnavailableError

logger = structlog.get_logger(__name__)

APPROVED = "approved"
REJECTED = "rejected"


@dataclass(frozen=True)
class GatewayResult:
    """A payment as reported by the gateway."""

    id: str
    status: str
    external_reference: Optional[str] = None
    status_detail: Optional[str] = None
    payment_method_id: Optional[str] = None
    card_last_four: Optional[str] = None
    payer_email: Optional[str] = None
    date_last_updated: Optional[str] = None
    installments: Optional[int] = None

    @classmethod
    def from_response(cls, data) -> "GatewayResult":
        if not isinstance(data, dict) or not data.get("id") or not data.get("status"):
            raise GatewayCallError("response is missing payment id or status")
        card = data.get("card") or {}
        payer = data.get("payer") or {}
        external_reference = data.get("external_reference")
        return cls(
            id=str(data["id"]),
            status=str(data["status"]),
            external_reference=str(external_reference) if external_reference else None,
            status_detail=data.get("status_detail"),
            payment_method_id=data.get("payment_method_id"),
            card_last_four=card.get("last_four_digits"),
            payer_email=payer.get("email"),
            date_last_updated=data.get("date_last_updated"),
            installments=data.get("installments"),
        )

    def payment_result(self) -> dict:
        """Shape stored on the order as ``payment_result``."""
        return {
            "id": self.id,
            "status": self.status,
            "update_time": self.date_last_updated or datetime.now(timezone.utc).isoformat(),
            "payer_email": self.payer_email,
            "card_brand": self.payment_method_id,
            "card_last_four": self.card_last_four,
        }


class PaymentGatewayClient(ABC):
    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def create_payment(self, request: dict, idempotency_key: Optional[str] = None) -> GatewayResult:
        ...

    @abstractmethod
    def get_payment(self, payment_id: str) -> GatewayResult:
        ...


class MercadoPagoClient(PaymentGatewayClient):
    def __init__(
        self,
        access_token: Optional[str],
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def create_payment(self, request: dict, idempotency_key: Optional[str] = None) -> GatewayResult:
        headers = {}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        data = self._request("POST", "/v1/payments", json=request, headers=headers)
        return GatewayResult.from_response(data)

    def get_payment(self, payment_id: str) -> GatewayResult:
        data = self._request("GET", f"/v1/payments/{payment_id}")
        return GatewayResult.from_response(data)

    def _request(self, method: str, path: str, headers: Optional[dict] = None, **kwargs) -> dict:
        if not self.is_configured:
            raise GatewayUnavailableError()

        url = f"{self.base_url}{path}"
        all_headers = {"Authorization": f"Bearer {self.access_token}"}
        all_headers.update(headers or {})

        try:
            response = self.session.request(
                method, url, headers=all_headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as exc:
            logger.warning("gateway_timeout", method=method, path=path, timeout=self.timeout)
            raise GatewayCallError(f"timed out after {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            logger.warning("gateway_unreachable", method=method, path=path, error=str(exc))
            raise GatewayCallError(str(exc)) from exc

        if 400 <= response.status_code < 500:
            message = _error_message(response)
            logger.info("gateway_request_rejected", path=path, http_status=response.status_code, message=message)
            raise GatewayRequestError(message, gateway_status=response.status_code)
        if response.status_code >= 500:
            raise GatewayCallError(f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayCallError("response is not valid JSON") from exc


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header

from .config import Settings, get_settings
from .errors import AuthenticationError, PermissionDeniedError
from .gateway import MercadoPagoClient, PaymentGatewayClient
from .messaging import LoggingProducer, RabbitMQProducer


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    """Caller identity as forwarded by the upstream authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError()
    return CurrentUser(user_id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise PermissionDeniedError()
    return user


@lru_cache
def _gateway(access_token: Optional[str], base_url: str, timeout: float) -> MercadoPagoClient:
    return MercadoPagoClient(access_token, base_url=base_url, timeout=timeout)


def get_gateway(settings: Settings = Depends(get_settings)) -> PaymentGatewayClient:
    return _gateway(settings.mp_access_token, settings.mp_api_base_url, settings.gateway_timeout_seconds)


@lru_cache
def _producer(host: Optional[str]):
    if host:
        return RabbitMQProducer(host)
    return LoggingProducer()


def get_producer(settings: Settings = Depends(get_settings)):
    return _producer(settings.rabbitmq_host)

"""FastAPI dependencies: service singletons and caller identity."""
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status

from marketplace_orders.core.order_service import OrderService
from marketplace_orders.core.order_workflow import OrderPlacementWorkflow
from marketplace_orders.core.services import build_order_service, build_order_workflow
from marketplace_orders.domain.models import CartOwner
from marketplace_orders.monitoring.health import HealthCheck


@lru_cache
def get_order_workflow() -> OrderPlacementWorkflow:
    return build_order_workflow()


@lru_cache
def get_order_service() -> OrderService:
    return build_order_service()


@lru_cache
def get_health_check() -> HealthCheck:
    return HealthCheck()


def get_current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    """Identity is resolved upstream and forwarded in the X-User-Id header."""
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return x_user_id


def get_cart_owner(
    x_user_id: Optional[int] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
) -> CartOwner:
    """Signed-in users own their cart by user id; guests by session id."""
    if x_user_id is not None:
        return CartOwner.for_user(x_user_id)
    if x_session_id:
        return CartOwner.for_session(x_session_id)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

"""
API routes for order placement and order management.
"""
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace_orders.core.order_service import OrderService
from marketplace_orders.core.order_workflow import OrderPlacementWorkflow
from marketplace_orders.core.payment_processor import PaymentValidationError
from marketplace_orders.domain.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusError,
    InvalidTransitionError,
    OrderError,
    OrderFinalizationError,
    OrderNotFoundError,
    PaymentFailedError,
    PlacementInProgressError,
    ProductNotFoundError,
)
from marketplace_orders.domain.models import CartOwner
from marketplace_orders.monitoring.health import HealthCheck

from .dependencies import (
    get_cart_owner,
    get_current_user_id,
    get_health_check,
    get_order_service,
    get_order_workflow,
)
from .schemas import (
    HealthCheckResponse,
    OrderResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    StatusListResponse,
    UpdateStatusRequest,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
monitoring_router = APIRouter(tags=["monitoring"])

_STATUS_CODES = {
    EmptyCartError: status.HTTP_400_BAD_REQUEST,
    ProductNotFoundError: status.HTTP_400_BAD_REQUEST,
    InsufficientStockError: status.HTTP_400_BAD_REQUEST,
    InvalidStatusError: status.HTTP_400_BAD_REQUEST,
    PaymentValidationError: status.HTTP_400_BAD_REQUEST,
    PaymentFailedError: status.HTTP_402_PAYMENT_REQUIRED,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    PlacementInProgressError: status.HTTP_409_CONFLICT,
    OrderFinalizationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _to_http_error(error: Exception) -> HTTPException:
    code = _STATUS_CODES.get(type(error), status.HTTP_400_BAD_REQUEST)
    detail: Dict[str, Any] = {"error": type(error).__name__, "message": str(error)}

    if isinstance(error, PaymentFailedError):
        detail["message"] = error.payment_message
        if error.order is not None:
            detail["order_id"] = error.order.order_id
    elif isinstance(error, OrderFinalizationError):
        # Money moved; the recovery sweep settles the order.
        detail["message"] = (
            "Your payment was received but the order could not be completed. "
            "It will be resolved automatically."
        )
        detail["order_id"] = error.order_id

    return HTTPException(status_code=code, detail=detail)


@order_router.post(
    "",
    response_model=PlaceOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Charge the caller's cart and create an order",
)
async def place_order(
    request: PlaceOrderRequest,
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    workflow: OrderPlacementWorkflow = Depends(get_order_workflow),
) -> PlaceOrderResponse:
    """
    Place an order from the caller's cart.

    Returns 202 when the cardholder must complete a 3-D Secure challenge.
    """
    logger.info("api_place_order_request", cart=owner.key)
    try:
        result = await workflow.place_order_for(owner, request.payment_token)
    except (OrderError, PaymentValidationError) as e:
        logger.warning("api_place_order_failed", error=str(e), error_type=type(e).__name__)
        raise _to_http_error(e)

    if result.requires_authentication:
        response.status_code = status.HTTP_202_ACCEPTED
    return PlaceOrderResponse.from_response(result)


@order_router.get(
    "/statuses",
    response_model=StatusListResponse,
    summary="List order statuses",
)
async def list_statuses(
    service: OrderService = Depends(get_order_service),
) -> StatusListResponse:
    return StatusListResponse(statuses=service.get_available_statuses())


@order_router.get(
    "",
    response_model=List[OrderResponse],
    summary="Order history",
    description="The caller's orders, newest first",
)
async def order_history(
    user_id: int = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
) -> List[OrderResponse]:
    orders = await service.get_order_history(user_id)
    return [OrderResponse.from_order(order) for order in orders]


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Order details",
)
async def order_details(
    order_id: int,
    user_id: int = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.get_order_details(order_id, user_id=user_id)
    except OrderNotFoundError as e:
        raise _to_http_error(e)
    return OrderResponse.from_order(order)


@order_router.post(
    "/{order_id}/authentication",
    response_model=PlaceOrderResponse,
    summary="Complete 3-D Secure authentication",
)
async def complete_authentication(
    order_id: int,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
    workflow: OrderPlacementWorkflow = Depends(get_order_workflow),
) -> PlaceOrderResponse:
    try:
        await service.get_order_details(order_id, user_id=user_id)
        result = await workflow.complete_authentication(order_id)
    except (OrderError, PaymentValidationError) as e:
        logger.warning("api_complete_authentication_failed", order_id=order_id, error=str(e))
        raise _to_http_error(e)

    if result.requires_authentication:
        response.status_code = status.HTTP_202_ACCEPTED
    return PlaceOrderResponse.from_response(result)


@order_router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description="Administrative status change validated against the transition table",
)
async def update_order_status(
    order_id: int,
    request: UpdateStatusRequest,
    user_id: int = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.update_order_status(order_id, request.status, acting_user_id=user_id)
    except OrderError as e:
        logger.warning("api_update_status_failed", order_id=order_id, error=str(e))
        raise _to_http_error(e)
    return OrderResponse.from_order(order)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness probe")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

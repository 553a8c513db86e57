"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from marketplace_orders.domain.models import CreateOrderResponse, Order, PaymentResult


class PlaceOrderRequest(BaseModel):
    """Request schema for placing an order from the caller's cart."""

    payment_token: str = Field(
        ..., min_length=10, max_length=100, description="Gateway payment method token"
    )

    @field_validator("payment_token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Payment token must not be blank")
        return v.strip()

    model_config = {"json_schema_extra": {"examples": [{"payment_token": "pm_card_visa"}]}}


class UpdateStatusRequest(BaseModel):
    """Request schema for an administrative status change."""

    status: str = Field(..., description="Target status literal, e.g. Shipped")


class OrderItemResponse(BaseModel):
    order_item_id: Optional[int] = None
    product_id: int
    quantity: int
    price: Decimal


class OrderResponse(BaseModel):
    """Response schema for an order."""

    order_id: int = Field(..., description="Order ID")
    user_id: Optional[int] = Field(default=None, description="Owning user")
    status: str = Field(..., description="Order status")
    total_amount: Decimal = Field(..., description="Total charged amount")
    order_date: datetime = Field(..., description="Creation timestamp")
    last_status_change_at: datetime = Field(..., description="Last status change timestamp")
    payment_reference: str = Field(..., description="Reference sent to the payment gateway")
    transaction_id: Optional[str] = Field(default=None, description="Gateway transaction ID")
    items: List[OrderItemResponse] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            status=order.status.value,
            total_amount=order.total_amount,
            order_date=order.order_date,
            last_status_change_at=order.last_status_change_at,
            payment_reference=order.payment_reference,
            transaction_id=order.transaction_id,
            items=[
                OrderItemResponse(
                    order_item_id=item.order_item_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=item.price,
                )
                for item in order.items
            ],
        )


class PaymentResultResponse(BaseModel):
    is_success: bool
    transaction_id: str
    message: str
    amount: Decimal
    payment_method: str
    processed_at: datetime
    requires_3d_secure: bool = False
    redirect_url: Optional[str] = None

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentResultResponse":
        return cls(
            is_success=result.is_success,
            transaction_id=result.transaction_id,
            message=result.message,
            amount=result.amount,
            payment_method=result.payment_method,
            processed_at=result.processed_at,
            requires_3d_secure=result.requires_3d_secure,
            redirect_url=result.redirect_url,
        )


class PlaceOrderResponse(BaseModel):
    """Response schema for order placement and authentication completion."""

    order: OrderResponse
    payment: PaymentResultResponse
    requires_authentication: bool = Field(
        default=False, description="Cardholder must complete a 3-D Secure challenge"
    )

    @classmethod
    def from_response(cls, response: CreateOrderResponse) -> "PlaceOrderResponse":
        return cls(
            order=OrderResponse.from_order(response.order),
            payment=PaymentResultResponse.from_result(response.payment_result),
            requires_authentication=response.requires_authentication,
        )


class StatusListResponse(BaseModel):
    statuses: List[str]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")

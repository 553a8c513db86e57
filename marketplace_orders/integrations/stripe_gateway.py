"""
Stripe payment gateway.

Implements:
- Card charges via confirmed PaymentIntents, amounts in cents
- 3-D Secure challenges surfaced as ``requires_3d_secure`` results
- Refunds and lookups by PaymentIntent id or order payment reference
- A circuit breaker in front of the Stripe API

The Stripe SDK is blocking; every call runs in a worker thread.
"""
import asyncio
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import stripe
import structlog

from marketplace_orders.config import get_settings
from marketplace_orders.domain.models import PaymentResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SUCCEEDED = "succeeded"
AUTHENTICATION_STATUSES = frozenset({"requires_action", "requires_source_action"})


class StripeErrorType(Enum):
    """Classification of Stripe errors."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class GatewayError(Exception):
    """Raised for gateway faults worth retrying (network, outage, rate limit)."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
        return StripeErrorType.PERMANENT
    return StripeErrorType.TRANSIENT


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class CircuitBreaker:
    """
    Stops calling Stripe after repeated transient failures.

    Permanent errors (declines, bad requests) do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run blocking ``func`` in a thread with circuit breaker protection.

        Raises:
            GatewayError: If the circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", StripeErrorType.TRANSIENT)

        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            if classify_error(e) == StripeErrorType.PERMANENT:
                self.on_success()
            else:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class StripePaymentGateway:
    """PaymentGateway backed by Stripe PaymentIntents."""

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None, currency: str = "usd"):
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.currency = currency
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _to_result(intent: Any, amount: Optional[Decimal] = None, return_url: Optional[str] = None) -> PaymentResult:
        status = intent.status
        if amount is None:
            amount = Decimal(intent.amount) / 100
        if status == SUCCEEDED:
            return PaymentResult(
                is_success=True,
                amount=amount,
                transaction_id=intent.id,
                message="Payment processed successfully",
                payment_method="Card",
            )
        if status in AUTHENTICATION_STATUSES:
            redirect_url = return_url
            next_action = getattr(intent, "next_action", None)
            if next_action and getattr(next_action, "redirect_to_url", None):
                redirect_url = next_action.redirect_to_url.url
            return PaymentResult(
                is_success=False,
                amount=amount,
                transaction_id=intent.id,
                message="3D Secure authentication required",
                payment_method="Card",
                requires_3d_secure=True,
                redirect_url=redirect_url,
            )
        return PaymentResult(
            is_success=False,
            amount=amount,
            transaction_id=intent.id,
            message=f"Payment failed with status: {status}",
            payment_method="Card",
        )

    @staticmethod
    def _declined(error: stripe.StripeError, amount: Decimal) -> PaymentResult:
        return PaymentResult(
            is_success=False,
            amount=amount,
            message=getattr(error, "user_message", None) or str(error),
            payment_method="Card",
        )

    def _raise_gateway_error(self, error: stripe.StripeError) -> None:
        error_type = classify_error(error)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        raise GatewayError(str(error), error_type, original_error=error) from error

    async def _create_intent(
        self,
        token: str,
        amount: Decimal,
        reference: Optional[str],
        return_url: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        params: dict[str, Any] = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "payment_method": token,
            "confirm": True,
            "payment_method_types": ["card"],
            "metadata": {"order_reference": reference} if reference else {},
        }
        if return_url:
            params["return_url"] = return_url
        idempotency_key = idempotency_key or reference
        if idempotency_key:
            # Same key, same PaymentIntent: a resent request never double charges.
            params["idempotency_key"] = idempotency_key

        logger.info(
            "creating_payment_intent",
            amount_cents=params["amount"],
            reference=reference,
            idempotency_key=idempotency_key,
        )
        try:
            intent = await self.circuit_breaker.call(stripe.PaymentIntent.create, **params)
        except stripe.CardError as e:
            logger.warning("stripe_card_declined", code=e.code, reference=reference)
            return self._declined(e, amount)
        except stripe.StripeError as e:
            self._raise_gateway_error(e)

        logger.info("payment_intent_created", payment_intent_id=intent.id, status=intent.status)
        return self._to_result(intent, amount, return_url)

    async def charge(
        self,
        token: str,
        amount: Decimal,
        *,
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """
        Confirm a card charge.

        The configured 3-D Secure return URL is always sent, so a card that
        needs a challenge comes back with a redirect instead of an SDK action.
        """
        return await self._create_intent(
            token, amount, reference, self.settings.three_d_secure_return_url, idempotency_key
        )

    async def charge_with_3d_secure(
        self,
        token: str,
        amount: Decimal,
        return_url: str,
        *,
        reference: Optional[str] = None,
    ) -> PaymentResult:
        return await self._create_intent(token, amount, reference, return_url)

    async def refund(self, transaction_id: str, amount: Decimal) -> str:
        logger.info("creating_refund", payment_intent_id=transaction_id, amount=str(amount))
        try:
            refund = await self.circuit_breaker.call(
                stripe.Refund.create,
                payment_intent=transaction_id,
                amount=to_cents(amount),
                idempotency_key=f"refund-{transaction_id}",
            )
        except stripe.StripeError as e:
            self._raise_gateway_error(e)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund.id

    async def retrieve(self, transaction_id: str) -> PaymentResult:
        try:
            intent = await self.circuit_breaker.call(stripe.PaymentIntent.retrieve, transaction_id)
        except stripe.StripeError as e:
            self._raise_gateway_error(e)
        return self._to_result(intent)

    async def find_by_reference(self, reference: str) -> Optional[PaymentResult]:
        """Most relevant PaymentIntent tagged with the order reference, if any."""
        try:
            found = await self.circuit_breaker.call(
                stripe.PaymentIntent.search,
                query=f"metadata['order_reference']:'{reference}'",
                limit=10,
            )
        except stripe.StripeError as e:
            self._raise_gateway_error(e)

        intents = list(found.data)
        if not intents:
            return None
        captured = [intent for intent in intents if intent.status == SUCCEEDED]
        return self._to_result(captured[0] if captured else intents[0])

"""
Payment processor with bounded retries and exponential backoff.

Flow of ``charge_with_retry``:
1. Validate arguments (the only place this module raises)
2. Charge through the gateway
3. On decline or gateway error, wait base**attempt seconds and try again
4. After the last attempt, return a synthetic failure result

The backoff wait is an ``await``: it suspends the current placement only.
"""
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_orders.config import get_settings
from marketplace_orders.core.ports import PaymentGateway
from marketplace_orders.domain.models import Order, PaymentResult
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    pass


def requires_authentication(result: PaymentResult) -> bool:
    """A 3-D Secure challenge cannot be resolved by charging again."""
    return result.requires_3d_secure


class AttemptKeys:
    """
    Idempotency keys for the attempts of one charge.

    A raised gateway error may or may not have reached Stripe, so the next
    attempt resends the same key. Stripe stores a decline under its key, so
    the attempt after a decline gets a fresh one.
    """

    def __init__(self, reference: Optional[str]):
        self.reference = reference
        self.current = reference
        self.declines = 0

    def after_decline(self) -> None:
        if self.reference is None:
            return
        self.declines += 1
        self.current = f"{self.reference}-retry-{self.declines}"


class PaymentProcessor:
    """
    Retry/backoff wrapper around a PaymentGateway.

    Gateway exceptions never escape: they are retried like soft declines and
    collapse into the exhausted result.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """
        Initialize payment processor.

        Args:
            gateway: Payment gateway to charge through
            max_attempts: Default attempt budget (settings when omitted)
            backoff_base: Delay after attempt n is backoff_base ** n seconds
            sleep: Awaitable sleep, injectable for tests
        """
        settings = get_settings()
        self.gateway = gateway
        self.max_attempts = settings.payment_max_attempts if max_attempts is None else max_attempts
        self.backoff_base = settings.payment_backoff_base if backoff_base is None else backoff_base
        if self.max_attempts < 1:
            raise PaymentValidationError("At least one payment attempt is required")
        self._sleep = sleep

    @staticmethod
    def validate_charge_request(payment_token: str, amount: Decimal, max_attempts: int = 1) -> None:
        """
        Validate charge arguments.

        Raises:
            PaymentValidationError: If validation fails
        """
        if not payment_token or not payment_token.strip():
            raise PaymentValidationError("Payment token is required")

        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

        if max_attempts < 1:
            raise PaymentValidationError("At least one payment attempt is required")

    async def charge_with_retry(
        self,
        payment_token: str,
        amount: Decimal,
        max_attempts: Optional[int] = None,
        give_up_on: Optional[Callable[[PaymentResult], bool]] = None,
        reference: Optional[str] = None,
    ) -> PaymentResult:
        """
        Charge with retries.

        Args:
            payment_token: Gateway payment method token
            amount: Amount to charge
            max_attempts: Attempt budget for this call
            give_up_on: Predicate marking a non-success result as final
            reference: Order payment reference, sent as idempotency key

        Returns:
            PaymentResult: The first successful result, the first result
            matched by ``give_up_on``, or the exhausted failure result
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        amount = Decimal(amount)
        self.validate_charge_request(payment_token, amount, attempts)

        def should_retry(result: PaymentResult) -> bool:
            if result.is_success:
                return False
            return give_up_on is None or not give_up_on(result)

        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.backoff_base, exp_base=self.backoff_base),
            retry=retry_if_exception_type(Exception) | retry_if_result(should_retry),
            before=self._log_attempt(attempts, amount),
            before_sleep=self._log_retry,
            retry_error_callback=self._exhausted(amount),
            **retry_kwargs,
        )
        return await retrying(self._attempt_charge, payment_token, amount, AttemptKeys(reference))

    async def _attempt_charge(
        self, payment_token: str, amount: Decimal, keys: AttemptKeys
    ) -> PaymentResult:
        reference = keys.reference
        try:
            result = await self.gateway.charge(
                payment_token, amount, reference=reference, idempotency_key=keys.current
            )
        except Exception as e:
            metrics.record_payment_attempt("error")
            logger.error(
                "payment_attempt_error",
                error=str(e),
                error_type=type(e).__name__,
                reference=reference,
            )
            raise

        if result.is_success:
            metrics.record_payment_attempt("succeeded")
            logger.info(
                "payment_succeeded",
                transaction_id=result.transaction_id,
                amount=str(amount),
                reference=reference,
            )
        elif result.requires_3d_secure:
            metrics.record_payment_attempt("requires_authentication")
            logger.info(
                "payment_requires_authentication",
                transaction_id=result.transaction_id,
                reference=reference,
            )
        else:
            metrics.record_payment_attempt("declined")
            keys.after_decline()
            logger.warning(
                "payment_declined",
                message=result.message,
                transaction_id=result.transaction_id,
                reference=reference,
            )
        return result

    @staticmethod
    def _log_attempt(max_attempts: int, amount: Decimal) -> Callable[[RetryCallState], None]:
        def before(retry_state: RetryCallState) -> None:
            logger.info(
                "payment_attempt_started",
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                amount=str(amount),
            )

        return before

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            reason = str(outcome.exception())
        elif outcome is not None:
            reason = outcome.result().message
        else:
            reason = ""
        metrics.record_backoff(delay)
        logger.info(
            "payment_retry_scheduled",
            attempt=retry_state.attempt_number,
            delay_seconds=delay,
            reason=reason,
        )

    @staticmethod
    def _exhausted(amount: Decimal) -> Callable[[RetryCallState], PaymentResult]:
        def callback(retry_state: RetryCallState) -> PaymentResult:
            logger.error(
                "payment_attempts_exhausted",
                attempts=retry_state.attempt_number,
                amount=str(amount),
            )
            return PaymentResult.exhausted(amount)

        return callback

    async def charge_with_3d_secure(
        self,
        payment_token: str,
        amount: Decimal,
        return_url: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> PaymentResult:
        """
        Single charge that may open a 3-D Secure challenge. Never retried.

        Returns:
            PaymentResult: With ``requires_3d_secure`` and ``redirect_url`` set
            when the cardholder must authenticate
        """
        amount = Decimal(amount)
        self.validate_charge_request(payment_token, amount)
        return_url = return_url or get_settings().three_d_secure_return_url

        try:
            result = await self.gateway.charge_with_3d_secure(
                payment_token, amount, return_url, reference=reference
            )
        except Exception as e:
            metrics.record_payment_attempt("error")
            logger.error("payment_3ds_error", error=str(e), reference=reference)
            return PaymentResult(
                is_success=False,
                amount=amount,
                message="An unexpected error occurred while processing your payment. Please try again.",
                payment_method="Card",
            )

        outcome = "requires_authentication" if result.requires_3d_secure else (
            "succeeded" if result.is_success else "declined"
        )
        metrics.record_payment_attempt(outcome)
        logger.info(
            "payment_3ds_result",
            outcome=outcome,
            transaction_id=result.transaction_id,
            redirect_url=result.redirect_url,
        )
        return result

    async def retrieve(self, transaction_id: str) -> PaymentResult:
        return await self.gateway.retrieve(transaction_id)

    async def find_by_reference(self, reference: str) -> Optional[PaymentResult]:
        return await self.gateway.find_by_reference(reference)

    async def refund(self, transaction_id: str, amount: Decimal) -> str:
        """
        Refund a captured charge.

        Raises:
            PaymentError: If the gateway rejects the refund
        """
        logger.info("refund_started", transaction_id=transaction_id, amount=str(amount))
        try:
            refund_id = await self.gateway.refund(transaction_id, amount)
        except Exception as e:
            logger.error("refund_failed", transaction_id=transaction_id, error=str(e))
            raise PaymentError(f"Refund failed: {str(e)}")
        logger.info("refund_created", transaction_id=transaction_id, refund_id=refund_id)
        return refund_id

    @staticmethod
    def build_receipt(payment_result: PaymentResult, order: Order) -> str:
        """Plain-text receipt for a processed payment."""
        status = "SUCCESS" if payment_result.is_success else "FAILED"
        return (
            "Payment Receipt\n"
            "===============\n"
            f"Transaction ID: {payment_result.transaction_id}\n"
            f"Date: {payment_result.processed_at:%Y-%m-%d %H:%M:%S}\n"
            f"Order ID: {order.order_id}\n"
            f"Amount: ${payment_result.amount:.2f}\n"
            f"Payment Method: {payment_result.payment_method}\n"
            f"Status: {status}\n"
            f"Message: {payment_result.message}\n"
            "\n"
            "Thank you for your purchase!\n"
        )

"""Simulated payment processor."""
import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from opentelemetry import trace

from config import PAYMENT_DELAY_SECONDS, PAYMENT_SUCCESS_RATE
from monitoring import payment_duration_histogram

logger = logging.getLogger(__name__)

FAILURE_REASONS = (
    "Payment declined by processor",
    "Insufficient funds",
    "Transaction timed out",
    "Card verification failed",
)


def generate_payment_id(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Build an opaque payment id: TX + year + month + 10 digits."""
    now = now or datetime.now(timezone.utc)
    rng = rng or random
    digits = "".join(str(rng.randint(0, 9)) for _ in range(10))
    return f"TX{now:%Y%m}{digits}"


class PaymentService:
    """
    Stand-in for a payment gateway.

    Waits for an artificial delay, then approves with probability
    success_rate. The delay only affects latency, never the outcome.
    """

    def __init__(
        self,
        success_rate: float = PAYMENT_SUCCESS_RATE,
        delay_seconds: float = PAYMENT_DELAY_SECONDS,
        rng: Optional[random.Random] = None
    ):
        self.success_rate = success_rate
        self.delay_seconds = delay_seconds
        self.rng = rng or random.Random()
        self.tracer = trace.get_tracer(__name__)

    async def process_payment(
        self,
        method: str,
        details: Dict[str, Any],
        amount: Decimal
    ) -> Dict[str, Any]:
        """
        Charge a payment.

        Args:
            method: Payment method (credit_card, paypal, bank_transfer, cod)
            details: Method specific details, already validated
            amount: Total to charge

        Returns:
            {"success": True, "id", "method", "amount", "date"} or
            {"success": False, "reason"}
        """
        payment_start = time.time()

        with self.tracer.start_as_current_span("payment.process") as span:
            span.set_attribute("payment.method", method)
            span.set_attribute("payment.amount", float(amount))

            if self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

            if self.rng.random() < self.success_rate:
                now = datetime.now(timezone.utc)
                result = {
                    "success": True,
                    "id": generate_payment_id(now, self.rng),
                    "method": method,
                    "amount": amount,
                    "date": now.isoformat(),
                }
                span.set_attribute("payment.id", result["id"])
            else:
                result = {"success": False, "reason": self.rng.choice(FAILURE_REASONS)}
                span.set_attribute("payment.declined", True)

        payment_duration_histogram.record(
            time.time() - payment_start,
            {
                "payment_method": method,
                "status": "approved" if result["success"] else "declined"
            }
        )

        if not result["success"]:
            logger.warning("Payment declined", extra={
                "payment_method": method,
                "amount": float(amount),
                "reason": result["reason"]
            })

        return result

    async def void_payment(self, payment: Dict[str, Any]) -> None:
        """Reverse an approved payment whose orders could not be recorded."""
        with self.tracer.start_as_current_span("payment.void") as span:
            span.set_attribute("payment.id", payment["id"])
            logger.warning("Payment voided", extra={
                "payment_id": payment["id"],
                "payment_method": payment["method"],
                "amount": float(payment["amount"])
            })

import logging
from decimal import Decimal, ROUND_HALF_UP

import stripe
from fastapi import Request

from config import Settings

logger = logging.getLogger(__name__)


def to_minor_units(price: float) -> int:
    """Convert a price in currency units to Stripe's integer minor units."""
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripePaymentProvider:
    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key
        self.currency = settings.payment_currency

    def create_intent(self, amount: int) -> dict:
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=self.currency,
            payment_method_types=["card"],
            api_key=self.api_key,
        )
        logger.info("Created payment intent %s for %d %s", intent.id, amount, self.currency)
        return {"id": intent.id, "clientSecret": intent.client_secret}


def get_payment_provider(request: Request):
    return request.app.state.payment_provider

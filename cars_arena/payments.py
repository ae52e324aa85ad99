from numbers import Real
from typing import Optional

import requests
from flask import current_app

from cars_arena.errors import InvalidRequest, PaymentConfigurationError, PaymentProviderError


def amount_from_price(price) -> int:
    """Convert a price in major units to the integer minor units the provider expects."""
    if isinstance(price, bool) or not isinstance(price, Real):
        raise InvalidRequest("A positive numeric price is required.")
    amount = int(round(price * 100))
    if amount <= 0:
        raise InvalidRequest("A positive numeric price is required.")
    return amount


def create_payment_intent(amount: int, currency: Optional[str] = None) -> str:
    """Create a card payment intent and return its client secret."""
    config = current_app.config
    secret_key = config.get("STRIPE_SECRET_KEY")
    if not secret_key:
        raise PaymentConfigurationError()

    url = f"{config['STRIPE_API_BASE'].rstrip('/')}/v1/payment_intents"
    payload = {
        "amount": amount,
        "currency": currency or config["PAYMENT_CURRENCY"],
        "payment_method_types[]": "card",
    }

    try:
        response = requests.post(
            url,
            data=payload,
            auth=(secret_key, ""),
            timeout=config["EXTERNAL_REQUEST_TIMEOUT"],
        )
    except requests.RequestException as exc:
        current_app.logger.error("Payment intent request failed: %s", exc)
        raise PaymentProviderError()

    if response.status_code != 200:
        current_app.logger.error(
            "Payment intent rejected (%s): %s", response.status_code, response.text
        )
        raise PaymentProviderError()

    client_secret = response.json().get("client_secret")
    if not client_secret:
        current_app.logger.error("Payment intent response carried no client secret")
        raise PaymentProviderError()
    return client_secret

import pytest
import requests

from cars_arena import payments
from cars_arena.errors import InvalidRequest, PaymentConfigurationError, PaymentProviderError


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.mark.parametrize("price, expected", [(20, 2000), (19.99, 1999), (0.5, 50)])
def test_amount_from_price(price, expected):
    assert payments.amount_from_price(price) == expected


@pytest.mark.parametrize("price", [None, "20", True, 0, -5])
def test_amount_from_price_rejects_non_positive_numbers(price):
    with pytest.raises(InvalidRequest):
        payments.amount_from_price(price)


def test_create_payment_intent_returns_client_secret(app, monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return FakeResponse(200, {"id": "pi_1", "client_secret": "pi_1_secret"})

    monkeypatch.setattr(payments.requests, "post", fake_post)

    with app.app_context():
        assert payments.create_payment_intent(2000) == "pi_1_secret"

    url, kwargs = calls[0]
    assert url == "https://api.stripe.com/v1/payment_intents"
    assert kwargs["data"] == {
        "amount": 2000,
        "currency": "usd",
        "payment_method_types[]": "card",
    }
    assert kwargs["auth"] == ("sk_test_123", "")
    assert kwargs["timeout"] == app.config["EXTERNAL_REQUEST_TIMEOUT"]


def test_create_payment_intent_without_key(app):
    app.config["STRIPE_SECRET_KEY"] = ""
    with app.app_context(), pytest.raises(PaymentConfigurationError):
        payments.create_payment_intent(2000)


def test_provider_rejection_is_server_fault(app, monkeypatch):
    monkeypatch.setattr(
        payments.requests,
        "post",
        lambda url, **kwargs: FakeResponse(402, {"error": {"message": "card_declined"}}),
    )
    with app.app_context(), pytest.raises(PaymentProviderError):
        payments.create_payment_intent(2000)


def test_provider_timeout_becomes_bad_gateway(client, auth_for, monkeypatch):
    def fake_post(url, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr(payments.requests, "post", fake_post)

    response = client.post("/create-payment-intent", json={"price": 20}, headers=auth_for("a@x.com"))

    assert response.status_code == 502
    assert response.get_json() == {"message": "Failed to create payment session."}


def test_payment_intent_route_validates_price(client, auth_for):
    response = client.post("/create-payment-intent", json={"price": "free"}, headers=auth_for("a@x.com"))
    assert response.status_code == 400

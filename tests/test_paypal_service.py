"""
Tests for the PayPal REST client (HTTP layer mocked)
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from services.paypal_service import PayPalService
from utils.exceptions import PaymentCaptureError, PaymentGatewayError, RefundRejectedError


def response(status_code, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = str(payload)
    return resp


TOKEN = response(200, {"access_token": "token-abc", "expires_in": 32400})


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def paypal(http):
    return PayPalService(
        client_id="client", client_secret="secret", base_url="https://api-m.sandbox.paypal.com/", http=http
    )


class TestPayPalService:

    def test_create_order(self, paypal, http):
        http.post.side_effect = [TOKEN, response(201, {"id": "5O190127TN364715T", "status": "CREATED"})]

        order_id = paypal.create_order(Decimal("10800"), "ARS", "Payment for contract 4", "contract-4")

        assert order_id == "5O190127TN364715T"
        url = http.post.call_args_list[1].args[0]
        kwargs = http.post.call_args_list[1].kwargs
        assert url == "https://api-m.sandbox.paypal.com/v2/checkout/orders"
        assert kwargs["json"]["purchase_units"][0]["amount"] == {"currency_code": "ARS", "value": "10800.00"}
        assert kwargs["headers"]["Authorization"] == "Bearer token-abc"
        assert kwargs["headers"]["PayPal-Request-Id"] == "order-contract-4"

    def test_token_is_cached(self, paypal, http):
        http.post.side_effect = [
            TOKEN,
            response(201, {"id": "O-1"}),
            response(201, {"id": "O-2"}),
        ]

        paypal.create_order(Decimal("1"), "ARS", "a", "contract-1")
        paypal.create_order(Decimal("1"), "ARS", "b", "contract-2")

        token_calls = [c for c in http.post.call_args_list if c.args[0].endswith("/v1/oauth2/token")]
        assert len(token_calls) == 1

    def test_capture_completed(self, paypal, http):
        http.post.side_effect = [TOKEN, response(201, {
            "id": "O-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{
                "id": "3C679366HH908993F",
                "status": "COMPLETED",
                "amount": {"value": "10800.00", "currency_code": "ARS"},
            }]}}],
        })]

        result = paypal.capture_order("O-1")

        assert result == {
            "capture_id": "3C679366HH908993F",
            "status": "COMPLETED",
            "amount": Decimal("10800.00"),
            "currency": "ARS",
        }

    def test_capture_http_failure_is_capture_error(self, paypal, http):
        http.post.side_effect = [TOKEN, response(422, {"name": "UNPROCESSABLE_ENTITY"})]

        with pytest.raises(PaymentCaptureError):
            paypal.capture_order("O-1")

    def test_declined_capture_is_capture_error(self, paypal, http):
        http.post.side_effect = [TOKEN, response(201, {
            "purchase_units": [{"payments": {"captures": [{"id": "C-1", "status": "DECLINED"}]}}],
        })]

        with pytest.raises(PaymentCaptureError):
            paypal.capture_order("O-1")

    def test_network_error_is_capture_error(self, paypal, http):
        http.post.side_effect = [TOKEN, requests.exceptions.ConnectionError("reset")]

        with pytest.raises(PaymentCaptureError):
            paypal.capture_order("O-1")

    def test_partial_refund(self, paypal, http):
        http.post.side_effect = [TOKEN, response(201, {"id": "1JU08902781691411", "status": "COMPLETED"})]

        result = paypal.refund("C-1", amount=Decimal("800"), currency="ARS")

        assert result == {"refund_id": "1JU08902781691411", "status": "COMPLETED"}
        assert http.post.call_args.kwargs["json"] == {"amount": {"value": "800.00", "currency_code": "ARS"}}

    def test_rejected_refund(self, paypal, http):
        http.post.side_effect = [TOKEN, response(422, {"name": "CAPTURE_FULLY_REFUNDED"})]

        with pytest.raises(RefundRejectedError):
            paypal.refund("C-1")

    def test_missing_credentials(self, http):
        service = PayPalService(client_id="", client_secret="", base_url="https://example.test", http=http)
        service.client_id = None

        with pytest.raises(PaymentGatewayError):
            service.create_order(Decimal("1"), "ARS", "x", "contract-1")
        http.post.assert_not_called()

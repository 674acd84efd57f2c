"""
PayPal REST client (Orders v2 / Payments v2)
Creates and captures checkout orders and refunds captures.

Every failure raises a PaymentGatewayError subclass before the caller has
touched local state, so callers can retry safely.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from config import Config
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import PaymentGatewayError, PaymentCaptureError, RefundRejectedError

logger = logging.getLogger(__name__)


class PayPalService:
    """Thin synchronous client around the PayPal REST API"""

    TOKEN_REFRESH_MARGIN_SECONDS = 60

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        http: Optional[requests.Session] = None,
    ):
        self.client_id = client_id or Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or Config.PAYPAL_CLIENT_SECRET
        self.base_url = (base_url or Config.PAYPAL_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.PAYPAL_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        if not self.client_id or not self.client_secret:
            logger.warning("PayPal API credentials not configured - service will not function")

    def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise PaymentGatewayError("PayPal credentials are not configured")

        try:
            response = self.http.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error authenticating with PayPal: {e}")
            raise PaymentGatewayError(f"Network error: {e}")

        if response.status_code != 200:
            logger.error(f"PayPal authentication failed: HTTP {response.status_code}: {response.text}")
            raise PaymentGatewayError(f"PayPal authentication failed: HTTP {response.status_code}")

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 300))
        self._token_expires_at = time.monotonic() + max(expires_in - self.TOKEN_REFRESH_MARGIN_SECONDS, 0)
        return self._access_token

    def _get_headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._get_access_token()}",
            "Prefer": "return=representation",
        }
        if request_id:
            # PayPal dedupes POSTs carrying the same request id
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _post(
        self,
        path: str,
        payload: Optional[Dict[str, Any]],
        error_class: type,
        action: str,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = self.http.post(
                f"{self.base_url}{path}",
                headers=self._get_headers(request_id),
                json=payload if payload is not None else {},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error during PayPal {action}: {e}")
            raise error_class(f"Network error during {action}: {e}")

        if response.status_code not in (200, 201):
            logger.error(f"PayPal {action} failed: HTTP {response.status_code}: {response.text}")
            raise error_class(f"Failed to {action}: HTTP {response.status_code}")

        return response.json()

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        reference_id: str,
    ) -> str:
        """Create a CAPTURE-intent order and return its id"""
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "description": description,
                    "amount": {
                        "currency_code": currency,
                        "value": str(MonetaryDecimal.quantize_money(amount)),
                    },
                }
            ],
        }
        data = self._post(
            "/v2/checkout/orders", payload, PaymentGatewayError, "create order",
            request_id=f"order-{reference_id}",
        )
        order_id = data.get("id")
        if not order_id:
            raise PaymentGatewayError("PayPal order response did not include an id")

        logger.info(f"💳 PayPal order created: {order_id} for reference {reference_id}")
        return order_id

    def capture_order(self, order_id: str) -> Dict[str, Any]:
        """
        Capture an approved order.

        Returns:
            Dict with capture_id, status (COMPLETED or PENDING), amount, currency
        """
        data = self._post(
            f"/v2/checkout/orders/{order_id}/capture", None, PaymentCaptureError, "capture order",
            request_id=f"capture-{order_id}",
        )
        try:
            capture = data["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            raise PaymentCaptureError(f"PayPal capture response for order {order_id} had no capture")

        status = capture.get("status")
        if status not in ("COMPLETED", "PENDING"):
            raise PaymentCaptureError(f"PayPal capture for order {order_id} returned status {status}")

        logger.info(f"💳 PayPal order {order_id} captured: {capture.get('id')} ({status})")
        return {
            "capture_id": capture.get("id"),
            "status": status,
            "amount": Decimal(capture.get("amount", {}).get("value", "0")),
            "currency": capture.get("amount", {}).get("currency_code"),
        }

    def refund(
        self,
        capture_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Refund a capture fully (amount=None) or partially"""
        payload = None
        if amount is not None and currency:
            payload = {
                "amount": {
                    "value": str(MonetaryDecimal.quantize_money(amount)),
                    "currency_code": currency,
                }
            }

        data = self._post(
            f"/v2/payments/captures/{capture_id}/refund", payload, RefundRejectedError, "refund capture",
        )
        status = data.get("status")
        if status not in ("COMPLETED", "PENDING"):
            raise RefundRejectedError(f"PayPal refund of capture {capture_id} returned status {status}")

        logger.info(f"💸 PayPal capture {capture_id} refunded: {data.get('id')} ({status})")
        return {"refund_id": data.get("id"), "status": status}

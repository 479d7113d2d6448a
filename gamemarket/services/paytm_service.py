"""Paytm hosted-checkout integration.

Creates payment sessions (transaction token + hosted payment page link),
queries order status and validates the checksum on gateway callbacks.
Operates in simulated mode when no merchant id is configured; callback
checksums are verified in both modes.

Requires: PAYTM_MERCHANT_ID and PAYTM_MERCHANT_KEY env vars for live mode.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid

import httpx

from gamemarket.config import settings
from gamemarket.core.exceptions import CallbackValidationError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "TXN_SUCCESS"
STATUS_FAILURE = "TXN_FAILURE"
STATUS_PENDING = "PENDING"

_CHECKSUM_FIELD = "CHECKSUMHASH"


class PaytmError(Exception):
    """The gateway refused, failed or did not answer in time.

    ``reason`` is recorded on the payment for operators; it is never shown
    to buyers or sellers verbatim.
    """

    def __init__(self, reason: str, response: dict | None = None):
        super().__init__(reason)
        self.reason = reason
        self.response = response


def make_gateway_order_id(order_id: str) -> str:
    """Gateway-facing order id: derived from, never equal to, the internal id.

    The microsecond suffix keeps retries for the same order unique at the gateway.
    """
    digest = hashlib.sha256(order_id.encode("utf-8")).hexdigest()[:12].upper()
    return f"ORDER_{digest}_{time.time_ns() // 1000}"


class PaytmGateway:
    """Paytm payment operations over the JSON API."""

    def __init__(
        self,
        merchant_id: str = "",
        merchant_key: str = "",
        website: str = "WEBSTAGING",
        gateway_url: str = "https://securegw-stage.paytm.in",
        callback_url: str = "",
        timeout_seconds: float = 15.0,
    ):
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key
        self.website = website
        self.gateway_url = gateway_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout_seconds = timeout_seconds
        self._simulated = not merchant_id

        logger.info(
            "Paytm gateway configured (mode=%s, host=%s)",
            "simulated" if self._simulated else "live",
            self.gateway_url,
        )

    @classmethod
    def from_settings(cls, cfg=settings) -> "PaytmGateway":
        return cls(
            merchant_id=cfg.paytm_merchant_id,
            merchant_key=cfg.paytm_merchant_key,
            website=cfg.paytm_website,
            gateway_url=cfg.paytm_gateway_url,
            callback_url=cfg.paytm_callback_url,
            timeout_seconds=cfg.paytm_timeout_seconds,
        )

    @property
    def simulated(self) -> bool:
        return self._simulated

    # ------------------------------------------------------------------
    # Checksums
    # ------------------------------------------------------------------

    def generate_checksum(self, params: dict, salt: str | None = None) -> str:
        """HMAC-SHA256 over ``k1=v1&k2=v2|salt`` (keys sorted). Returns ``<hex>|<salt>``."""
        salt = salt or secrets.token_hex(4)
        digest = self._digest(_canonical(params), salt)
        return f"{digest}|{salt}"

    def verify_checksum(self, params: dict, checksum: str) -> bool:
        hash_part, sep, salt = (checksum or "").partition("|")
        if not sep or not hash_part or not salt:
            return False
        fields = {k: v for k, v in params.items() if k != _CHECKSUM_FIELD}
        expected = self._digest(_canonical(fields), salt)
        return hmac.compare_digest(expected, hash_part)

    def sign_body(self, body: dict) -> str:
        """Signature for JSON API requests: checksum over the serialized body."""
        salt = secrets.token_hex(4)
        return f"{self._digest(json.dumps(body, separators=(',', ':')), salt)}|{salt}"

    def _digest(self, data: str, salt: str) -> str:
        return hmac.new(
            self.merchant_key.encode("utf-8"),
            f"{data}|{salt}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_callback(self, payload: dict) -> dict:
        """Verify a callback's checksum and return its fields (without the checksum).

        Raises CallbackValidationError; no field of an unverified payload is returned.
        """
        checksum = payload.get(_CHECKSUM_FIELD)
        if not checksum:
            raise CallbackValidationError("Missing checksum in callback")
        if not self.verify_checksum(payload, checksum):
            raise CallbackValidationError("Invalid checksum")
        return {k: v for k, v in payload.items() if k != _CHECKSUM_FIELD}

    # ------------------------------------------------------------------
    # Gateway calls
    # ------------------------------------------------------------------

    async def create_payment_order(
        self,
        order_id: str,
        amount: int,
        customer_id: str,
        customer_email: str,
        customer_phone: str,
        callback_url: str | None = None,
    ) -> dict:
        """Open a hosted-checkout session for ``amount`` rupees."""
        gateway_order_id = make_gateway_order_id(order_id)
        payment_link = (
            f"{self.gateway_url}/theia/api/v1/showPaymentPage"
            f"?mid={self.merchant_id or 'SIMULATED'}&orderId={gateway_order_id}"
        )

        if self._simulated:
            return {
                "gateway_order_id": gateway_order_id,
                "transaction_token": f"sim_txn_{uuid.uuid4().hex}",
                "payment_link": payment_link,
                "gateway_response": {
                    "body": {"resultInfo": {"resultStatus": "S", "resultMsg": "Success"}},
                    "simulated": True,
                },
            }

        body = {
            "requestType": "Payment",
            "mid": self.merchant_id,
            "websiteName": self.website,
            "orderId": gateway_order_id,
            "callbackUrl": callback_url or self.callback_url,
            "txnAmount": {"value": str(amount), "currency": "INR"},
            "userInfo": {
                "custId": customer_id,
                "email": customer_email,
                "mobile": customer_phone,
            },
            "enablePaymentMode": [
                {"mode": "UPI", "channels": ["UPI"]},
                {"mode": "CARD", "channels": ["CREDIT", "DEBIT"]},
                {"mode": "NET_BANKING", "channels": ["ALL"]},
                {"mode": "WALLET", "channels": ["PAYTM"]},
            ],
        }
        data = await self._post(
            "/theia/api/v1/initiateTransaction",
            body,
            params={"mid": self.merchant_id, "orderId": gateway_order_id},
        )

        result_info = (data.get("body") or {}).get("resultInfo") or {}
        if result_info.get("resultStatus") != "S":
            raise PaytmError(
                result_info.get("resultMsg") or "Payment order creation failed",
                response=data,
            )

        return {
            "gateway_order_id": gateway_order_id,
            "transaction_token": data["body"].get("txnToken"),
            "payment_link": payment_link,
            "gateway_response": data,
        }

    async def check_payment_status(self, gateway_order_id: str) -> dict:
        """Query the gateway for the current state of a hosted-checkout order."""
        if self._simulated:
            return {
                "status": STATUS_PENDING,
                "message": "Transaction not yet completed",
                "transaction_id": None,
                "bank_txn_id": None,
                "amount": None,
                "gateway_response": {"simulated": True},
            }

        data = await self._post(
            "/v3/order/status",
            {"mid": self.merchant_id, "orderId": gateway_order_id},
        )
        body = data.get("body")
        if not body:
            raise PaytmError("Invalid response from payment gateway", response=data)

        result_info = body.get("resultInfo") or {}
        return {
            "status": result_info.get("resultStatus"),
            "message": result_info.get("resultMsg"),
            "transaction_id": body.get("txnId"),
            "bank_txn_id": body.get("bankTxnId"),
            "amount": body.get("txnAmount"),
            "gateway_response": data,
        }

    async def _post(self, path: str, body: dict, params: dict | None = None) -> dict:
        payload = {"body": body, "head": {"signature": self.sign_body(body)}}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(f"{self.gateway_url}{path}", json=payload, params=params)
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as exc:
            logger.warning("Paytm %s timed out after %.1fs", path, self.timeout_seconds)
            raise PaytmError("Payment gateway timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("Paytm %s returned HTTP %s", path, exc.response.status_code)
            raise PaytmError(f"Payment gateway returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Paytm %s request failed: %s", path, exc)
            raise PaytmError("Payment gateway unavailable") from exc


def _canonical(params: dict) -> str:
    return "&".join(f"{k}={params[k]}" for k in sorted(params))


# Singleton
paytm_gateway = PaytmGateway.from_settings()

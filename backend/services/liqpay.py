"""
LiqPay hosted checkout.

A checkout is a base64 JSON payload plus a signature:
    signature = base64(sha1(private_key + data + private_key))
The same signature protects the server-to-server callback.
"""

import base64
import hashlib
import hmac
import json
from typing import Optional, Protocol
from urllib.parse import urlencode

from loguru import logger
from pydantic import BaseModel

from backend.errors import UpstreamError
from pricing.config import settings


class Checkout(BaseModel):
    url: str
    provider_ref: str
    data: Optional[str] = None
    signature: Optional[str] = None


class CheckoutGateway(Protocol):
    def create_checkout(self, amount: float, currency: str, description: str, provider_ref: str) -> Checkout: ...


def encode_data(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload, ensure_ascii=False).encode("utf-8")).decode("ascii")


def decode_data(data: str) -> dict:
    return json.loads(base64.b64decode(data).decode("utf-8"))


def sign(private_key: str, data: str) -> str:
    digest = hashlib.sha1(f"{private_key}{data}{private_key}".encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


class LiqPayGateway:
    def __init__(
        self,
        public_key: str = settings.LIQPAY_PUBLIC_KEY,
        private_key: str = settings.LIQPAY_PRIVATE_KEY,
        checkout_url: str = settings.LIQPAY_CHECKOUT_URL,
        result_url: Optional[str] = None,
        server_url: Optional[str] = None,
        language: str = "uk",
    ):
        self.public_key = public_key
        self.private_key = private_key
        self.checkout_url = checkout_url
        self.result_url = result_url or f"{settings.PUBLIC_BASE_URL}/payments/success"
        self.server_url = server_url or f"{settings.API_BASE_URL}/api/payments/liqpay/callback"
        self.language = language

    def _require_keys(self) -> None:
        if not self.public_key or not self.private_key:
            raise UpstreamError("PROVIDER_NOT_CONFIGURED", "LiqPay keys are not configured")

    def create_checkout(self, amount: float, currency: str, description: str, provider_ref: str) -> Checkout:
        self._require_keys()
        payload = {
            "public_key": self.public_key,
            "version": 3,
            "action": "pay",
            "amount": float(amount),
            "currency": currency,
            "description": description,
            "order_id": provider_ref,
            "result_url": self.result_url,
            "server_url": self.server_url,
            "language": self.language,
        }
        data = encode_data(payload)
        signature = sign(self.private_key, data)
        url = f"{self.checkout_url}?{urlencode({'data': data, 'signature': signature})}"
        logger.debug(f"LiqPay checkout prepared for {provider_ref}")
        return Checkout(url=url, provider_ref=provider_ref, data=data, signature=signature)

    def verify(self, data: str, signature: str) -> bool:
        self._require_keys()
        return hmac.compare_digest(sign(self.private_key, data), signature)

"""
Payment provider signature check.

The provider signs "{provider_order_id}|{payment_id}" with HMAC-SHA256 using
the account's key secret; a matching hex digest proves the payment is genuine.
"""
import hashlib
import hmac
import os
from typing import Optional


def payment_secret() -> str:
    return os.getenv("PAYMENT_KEY_SECRET", "")


def expected_signature(provider_order_id: str, payment_id: str, secret: str) -> str:
    body = f"{provider_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_payment_signature(provider_order_id: str, payment_id: str, signature: str, secret: Optional[str] = None) -> bool:
    secret = payment_secret() if secret is None else secret
    if not secret or not signature:
        return False
    return hmac.compare_digest(expected_signature(provider_order_id, payment_id, secret), signature)

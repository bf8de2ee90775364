from __future__ import annotations

import hashlib
import hmac
import time


def stripe_signature_header(secret: str, payload: bytes, timestamp: int | None = None) -> str:
    # Same t=<ts>,v1=<hex> scheme Stripe uses when delivering webhooks.
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"

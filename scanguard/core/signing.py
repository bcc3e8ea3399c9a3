"""Canonical JSON serialization and HMAC-SHA256 webhook signatures."""

import hashlib
import hmac
import json
import secrets
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sign_body(secret: str, body: str | bytes) -> str:
    """Return ``sha256=<hex>`` over the exact bytes that go on the wire."""
    data = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign_payload(secret: str, payload: dict[str, Any]) -> str:
    return sign_body(secret, canonical_json(payload))


def verify_signature(secret: str, body: str | bytes, signature: str) -> bool:
    """Constant-time check used by agency receivers and by the test suite."""
    expected = sign_body(secret, body)
    return hmac.compare_digest(expected, signature)


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_hex(32)}"

from __future__ import annotations

import binascii
import hashlib
import hmac


SIGNATURE_PREFIX = "sha256="


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, signature: str, body: bytes) -> bool:
    """Check an `X-Hub-Signature-256` value; malformed signatures are a plain mismatch."""
    if not secret or not signature.startswith(SIGNATURE_PREFIX):
        return False
    hex_digest = signature[len(SIGNATURE_PREFIX) :]
    try:
        provided = binascii.unhexlify(hex_digest)
    except (binascii.Error, ValueError):
        return False
    if not provided:
        return False
    expected = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)

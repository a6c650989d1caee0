import hashlib
import hmac
from typing import Optional

def sign_payload(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of a webhook body"""
    return hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()

def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a webhook signature, accepting an optional 'sha256=' prefix"""
    if not signature or not secret:
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = sign_payload(payload, secret)
    return hmac.compare_digest(signature.lower(), expected_signature)

def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a shared callback secret"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())

# memoir_voice/utils/security.py
"""
Webhook signing / verification helpers.

Provides:
 - sign_payload(payload_bytes, secret) -> signature (hex)
 - verify_signature(payload_bytes, signature, secret) -> bool
 - validate_twilio_request(auth_token, url, params, signature) -> bool

Voice-AI webhooks carry a hex HMAC-SHA256 of the raw body, optionally prefixed with
"sha256=". Telephony webhooks are checked with Twilio's own RequestValidator.
"""
import hashlib
import hmac
from typing import Mapping, Optional, Union

from twilio.request_validator import RequestValidator

SIGNATURE_PREFIX = "sha256="


def sign_payload(payload: Union[bytes, str], secret: str) -> str:
    """
    Return hex HMAC-SHA256 signature for payload.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: Union[bytes, str], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a hex signature (with or without the sha256= prefix). Uses constant-time compare.
    A missing secret or signature never verifies.
    """
    if not secret or not signature:
        return False
    signature = signature.strip()
    if signature.lower().startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.lower())


def validate_twilio_request(
    auth_token: Optional[str], url: str, params: Mapping[str, str], signature: Optional[str]
) -> bool:
    if not auth_token or not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)

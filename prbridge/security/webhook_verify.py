import hmac
import hashlib
import os
import time
from typing import Optional, Union

from slack_sdk.signature import SignatureVerifier

from prbridge import settings


def verify_signature(payload: bytes, signature: Optional[str]) -> bool:
    """
    Verify GitHub webhook signature using HMAC SHA-256.

    Returns False on any validation failure.
    """
    if not signature:
        return False

    secret = os.getenv("GITHUB_WEBHOOK_SECRET")
    if not secret:
        return False

    try:
        mac = hmac.new(
            secret.encode(),
            msg=payload,
            digestmod=hashlib.sha256,
        )
        expected = "sha256=" + mac.hexdigest()
        return hmac.compare_digest(expected, signature.strip())
    except (TypeError, ValueError, UnicodeError):
        return False


def verify_slack_signature(
    body: Union[bytes, str],
    timestamp: Optional[str],
    signature: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Slack request signature (v0 scheme over "v0:{timestamp}:{body}").

    Requests outside the freshness window are rejected even when the
    signature itself is valid.
    """
    if not timestamp or not signature:
        return False

    secret = os.getenv("SLACK_SIGNING_SECRET")
    if not secret:
        return False

    try:
        request_ts = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - request_ts) > settings.SLACK_TIMESTAMP_MAX_AGE_SECONDS:
        return False

    verifier = SignatureVerifier(signing_secret=secret)
    expected = verifier.generate_signature(timestamp=timestamp, body=body)
    if expected is None:
        return False
    return hmac.compare_digest(expected, signature)

"""
Webhook Security Module

This module handles verification of forge webhook payloads before anything
else looks at them.

Design Decisions:
- Verify signature before any payload processing
- The HMAC check itself belongs to the provider; this module only finds the
  header and turns a failure into a 401
- Without a configured secret, verification is skipped with a warning
"""

from typing import Mapping, Optional

from fastapi import HTTPException, Request, status

from forge_review.logging_config import get_logger
from forge_review.providers.base import ForgeProvider

logger = get_logger(__name__)

SIGNATURE_HEADERS = (
    "X-Gitea-Signature",
    "X-Forgejo-Signature",
    "X-Hub-Signature-256",
)

DELIVERY_HEADERS = (
    "X-Gitea-Delivery",
    "X-Forgejo-Delivery",
    "X-GitHub-Delivery",
)


class SignatureError(Exception):
    """Webhook signature missing or invalid."""
    pass


def _first_header(headers: Mapping[str, str], names) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def extract_signature(headers: Mapping[str, str]) -> Optional[str]:
    """Get the webhook signature from whichever forge header carries it."""
    return _first_header(headers, SIGNATURE_HEADERS)


def extract_delivery_id(headers: Mapping[str, str]) -> Optional[str]:
    """
    Extract the webhook delivery ID from headers.

    This is useful for logging and idempotency checking.
    """
    return _first_header(headers, DELIVERY_HEADERS)


def check_signature(
    provider: ForgeProvider,
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str]
) -> None:
    """
    Verify a payload signature with the provider's scheme.

    Raises:
        SignatureError: If a secret is configured and the signature is
            missing or does not match
    """
    if not secret:
        logger.warning("Webhook secret not configured, skipping signature verification")
        return

    if not signature:
        raise SignatureError("Missing webhook signature")

    if not provider.verify_webhook_signature(raw_body, signature, secret):
        raise SignatureError("Invalid webhook signature")


async def verify_request_signature(
    request: Request,
    raw_body: bytes,
    provider: ForgeProvider,
    secret: Optional[str]
) -> bool:
    """
    Verify the webhook signature of an incoming request.

    Returns:
        True if the request may be processed

    Raises:
        HTTPException: 401 if signature is missing or invalid
    """
    try:
        check_signature(provider, raw_body, extract_signature(request.headers), secret)
    except SignatureError as e:
        logger.warning(
            "Webhook signature rejected",
            provider=provider.name.value,
            reason=str(e),
            remote_addr=request.client.host if request.client else "unknown"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        ) from e

    logger.debug("Webhook signature verified successfully", provider=provider.name.value)
    return True

"""Webhook signature verification: constant-time HMAC-SHA256 per integration.

Security contract:
- Signatures are hex HMAC-SHA256 digests of the exact raw request body
- All comparisons use hmac.compare_digest() (constant-time)
- Unknown integration, missing secret, missing header or mismatch -> 401
  before the body is parsed (fail-closed)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Mapping, Optional

from ledger.errors import AuthenticationFailure
from ledger.models import Integration, IntegrationSource
from ledger.storage import LedgerStorage

logger = logging.getLogger(__name__)

GENERIC_SIGNATURE_HEADER = "x-signature"

# Source -> header the EHR vendor signs with
SOURCE_SIGNATURE_HEADERS = {
    IntegrationSource.EPIC: "x-epic-signature",
    IntegrationSource.POINTCLICKCARE: "x-pcc-signature",
}


def sign(secret: str, body: bytes) -> str:
    """Return the hex HMAC-SHA256 signature a sender attaches to ``body``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: Optional[str], signature: Optional[str]) -> bool:
    """Verify a hex HMAC-SHA256 signature over the raw body.

    Args:
        body: Raw request body bytes
        secret: Shared secret of the integration
        signature: Value of the signature header

    Returns:
        True if signature is valid
    """
    if not secret or not signature:
        return False
    computed = sign(secret, body)
    return hmac.compare_digest(computed.encode("utf-8"), signature.strip().lower().encode("utf-8"))


def signature_from_headers(source: IntegrationSource, headers: Mapping[str, str]) -> Optional[str]:
    """Pick the signature header for ``source`` (headers must have lowercase keys)."""
    return headers.get(GENERIC_SIGNATURE_HEADER) or headers.get(SOURCE_SIGNATURE_HEADERS[source])


class SignatureVerifier:
    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    def verify(self, body: bytes, integration: Integration, signature: Optional[str]) -> bool:
        if not integration.webhook_secret:
            logger.warning("Webhook secret not configured for integration %s; rejecting webhook", integration.id)
            return False
        return verify_signature(body, integration.webhook_secret, signature)

    def authenticate(self, integration_id: str, body: bytes, headers: Mapping[str, str]) -> Integration:
        """Resolve the sending integration and check the body signature.

        Raises:
            AuthenticationFailure: with a code naming the reason.
        """
        with self.storage.transaction() as tx:
            integration = tx.get_integration(integration_id)
        if integration is None or not integration.is_active:
            logger.warning("Unknown or inactive webhook integration: %s", integration_id)
            raise AuthenticationFailure("Unknown webhook integration", code="unknown_integration")
        if not integration.webhook_secret:
            logger.warning("Webhook secret not configured for integration %s; rejecting webhook", integration_id)
            raise AuthenticationFailure("Webhook secret not configured", code="secret_not_configured")

        signature = signature_from_headers(integration.source, headers)
        if not signature:
            raise AuthenticationFailure("Missing signature header", code="missing_signature")
        if not self.verify(body, integration, signature):
            raise AuthenticationFailure("Invalid signature", code="invalid_signature")
        return integration

"""
EHR Webhook Package

Signature verification, event recording and the end-to-end webhook pipeline
that feeds the reward ledger.
"""

from .pipeline import WebhookPipeline, WebhookResponse
from .recorder import EventRecorder, RecordResult, WebhookPayload, canonical_hash, parse_payload
from .signature import SignatureVerifier, sign, verify_signature

__all__ = [
    "EventRecorder",
    "RecordResult",
    "SignatureVerifier",
    "WebhookPayload",
    "WebhookPipeline",
    "WebhookResponse",
    "canonical_hash",
    "parse_payload",
    "sign",
    "verify_signature",
]

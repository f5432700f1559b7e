"""
Reward Ledger for Clinical Documentation Events

This package provides:
- Documentation events and their attestations
- Append-only reward ledger entries (credits and reversals)
- Attestation lifecycle: pending → confirmed / rejected / expired
- Reward distribution with network fee and organization bonus routing
- In-memory and SQL storage backends
"""

from .models import (
    Attestation,
    AttestationStatus,
    DocumentationEvent,
    Entity,
    EntityKind,
    EntryType,
    EventKind,
    RecipientBalance,
    RewardLedgerEntry,
)
from .service import LedgerService

__all__ = [
    "Attestation",
    "AttestationStatus",
    "DocumentationEvent",
    "Entity",
    "EntityKind",
    "EntryType",
    "EventKind",
    "RecipientBalance",
    "RewardLedgerEntry",
    "LedgerService",
]

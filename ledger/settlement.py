"""
Settlement backends decide the status that freshly distributed rewards get.

The backend is chosen once at startup. The mock backend treats the ledger
write itself as settlement; the live backend leaves entries pending until an
external settlement acknowledgment confirms, rejects or expires them through
``LedgerService``.
"""

from datetime import datetime
from typing import Optional

from .models import AttestationStatus


class SettlementBackend:
    name = "base"
    initial_status = AttestationStatus.PENDING

    def confirmed_at(self, now: datetime) -> Optional[datetime]:
        return now if self.initial_status == AttestationStatus.CONFIRMED else None


class MockSettlementBackend(SettlementBackend):
    name = "mock"
    initial_status = AttestationStatus.CONFIRMED


class LiveSettlementBackend(SettlementBackend):
    name = "live"
    initial_status = AttestationStatus.PENDING


SETTLEMENT_BACKENDS = {
    "mock": MockSettlementBackend,
    "live": LiveSettlementBackend,
}


def get_settlement_backend(name: str) -> SettlementBackend:
    try:
        return SETTLEMENT_BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown settlement backend: {name}") from None

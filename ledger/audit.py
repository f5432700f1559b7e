"""Fire-and-forget audit trail for webhook and ledger activity."""

import logging
from typing import Any, Optional

from .models import AuditRecord
from .storage import LedgerStorage

logger = logging.getLogger(__name__)


def redact_account(account_id: Optional[str]) -> str:
    if not account_id:
        return "[none]"
    return f"{account_id[:6]}…{account_id[-4:]}" if len(account_id) > 10 else "[short]"


class AuditSink:
    """Writes audit records to storage in their own transaction.

    Recording never raises: a failed write is logged and dropped so the
    request that produced it is unaffected.
    """

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[Any] = None,
        actor_ref: Optional[str] = None,
        **details: Any,
    ) -> None:
        record = AuditRecord(
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            actor_ref=redact_account(actor_ref) if actor_ref else None,
            details={k: str(v) if v is not None else None for k, v in details.items()},
        )
        logger.info(
            "AUDIT action=%s resource=%s/%s actor=%s",
            action,
            resource_type,
            record.resource_id,
            record.actor_ref,
        )
        try:
            with self.storage.transaction() as tx:
                tx.add_audit_record(record)
        except Exception:
            logger.warning("Failed to persist audit record %s", action, exc_info=True)

"""
Storage backends for the reward ledger.

Every read and write goes through ``LedgerStorage.transaction()``; all work
inside one transaction is committed together or not at all. The content hash
of a documentation event is unique at the storage level, and
``insert_event`` resolves a hash conflict by returning the stored event
instead of raising.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import ContextManager, Iterator, Optional
from uuid import UUID

from .errors import StorageFailure
from .models import (
    Attestation,
    AttestationStatus,
    AuditRecord,
    DocumentationEvent,
    Entity,
    EventKind,
    Integration,
    RewardLedgerEntry,
    normalize_account,
)

logger = logging.getLogger(__name__)


class StorageTransaction(ABC):
    @abstractmethod
    def get_entity(self, entity_id: UUID) -> Optional[Entity]: ...

    @abstractmethod
    def find_entity_by_account(self, account_id: str) -> Optional[Entity]: ...

    @abstractmethod
    def add_entity(self, entity: Entity) -> Entity: ...

    @abstractmethod
    def get_integration(self, integration_id: str) -> Optional[Integration]: ...

    @abstractmethod
    def add_integration(self, integration: Integration) -> Integration: ...

    @abstractmethod
    def get_event(self, event_id: UUID) -> Optional[DocumentationEvent]: ...

    @abstractmethod
    def get_event_by_hash(self, event_hash: str) -> Optional[DocumentationEvent]: ...

    @abstractmethod
    def get_attestation(self, attestation_id: UUID) -> Optional[Attestation]: ...

    @abstractmethod
    def get_attestation_for_event(self, event_id: UUID) -> Optional[Attestation]: ...

    @abstractmethod
    def list_attestations(
        self,
        status: Optional[AttestationStatus] = None,
        distributed: Optional[bool] = None,
        distributed_before: Optional[datetime] = None,
    ) -> list[Attestation]: ...

    @abstractmethod
    def claim_attestation(
        self,
        attestation_id: UUID,
        status: AttestationStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        """Mark a pending, undistributed attestation as distributed.

        Returns False when another caller already claimed it.
        """

    @abstractmethod
    def update_attestation_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        reason: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> bool: ...

    @abstractmethod
    def add_entry(self, entry: RewardLedgerEntry) -> RewardLedgerEntry: ...

    @abstractmethod
    def get_entry(self, entry_id: UUID) -> Optional[RewardLedgerEntry]: ...

    @abstractmethod
    def list_entries(
        self,
        attestation_id: Optional[UUID] = None,
        recipient_id: Optional[UUID] = None,
        reference_entry_id: Optional[UUID] = None,
    ) -> list[RewardLedgerEntry]: ...

    @abstractmethod
    def update_entries_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> int: ...

    @abstractmethod
    def lock_actor(self, actor_id: UUID) -> None:
        """Hold the actor's row until the transaction ends.

        Daily cap checks for the same actor run one at a time.
        """

    @abstractmethod
    def count_distributed_events(
        self, actor_id: UUID, kind: EventKind, start: datetime, end: datetime
    ) -> int: ...

    @abstractmethod
    def add_audit_record(self, record: AuditRecord) -> AuditRecord: ...

    @abstractmethod
    def list_audit_records(self, action: Optional[str] = None) -> list[AuditRecord]: ...


class LedgerStorage(ABC):
    @abstractmethod
    def transaction(self) -> ContextManager[StorageTransaction]: ...

    @abstractmethod
    def insert_event(
        self, event: DocumentationEvent, attestation: Attestation
    ) -> tuple[DocumentationEvent, Attestation, bool]:
        """Store ``event`` and its pending attestation in their own transaction.

        When the content hash is already stored, nothing is written and the
        stored pair is returned instead. The third element tells whether the
        event was newly created.
        """


class InMemoryStorage(LedgerStorage, StorageTransaction):
    """Dict-backed storage guarded by one re-entrant lock.

    A transaction holds the lock for its whole duration. The first write in
    an outermost transaction snapshots every table, and the snapshot is
    restored when the transaction exits with an exception. Read-only
    transactions copy nothing.
    """

    def __init__(self):
        self.entities: dict[UUID, dict] = {}
        self.integrations: dict[str, dict] = {}
        self.events: dict[UUID, dict] = {}
        self.attestations: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.audit_logs: list[dict] = []
        self.account_index: dict[str, UUID] = {}
        self.hash_index: dict[str, UUID] = {}
        self.event_attestation_index: dict[UUID, UUID] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: Optional[dict] = None

    _TABLES = (
        "entities", "integrations", "events", "attestations", "ledger_entries",
        "account_index", "hash_index", "event_attestation_index",
    )

    @contextmanager
    def transaction(self) -> Iterator[StorageTransaction]:
        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost and self._undo is not None:
                    self._restore(self._undo)
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._undo = None

    def _before_write(self) -> None:
        if self._depth and self._undo is None:
            self._undo = self._snapshot()

    def _snapshot(self) -> dict:
        snapshot = {}
        for name in self._TABLES:
            table = getattr(self, name)
            snapshot[name] = {k: dict(v) if isinstance(v, dict) else v for k, v in table.items()}
        snapshot["audit_logs"] = list(self.audit_logs)
        return snapshot

    def _restore(self, snapshot: dict) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)
        logger.debug("In-memory transaction rolled back")

    def get_entity(self, entity_id: UUID) -> Optional[Entity]:
        data = self.entities.get(entity_id)
        return Entity(**data) if data else None

    def find_entity_by_account(self, account_id: str) -> Optional[Entity]:
        entity_id = self.account_index.get(normalize_account(account_id))
        return self.get_entity(entity_id) if entity_id else None

    def add_entity(self, entity: Entity) -> Entity:
        if entity.account_id in self.account_index:
            raise StorageFailure(f"Account {entity.account_id} is already registered")
        self._before_write()
        self.entities[entity.id] = entity.model_dump()
        self.account_index[entity.account_id] = entity.id
        return entity

    def get_integration(self, integration_id: str) -> Optional[Integration]:
        data = self.integrations.get(integration_id)
        return Integration(**data) if data else None

    def add_integration(self, integration: Integration) -> Integration:
        self._before_write()
        self.integrations[integration.id] = integration.model_dump()
        return integration

    def insert_event(
        self, event: DocumentationEvent, attestation: Attestation
    ) -> tuple[DocumentationEvent, Attestation, bool]:
        with self.transaction():
            existing_id = self.hash_index.get(event.event_hash)
            if existing_id:
                existing = self.get_event(existing_id)
                return existing, self.get_attestation_for_event(existing_id), False

            self._before_write()
            self.events[event.id] = event.model_dump()
            self.hash_index[event.event_hash] = event.id
            self.attestations[attestation.id] = attestation.model_dump()
            self.event_attestation_index[event.id] = attestation.id
            return event, attestation, True

    def get_event(self, event_id: UUID) -> Optional[DocumentationEvent]:
        data = self.events.get(event_id)
        return DocumentationEvent(**data) if data else None

    def get_event_by_hash(self, event_hash: str) -> Optional[DocumentationEvent]:
        event_id = self.hash_index.get(event_hash)
        return self.get_event(event_id) if event_id else None

    def get_attestation(self, attestation_id: UUID) -> Optional[Attestation]:
        data = self.attestations.get(attestation_id)
        return Attestation(**data) if data else None

    def get_attestation_for_event(self, event_id: UUID) -> Optional[Attestation]:
        attestation_id = self.event_attestation_index.get(event_id)
        return self.get_attestation(attestation_id) if attestation_id else None

    def list_attestations(
        self,
        status: Optional[AttestationStatus] = None,
        distributed: Optional[bool] = None,
        distributed_before: Optional[datetime] = None,
    ) -> list[Attestation]:
        results = []
        for data in self.attestations.values():
            if status is not None and data["status"] != status:
                continue
            if distributed is not None and (data["distributed_at"] is not None) != distributed:
                continue
            if distributed_before is not None and (
                data["distributed_at"] is None or data["distributed_at"] >= distributed_before
            ):
                continue
            results.append(Attestation(**data))
        results.sort(key=lambda a: a.created_at)
        return results

    def claim_attestation(
        self,
        attestation_id: UUID,
        status: AttestationStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        data = self.attestations.get(attestation_id)
        if not data or data["status"] != AttestationStatus.PENDING or data["distributed_at"] is not None:
            return False
        self._before_write()
        data["distributed_at"] = now
        data["status"] = status
        data["status_reason"] = reason
        if status == AttestationStatus.CONFIRMED:
            data["confirmed_at"] = now
        return True

    def update_attestation_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        reason: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> bool:
        data = self.attestations.get(attestation_id)
        if not data or data["status"] != from_status:
            return False
        self._before_write()
        data["status"] = to_status
        if settlement_reference is not None:
            data["settlement_reference"] = settlement_reference
        if reason is not None:
            data["status_reason"] = reason
        if confirmed_at is not None:
            data["confirmed_at"] = confirmed_at
        return True

    def add_entry(self, entry: RewardLedgerEntry) -> RewardLedgerEntry:
        if entry.attestation_id not in self.attestations:
            raise StorageFailure(f"Attestation {entry.attestation_id} does not exist")
        self._before_write()
        self.ledger_entries[entry.id] = entry.model_dump()
        return entry

    def get_entry(self, entry_id: UUID) -> Optional[RewardLedgerEntry]:
        data = self.ledger_entries.get(entry_id)
        return RewardLedgerEntry(**data) if data else None

    def list_entries(
        self,
        attestation_id: Optional[UUID] = None,
        recipient_id: Optional[UUID] = None,
        reference_entry_id: Optional[UUID] = None,
    ) -> list[RewardLedgerEntry]:
        entries = [
            RewardLedgerEntry(**e) for e in self.ledger_entries.values()
            if (attestation_id is None or e["attestation_id"] == attestation_id)
            and (recipient_id is None or e["recipient_id"] == recipient_id)
            and (reference_entry_id is None or e["reference_entry_id"] == reference_entry_id)
        ]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def update_entries_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> int:
        updated = 0
        for data in self.ledger_entries.values():
            if data["attestation_id"] != attestation_id or data["status"] != from_status:
                continue
            self._before_write()
            data["status"] = to_status
            if settlement_reference is not None:
                data["settlement_reference"] = settlement_reference
            if confirmed_at is not None:
                data["confirmed_at"] = confirmed_at
            updated += 1
        return updated

    def lock_actor(self, actor_id: UUID) -> None:
        # the transaction already holds the storage lock
        pass

    def count_distributed_events(
        self, actor_id: UUID, kind: EventKind, start: datetime, end: datetime
    ) -> int:
        count = 0
        for event in self.events.values():
            if event["actor_id"] != actor_id or event["kind"] != kind:
                continue
            if not (start <= event["event_timestamp"] < end):
                continue
            attestation = self.get_attestation_for_event(event["id"])
            if attestation and attestation.distributed_at and attestation.status != AttestationStatus.REJECTED:
                count += 1
        return count

    def add_audit_record(self, record: AuditRecord) -> AuditRecord:
        self._before_write()
        self.audit_logs.append(record.model_dump())
        return record

    def list_audit_records(self, action: Optional[str] = None) -> list[AuditRecord]:
        return [AuditRecord(**r) for r in self.audit_logs if action is None or r["action"] == action]

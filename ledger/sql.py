"""SQLAlchemy storage backend for the reward ledger tables."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

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
from .storage import LedgerStorage, StorageTransaction

logger = logging.getLogger(__name__)


class UTCDateTime(sa.TypeDecorator):
    """Timezone-aware timestamps on every dialect; SQLite drops the offset."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Money(sa.TypeDecorator):
    """Exact decimal amounts: NUMERIC where supported, text on SQLite."""

    impl = sa.Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(sa.String(64))
        return dialect.type_descriptor(sa.Numeric(38, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value) if dialect.name == "sqlite" else Decimal(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value if isinstance(value, Decimal) else Decimal(str(value))


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
TIMESTAMP = UTCDateTime()
UUID_TYPE = sa.String(length=36)

METADATA = sa.MetaData()

entities = sa.Table(
    "entities",
    METADATA,
    sa.Column("id", UUID_TYPE, primary_key=True),
    sa.Column("account_id", sa.Text(), nullable=False),
    sa.Column("kind", sa.Text(), nullable=False),
    sa.Column("display_name", sa.Text(), nullable=True),
    sa.Column("organization_id", UUID_TYPE, sa.ForeignKey("entities.id"), nullable=True),
    sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("bonus_recipient_account", sa.Text(), nullable=True),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.UniqueConstraint("account_id", name="uq_entities_account_id"),
)

integrations = sa.Table(
    "integrations",
    METADATA,
    sa.Column("id", sa.Text(), primary_key=True),
    sa.Column("source", sa.Text(), nullable=False),
    sa.Column("entity_id", UUID_TYPE, sa.ForeignKey("entities.id"), nullable=True),
    sa.Column("webhook_secret", sa.Text(), nullable=True),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
)

documentation_events = sa.Table(
    "documentation_events",
    METADATA,
    sa.Column("id", UUID_TYPE, primary_key=True),
    sa.Column("kind", sa.Text(), nullable=False),
    sa.Column("event_hash", sa.Text(), nullable=False),
    sa.Column("event_timestamp", TIMESTAMP, nullable=False),
    sa.Column("actor_id", UUID_TYPE, sa.ForeignKey("entities.id"), nullable=False),
    sa.Column("subject_id", sa.Text(), nullable=True),
    sa.Column("organization_id", UUID_TYPE, sa.ForeignKey("entities.id"), nullable=True),
    sa.Column("source", sa.Text(), nullable=False),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.UniqueConstraint("event_hash", name="uq_documentation_events_event_hash"),
)
sa.Index(
    "idx_documentation_events_actor_kind_ts",
    documentation_events.c.actor_id,
    documentation_events.c.kind,
    documentation_events.c.event_timestamp,
)

attestations = sa.Table(
    "attestations",
    METADATA,
    sa.Column("id", UUID_TYPE, primary_key=True),
    sa.Column("event_id", UUID_TYPE, sa.ForeignKey("documentation_events.id"), nullable=False),
    sa.Column("signing_key_id", sa.Text(), nullable=False),
    sa.Column("signature", sa.Text(), nullable=False),
    sa.Column("status", sa.Text(), nullable=False),
    sa.Column("status_reason", sa.Text(), nullable=True),
    sa.Column("settlement_reference", sa.Text(), nullable=True),
    sa.Column("distributed_at", TIMESTAMP, nullable=True),
    sa.Column("confirmed_at", TIMESTAMP, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.UniqueConstraint("event_id", name="uq_attestations_event_id"),
)
sa.Index("idx_attestations_status", attestations.c.status)

reward_ledger = sa.Table(
    "reward_ledger",
    METADATA,
    sa.Column("id", UUID_TYPE, primary_key=True),
    sa.Column("attestation_id", UUID_TYPE, sa.ForeignKey("attestations.id"), nullable=False),
    sa.Column("recipient_id", UUID_TYPE, sa.ForeignKey("entities.id"), nullable=False),
    sa.Column("recipient_kind", sa.Text(), nullable=False),
    sa.Column("share", sa.Text(), nullable=False),
    sa.Column("entry_type", sa.Text(), nullable=False),
    sa.Column("amount", Money(), nullable=False),
    sa.Column("status", sa.Text(), nullable=False),
    sa.Column("reference_entry_id", UUID_TYPE, sa.ForeignKey("reward_ledger.id"), nullable=True),
    sa.Column("settlement_reference", sa.Text(), nullable=True),
    sa.Column("confirmed_at", TIMESTAMP, nullable=True),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.CheckConstraint("amount >= 0", name="ck_reward_ledger_amount_non_negative"),
)
sa.Index("idx_reward_ledger_recipient_status", reward_ledger.c.recipient_id, reward_ledger.c.status)
sa.Index("idx_reward_ledger_attestation", reward_ledger.c.attestation_id)

audit_logs = sa.Table(
    "audit_logs",
    METADATA,
    sa.Column("id", UUID_TYPE, primary_key=True),
    sa.Column("action", sa.Text(), nullable=False),
    sa.Column("actor_ref", sa.Text(), nullable=True),
    sa.Column("resource_type", sa.Text(), nullable=False),
    sa.Column("resource_id", sa.Text(), nullable=True),
    sa.Column("details", JSON_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
)
sa.Index("idx_audit_logs_action", audit_logs.c.action)


def build_engine(url: str, *, echo: bool = False) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return sa.create_engine(url, echo=echo, future=True, pool_pre_ping=True, connect_args=connect_args)


def _row_values(model) -> dict[str, Any]:
    """Dump a record into column values: UUIDs as text, enums as their values."""

    values = model.model_dump(mode="json")
    for key, value in model.model_dump().items():
        if isinstance(value, (datetime, Decimal)):
            values[key] = value
    return values


class SqlTransaction(StorageTransaction):
    def __init__(self, conn: sa.Connection):
        self.conn = conn

    def _first(self, statement) -> Optional[dict]:
        row = self.conn.execute(statement).mappings().first()
        return dict(row) if row else None

    def get_entity(self, entity_id: UUID) -> Optional[Entity]:
        row = self._first(sa.select(entities).where(entities.c.id == str(entity_id)))
        return Entity.model_validate(row) if row else None

    def find_entity_by_account(self, account_id: str) -> Optional[Entity]:
        row = self._first(
            sa.select(entities).where(entities.c.account_id == normalize_account(account_id))
        )
        return Entity.model_validate(row) if row else None

    def add_entity(self, entity: Entity) -> Entity:
        self.conn.execute(entities.insert().values(**_row_values(entity)))
        return entity

    def get_integration(self, integration_id: str) -> Optional[Integration]:
        row = self._first(sa.select(integrations).where(integrations.c.id == integration_id))
        return Integration.model_validate(row) if row else None

    def add_integration(self, integration: Integration) -> Integration:
        self.conn.execute(integrations.insert().values(**_row_values(integration)))
        return integration

    def get_event(self, event_id: UUID) -> Optional[DocumentationEvent]:
        row = self._first(
            sa.select(documentation_events).where(documentation_events.c.id == str(event_id))
        )
        return DocumentationEvent.model_validate(row) if row else None

    def get_event_by_hash(self, event_hash: str) -> Optional[DocumentationEvent]:
        row = self._first(
            sa.select(documentation_events).where(documentation_events.c.event_hash == event_hash)
        )
        return DocumentationEvent.model_validate(row) if row else None

    def get_attestation(self, attestation_id: UUID) -> Optional[Attestation]:
        row = self._first(sa.select(attestations).where(attestations.c.id == str(attestation_id)))
        return Attestation.model_validate(row) if row else None

    def get_attestation_for_event(self, event_id: UUID) -> Optional[Attestation]:
        row = self._first(sa.select(attestations).where(attestations.c.event_id == str(event_id)))
        return Attestation.model_validate(row) if row else None

    def list_attestations(
        self,
        status: Optional[AttestationStatus] = None,
        distributed: Optional[bool] = None,
        distributed_before: Optional[datetime] = None,
    ) -> list[Attestation]:
        statement = sa.select(attestations).order_by(attestations.c.created_at)
        if status is not None:
            statement = statement.where(attestations.c.status == status.value)
        if distributed is True:
            statement = statement.where(attestations.c.distributed_at.is_not(None))
        elif distributed is False:
            statement = statement.where(attestations.c.distributed_at.is_(None))
        if distributed_before is not None:
            statement = statement.where(attestations.c.distributed_at < distributed_before)
        rows = self.conn.execute(statement).mappings().all()
        return [Attestation.model_validate(dict(row)) for row in rows]

    def claim_attestation(
        self,
        attestation_id: UUID,
        status: AttestationStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        values: dict[str, Any] = {"distributed_at": now, "status": status.value, "status_reason": reason}
        if status == AttestationStatus.CONFIRMED:
            values["confirmed_at"] = now
        result = self.conn.execute(
            attestations.update()
            .where(attestations.c.id == str(attestation_id))
            .where(attestations.c.status == AttestationStatus.PENDING.value)
            .where(attestations.c.distributed_at.is_(None))
            .values(**values)
        )
        return result.rowcount == 1

    def update_attestation_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        reason: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> bool:
        values: dict[str, Any] = {"status": to_status.value}
        if settlement_reference is not None:
            values["settlement_reference"] = settlement_reference
        if reason is not None:
            values["status_reason"] = reason
        if confirmed_at is not None:
            values["confirmed_at"] = confirmed_at
        result = self.conn.execute(
            attestations.update()
            .where(attestations.c.id == str(attestation_id))
            .where(attestations.c.status == from_status.value)
            .values(**values)
        )
        return result.rowcount == 1

    def add_entry(self, entry: RewardLedgerEntry) -> RewardLedgerEntry:
        self.conn.execute(reward_ledger.insert().values(**_row_values(entry)))
        return entry

    def get_entry(self, entry_id: UUID) -> Optional[RewardLedgerEntry]:
        row = self._first(sa.select(reward_ledger).where(reward_ledger.c.id == str(entry_id)))
        return RewardLedgerEntry.model_validate(row) if row else None

    def list_entries(
        self,
        attestation_id: Optional[UUID] = None,
        recipient_id: Optional[UUID] = None,
        reference_entry_id: Optional[UUID] = None,
    ) -> list[RewardLedgerEntry]:
        statement = sa.select(reward_ledger).order_by(reward_ledger.c.created_at)
        if attestation_id is not None:
            statement = statement.where(reward_ledger.c.attestation_id == str(attestation_id))
        if recipient_id is not None:
            statement = statement.where(reward_ledger.c.recipient_id == str(recipient_id))
        if reference_entry_id is not None:
            statement = statement.where(reward_ledger.c.reference_entry_id == str(reference_entry_id))
        rows = self.conn.execute(statement).mappings().all()
        return [RewardLedgerEntry.model_validate(dict(row)) for row in rows]

    def update_entries_status(
        self,
        attestation_id: UUID,
        from_status: AttestationStatus,
        to_status: AttestationStatus,
        settlement_reference: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> int:
        values: dict[str, Any] = {"status": to_status.value}
        if settlement_reference is not None:
            values["settlement_reference"] = settlement_reference
        if confirmed_at is not None:
            values["confirmed_at"] = confirmed_at
        result = self.conn.execute(
            reward_ledger.update()
            .where(reward_ledger.c.attestation_id == str(attestation_id))
            .where(reward_ledger.c.status == from_status.value)
            .values(**values)
        )
        return result.rowcount

    def lock_actor(self, actor_id: UUID) -> None:
        # A no-op UPDATE takes a row lock on PostgreSQL and the write lock on SQLite.
        self.conn.execute(
            entities.update().where(entities.c.id == str(actor_id)).values(is_verified=entities.c.is_verified)
        )

    def count_distributed_events(
        self, actor_id: UUID, kind: EventKind, start: datetime, end: datetime
    ) -> int:
        statement = (
            sa.select(sa.func.count())
            .select_from(
                documentation_events.join(
                    attestations, attestations.c.event_id == documentation_events.c.id
                )
            )
            .where(documentation_events.c.actor_id == str(actor_id))
            .where(documentation_events.c.kind == kind.value)
            .where(documentation_events.c.event_timestamp >= start)
            .where(documentation_events.c.event_timestamp < end)
            .where(attestations.c.distributed_at.is_not(None))
            .where(attestations.c.status != AttestationStatus.REJECTED.value)
        )
        return int(self.conn.execute(statement).scalar_one())

    def add_audit_record(self, record: AuditRecord) -> AuditRecord:
        self.conn.execute(audit_logs.insert().values(**_row_values(record)))
        return record

    def list_audit_records(self, action: Optional[str] = None) -> list[AuditRecord]:
        statement = sa.select(audit_logs).order_by(audit_logs.c.created_at)
        if action is not None:
            statement = statement.where(audit_logs.c.action == action)
        rows = self.conn.execute(statement).mappings().all()
        return [AuditRecord.model_validate(dict(row)) for row in rows]


class SqlStorage(LedgerStorage):
    """Relational storage; uniqueness of event hashes is a table constraint."""

    def __init__(self, engine: Engine | str, *, create_schema: bool = True):
        self.engine = build_engine(engine) if isinstance(engine, str) else engine
        if create_schema:
            METADATA.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[StorageTransaction]:
        try:
            with self.engine.begin() as conn:
                yield SqlTransaction(conn)
        except SQLAlchemyError as exc:
            logger.exception("Ledger storage transaction failed")
            raise StorageFailure("Ledger storage transaction failed") from exc

    def insert_event(
        self, event: DocumentationEvent, attestation: Attestation
    ) -> tuple[DocumentationEvent, Attestation, bool]:
        try:
            with self.engine.begin() as conn:
                conn.execute(documentation_events.insert().values(**_row_values(event)))
                conn.execute(attestations.insert().values(**_row_values(attestation)))
        except IntegrityError as exc:
            with self.transaction() as tx:
                existing = tx.get_event_by_hash(event.event_hash)
                if existing is None:
                    logger.error("Event insert violated a constraint other than the hash: %s", exc.orig)
                    raise StorageFailure("Failed to create documentation event") from exc
                logger.info("Concurrent duplicate resolved for event hash %s", event.event_hash[:12])
                return existing, tx.get_attestation_for_event(existing.id), False
        except SQLAlchemyError as exc:
            logger.exception("Failed to create documentation event")
            raise StorageFailure("Failed to create documentation event") from exc
        return event, attestation, True

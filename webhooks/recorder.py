"""Event recording: validate, canonicalize, hash and persist inbound events.

An event is stored at most once per content hash. The hash covers the event
kind, its UTC timestamp (millisecond precision), the normalized actor account
and the optional subject, serialized with a fixed key order, so redeliveries
that differ only in formatting collide on the same hash.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ledger.errors import AuthenticationFailure, NotFoundFailure, ValidationFailure
from ledger.models import (
    Attestation,
    DocumentationEvent,
    Entity,
    EntityKind,
    EventKind,
    Integration,
    IntegrationSource,
    normalize_account,
    parse_metadata,
    utcnow,
)
from ledger.settings import Settings, get_settings
from ledger.storage import LedgerStorage, StorageTransaction

logger = logging.getLogger(__name__)

# EHR event type -> documentation event kind
EPIC_EVENT_MAP: dict[str, EventKind] = {
    "encounter.complete": EventKind.ENCOUNTER_NOTE,
    "medication.reconciliation": EventKind.MEDICATION_RECONCILIATION,
    "discharge.summary": EventKind.DISCHARGE_SUMMARY,
    "problem.update": EventKind.PROBLEM_LIST_UPDATE,
    "order.verified": EventKind.ORDERS_VERIFIED,
    "preventive.care": EventKind.PREVENTIVE_CARE,
    "coding.finalized": EventKind.CODING_FINALIZED,
    "intake.completed": EventKind.INTAKE_COMPLETED,
    "consent.signed": EventKind.CONSENT_SIGNED,
    "followup.completed": EventKind.FOLLOW_UP_COMPLETED,
}

PCC_EVENT_MAP: dict[str, EventKind] = dict(EPIC_EVENT_MAP)

EVENT_MAPS = {
    IntegrationSource.EPIC: EPIC_EVENT_MAP,
    IntegrationSource.POINTCLICKCARE: PCC_EVENT_MAP,
}


class WebhookPayload(BaseModel):
    event_kind: str = Field(..., min_length=1, validation_alias=AliasChoices("eventKind", "eventType"))
    timestamp: str = Field(..., min_length=1)
    actor_account_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("actorAccountId", "providerWallet")
    )
    subject_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("subjectId", "patientId"))
    organization_context: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("organizationContext", "organizationId")
    )
    metadata: Optional[dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class RecordResult:
    event: DocumentationEvent
    attestation: Attestation
    created: bool
    actor: Entity
    organization: Optional[Entity] = None


def parse_payload(body: bytes) -> WebhookPayload:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailure("Invalid JSON payload", code="malformed_payload") from None
    try:
        return WebhookPayload.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "body" for err in exc.errors())
        raise ValidationFailure(f"Missing or invalid fields: {fields}", code="malformed_payload") from None


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationFailure("Missing or invalid timestamp", code="invalid_timestamp") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        raise ValidationFailure("Timestamp is out of range", code="invalid_timestamp") from None


def format_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def canonical_hash(
    kind: EventKind, timestamp: datetime, actor_account_id: str, subject_id: Optional[str] = None
) -> str:
    canonical = json.dumps(
        {
            "kind": kind.value,
            "timestamp": format_timestamp(timestamp),
            "actor": normalize_account(actor_account_id),
            "subject": subject_id.strip() if subject_id else None,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class EventRecorder:
    def __init__(
        self,
        storage: LedgerStorage,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.freshness_window = timedelta(seconds=settings.freshness_window_seconds)
        self.signing_key_id = settings.signing_key_id
        self.clock = clock

    def map_event_kind(self, source: IntegrationSource, raw_kind: str) -> EventKind:
        kind = EVENT_MAPS[source].get(raw_kind.strip())
        if kind is None:
            raise ValidationFailure(f"Unknown event type: {raw_kind}", code="unknown_event_kind")
        return kind

    def check_freshness(self, timestamp: datetime) -> None:
        if abs(self.clock() - timestamp) > self.freshness_window:
            logger.warning("Event timestamp outside allowed window: %s", format_timestamp(timestamp))
            raise ValidationFailure("Event timestamp outside allowed window", code="stale_timestamp")

    def record(self, payload: WebhookPayload, integration: Integration) -> RecordResult:
        kind = self.map_event_kind(integration.source, payload.event_kind)
        timestamp = parse_timestamp(payload.timestamp)
        self.check_freshness(timestamp)

        with self.storage.transaction() as tx:
            actor = tx.find_entity_by_account(payload.actor_account_id)
            if actor is None:
                raise NotFoundFailure("Actor account not registered", code="actor_not_registered")
            self._check_integration_scope(integration, actor)
            organization = self._resolve_organization(tx, actor, payload.organization_context)

        event = DocumentationEvent(
            kind=kind,
            event_hash=canonical_hash(kind, timestamp, actor.account_id, payload.subject_id),
            event_timestamp=timestamp,
            actor_id=actor.id,
            subject_id=payload.subject_id.strip() if payload.subject_id else None,
            organization_id=organization.id if organization else None,
            source=integration.source,
            metadata=parse_metadata(payload.metadata),
        )
        attestation = Attestation(event_id=event.id, signing_key_id=self.signing_key_id)

        stored_event, stored_attestation, created = self.storage.insert_event(event, attestation)
        if created:
            logger.info("Recorded %s event %s for actor %s", kind.value, stored_event.id, actor.id)
        else:
            logger.info("Duplicate delivery of event %s (hash %s)", stored_event.id, stored_event.event_hash[:12])
        return RecordResult(
            event=stored_event,
            attestation=stored_attestation,
            created=created,
            actor=actor,
            organization=organization,
        )

    @staticmethod
    def _check_integration_scope(integration: Integration, actor: Entity) -> None:
        if integration.entity_id is None:
            return
        if integration.entity_id not in (actor.id, actor.organization_id):
            logger.warning("Integration %s sent an event for actor %s outside its scope", integration.id, actor.id)
            raise AuthenticationFailure("Actor is not covered by this integration", code="actor_outside_integration")

    @staticmethod
    def _resolve_organization(
        tx: StorageTransaction, actor: Entity, organization_context: Optional[str]
    ) -> Optional[Entity]:
        if not organization_context:
            return tx.get_entity(actor.organization_id) if actor.organization_id else None

        organization = tx.find_entity_by_account(organization_context)
        if organization is None or organization.kind != EntityKind.ORGANIZATION:
            raise NotFoundFailure("Organization not registered", code="organization_not_registered")
        if actor.organization_id and actor.organization_id != organization.id:
            raise ValidationFailure(
                "Organization does not match the actor's organization", code="organization_mismatch"
            )
        return organization

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional, Union
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict, ValidationError, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    PROVIDER = "provider"
    PATIENT = "patient"
    ORGANIZATION = "organization"
    ADMIN = "admin"


class EventKind(str, Enum):
    ENCOUNTER_NOTE = "encounter_note"
    MEDICATION_RECONCILIATION = "medication_reconciliation"
    DISCHARGE_SUMMARY = "discharge_summary"
    PROBLEM_LIST_UPDATE = "problem_list_update"
    ORDERS_VERIFIED = "orders_verified"
    PREVENTIVE_CARE = "preventive_care"
    CODING_FINALIZED = "coding_finalized"
    INTAKE_COMPLETED = "intake_completed"
    CONSENT_SIGNED = "consent_signed"
    FOLLOW_UP_COMPLETED = "follow_up_completed"


class AttestationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != AttestationStatus.PENDING


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    REVERSAL = "REVERSAL"


class RewardShare(str, Enum):
    ACTOR = "actor"
    ORGANIZATION = "organization"
    BENEFICIARY = "beneficiary"
    ORG_BONUS = "org_bonus"
    TREASURY = "treasury"


class IntegrationSource(str, Enum):
    EPIC = "epic"
    POINTCLICKCARE = "pointclickcare"


def normalize_account(account_id: str) -> str:
    return account_id.strip().lower()


class Entity(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: str
    kind: EntityKind
    display_name: Optional[str] = None
    organization_id: Optional[UUID] = None
    is_verified: bool = False
    bonus_recipient_account: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("account_id")
    @classmethod
    def _normalize_account(cls, value: str) -> str:
        return normalize_account(value)


class Integration(BaseModel):
    id: str
    source: IntegrationSource
    entity_id: Optional[UUID] = None
    webhook_secret: Optional[str] = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class ClinicalMetadata(BaseModel):
    """Known metadata shape sent by the EHR connectors."""

    shape: Literal["clinical.v1"] = "clinical.v1"
    encounter_id: Optional[str] = None
    note_id: Optional[str] = None
    department: Optional[str] = None
    ehr_record_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class OpaqueMetadata(BaseModel):
    shape: Literal["opaque"] = "opaque"
    data: dict = Field(default_factory=dict)


EventMetadata = Union[ClinicalMetadata, OpaqueMetadata]


def parse_metadata(raw: Optional[dict[str, Any]]) -> EventMetadata:
    if not raw:
        return ClinicalMetadata()
    model = OpaqueMetadata if raw.get("shape") == "opaque" else ClinicalMetadata
    try:
        return model.model_validate(raw)
    except ValidationError:
        return OpaqueMetadata(data=raw)


class DocumentationEvent(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    kind: EventKind
    event_hash: str
    event_timestamp: datetime
    actor_id: UUID
    subject_id: Optional[str] = None
    organization_id: Optional[UUID] = None
    source: IntegrationSource = IntegrationSource.EPIC
    metadata: EventMetadata = Field(default_factory=ClinicalMetadata)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Attestation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    event_id: UUID
    signing_key_id: str
    signature: str = "pending"
    status: AttestationStatus = AttestationStatus.PENDING
    status_reason: Optional[str] = None
    settlement_reference: Optional[str] = None
    distributed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    def can_distribute(self) -> bool:
        return self.status == AttestationStatus.PENDING and self.distributed_at is None

    def can_transition(self) -> bool:
        return self.status == AttestationStatus.PENDING


class RewardLedgerEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    attestation_id: UUID
    recipient_id: UUID
    recipient_kind: EntityKind
    share: RewardShare
    entry_type: EntryType = EntryType.CREDIT
    amount: Decimal = Field(..., ge=0)
    status: AttestationStatus
    reference_entry_id: Optional[UUID] = None
    settlement_reference: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.entry_type == EntryType.REVERSAL else self.amount

    def can_reverse(self) -> bool:
        return self.entry_type == EntryType.CREDIT and self.status == AttestationStatus.CONFIRMED


class AuditRecord(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    action: str
    actor_ref: Optional[str] = None
    resource_type: str
    resource_id: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class RecipientBalance(BaseModel):
    recipient_id: UUID
    confirmed_balance: Decimal
    pending_balance: Decimal
    total_entries: int
    last_entry_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    recipient_id: UUID
    entries: list[RewardLedgerEntry]
    total_count: int
    confirmed_balance: Decimal


class AttestationDetail(BaseModel):
    attestation: Attestation
    entries: list[RewardLedgerEntry]
    message: str = ""


class TransitionRequest(BaseModel):
    settlement_reference: Optional[str] = None
    reason: Optional[str] = None
    performed_by: Optional[str] = None


class ReverseEntryRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")
    performed_by: Optional[str] = None


class EntityCreateRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    kind: EntityKind
    display_name: Optional[str] = None
    organization_id: Optional[UUID] = None
    is_verified: bool = False
    bonus_recipient_account: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class IntegrationCreateRequest(BaseModel):
    id: str = Field(..., min_length=1)
    source: IntegrationSource
    entity_id: Optional[UUID] = None
    webhook_secret: Optional[str] = None

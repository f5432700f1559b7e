"""
Webhook Pipeline

Authenticate -> parse -> record -> resolve policy -> distribute. Duplicate
deliveries stop after recording and answer with the original event id.
"""

import logging
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.audit import AuditSink
from ledger.distributor import RewardDistributor
from ledger.errors import AuthenticationFailure
from ledger.models import AttestationStatus
from ledger.settings import Settings, get_settings
from ledger.settlement import SettlementBackend, get_settlement_backend
from ledger.storage import LedgerStorage
from policies import ConfigProvider, PolicyResolver

from .recorder import EventRecorder, parse_payload
from .signature import SignatureVerifier

logger = logging.getLogger(__name__)


class WebhookResponse(BaseModel):
    success: bool = True
    event_id: Optional[UUID] = Field(default=None, serialization_alias="eventId")
    message: str
    reward_amount: Optional[Decimal] = Field(default=None, serialization_alias="rewardAmount")
    network_fee: Optional[Decimal] = Field(default=None, serialization_alias="networkFee")
    attestation_status: Optional[AttestationStatus] = Field(default=None, serialization_alias="attestationStatus")

    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookPipeline:
    def __init__(
        self,
        storage: LedgerStorage,
        config: ConfigProvider,
        settings: Optional[Settings] = None,
        settlement: Optional[SettlementBackend] = None,
        audit: Optional[AuditSink] = None,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.audit = audit or AuditSink(storage)
        self.verifier = SignatureVerifier(storage)
        self.recorder = EventRecorder(storage, settings)
        self.resolver = PolicyResolver(config)
        self.distributor = RewardDistributor(
            storage,
            settlement=settlement or get_settlement_backend(settings.settlement_backend),
            audit=self.audit,
            quantum=settings.amount_quantum,
        )

    def handle(self, integration_id: str, body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        """Process one signed webhook delivery.

        Raises:
            LedgerServiceError: subclasses carry the status and code of the failure.
        """
        try:
            integration = self.verifier.authenticate(integration_id, body, headers)
        except AuthenticationFailure as exc:
            self._log_webhook(integration_id, "rejected", exc.code)
            self.audit.record("webhook_invalid_signature", "integrations", integration_id, reason=exc.code)
            raise

        payload = parse_payload(body)
        recorded = self.recorder.record(payload, integration)

        if not recorded.created:
            self._log_webhook(integration_id, "duplicate", payload.event_kind)
            return WebhookResponse(
                event_id=recorded.event.id,
                message="Event already processed",
                attestation_status=recorded.attestation.status,
            )

        self._log_webhook(integration_id, "accepted", payload.event_kind)
        self.audit.record(
            "ehr_event_processed", "documentation_events", recorded.event.id,
            actor_ref=recorded.actor.account_id, source=integration.source.value,
            kind=recorded.event.kind.value,
        )

        resolution = self.resolver.resolve(recorded.event.kind, recorded.organization)
        result = self.distributor.distribute(recorded.event, recorded.attestation, resolution)

        return WebhookResponse(
            event_id=recorded.event.id,
            message=result.message,
            reward_amount=result.actor_reward,
            network_fee=result.split.network_fee if result.split else None,
            attestation_status=result.attestation.status,
        )

    @staticmethod
    def _log_webhook(integration_id: str, outcome: str, detail: Optional[str]) -> None:
        logger.info("WEBHOOK_AUDIT integration=%s outcome=%s detail=%s", integration_id, outcome, detail)

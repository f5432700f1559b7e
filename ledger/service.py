from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from .audit import AuditSink
from .distributor import DistributionResult, RewardDistributor
from .errors import InvalidStateTransitionError, LedgerServiceError, NotFoundFailure, ValidationFailure
from .models import (
    Attestation,
    AttestationDetail,
    AttestationStatus,
    DocumentationEvent,
    Entity,
    EntityCreateRequest,
    EntityKind,
    EntryType,
    Integration,
    IntegrationCreateRequest,
    LedgerHistoryResponse,
    RecipientBalance,
    ReverseEntryRequest,
    RewardLedgerEntry,
    TransitionRequest,
    utcnow,
)
from .storage import InMemoryStorage, LedgerStorage, StorageTransaction

if TYPE_CHECKING:
    from policies import PolicyResolver

logger = logging.getLogger(__name__)


class LedgerService:
    """Query surface and confirmation state machine of the reward ledger.

    Entries move ``pending -> confirmed | rejected | expired`` together with
    their attestation. Terminal states never change again; corrections are
    written as ``REVERSAL`` entries that point at the entry they offset.
    """

    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        distributor: Optional[RewardDistributor] = None,
        resolver: Optional[PolicyResolver] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.audit = audit or AuditSink(self.storage)
        self.distributor = distributor
        self.resolver = resolver

    def register_entity(self, request: EntityCreateRequest) -> Entity:
        entity = Entity(**request.model_dump())
        with self.storage.transaction() as tx:
            if tx.find_entity_by_account(entity.account_id):
                raise ValidationFailure(
                    f"Account {entity.account_id} is already registered", code="account_already_registered"
                )
            if entity.organization_id:
                parent = tx.get_entity(entity.organization_id)
                if parent is None or parent.kind != EntityKind.ORGANIZATION:
                    raise NotFoundFailure("Organization not registered", code="organization_not_registered")
            tx.add_entity(entity)
        logger.info("Registered %s entity %s", entity.kind.value, entity.id)
        return entity

    def register_integration(self, request: IntegrationCreateRequest) -> Integration:
        integration = Integration(**request.model_dump())
        with self.storage.transaction() as tx:
            if integration.entity_id and tx.get_entity(integration.entity_id) is None:
                raise NotFoundFailure(f"Entity {integration.entity_id} not found", code="entity_not_found")
            tx.add_integration(integration)
        if not integration.webhook_secret:
            logger.warning("Integration %s registered without a webhook secret; its webhooks will be rejected", integration.id)
        return integration

    def get_event(self, event_id: UUID) -> DocumentationEvent:
        with self.storage.transaction() as tx:
            event = tx.get_event(event_id)
        if not event:
            raise NotFoundFailure(f"Event {event_id} not found", code="event_not_found")
        return event

    def get_attestation(self, attestation_id: UUID) -> AttestationDetail:
        with self.storage.transaction() as tx:
            attestation = self._require_attestation(tx, attestation_id)
            entries = tx.list_entries(attestation_id=attestation_id)
        return AttestationDetail(attestation=attestation, entries=entries)

    def entries_for_attestation(self, attestation_id: UUID) -> list[RewardLedgerEntry]:
        with self.storage.transaction() as tx:
            return tx.list_entries(attestation_id=attestation_id)

    def confirm_attestation(self, attestation_id: UUID, request: TransitionRequest) -> AttestationDetail:
        return self._transition(
            attestation_id, AttestationStatus.CONFIRMED, request, "attestation_confirmed"
        )

    def reject_attestation(self, attestation_id: UUID, request: TransitionRequest) -> AttestationDetail:
        return self._transition(
            attestation_id, AttestationStatus.REJECTED, request, "attestation_rejected"
        )

    def expire_attestation(self, attestation_id: UUID, request: Optional[TransitionRequest] = None) -> AttestationDetail:
        return self._transition(
            attestation_id, AttestationStatus.EXPIRED, request or TransitionRequest(reason="settlement_timeout"),
            "attestation_expired",
        )

    def _transition(
        self,
        attestation_id: UUID,
        to_status: AttestationStatus,
        request: TransitionRequest,
        action: str,
    ) -> AttestationDetail:
        now = utcnow()
        confirmed_at = now if to_status == AttestationStatus.CONFIRMED else None
        with self.storage.transaction() as tx:
            attestation = self._require_attestation(tx, attestation_id)
            if not attestation.can_transition():
                raise InvalidStateTransitionError(
                    f"Cannot move attestation from {attestation.status.value} to {to_status.value}"
                )
            if to_status == AttestationStatus.CONFIRMED and attestation.distributed_at is None:
                raise InvalidStateTransitionError(
                    f"Attestation {attestation_id} has no distributed reward to confirm"
                )
            if not tx.update_attestation_status(
                attestation_id,
                AttestationStatus.PENDING,
                to_status,
                settlement_reference=request.settlement_reference,
                reason=request.reason,
                confirmed_at=confirmed_at,
            ):
                raise InvalidStateTransitionError(f"Attestation {attestation_id} changed concurrently")
            updated = tx.update_entries_status(
                attestation_id,
                AttestationStatus.PENDING,
                to_status,
                settlement_reference=request.settlement_reference,
                confirmed_at=confirmed_at,
            )
            attestation = tx.get_attestation(attestation_id)
            entries = tx.list_entries(attestation_id=attestation_id)

        logger.info("Attestation %s moved to %s with %d entries", attestation_id, to_status.value, updated)
        self.audit.record(
            action, "attestations", attestation_id,
            actor_ref=request.performed_by, reason=request.reason,
            settlement_reference=request.settlement_reference,
        )
        return AttestationDetail(
            attestation=attestation, entries=entries,
            message=f"Attestation {to_status.value} successfully",
        )

    def reverse_entry(self, entry_id: UUID, request: ReverseEntryRequest) -> RewardLedgerEntry:
        with self.storage.transaction() as tx:
            original = tx.get_entry(entry_id)
            if not original:
                raise NotFoundFailure(f"Ledger entry {entry_id} not found", code="entry_not_found")
            if not original.can_reverse():
                raise InvalidStateTransitionError(
                    f"Cannot reverse {original.entry_type.value} entry in {original.status.value} state. "
                    "Only confirmed credits can be reversed."
                )
            if tx.list_entries(reference_entry_id=entry_id):
                raise InvalidStateTransitionError(f"Ledger entry {entry_id} has already been reversed")

            now = utcnow()
            reversal = tx.add_entry(RewardLedgerEntry(
                attestation_id=original.attestation_id,
                recipient_id=original.recipient_id,
                recipient_kind=original.recipient_kind,
                share=original.share,
                entry_type=EntryType.REVERSAL,
                amount=original.amount,
                status=AttestationStatus.CONFIRMED,
                reference_entry_id=original.id,
                confirmed_at=now,
                description=f"Reversal: {request.reason}",
            ))

        self.audit.record(
            "ledger_entry_reversed", "reward_ledger", reversal.id,
            actor_ref=request.performed_by, original_entry_id=original.id,
            amount=original.amount, reason=request.reason,
        )
        return reversal

    def get_balance(self, recipient_id: UUID) -> RecipientBalance:
        with self.storage.transaction() as tx:
            entries = tx.list_entries(recipient_id=recipient_id)

        confirmed = sum(
            (e.signed_amount for e in entries if e.status == AttestationStatus.CONFIRMED), Decimal(0)
        )
        pending = sum(
            (e.signed_amount for e in entries if e.status == AttestationStatus.PENDING), Decimal(0)
        )
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None

        return RecipientBalance(
            recipient_id=recipient_id,
            confirmed_balance=confirmed,
            pending_balance=pending,
            total_entries=len(entries),
            last_entry_at=last_entry.created_at if last_entry else None,
        )

    def get_ledger_history(self, recipient_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.transaction() as tx:
            all_entries = tx.list_entries(recipient_id=recipient_id)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]
        balance = self.get_balance(recipient_id)

        return LedgerHistoryResponse(
            recipient_id=recipient_id,
            entries=paginated,
            total_count=len(all_entries),
            confirmed_balance=balance.confirmed_balance,
        )

    def expire_stale_attestations(self, older_than: timedelta) -> list[Attestation]:
        """Expire distributed attestations that never received a settlement acknowledgment."""

        cutoff = utcnow() - older_than
        with self.storage.transaction() as tx:
            stale = tx.list_attestations(
                status=AttestationStatus.PENDING, distributed=True, distributed_before=cutoff
            )
        expired = []
        for attestation in stale:
            try:
                detail = self.expire_attestation(attestation.id)
            except InvalidStateTransitionError:
                logger.info("Attestation %s settled before it could expire", attestation.id)
                continue
            expired.append(detail.attestation)
        return expired

    def retry_pending_distributions(self) -> list[DistributionResult]:
        """Run distribution again for every attestation that never distributed.

        This covers events recorded while no policy was active, distributions
        rolled back by a routing error, and requests that timed out after the
        event was stored.
        """

        if self.distributor is None or self.resolver is None:
            raise LedgerServiceError("Distribution retry requires a distributor and a policy resolver")

        with self.storage.transaction() as tx:
            pending = tx.list_attestations(status=AttestationStatus.PENDING, distributed=False)

        results = []
        for attestation in pending:
            with self.storage.transaction() as tx:
                event = tx.get_event(attestation.event_id)
                organization = tx.get_entity(event.organization_id) if event.organization_id else None
            resolution = self.resolver.resolve(event.kind, organization)
            try:
                result = self.distributor.distribute(event, attestation, resolution)
            except LedgerServiceError as exc:
                logger.warning("Retry of attestation %s failed: %s", attestation.id, exc.message)
                continue
            results.append(result)
        logger.info("Retried %d pending attestations, %d distributed", len(pending), sum(r.distributed for r in results))
        return results

    @staticmethod
    def _require_attestation(tx: StorageTransaction, attestation_id: UUID) -> Attestation:
        attestation = tx.get_attestation(attestation_id)
        if not attestation:
            raise NotFoundFailure(f"Attestation {attestation_id} not found", code="attestation_not_found")
        return attestation

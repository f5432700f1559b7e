"""
Reward Distributor

Turns one persisted documentation event into its ledger entries:

1. ``fee = base * fee_percent / 100`` and ``remaining = base - fee``
2. a quarter of the fee goes to the organization's bonus recipient when that
   account is registered, the rest (or all of it) to the treasury
3. actor, organization and beneficiary shares are taken from ``remaining``

Every amount is quantized once with ``ROUND_HALF_EVEN``; the fee-derived
amounts are computed by subtraction so ``fee + remaining == base`` and
``org_bonus + treasury == fee`` hold exactly. All entries and the
attestation transition are written in a single storage transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import TYPE_CHECKING, Optional

from .audit import AuditSink
from .errors import RoutingConfigurationError
from .models import (
    Attestation,
    AttestationStatus,
    DocumentationEvent,
    Entity,
    EntityKind,
    RewardLedgerEntry,
    RewardShare,
    utcnow,
)
from .settlement import MockSettlementBackend, SettlementBackend
from .storage import LedgerStorage, StorageTransaction

if TYPE_CHECKING:
    from policies import PolicyResolution, RewardPolicy

logger = logging.getLogger(__name__)

ORG_BONUS_PERCENT = Decimal("25")
HUNDRED = Decimal("100")
DAILY_CAP_REASON = "daily_cap_reached"


@dataclass
class RewardSplit:
    base_reward: Decimal
    network_fee: Decimal
    remaining: Decimal
    org_bonus: Decimal
    treasury: Decimal
    actor: Decimal
    organization: Decimal
    beneficiary: Decimal


@dataclass
class DistributionResult:
    attestation: Attestation
    entries: list[RewardLedgerEntry] = field(default_factory=list)
    split: Optional[RewardSplit] = None
    distributed: bool = False
    message: str = ""

    @property
    def actor_reward(self) -> Optional[Decimal]:
        return self.split.actor if self.split else None


def compute_split(
    policy: RewardPolicy,
    fee_percent: Decimal,
    bonus_eligible: bool,
    quantum: Decimal = Decimal("0.000001"),
) -> RewardSplit:
    def q(value: Decimal) -> Decimal:
        return value.quantize(quantum, rounding=ROUND_HALF_EVEN)

    base = q(policy.base_reward)
    network_fee = q(base * fee_percent / HUNDRED)
    remaining = base - network_fee
    org_bonus = q(network_fee * ORG_BONUS_PERCENT / HUNDRED) if bonus_eligible else Decimal(0)
    treasury = network_fee - org_bonus
    return RewardSplit(
        base_reward=base,
        network_fee=network_fee,
        remaining=remaining,
        org_bonus=org_bonus,
        treasury=treasury,
        actor=q(remaining * policy.actor_split / HUNDRED),
        organization=q(remaining * policy.organization_split / HUNDRED),
        beneficiary=q(remaining * policy.beneficiary_split / HUNDRED),
    )


class RewardDistributor:
    def __init__(
        self,
        storage: LedgerStorage,
        settlement: Optional[SettlementBackend] = None,
        audit: Optional[AuditSink] = None,
        quantum: Decimal = Decimal("0.000001"),
    ):
        self.storage = storage
        self.settlement = settlement or MockSettlementBackend()
        self.audit = audit or AuditSink(storage)
        self.quantum = quantum

    def distribute(
        self,
        event: DocumentationEvent,
        attestation: Attestation,
        resolution: PolicyResolution,
    ) -> DistributionResult:
        if not resolution.has_reward:
            logger.info("No active policy for %s; event %s recorded without reward", event.kind.value, event.id)
            return DistributionResult(attestation=attestation, message="Event recorded, no reward policy active")

        try:
            with self.storage.transaction() as tx:
                result = self._distribute(tx, event, attestation, resolution)
        except RoutingConfigurationError as exc:
            logger.error(
                "ALERT reward routing failed for event %s attestation %s: %s",
                event.id,
                attestation.id,
                exc.message,
            )
            self.audit.record(
                "reward_routing_failed", "attestations", attestation.id,
                event_id=event.id, reason=exc.code,
            )
            raise

        if result.distributed:
            self.audit.record(
                "reward_distributed", "attestations", result.attestation.id,
                event_id=event.id, entries=len(result.entries),
                network_fee=result.split.network_fee if result.split else None,
            )
        return result

    def _distribute(
        self,
        tx: StorageTransaction,
        event: DocumentationEvent,
        attestation: Attestation,
        resolution: PolicyResolution,
    ) -> DistributionResult:
        policy = resolution.policy
        now = utcnow()

        if policy.daily_cap is not None:
            tx.lock_actor(event.actor_id)
        if policy.daily_cap is not None and self._cap_reached(tx, event, policy.daily_cap):
            if tx.claim_attestation(attestation.id, AttestationStatus.REJECTED, now, reason=DAILY_CAP_REASON):
                logger.info("Daily cap of %d reached for actor %s; event %s earns nothing", policy.daily_cap, event.actor_id, event.id)
                return DistributionResult(attestation=tx.get_attestation(attestation.id), message="Daily reward cap reached")

        status = self.settlement.initial_status
        if not tx.claim_attestation(attestation.id, status, now):
            current = tx.get_attestation(attestation.id)
            logger.info("Attestation %s already distributed; skipping", attestation.id)
            return DistributionResult(
                attestation=current,
                entries=tx.list_entries(attestation_id=attestation.id),
                message="Reward already distributed",
            )

        bonus_recipient = self._resolve_bonus_recipient(tx, resolution.bonus_recipient_account)
        fee_percent = resolution.network_fee.fee_percent if resolution.network_fee else Decimal(0)
        split = compute_split(policy, fee_percent, bonus_recipient is not None, self.quantum)
        confirmed_at = self.settlement.confirmed_at(now)

        def credit(recipient: Entity, share: RewardShare, amount: Decimal, kind: Optional[EntityKind] = None):
            entry = RewardLedgerEntry(
                attestation_id=attestation.id,
                recipient_id=recipient.id,
                recipient_kind=kind or recipient.kind,
                share=share,
                amount=amount,
                status=status,
                confirmed_at=confirmed_at,
                description=f"{share.value} reward for {event.kind.value}",
            )
            return tx.add_entry(entry)

        entries = []
        if split.org_bonus > 0:
            entries.append(credit(bonus_recipient, RewardShare.ORG_BONUS, split.org_bonus))
        if split.treasury > 0:
            treasury = tx.find_entity_by_account(resolution.network_fee.treasury_account)
            if treasury is None:
                raise RoutingConfigurationError(
                    f"Treasury account {resolution.network_fee.treasury_account} is not registered"
                )
            entries.append(credit(treasury, RewardShare.TREASURY, split.treasury, EntityKind.ADMIN))

        actor = tx.get_entity(event.actor_id)
        entries.append(credit(actor, RewardShare.ACTOR, split.actor))

        if split.organization > 0:
            organization = tx.get_entity(event.organization_id) if event.organization_id else None
            if organization:
                entries.append(credit(organization, RewardShare.ORGANIZATION, split.organization, EntityKind.ORGANIZATION))
            else:
                logger.warning("Event %s has no organization; organization share of %s withheld", event.id, split.organization)

        if split.beneficiary > 0:
            beneficiary = tx.find_entity_by_account(event.subject_id) if event.subject_id else None
            if beneficiary:
                entries.append(credit(beneficiary, RewardShare.BENEFICIARY, split.beneficiary, EntityKind.PATIENT))
            else:
                logger.warning("Beneficiary for event %s is not registered; share of %s withheld", event.id, split.beneficiary)

        return DistributionResult(
            attestation=tx.get_attestation(attestation.id),
            entries=entries,
            split=split,
            distributed=True,
            message="Reward distributed",
        )

    def _resolve_bonus_recipient(self, tx: StorageTransaction, account: Optional[str]) -> Optional[Entity]:
        if not account:
            return None
        recipient = tx.find_entity_by_account(account)
        if recipient is None:
            logger.warning(
                "ALERT organization bonus recipient %s is not registered; routing full network fee to treasury",
                account,
            )
        return recipient

    @staticmethod
    def _cap_reached(tx: StorageTransaction, event: DocumentationEvent, cap: int) -> bool:
        day_start = event.event_timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
        count = tx.count_distributed_events(event.actor_id, event.kind, day_start, day_start + timedelta(days=1))
        return count >= cap

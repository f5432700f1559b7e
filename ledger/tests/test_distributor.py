"""
Unit Tests for Reward Distribution

Tests cover:
1. Fee and split arithmetic
2. Organization bonus routing and the treasury fallback
3. Events recorded without an active policy
4. Rollback on treasury misconfiguration and later retry
5. Daily caps, including concurrent deliveries for one actor
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from conftest import (
    BONUS_ACCOUNT,
    INTEGRATION_ID,
    TREASURY_ACCOUNT,
    encounter_policy,
    seed_registry,
    signed_headers,
    webhook_body,
)
from ledger.distributor import DAILY_CAP_REASON, RewardDistributor, compute_split
from ledger.errors import RoutingConfigurationError
from ledger.models import AttestationStatus, Entity, EntityKind, RewardShare
from ledger.service import LedgerService
from ledger.sql import SqlStorage
from ledger.storage import InMemoryStorage
from policies import NetworkFeeSetting, StaticConfigProvider
from webhooks.recorder import parse_timestamp


def shares(entries):
    return {e.share: e.amount for e in entries}


class TestComputeSplit:
    """Tests for the pure split arithmetic."""

    def test_fee_and_bonus_split(self):
        """Base 1000 with a 10% fee gives 100 fee, 25 bonus, 75 treasury."""
        split = compute_split(encounter_policy(), Decimal("10"), bonus_eligible=True)

        assert split.network_fee == Decimal("100")
        assert split.remaining == Decimal("900")
        assert split.org_bonus == Decimal("25")
        assert split.treasury == Decimal("75")
        assert split.actor == Decimal("630")
        assert split.organization == Decimal("180")
        assert split.beneficiary == Decimal("90")

    def test_fee_conserved_without_bonus(self):
        split = compute_split(encounter_policy(), Decimal("10"), bonus_eligible=False)

        assert split.org_bonus == Decimal("0")
        assert split.treasury == split.network_fee

    def test_rounding_keeps_fee_plus_remaining_equal_to_base(self):
        """Uneven percentages are quantized once and the fee side absorbs nothing."""
        policy = encounter_policy(base_reward=Decimal("0.333333"))
        split = compute_split(policy, Decimal("33.3"), bonus_eligible=True)

        assert split.network_fee + split.remaining == split.base_reward
        assert split.org_bonus + split.treasury == split.network_fee
        assert split.network_fee.as_tuple().exponent >= -6

    def test_zero_fee(self):
        split = compute_split(encounter_policy(), Decimal("0"), bonus_eligible=True)

        assert split.network_fee == 0
        assert split.org_bonus == 0
        assert split.actor == Decimal("700")


class TestDistribution:
    """Tests for ledger entries written by the pipeline."""

    def test_full_distribution(self, pipeline, storage, registry):
        """Every share lands on its recipient and the amounts add back up to the base."""
        body = webhook_body()
        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        assert response.success
        assert response.reward_amount == Decimal("630")
        assert response.network_fee == Decimal("100")
        assert response.attestation_status == AttestationStatus.CONFIRMED

        with storage.transaction() as tx:
            attestation = tx.get_attestation_for_event(response.event_id)
            entries = tx.list_entries(attestation_id=attestation.id)

        assert shares(entries) == {
            RewardShare.ORG_BONUS: Decimal("25"),
            RewardShare.TREASURY: Decimal("75"),
            RewardShare.ACTOR: Decimal("630"),
            RewardShare.ORGANIZATION: Decimal("180"),
            RewardShare.BENEFICIARY: Decimal("90"),
        }
        assert sum(e.amount for e in entries) == Decimal("1000")
        assert {e.attestation_id for e in entries} == {attestation.id}
        assert all(e.status == AttestationStatus.CONFIRMED for e in entries)

        recipients = {e.share: e.recipient_id for e in entries}
        assert recipients[RewardShare.ORG_BONUS] == registry.bonus_recipient.id
        assert recipients[RewardShare.TREASURY] == registry.treasury.id
        assert recipients[RewardShare.ACTOR] == registry.provider.id
        assert recipients[RewardShare.ORGANIZATION] == registry.organization.id
        assert recipients[RewardShare.BENEFICIARY] == registry.patient.id

    def test_unregistered_bonus_recipient_routes_fee_to_treasury(self, config, make_pipeline):
        """No bonus entry is written; the treasury receives the whole fee."""
        storage = InMemoryStorage()
        seed_registry(storage, register_bonus=False)
        pipeline = make_pipeline(storage, config)

        body = webhook_body()
        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        attestation = storage.get_attestation_for_event(response.event_id)
        entries = LedgerService(storage).entries_for_attestation(attestation.id)
        amounts = shares(entries)
        assert RewardShare.ORG_BONUS not in amounts
        assert amounts[RewardShare.TREASURY] == Decimal("100")
        assert sum(amounts.values()) == Decimal("1000")
        with storage.transaction() as tx:
            assert tx.find_entity_by_account(BONUS_ACCOUNT) is None

    def test_missing_beneficiary_share_is_withheld(self, pipeline, storage):
        """An unknown subject gets nothing and nobody else receives its share."""
        body = webhook_body(subjectId="mrn-unregistered-4471")
        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        attestation = storage.get_attestation_for_event(response.event_id)
        amounts = shares(storage.list_entries(attestation_id=attestation.id))
        assert RewardShare.BENEFICIARY not in amounts
        assert amounts[RewardShare.ACTOR] == Decimal("630")
        assert sum(amounts.values()) == Decimal("910")

    def test_no_policy_records_event_without_entries(self, storage, registry, make_pipeline):
        """Attestation stays pending and undistributed when no policy is active."""
        pipeline = make_pipeline(storage, StaticConfigProvider())

        body = webhook_body()
        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        assert response.success
        assert response.reward_amount is None
        assert response.attestation_status == AttestationStatus.PENDING
        assert "no reward policy" in response.message

        attestation = storage.get_attestation_for_event(response.event_id)
        assert attestation.distributed_at is None
        assert storage.list_entries(attestation_id=attestation.id) == []

    def test_inactive_policy_is_ignored(self, storage, registry, make_pipeline):
        config = StaticConfigProvider(policies=[encounter_policy(is_active=False)])
        pipeline = make_pipeline(storage, config)

        body = webhook_body()
        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        assert response.reward_amount is None
        assert storage.list_entries() == []


class TestRoutingFailure:
    """Tests for an unregistered treasury account."""

    def test_treasury_missing_rolls_back(self, config, make_pipeline):
        """No entries are written and the attestation stays claimable."""
        storage = InMemoryStorage()
        seed_registry(storage, register_treasury=False)
        pipeline = make_pipeline(storage, config)

        body = webhook_body()
        with pytest.raises(RoutingConfigurationError) as exc_info:
            pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "treasury_not_registered"
        assert storage.list_entries() == []

        [attestation] = storage.list_attestations()
        assert attestation.status == AttestationStatus.PENDING
        assert attestation.distributed_at is None
        assert storage.list_audit_records(action="reward_routing_failed")

    def test_retry_after_registering_treasury(self, config, make_pipeline):
        storage = InMemoryStorage()
        seed_registry(storage, register_treasury=False)
        pipeline = make_pipeline(storage, config)

        body = webhook_body()
        with pytest.raises(RoutingConfigurationError):
            pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        with storage.transaction() as tx:
            tx.add_entity(Entity(account_id=TREASURY_ACCOUNT, kind=EntityKind.ADMIN))

        service = LedgerService(storage, distributor=pipeline.distributor, resolver=pipeline.resolver)
        results = service.retry_pending_distributions()

        assert len(results) == 1
        assert results[0].distributed
        assert sum(e.amount for e in storage.list_entries()) == Decimal("1000")

        # A second retry finds nothing left to distribute
        assert service.retry_pending_distributions() == []

    def test_redelivery_after_failure_is_duplicate(self, config, make_pipeline):
        """The event row survives the rolled back distribution."""
        storage = InMemoryStorage()
        seed_registry(storage, register_treasury=False)
        pipeline = make_pipeline(storage, config)

        body = webhook_body()
        with pytest.raises(RoutingConfigurationError):
            pipeline.handle(INTEGRATION_ID, body, signed_headers(body))

        response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))
        assert "already processed" in response.message
        assert len(storage.events) == 1


class TestDailyCap:
    """Tests for per-actor daily caps."""

    def test_cap_rejects_extra_events(self, storage, registry, make_pipeline):
        config = StaticConfigProvider(
            policies=[encounter_policy(daily_cap=2)],
            network_fee=NetworkFeeSetting(treasury_account=TREASURY_ACCOUNT, fee_percent=Decimal("10")),
        )
        pipeline = make_pipeline(storage, config)
        timestamp = "2030-01-01T00:00:00.000Z"
        pipeline.recorder.clock = lambda: parse_timestamp(timestamp)

        responses = []
        for subject in ("mrn-1", "mrn-2", "mrn-3"):
            body = webhook_body(subjectId=subject, timestamp=timestamp)
            responses.append(pipeline.handle(INTEGRATION_ID, body, signed_headers(body)))

        assert [r.attestation_status for r in responses] == [
            AttestationStatus.CONFIRMED,
            AttestationStatus.CONFIRMED,
            AttestationStatus.REJECTED,
        ]
        assert responses[2].reward_amount is None

        capped = storage.get_attestation_for_event(responses[2].event_id)
        assert capped.status_reason == DAILY_CAP_REASON
        assert storage.list_entries(attestation_id=capped.id) == []

    def test_cap_counts_per_kind(self, storage, registry, make_pipeline):
        config = StaticConfigProvider(
            policies=[
                encounter_policy(daily_cap=1),
                encounter_policy(id="policy-discharge", kind="discharge_summary", daily_cap=1),
            ],
            network_fee=NetworkFeeSetting(treasury_account=TREASURY_ACCOUNT, fee_percent=Decimal("10")),
        )
        pipeline = make_pipeline(storage, config)

        first = webhook_body()
        second = webhook_body(eventKind="discharge.summary")
        for body in (first, second):
            response = pipeline.handle(INTEGRATION_ID, body, signed_headers(body))
            assert response.attestation_status == AttestationStatus.CONFIRMED

    def test_concurrent_deliveries_share_one_cap(self, tmp_path, make_pipeline, monkeypatch):
        """Two events for one actor distributed at the same moment on SQLite earn one reward."""
        storage = SqlStorage(f"sqlite:///{tmp_path / 'ledger.db'}")
        seed_registry(storage)
        config = StaticConfigProvider(
            policies=[encounter_policy(daily_cap=1)],
            network_fee=NetworkFeeSetting(treasury_account=TREASURY_ACCOUNT, fee_percent=Decimal("10")),
        )
        pipeline = make_pipeline(storage, config)
        timestamp = "2030-01-01T08:00:00.000Z"
        pipeline.recorder.clock = lambda: parse_timestamp(timestamp)

        # Both workers meet here unless the first one holds the actor lock
        barrier = threading.Barrier(2)
        cap_reached = RewardDistributor._cap_reached

        def cap_check_after_barrier(tx, event, cap):
            try:
                barrier.wait(timeout=1)
            except threading.BrokenBarrierError:
                pass
            return cap_reached(tx, event, cap)

        monkeypatch.setattr(RewardDistributor, "_cap_reached", staticmethod(cap_check_after_barrier))

        bodies = [webhook_body(subjectId=subject, timestamp=timestamp) for subject in ("mrn-1", "mrn-2")]
        with ThreadPoolExecutor(max_workers=2) as pool:
            responses = list(pool.map(lambda b: pipeline.handle(INTEGRATION_ID, b, signed_headers(b)), bodies))

        assert sorted(r.attestation_status.value for r in responses) == ["confirmed", "rejected"]
        with storage.transaction() as tx:
            entries = [e for a in tx.list_attestations() for e in tx.list_entries(attestation_id=a.id)]
        assert len(entries) == 5
        assert sum(e.amount for e in entries) == Decimal("1000")

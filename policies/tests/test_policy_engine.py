"""
Unit Tests for Reward Policies

Tests cover:
1. Policy validation and serialization
2. Network fee settings
3. Active policy lookup
4. Bonus recipient precedence
"""

import json
from decimal import Decimal
from pathlib import Path

import pytest

from ledger.models import Entity, EntityKind, EventKind
from policies import NetworkFeeSetting, PolicyResolver, RewardPolicy, StaticConfigProvider

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "rewards.json"


def organization(**overrides) -> Entity:
    values = {"account_id": "0xorg", "kind": EntityKind.ORGANIZATION}
    values.update(overrides)
    return Entity(**values)


class TestRewardPolicy:
    """Tests for policy construction."""

    def test_values_become_decimals(self):
        policy = RewardPolicy(kind="encounter_note", base_reward="12.5", actor_split=60, organization_split="40")

        assert policy.kind == EventKind.ENCOUNTER_NOTE
        assert policy.base_reward == Decimal("12.5")
        assert policy.total_split == Decimal("100")

    def test_over_allocation_rejected(self):
        with pytest.raises(ValueError):
            RewardPolicy(kind="encounter_note", base_reward=10, actor_split=80, organization_split=30)

    def test_under_allocation_accepted(self):
        policy = RewardPolicy(kind="encounter_note", base_reward=10, actor_split=50)
        assert policy.total_split == Decimal("50")

    @pytest.mark.parametrize("field, value", [
        ("base_reward", -1),
        ("actor_split", 101),
        ("beneficiary_split", -5),
        ("base_reward", "ten"),
    ])
    def test_invalid_values(self, field, value):
        values = {"kind": "encounter_note", "base_reward": 10, "actor_split": 50}
        values[field] = value
        with pytest.raises(ValueError):
            RewardPolicy(**values)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            RewardPolicy(kind="lab_result", base_reward=10)

    def test_dict_round_trip(self):
        policy = RewardPolicy(
            id="policy-x", kind=EventKind.INTAKE_COMPLETED, base_reward=Decimal("3"),
            actor_split=Decimal("90"), daily_cap=10,
        )
        assert RewardPolicy.from_dict(policy.to_dict()) == policy


class TestNetworkFee:
    """Tests for the network fee setting."""

    def test_treasury_normalized(self):
        fee = NetworkFeeSetting(treasury_account=" 0xTREASURY ", fee_percent="2.5")
        assert fee.treasury_account == "0xtreasury"
        assert fee.fee_percent == Decimal("2.5")

    def test_legacy_keys(self):
        fee = NetworkFeeSetting.from_dict({"wallet_address": "0xT", "percentage": 5})
        assert fee.treasury_account == "0xt"
        assert fee.fee_percent == Decimal("5")

    def test_fee_over_hundred(self):
        with pytest.raises(ValueError):
            NetworkFeeSetting(treasury_account="0xt", fee_percent=120)


class TestStaticConfigProvider:
    """Tests for the in-memory policy registry."""

    def test_active_policy(self):
        provider = StaticConfigProvider(policies=[
            RewardPolicy(id="old", kind="encounter_note", base_reward=5, is_active=False),
            RewardPolicy(id="new", kind="encounter_note", base_reward=8),
        ])

        assert provider.active_policy(EventKind.ENCOUNTER_NOTE).id == "new"
        assert provider.active_policy(EventKind.DISCHARGE_SUMMARY) is None

    def test_remove_policy(self):
        provider = StaticConfigProvider(policies=[RewardPolicy(id="p1", kind="encounter_note", base_reward=5)])
        provider.remove_policy("p1")
        assert provider.active_policy(EventKind.ENCOUNTER_NOTE) is None

    def test_from_file(self, tmp_path):
        path = tmp_path / "rewards.json"
        path.write_text(json.dumps({
            "network_fee": {"treasury_account": "0xT", "fee_percent": "10"},
            "policies": [{"kind": "encounter_note", "base_reward": "4", "actor_split": "100"}],
        }))

        provider = StaticConfigProvider.from_file(path)

        assert provider.network_fee().fee_percent == Decimal("10")
        assert provider.active_policy(EventKind.ENCOUNTER_NOTE).base_reward == Decimal("4")

    def test_shipped_sample_config_loads(self):
        provider = StaticConfigProvider.from_file(SAMPLE_CONFIG)

        assert provider.network_fee() is not None
        assert provider.active_policy(EventKind.ENCOUNTER_NOTE).daily_cap == 50

    def test_invalid_file_rejected(self, tmp_path):
        path = tmp_path / "rewards.json"
        path.write_text(json.dumps({"policies": [
            {"kind": "encounter_note", "base_reward": "4", "actor_split": "90", "organization_split": "20"},
        ]}))

        with pytest.raises(ValueError):
            StaticConfigProvider.from_file(path)


class TestBonusRecipient:
    """Tests for bonus recipient precedence."""

    def test_entity_field_first(self):
        org = organization(
            bonus_recipient_account="0xFIELD",
            metadata={"creator_wallet_address": "0xcreator"},
        )
        assert PolicyResolver.bonus_recipient(org) == "0xfield"

    def test_metadata_order(self):
        org = organization(metadata={
            "org_creator_wallet_address": "0xorgcreator",
            "owner_wallet_address": "0xowner",
        })
        assert PolicyResolver.bonus_recipient(org) == "0xowner"

    def test_non_string_metadata_ignored(self):
        org = organization(metadata={"creator_wallet_address": 42, "owner_wallet_address": "  "})
        assert PolicyResolver.bonus_recipient(org) is None

    def test_no_organization(self):
        assert PolicyResolver.bonus_recipient(None) is None

    def test_resolve(self):
        provider = StaticConfigProvider(
            policies=[RewardPolicy(kind="encounter_note", base_reward=5)],
            network_fee=NetworkFeeSetting(treasury_account="0xT", fee_percent=1),
        )
        resolution = PolicyResolver(provider).resolve(
            EventKind.ENCOUNTER_NOTE, organization(metadata={"creator_wallet_address": "0xC"})
        )

        assert resolution.has_reward
        assert resolution.bonus_recipient_account == "0xc"
        assert resolution.network_fee.treasury_account == "0xt"

        assert not PolicyResolver(provider).resolve(EventKind.CONSENT_SIGNED).has_reward

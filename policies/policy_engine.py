import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional, Union
from uuid import uuid4

from ledger.models import Entity, EventKind, normalize_account

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

# Checked in order after the explicit ``Entity.bonus_recipient_account`` field.
BONUS_RECIPIENT_METADATA_KEYS = (
    "creator_wallet_address",
    "owner_wallet_address",
    "org_creator_wallet_address",
)


def _to_decimal(value: Union[str, int, float, Decimal], name: str) -> Decimal:
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _check_percent(value: Decimal, name: str) -> None:
    if not (0 <= value <= HUNDRED):
        raise ValueError(f"{name} must be between 0 and 100, got {value}")


@dataclass
class RewardPolicy:
    kind: EventKind
    base_reward: Decimal
    actor_split: Decimal = HUNDRED
    organization_split: Decimal = Decimal("0")
    beneficiary_split: Decimal = Decimal("0")
    daily_cap: Optional[int] = None
    is_active: bool = True
    id: str = field(default_factory=lambda: f"policy-{uuid4().hex[:8]}")

    def __post_init__(self):
        self.kind = EventKind(self.kind)
        self.base_reward = _to_decimal(self.base_reward, "base_reward")
        if self.base_reward < 0:
            raise ValueError(f"base_reward must be non-negative, got {self.base_reward}")
        for name in ("actor_split", "organization_split", "beneficiary_split"):
            value = _to_decimal(getattr(self, name), name)
            _check_percent(value, name)
            setattr(self, name, value)
        if self.total_split > HUNDRED:
            raise ValueError(f"Policy {self.id} allocates {self.total_split}% of the reward")
        if self.daily_cap is not None and self.daily_cap < 0:
            raise ValueError(f"daily_cap must be non-negative, got {self.daily_cap}")

    @property
    def total_split(self) -> Decimal:
        return self.actor_split + self.organization_split + self.beneficiary_split

    def to_dict(self) -> dict:
        return {
            "id": self.id, "kind": self.kind.value, "base_reward": str(self.base_reward),
            "actor_split": str(self.actor_split), "organization_split": str(self.organization_split),
            "beneficiary_split": str(self.beneficiary_split), "daily_cap": self.daily_cap,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RewardPolicy":
        return cls(
            id=data.get("id") or f"policy-{uuid4().hex[:8]}", kind=EventKind(data["kind"]),
            base_reward=data["base_reward"], actor_split=data.get("actor_split", HUNDRED),
            organization_split=data.get("organization_split", 0),
            beneficiary_split=data.get("beneficiary_split", 0),
            daily_cap=data.get("daily_cap"), is_active=data.get("is_active", True),
        )


@dataclass
class NetworkFeeSetting:
    treasury_account: str
    fee_percent: Decimal = Decimal("0")

    def __post_init__(self):
        self.treasury_account = normalize_account(self.treasury_account)
        self.fee_percent = _to_decimal(self.fee_percent, "fee_percent")
        _check_percent(self.fee_percent, "fee_percent")

    def to_dict(self) -> dict:
        return {"treasury_account": self.treasury_account, "fee_percent": str(self.fee_percent)}

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkFeeSetting":
        return cls(
            treasury_account=data.get("treasury_account") or data["wallet_address"],
            fee_percent=data.get("fee_percent", data.get("percentage", 0)),
        )


class ConfigProvider(ABC):
    """Read-only source of reward policies and the network fee."""

    @abstractmethod
    def active_policy(self, kind: EventKind) -> Optional[RewardPolicy]: ...

    @abstractmethod
    def network_fee(self) -> Optional[NetworkFeeSetting]: ...


class StaticConfigProvider(ConfigProvider):
    def __init__(
        self,
        policies: Optional[list[RewardPolicy]] = None,
        network_fee: Optional[NetworkFeeSetting] = None,
    ):
        self.policies: dict[str, RewardPolicy] = {}
        self._network_fee = network_fee
        for policy in policies or []:
            self.add_policy(policy)

    def add_policy(self, policy: RewardPolicy) -> None:
        if policy.is_active and policy.total_split < HUNDRED:
            logger.info(
                "Policy %s allocates %s%% of the reward; the remainder is not credited",
                policy.id,
                policy.total_split,
            )
        self.policies[policy.id] = policy

    def remove_policy(self, policy_id: str) -> None:
        self.policies.pop(policy_id, None)

    def get_policy(self, policy_id: str) -> Optional[RewardPolicy]:
        return self.policies.get(policy_id)

    def list_policies(self, kind: Optional[EventKind] = None) -> list[RewardPolicy]:
        policies = list(self.policies.values())
        if kind:
            policies = [p for p in policies if p.kind == kind]
        return policies

    def set_network_fee(self, network_fee: Optional[NetworkFeeSetting]) -> None:
        self._network_fee = network_fee

    def active_policy(self, kind: EventKind) -> Optional[RewardPolicy]:
        active = [p for p in self.list_policies(kind) if p.is_active]
        if len(active) > 1:
            logger.warning("Multiple active policies for %s; using %s", kind.value, active[-1].id)
        return active[-1] if active else None

    def network_fee(self) -> Optional[NetworkFeeSetting]:
        return self._network_fee

    def to_dict(self) -> dict:
        return {
            "network_fee": self._network_fee.to_dict() if self._network_fee else None,
            "policies": [p.to_dict() for p in self.policies.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StaticConfigProvider":
        fee_data = data.get("network_fee")
        return cls(
            policies=[RewardPolicy.from_dict(p) for p in data.get("policies", [])],
            network_fee=NetworkFeeSetting.from_dict(fee_data) if fee_data else None,
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticConfigProvider":
        with Path(path).open("r", encoding="utf-8") as handle:
            provider = cls.from_dict(json.load(handle))
        logger.info("Loaded %d reward policies from %s", len(provider.policies), path)
        return provider


@dataclass
class PolicyResolution:
    policy: Optional[RewardPolicy] = None
    network_fee: Optional[NetworkFeeSetting] = None
    bonus_recipient_account: Optional[str] = None

    @property
    def has_reward(self) -> bool:
        return self.policy is not None


class PolicyResolver:
    def __init__(self, config: ConfigProvider):
        self.config = config

    def resolve(self, kind: EventKind, organization: Optional[Entity] = None) -> PolicyResolution:
        return PolicyResolution(
            policy=self.config.active_policy(kind),
            network_fee=self.config.network_fee(),
            bonus_recipient_account=self.bonus_recipient(organization),
        )

    @staticmethod
    def bonus_recipient(organization: Optional[Entity]) -> Optional[str]:
        if organization is None:
            return None
        if organization.bonus_recipient_account:
            return normalize_account(organization.bonus_recipient_account)
        metadata: dict[str, Any] = organization.metadata or {}
        for key in BONUS_RECIPIENT_METADATA_KEYS:
            value = metadata.get(key)
            if isinstance(value, str) and value.strip():
                return normalize_account(value)
        return None


def create_sample_policies() -> list[RewardPolicy]:
    return [
        RewardPolicy(
            id="policy-encounter-note", kind=EventKind.ENCOUNTER_NOTE,
            base_reward=Decimal("10"), actor_split=Decimal("70"),
            organization_split=Decimal("20"), beneficiary_split=Decimal("10"),
            daily_cap=50,
        ),
        RewardPolicy(
            id="policy-discharge-summary", kind=EventKind.DISCHARGE_SUMMARY,
            base_reward=Decimal("25"), actor_split=Decimal("80"),
            organization_split=Decimal("20"),
        ),
        RewardPolicy(
            id="policy-medication-reconciliation", kind=EventKind.MEDICATION_RECONCILIATION,
            base_reward=Decimal("15"),
        ),
    ]


if __name__ == "__main__":
    provider = StaticConfigProvider(
        policies=create_sample_policies(),
        network_fee=NetworkFeeSetting(treasury_account="0xTreasury", fee_percent=Decimal("10")),
    )
    print(json.dumps(provider.to_dict(), indent=2))

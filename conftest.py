"""Shared fixtures: a registered organization, provider, patient and treasury."""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import pytest

from ledger.models import Entity, EntityKind, Integration, IntegrationSource, utcnow
from ledger.settings import Settings
from ledger.settlement import MockSettlementBackend, SettlementBackend
from ledger.storage import InMemoryStorage, LedgerStorage
from policies import NetworkFeeSetting, RewardPolicy, StaticConfigProvider
from webhooks.pipeline import WebhookPipeline
from webhooks.recorder import format_timestamp
from webhooks.signature import sign

WEBHOOK_SECRET = "whsec_3f9a1c7e2b"
INTEGRATION_ID = "epic-mercy-general"
ORG_ACCOUNT = "0x0rg0000000000000000000000000000000000001"
PROVIDER_ACCOUNT = "0xPr0v1der00000000000000000000000000000A1"
PATIENT_ACCOUNT = "0xpat1ent000000000000000000000000000000b2"
BONUS_ACCOUNT = "0xb0nus00000000000000000000000000000000c3"
TREASURY_ACCOUNT = "0x7reasury000000000000000000000000000000d4"


@dataclass
class Registry:
    organization: Entity
    provider: Entity
    patient: Entity
    treasury: Optional[Entity]
    bonus_recipient: Optional[Entity]
    integration: Integration


def seed_registry(
    storage: LedgerStorage,
    register_treasury: bool = True,
    register_bonus: bool = True,
) -> Registry:
    organization = Entity(
        account_id=ORG_ACCOUNT,
        kind=EntityKind.ORGANIZATION,
        display_name="Mercy General",
        bonus_recipient_account=BONUS_ACCOUNT,
    )
    provider = Entity(
        account_id=PROVIDER_ACCOUNT,
        kind=EntityKind.PROVIDER,
        display_name="Dr. Rivera",
        organization_id=organization.id,
        is_verified=True,
    )
    patient = Entity(account_id=PATIENT_ACCOUNT, kind=EntityKind.PATIENT)
    treasury = Entity(account_id=TREASURY_ACCOUNT, kind=EntityKind.ADMIN) if register_treasury else None
    bonus = Entity(account_id=BONUS_ACCOUNT, kind=EntityKind.ADMIN) if register_bonus else None
    integration = Integration(
        id=INTEGRATION_ID,
        source=IntegrationSource.EPIC,
        entity_id=organization.id,
        webhook_secret=WEBHOOK_SECRET,
    )

    with storage.transaction() as tx:
        for entity in (organization, provider, patient, treasury, bonus):
            if entity is not None:
                tx.add_entity(entity)
        tx.add_integration(integration)

    return Registry(
        organization=organization,
        provider=provider,
        patient=patient,
        treasury=treasury,
        bonus_recipient=bonus,
        integration=integration,
    )


def encounter_policy(**overrides) -> RewardPolicy:
    values = dict(
        id="policy-encounter-note",
        kind="encounter_note",
        base_reward=Decimal("1000"),
        actor_split=Decimal("70"),
        organization_split=Decimal("20"),
        beneficiary_split=Decimal("10"),
    )
    values.update(overrides)
    return RewardPolicy(**values)


def webhook_body(**overrides) -> bytes:
    payload = {
        "eventKind": "encounter.complete",
        "timestamp": format_timestamp(utcnow()),
        "actorAccountId": PROVIDER_ACCOUNT,
        "subjectId": PATIENT_ACCOUNT,
        "metadata": {"encounter_id": "enc-20931", "department": "cardiology"},
    }
    payload.update(overrides)
    payload = {k: v for k, v in payload.items() if v is not None}
    return json.dumps(payload).encode("utf-8")


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {"x-epic-signature": sign(secret, body), "content-type": "application/json"}


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url=None,
        freshness_window_seconds=300,
        settlement_backend="mock",
        policies_file=None,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def registry(storage):
    return seed_registry(storage)


@pytest.fixture
def config():
    return StaticConfigProvider(
        policies=[encounter_policy()],
        network_fee=NetworkFeeSetting(treasury_account=TREASURY_ACCOUNT, fee_percent=Decimal("10")),
    )


@pytest.fixture
def make_pipeline(settings):
    def _make(
        storage: LedgerStorage,
        config: StaticConfigProvider,
        settlement: Optional[SettlementBackend] = None,
    ) -> WebhookPipeline:
        return WebhookPipeline(
            storage, config, settings=settings, settlement=settlement or MockSettlementBackend()
        )

    return _make


@pytest.fixture
def pipeline(storage, registry, config, make_pipeline):
    return make_pipeline(storage, config)

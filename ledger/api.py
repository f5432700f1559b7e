import asyncio
import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from policies import ConfigProvider, StaticConfigProvider
from webhooks import WebhookPipeline

from .errors import LedgerServiceError
from .models import (
    AttestationDetail,
    DocumentationEvent,
    Entity,
    EntityCreateRequest,
    Integration,
    IntegrationCreateRequest,
    LedgerHistoryResponse,
    RecipientBalance,
    ReverseEntryRequest,
    RewardLedgerEntry,
    TransitionRequest,
)
from .service import LedgerService
from .settings import Settings, configure_logging, get_settings
from .settlement import SettlementBackend, get_settlement_backend
from .sql import SqlStorage
from .storage import InMemoryStorage, LedgerStorage

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> LedgerStorage:
    if settings.database_url:
        return SqlStorage(settings.database_url)
    logger.warning("CAREWALLET_DATABASE_URL not set; using the in-memory ledger")
    return InMemoryStorage()


def build_config(settings: Settings) -> ConfigProvider:
    if settings.policies_file:
        return StaticConfigProvider.from_file(settings.policies_file)
    logger.warning("No reward policies configured; events will be recorded without rewards")
    return StaticConfigProvider()


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[LedgerStorage] = None,
    config: Optional[ConfigProvider] = None,
    settlement: Optional[SettlementBackend] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    storage = storage or build_storage(settings)
    config = config or build_config(settings)
    settlement = settlement or get_settlement_backend(settings.settlement_backend)

    pipeline = WebhookPipeline(storage, config, settings=settings, settlement=settlement)
    ledger_service = LedgerService(
        storage,
        distributor=pipeline.distributor,
        resolver=pipeline.resolver,
        audit=pipeline.audit,
    )

    app = FastAPI(
        title="CareWallet Reward Ledger API",
        description="EHR documentation webhooks, reward distribution and an append-only reward ledger",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.ledger_service = ledger_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("%s %s failed unexpectedly", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "code": "internal_error", "error": "Internal server error"},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "carewallet-ledger", "settlement": settlement.name}

    @app.post("/webhooks/{integration_id}", tags=["Webhooks"])
    async def receive_webhook(integration_id: str, request: Request):
        body = await request.body()
        headers = {key.lower(): value for key, value in request.headers.items()}
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(pipeline.handle, integration_id, body, headers),
                timeout=settings.processing_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Webhook from %s exceeded %ss; pending distribution is left for retry",
                integration_id,
                settings.processing_timeout_seconds,
            )
            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={"success": False, "code": "processing_timeout", "error": "Processing timed out"},
            )
        return response.to_dict()

    @app.post("/entities", response_model=Entity, status_code=status.HTTP_201_CREATED, tags=["Entities"])
    def register_entity(request: EntityCreateRequest) -> Entity:
        return ledger_service.register_entity(request)

    @app.post("/integrations", status_code=status.HTTP_201_CREATED, tags=["Entities"])
    def register_integration(request: IntegrationCreateRequest):
        integration: Integration = ledger_service.register_integration(request)
        return integration.model_dump(mode="json", exclude={"webhook_secret"})

    @app.get("/events/{event_id}", response_model=DocumentationEvent, tags=["Events"])
    def get_event(event_id: UUID) -> DocumentationEvent:
        return ledger_service.get_event(event_id)

    @app.post("/attestations/retry-pending", tags=["Attestations"])
    def retry_pending():
        results = ledger_service.retry_pending_distributions()
        return {
            "success": True,
            "retried": len(results),
            "distributed": sum(1 for r in results if r.distributed),
        }

    @app.get("/attestations/{attestation_id}", response_model=AttestationDetail, tags=["Attestations"])
    def get_attestation(attestation_id: UUID) -> AttestationDetail:
        return ledger_service.get_attestation(attestation_id)

    @app.post("/attestations/{attestation_id}/confirm", response_model=AttestationDetail, tags=["Attestations"])
    def confirm_attestation(attestation_id: UUID, request: TransitionRequest) -> AttestationDetail:
        return ledger_service.confirm_attestation(attestation_id, request)

    @app.post("/attestations/{attestation_id}/reject", response_model=AttestationDetail, tags=["Attestations"])
    def reject_attestation(attestation_id: UUID, request: TransitionRequest) -> AttestationDetail:
        return ledger_service.reject_attestation(attestation_id, request)

    @app.post("/attestations/{attestation_id}/expire", response_model=AttestationDetail, tags=["Attestations"])
    def expire_attestation(attestation_id: UUID, request: Optional[TransitionRequest] = None) -> AttestationDetail:
        return ledger_service.expire_attestation(attestation_id, request)

    @app.post("/ledger/entries/{entry_id}/reverse", response_model=RewardLedgerEntry, tags=["Ledger"])
    def reverse_entry(entry_id: UUID, request: ReverseEntryRequest) -> RewardLedgerEntry:
        return ledger_service.reverse_entry(entry_id, request)

    @app.get("/entities/{entity_id}/balance", response_model=RecipientBalance, tags=["Ledger"])
    def get_balance(entity_id: UUID) -> RecipientBalance:
        return ledger_service.get_balance(entity_id)

    @app.get("/entities/{entity_id}/ledger", response_model=LedgerHistoryResponse, tags=["Ledger"])
    def get_ledger(entity_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return ledger_service.get_ledger_history(entity_id, limit, offset)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

from humsafer.config import Settings
from humsafer.controllers import v1
from humsafer.db import init_db
from humsafer.logger import setup_logging
from humsafer.services.intents import IntentClassifier
from humsafer.services.orchestrator import Orchestrator
from humsafer.services.provider_chain import profiles_from_settings
from humsafer.services.providers import ProviderSet, build_provider_set
from humsafer.services.quota import QuotaLedger, build_tier_rules
from humsafer.services.usage_store import UsageStore

settings = Settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


def build_orchestrator(
    cfg: Settings,
    store: UsageStore,
    providers: ProviderSet,
    *,
    intent_classifier: IntentClassifier | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Orchestrator:
    """Wire the ledger, chain profiles and providers from settings."""
    ledger_kwargs = {"tz": cfg.quota_timezone}
    if clock is not None:
        ledger_kwargs["clock"] = clock
    ledger = QuotaLedger(store, build_tier_rules(cfg), **ledger_kwargs)
    low_latency, legacy = profiles_from_settings(cfg)
    return Orchestrator(
        ledger,
        store,
        providers,
        low_latency=low_latency,
        legacy=legacy,
        intent_classifier=intent_classifier,
        charge_restricted_refusal=cfg.charge_restricted_refusal,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    store = UsageStore()
    providers = build_provider_set(settings)
    orchestrator = build_orchestrator(settings, store, providers)
    app.state.usage_store = store
    app.state.providers = providers
    app.state.orchestrator = orchestrator
    logger.info("Providers configured: %s", orchestrator.configured_providers())
    try:
        yield
    finally:
        # the current orchestrator may have been swapped in tests
        await app.state.orchestrator.drain()
        await providers.aclose()


app = FastAPI(
    title="Humsafer AI API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(v1.router)


@app.get("/health", tags=["health"])
async def health(request: Request):
    orchestrator: Orchestrator = request.app.state.orchestrator
    return {
        "status": "ok",
        "providers": orchestrator.configured_providers(),
        "pending_writes": orchestrator.pending_writes,
    }


Instrumentator().instrument(app).expose(app)

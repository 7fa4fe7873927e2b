"""Application service wiring.

Builds the long-lived collaborators of the chat pipeline once per process
and hands them to the HTTP layer and CLI explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from server.app.billing import BillingService
from server.app.llm.fallback import ProviderFallbackChain
from server.app.llm.orchestrator import StreamingOrchestrator
from server.app.llm.providers import ProviderRegistry
from server.app.llm.usage_ledger import UsageLedger
from server.app.settings import Settings
from server.app.storage.backend import MeteringStore

logger = structlog.get_logger(__name__)


@dataclass
class AppServices:
    """Everything a request handler needs, built at startup."""

    settings: Settings
    store: MeteringStore
    registry: ProviderRegistry
    chain: ProviderFallbackChain
    billing: BillingService
    ledger: UsageLedger
    orchestrator: StreamingOrchestrator

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: MeteringStore,
        registry: Optional[ProviderRegistry] = None,
    ) -> AppServices:
        """Wire services around an initialized store.

        Args:
            settings: Application settings.
            store: Initialized metering store.
            registry: Provider registry; built from settings when omitted.
        """
        registry = registry or ProviderRegistry(settings)
        chain = ProviderFallbackChain.from_settings(registry, settings)
        billing = BillingService(store, min_balance=settings.min_token_balance)
        ledger = UsageLedger(store)
        orchestrator = StreamingOrchestrator(
            store,
            registry,
            settings,
            chain=chain,
            billing=billing,
            ledger=ledger,
        )
        logger.debug("Application services built", providers=sorted(registry.list_available_providers()))
        return cls(
            settings=settings,
            store=store,
            registry=registry,
            chain=chain,
            billing=billing,
            ledger=ledger,
            orchestrator=orchestrator,
        )

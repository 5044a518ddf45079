"""Explicit construction of the service graph for the API and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from doci.settings import Settings
from doci.services import (
    ContentStore,
    EscrowService,
    HttpLedger,
    IdentifierStore,
    IpfsContentStore,
    Ledger,
    LocalContentStore,
    RegistrationService,
    ResolutionService,
    SqlIdentifierStore,
    build_provider_chain,
)

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Services:
    store: IdentifierStore
    content: ContentStore
    ledger: Ledger | None
    resolution: ResolutionService
    registration: RegistrationService
    escrow: EscrowService


def build_services(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    store: IdentifierStore | None = None,
    content: ContentStore | None = None,
    ledger: Ledger | None = None,
    escrow: EscrowService | None = None,
) -> Services:
    """Wire every service from settings, letting callers inject replacements."""
    if store is None:
        sql_store = SqlIdentifierStore.from_settings(settings)
        store = sql_store
        escrow = escrow or EscrowService(engine=sql_store.engine)
    escrow = escrow or EscrowService(settings)

    if content is None:
        if settings.content_backend == "ipfs":
            if client is None:
                raise ValueError("An HTTP client is required for the IPFS content store")
            content = IpfsContentStore(client, settings)
        else:
            content = LocalContentStore.from_settings(settings)

    if ledger is None and settings.ledger_url:
        if client is None:
            raise ValueError("An HTTP client is required for the ledger gateway")
        ledger = HttpLedger(client, settings.ledger_url)

    chain = build_provider_chain(
        store, ledger=ledger, content=content, researcher_prefix=settings.researcher_prefix
    )
    logger.debug("wiring.ready", providers=chain.names, content=content.name)
    return Services(
        store=store,
        content=content,
        ledger=ledger,
        resolution=ResolutionService(store, chain, researcher_prefix=settings.researcher_prefix),
        registration=RegistrationService(store, content, settings, ledger=ledger),
        escrow=escrow,
    )


def needs_http_client(settings: Settings) -> bool:
    return settings.content_backend == "ipfs" or bool(settings.ledger_url)

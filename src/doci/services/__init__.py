"""Service abstractions for the DOCI registry."""

from .content import ContentStore, ContentStoreError, IpfsContentStore, LocalContentStore
from .escrow import EscrowService, TransferEntry
from .ledger import HttpLedger, InMemoryLedger, Ledger, LedgerEntry, LedgerError
from .providers import (
    LedgerLookupProvider,
    LookupProvider,
    LookupResult,
    LookupStatus,
    ProviderChain,
    StoreLookupProvider,
    build_provider_chain,
)
from .registration import RegistrationService
from .resolution import ResolutionService
from .store import IdentifierStore, InMemoryIdentifierStore, SqlIdentifierStore

__all__ = [
    "ContentStore",
    "ContentStoreError",
    "IpfsContentStore",
    "LocalContentStore",
    "EscrowService",
    "TransferEntry",
    "HttpLedger",
    "InMemoryLedger",
    "Ledger",
    "LedgerEntry",
    "LedgerError",
    "LedgerLookupProvider",
    "LookupProvider",
    "LookupResult",
    "LookupStatus",
    "ProviderChain",
    "StoreLookupProvider",
    "build_provider_chain",
    "RegistrationService",
    "ResolutionService",
    "IdentifierStore",
    "InMemoryIdentifierStore",
    "SqlIdentifierStore",
]

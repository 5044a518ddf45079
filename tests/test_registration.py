import asyncio
import json

import pytest

from conftest import PUBLICATION_METADATA
from doci.errors import (
    Conflict,
    DuplicateCode,
    InternalError,
    NotFound,
    Unauthorized,
    ValidationError,
)
from doci.models import IdentifierKind, IdentifierStatus
from doci.services.ledger import LedgerError
from doci.services.registration import RegistrationService
from doci.services.store import InMemoryIdentifierStore


class _FlakyLedger:
    """Fails the first ``failures`` anchor calls, then succeeds."""

    name = "flaky"

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def anchor(self, prefix: str, suffix: str, content_ref: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise LedgerError("ledger unavailable")
        return f"tx-{prefix}-{suffix}"

    async def lookup(self, prefix: str, suffix: str):
        return None


class _StickyAllocatorStore(InMemoryIdentifierStore):
    """Hands out the same suffix a fixed number of times before moving on."""

    def __init__(self, repeats: int) -> None:
        super().__init__()
        self.repeats = repeats

    def allocate_suffix(self, prefix: str) -> str:
        if self.repeats > 0:
            self.repeats -= 1
            return "000001"
        return super().allocate_suffix(prefix)


def _service(store, content, settings, ledger=None) -> RegistrationService:
    return RegistrationService(store, content, settings, ledger=ledger)


async def _register_publication(service, **overrides):
    params = {
        "kind": IdentifierKind.PUBLICATION,
        "namespace_prefix": "10.FRONS",
        "owner_user_id": "user-1",
        "metadata": PUBLICATION_METADATA,
    }
    params.update(overrides)
    return await service.register(**params)


@pytest.mark.asyncio
async def test_register_allocates_suffix_and_writes_content(store, content, settings) -> None:
    service = _service(store, content, settings)

    identifier = await _register_publication(service)

    assert identifier.suffix == "000001"
    assert identifier.status == IdentifierStatus.ACTIVE
    document = json.loads(content.blobs[identifier.metadata_ref])
    assert document["metadata"]["title"] == PUBLICATION_METADATA["title"]
    assert document["owner_user_id"] == "user-1"


@pytest.mark.asyncio
async def test_register_with_explicit_suffix(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service, suffix="abc123")
    assert identifier.composite_code == "10.FRONS/ABC123"


@pytest.mark.asyncio
async def test_explicit_suffix_collision_is_duplicate_code(store, content, settings) -> None:
    service = _service(store, content, settings)
    await _register_publication(service, suffix="ABC123")

    with pytest.raises(DuplicateCode):
        await _register_publication(service, suffix="ABC123", owner_user_id="user-2")


@pytest.mark.asyncio
async def test_allocation_collision_is_retried(content, settings) -> None:
    store = _StickyAllocatorStore(repeats=2)
    service = _service(store, content, settings)

    first = await _register_publication(service)
    second = await _register_publication(service)

    assert first.suffix == "000001"
    assert second.suffix != first.suffix


@pytest.mark.asyncio
async def test_allocation_retries_are_bounded(content, settings) -> None:
    store = _StickyAllocatorStore(repeats=100)
    service = _service(store, content, settings)
    await _register_publication(service)

    with pytest.raises(InternalError):
        await _register_publication(service)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "metadata",
    [
        {"authors": ["A. Author"]},
        {"title": "  ", "authors": ["A. Author"]},
        {"title": "No authors"},
        {"title": "Empty authors", "authors": []},
        {"title": "Nameless", "authors": [{"affiliation": "Somewhere"}]},
    ],
)
async def test_publication_requires_title_and_authors(store, content, settings, metadata) -> None:
    service = _service(store, content, settings)
    with pytest.raises(ValidationError):
        await _register_publication(service, metadata=metadata)


@pytest.mark.asyncio
async def test_researcher_profile_requires_linked_user(store, content, settings) -> None:
    service = _service(store, content, settings)
    with pytest.raises(ValidationError):
        await service.register(
            kind=IdentifierKind.RESEARCHER_PROFILE,
            namespace_prefix="10.DOCIR",
            owner_user_id=" ",
            metadata={},
        )


@pytest.mark.asyncio
async def test_researcher_profile_uses_reserved_prefix(store, content, settings) -> None:
    service = _service(store, content, settings)

    profile = await service.register(
        kind="ResearcherProfile",
        namespace_prefix="10.docir",
        owner_user_id="user-7",
        metadata={"name": "Grace Hopper"},
    )
    assert profile.composite_code == "10.DOCIR/000001"

    with pytest.raises(ValidationError):
        await service.register(
            kind=IdentifierKind.RESEARCHER_PROFILE,
            namespace_prefix="10.FRONS",
            owner_user_id="user-7",
        )
    with pytest.raises(ValidationError):
        await _register_publication(service, namespace_prefix="10.DOCIR")


@pytest.mark.asyncio
async def test_unknown_kind_is_validation_error(store, content, settings) -> None:
    service = _service(store, content, settings)
    with pytest.raises(ValidationError):
        await _register_publication(service, kind="Dataset")


@pytest.mark.asyncio
async def test_register_for_another_user_is_unauthorized(store, content, settings) -> None:
    service = _service(store, content, settings)
    with pytest.raises(Unauthorized):
        await _register_publication(service, caller_user_id="intruder")


@pytest.mark.asyncio
async def test_content_store_failure_is_internal_error(store, content, settings) -> None:
    content.fail = True
    service = _service(store, content, settings)
    with pytest.raises(InternalError):
        await _register_publication(service)


@pytest.mark.asyncio
async def test_register_anchors_on_ledger(store, content, settings, ledger) -> None:
    service = _service(store, content, settings, ledger=ledger)

    identifier = await _register_publication(service)

    assert identifier.status == IdentifierStatus.ACTIVE
    assert identifier.chain_ref
    entry = await ledger.lookup("10.FRONS", identifier.suffix)
    assert entry.content_ref == identifier.metadata_ref


@pytest.mark.asyncio
async def test_ledger_failure_leaves_identifier_pending(store, content, settings) -> None:
    ledger = _FlakyLedger(failures=1)
    service = _service(store, content, settings, ledger=ledger)

    pending = await _register_publication(service)
    assert pending.status == IdentifierStatus.PENDING
    assert pending.chain_ref is None

    anchored = await service.anchor(pending.id, "user-1")
    assert anchored.status == IdentifierStatus.ACTIVE
    assert anchored.chain_ref == f"tx-10.FRONS-{pending.suffix}"

    with pytest.raises(ValidationError):
        await service.anchor(pending.id, "user-1")


@pytest.mark.asyncio
async def test_anchor_failure_is_internal_error(store, content, settings) -> None:
    service = _service(store, content, settings, ledger=_FlakyLedger(failures=5))
    pending = await _register_publication(service)

    with pytest.raises(InternalError):
        await service.anchor(pending.id, "user-1")


@pytest.mark.asyncio
async def test_update_rejects_immutable_fields(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    for field in ("namespacePrefix", "prefix", "suffix", "ownerUserId"):
        with pytest.raises(ValidationError):
            await service.update(identifier.id, "user-1", {field: "X"})


@pytest.mark.asyncio
async def test_update_requires_owner(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    with pytest.raises(Unauthorized):
        await service.update(identifier.id, "user-2", {"metadata": PUBLICATION_METADATA})
    with pytest.raises(Unauthorized):
        await service.update(identifier.id, None, {"metadata": PUBLICATION_METADATA})


@pytest.mark.asyncio
async def test_update_metadata_rewrites_content(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    new_metadata = dict(PUBLICATION_METADATA, title="Revised title")
    updated = await service.update(identifier.id, "user-1", {"metadata": new_metadata})

    assert updated.metadata["title"] == "Revised title"
    assert updated.metadata_ref != identifier.metadata_ref
    assert updated.owner_user_id == "user-1"


@pytest.mark.asyncio
async def test_update_status_only_to_revoked(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    with pytest.raises(ValidationError):
        await service.update(identifier.id, "user-1", {"status": "Pending"})
    revoked = await service.update(identifier.id, "user-1", {"status": "Revoked"})
    assert revoked.status == IdentifierStatus.REVOKED


@pytest.mark.asyncio
async def test_revoke_is_terminal(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    revoked = await service.revoke(identifier.id, "user-1")
    assert revoked.status == IdentifierStatus.REVOKED
    with pytest.raises(ValidationError):
        await service.revoke(identifier.id, "user-1")


@pytest.mark.asyncio
async def test_get_unknown_identifier(store, content, settings) -> None:
    service = _service(store, content, settings)
    with pytest.raises(NotFound):
        await service.get(42)


@pytest.mark.asyncio
async def test_stats_counts_resolutions(content, settings) -> None:
    store = InMemoryIdentifierStore()
    service = _service(store, content, settings)
    identifier = await _register_publication(service)

    stats = await service.stats(identifier.id)
    assert stats.resolution_count == 0
    assert stats.composite_code == identifier.composite_code


class _GatedLedger:
    """Fails the first anchor, then holds the next one until ``gate`` opens."""

    name = "gated"

    def __init__(self) -> None:
        self.calls = 0
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def anchor(self, prefix: str, suffix: str, content_ref: str) -> str:
        self.calls += 1
        if self.calls == 1:
            raise LedgerError("ledger unavailable")
        self.entered.set()
        await self.gate.wait()
        return f"tx-{prefix}-{suffix}"

    async def lookup(self, prefix: str, suffix: str):
        return None


@pytest.mark.asyncio
async def test_revoke_during_anchor_stays_revoked(store, content, settings) -> None:
    ledger = _GatedLedger()
    service = _service(store, content, settings, ledger=ledger)
    pending = await _register_publication(service)
    assert pending.status == IdentifierStatus.PENDING

    anchoring = asyncio.create_task(service.anchor(pending.id, "user-1"))
    await ledger.entered.wait()
    revoked = await service.revoke(pending.id, "user-1")
    assert revoked.status == IdentifierStatus.REVOKED
    ledger.gate.set()

    with pytest.raises(Conflict):
        await anchoring
    assert (await service.get(pending.id)).status == IdentifierStatus.REVOKED


@pytest.mark.asyncio
async def test_stale_metadata_patch_does_not_undo_revoke(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)
    await service.revoke(identifier.id, "user-1")

    stale = identifier.model_copy(update={"metadata": dict(PUBLICATION_METADATA, title="Stale")})
    with pytest.raises(Conflict):
        store.update(stale, expected_status=IdentifierStatus.ACTIVE)
    assert (await service.get(identifier.id)).status == IdentifierStatus.REVOKED


@pytest.mark.asyncio
async def test_hidden_records_are_visible_only_to_owner(store, content, settings) -> None:
    service = _service(store, content, settings)
    identifier = await _register_publication(service)
    await service.revoke(identifier.id, "user-1")

    assert (await service.view(identifier.id, "user-1")).status == IdentifierStatus.REVOKED
    with pytest.raises(NotFound):
        await service.view(identifier.id, None)
    with pytest.raises(NotFound):
        await service.view(identifier.id, "user-2")
    assert await service.list_for_owner("user-1", "user-2") == []
    assert len(await service.list_for_owner("user-1", "user-1")) == 1

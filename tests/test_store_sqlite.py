from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from doci.errors import Conflict, DuplicateCode, NotFound
from doci.models import Identifier, IdentifierKind, IdentifierStatus, ResolutionEvent
from doci.services.store import InMemoryIdentifierStore, SqlIdentifierStore
from doci.settings import Settings


def _identifier(suffix: str, prefix: str = "10.FRONS", owner: str = "user-1") -> Identifier:
    return Identifier(
        namespace_prefix=prefix,
        suffix=suffix,
        kind=IdentifierKind.PUBLICATION,
        owner_user_id=owner,
        metadata={"title": "Test", "authors": ["A. Author"]},
    )


def _sql_store(tmp_path) -> SqlIdentifierStore:
    return SqlIdentifierStore.from_settings(Settings(data_dir=tmp_path))


def test_put_and_get_round_trip(tmp_path) -> None:
    store = _sql_store(tmp_path)
    stored = store.put(_identifier("abc123"))

    assert stored.id is not None
    assert stored.suffix == "ABC123"
    fetched = store.get("10.FRONS/ABC123")
    assert fetched is not None
    assert fetched.metadata["title"] == "Test"
    assert store.get_by_id(stored.id).composite_code == "10.FRONS/ABC123"
    assert store.get("10.FRONS/NOPE") is None


def test_put_rejects_duplicate_composite_code(tmp_path) -> None:
    store = _sql_store(tmp_path)
    store.put(_identifier("ABC123"))

    with pytest.raises(DuplicateCode):
        store.put(_identifier("abc123", owner="someone-else"))


def test_same_suffix_allowed_under_other_prefix(tmp_path) -> None:
    store = _sql_store(tmp_path)
    store.put(_identifier("ABC123"))
    other = store.put(_identifier("ABC123", prefix="10.OTHER"))
    assert other.composite_code == "10.OTHER/ABC123"


def test_update_changes_status_but_keeps_row(tmp_path) -> None:
    store = _sql_store(tmp_path)
    stored = store.put(_identifier("ABC123"))

    store.update(stored.model_copy(update={"status": IdentifierStatus.REVOKED}))

    fetched = store.get("10.FRONS/ABC123")
    assert fetched.status == IdentifierStatus.REVOKED
    assert fetched.owner_user_id == "user-1"


def test_update_unknown_identifier_raises(tmp_path) -> None:
    store = _sql_store(tmp_path)
    with pytest.raises(NotFound):
        store.update(_identifier("ABC123").model_copy(update={"id": 999}))


def test_allocate_suffix_is_sequential_per_prefix(tmp_path) -> None:
    store = _sql_store(tmp_path)
    assert store.allocate_suffix("10.FRONS") == "000001"
    assert store.allocate_suffix("10.frons") == "000002"
    assert store.allocate_suffix("10.OTHER") == "000001"


def test_allocate_suffix_seeds_from_existing_numeric_suffixes(tmp_path) -> None:
    store = _sql_store(tmp_path)
    store.put(_identifier("000041"))
    store.put(_identifier("ABC123"))

    assert store.allocate_suffix("10.FRONS") == "000042"


def test_allocate_suffix_is_unique_under_concurrency(tmp_path) -> None:
    store = _sql_store(tmp_path)

    with ThreadPoolExecutor(max_workers=8) as pool:
        suffixes = list(pool.map(lambda _: store.allocate_suffix("10.FRONS"), range(40)))

    assert len(set(suffixes)) == 40
    assert sorted(suffixes)[-1] == "000040"


def test_in_memory_allocate_suffix_is_unique_under_concurrency() -> None:
    store = InMemoryIdentifierStore()

    with ThreadPoolExecutor(max_workers=8) as pool:
        suffixes = list(pool.map(lambda _: store.allocate_suffix("10.FRONS"), range(40)))

    assert len(set(suffixes)) == 40


def test_resolution_events_are_counted(tmp_path) -> None:
    store = _sql_store(tmp_path)
    stored = store.put(_identifier("ABC123"))
    for _ in range(3):
        store.record_resolution(
            ResolutionEvent(
                identifier_id=stored.id,
                composite_code=stored.composite_code,
                requester_context={"channel": "test"},
            )
        )

    assert store.resolution_count(stored.id) == 3


def test_list_by_owner(tmp_path) -> None:
    store = _sql_store(tmp_path)
    store.put(_identifier("A1"))
    store.put(_identifier("A2"))
    store.put(_identifier("B1", owner="user-2"))

    codes = {item.composite_code for item in store.list_by_owner("user-1")}
    assert codes == {"10.FRONS/A1", "10.FRONS/A2"}


def test_timestamps_round_trip_as_utc(tmp_path) -> None:
    store = _sql_store(tmp_path)
    stored = store.put(_identifier("ABC123"))

    fetched = store.get("10.FRONS/ABC123")
    assert fetched.created_at.tzinfo is not None
    assert fetched.created_at.utcoffset() == timedelta(0)
    assert fetched.created_at == stored.created_at
    updated = store.update(fetched.model_copy(update={"status": IdentifierStatus.REVOKED}))
    assert updated.updated_at.tzinfo is not None
    assert updated.updated_at >= fetched.created_at


def test_update_with_stale_status_is_a_conflict(tmp_path) -> None:
    store = _sql_store(tmp_path)
    stored = store.put(_identifier("ABC123"))
    store.update(
        stored.model_copy(update={"status": IdentifierStatus.REVOKED}),
        expected_status=IdentifierStatus.ACTIVE,
    )

    with pytest.raises(Conflict):
        store.update(
            stored.model_copy(update={"metadata": {"title": "Stale"}}),
            expected_status=IdentifierStatus.ACTIVE,
        )
    fetched = store.get("10.FRONS/ABC123")
    assert fetched.status == IdentifierStatus.REVOKED
    assert fetched.metadata["title"] == "Test"

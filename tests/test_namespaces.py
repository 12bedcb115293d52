from __future__ import annotations

import pytest

from simchain.runtime.errors import ConfigurationError
from simchain.runtime.namespaces import NamespaceAllocator, validate_namespace_name
from simchain.runtime.store import MemoryKVStore


def test_allocate_returns_disjoint_handles() -> None:
    store = MemoryKVStore()
    handles = NamespaceAllocator(store).allocate(["auth", "bank"])

    handles["auth"].set(b"k", b"from-auth")
    handles["bank"].set(b"k", b"from-bank")

    assert handles["auth"].get(b"k") == b"from-auth"
    assert handles["bank"].get(b"k") == b"from-bank"
    assert store.get(b"auth/k") == b"from-auth"
    assert store.get(b"bank/k") == b"from-bank"


def test_iteration_never_crosses_namespaces() -> None:
    store = MemoryKVStore()
    handles = NamespaceAllocator(store).allocate(["bank", "bank_ext"])

    handles["bank"].set(b"a", b"1")
    handles["bank"].set(b"b", b"2")
    handles["bank_ext"].set(b"a", b"x")

    assert list(handles["bank"].iterate()) == [(b"a", b"1"), (b"b", b"2")]
    assert list(handles["bank_ext"].iterate()) == [(b"a", b"x")]


def test_json_helpers_and_prefix_iteration() -> None:
    h = NamespaceAllocator(MemoryKVStore()).allocate_one("staking")
    h.set_json(b"validators/v1", {"tokens": 5})
    h.set_json(b"validators/v2", {"tokens": 7})
    h.set_json(b"params", {"x": 1})

    assert h.get_json(b"missing", default=0) == 0
    assert [k for k, _ in h.iterate_json(b"validators/")] == [b"validators/v1", b"validators/v2"]
    h.delete(b"validators/v1")
    assert not h.has(b"validators/v1")


def test_duplicate_name_within_one_request_is_rejected_and_nothing_reserved() -> None:
    store = MemoryKVStore()
    alloc = NamespaceAllocator(store)

    with pytest.raises(ConfigurationError) as ei:
        alloc.allocate(["auth", "bank", "auth"])
    assert ei.value.code == "duplicate_namespace"
    assert store.namespaces() == frozenset()


def test_name_allocated_earlier_is_rejected() -> None:
    store = MemoryKVStore()
    NamespaceAllocator(store).allocate(["auth"])

    with pytest.raises(ConfigurationError) as ei:
        NamespaceAllocator(store).allocate(["bank", "auth"])
    assert ei.value.reason == "namespace_already_allocated"
    assert store.namespaces() == frozenset({"auth"})


@pytest.mark.parametrize("bad", ["", "Auth", "1bank", "bank/x", "bank-x", None, 5])
def test_invalid_names_are_rejected(bad) -> None:
    with pytest.raises(ConfigurationError):
        validate_namespace_name(bad)

# src/simchain/runtime/store.py
from __future__ import annotations

import bisect
import hashlib
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple


def prefix_end(prefix: bytes) -> Optional[bytes]:
    """Smallest key strictly greater than every key starting with prefix.

    Returns None when no such key exists (prefix is empty or all 0xff).
    """
    b = bytearray(prefix)
    while b:
        if b[-1] < 0xFF:
            b[-1] += 1
            return bytes(b)
        b.pop()
    return None


class BackingStore(ABC):
    """Shared key/value store all module namespaces are carved out of.

    Keys and values are bytes. Iteration is in ascending key order over the
    half-open range [start, end); end=None means unbounded.

    The store also owns the namespace table: the set of namespace names
    already handed out. Allocators sharing a store share the table.
    """

    def __init__(self) -> None:
        self._namespaces: Set[str] = set()
        self._meta: Dict[str, str] = {}

    @abstractmethod
    def get(self, key: bytes) -> Optional[bytes]:
        ...

    @abstractmethod
    def set(self, key: bytes, value: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, key: bytes) -> None:
        ...

    @abstractmethod
    def iterate(self, start: bytes = b"", end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        ...

    def commit(self, meta: Optional[Dict[str, str]] = None) -> None:
        """Make pending writes durable and record commit metadata.

        Stores without a write buffer only record the metadata.
        """
        for k, v in (meta or {}).items():
            self._meta[str(k)] = str(v)

    def get_meta(self, key: str) -> Optional[str]:
        return self._meta.get(str(key))

    # ----------------------------
    # Namespace table
    # ----------------------------

    def namespaces(self) -> FrozenSet[str]:
        return frozenset(self._namespaces)

    def has_namespace(self, name: str) -> bool:
        return name in self._namespaces

    def reserve_namespace(self, name: str) -> None:
        # Collision checks are the allocator's job; the table only records.
        self._namespaces.add(str(name))

    # ----------------------------
    # Digest
    # ----------------------------

    def root_hash(self) -> str:
        """Deterministic SHA-256 over every (key, value) pair in key order."""
        h = hashlib.sha256()
        for k, v in self.iterate():
            h.update(len(k).to_bytes(4, "big"))
            h.update(k)
            h.update(len(v).to_bytes(4, "big"))
            h.update(v)
        return h.hexdigest()


class MemoryKVStore(BackingStore):
    """In-process store. Writes are visible immediately; commit() only records metadata."""

    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[bytes, bytes] = {}
        self._keys: List[bytes] = []

    def get(self, key: bytes) -> Optional[bytes]:
        return self._data.get(bytes(key))

    def set(self, key: bytes, value: bytes) -> None:
        k = bytes(key)
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"store values must be bytes, got {type(value)}")
        if k not in self._data:
            bisect.insort(self._keys, k)
        self._data[k] = bytes(value)

    def delete(self, key: bytes) -> None:
        k = bytes(key)
        if k in self._data:
            del self._data[k]
            i = bisect.bisect_left(self._keys, k)
            del self._keys[i]

    def iterate(self, start: bytes = b"", end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        lo = bisect.bisect_left(self._keys, bytes(start))
        hi = len(self._keys) if end is None else bisect.bisect_left(self._keys, bytes(end))
        # Snapshot the key slice so callers may write while iterating.
        for k in self._keys[lo:hi]:
            v = self._data.get(k)
            if v is not None:
                yield k, v

    def __len__(self) -> int:
        return len(self._data)

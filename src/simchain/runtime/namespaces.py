# src/simchain/runtime/namespaces.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

from simchain.runtime.codec import canon_json
from simchain.runtime.errors import ConfigurationError
from simchain.runtime.store import BackingStore, prefix_end

_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_SEP = b"/"


def validate_namespace_name(name: Any) -> str:
    """Namespace names are lowercase identifiers.

    The separator byte can never appear in a valid name, so the prefixes
    "<a>/" and "<b>/" of two distinct names are never prefixes of each other.
    """
    s = name if isinstance(name, str) else ""
    if not _NAME_RE.match(s):
        raise ConfigurationError("invalid_namespace", "namespace_name_invalid", {"name": name})
    return s


@dataclass(frozen=True)
class StorageHandle:
    """Exclusive, immutable view of one namespace of the backing store.

    Keys passed in and yielded out are relative to the namespace.
    """

    name: str
    prefix: bytes
    _store: BackingStore = field(repr=False, compare=False)

    def _k(self, key: bytes) -> bytes:
        if isinstance(key, str):
            key = key.encode("utf-8")
        return self.prefix + bytes(key)

    def get(self, key: bytes) -> Optional[bytes]:
        return self._store.get(self._k(key))

    def has(self, key: bytes) -> bool:
        return self._store.get(self._k(key)) is not None

    def set(self, key: bytes, value: bytes) -> None:
        self._store.set(self._k(key), value)

    def delete(self, key: bytes) -> None:
        self._store.delete(self._k(key))

    def iterate(self, prefix: bytes = b"") -> Iterator[Tuple[bytes, bytes]]:
        """Yield (relative_key, value) for every key under prefix, ascending."""
        full = self._k(prefix)
        n = len(self.prefix)
        for k, v in self._store.iterate(full, prefix_end(full)):
            yield k[n:], v

    def get_json(self, key: bytes, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        return json.loads(raw.decode("utf-8"))

    def set_json(self, key: bytes, value: Any) -> None:
        self.set(key, canon_json(value).encode("utf-8"))

    def iterate_json(self, prefix: bytes = b"") -> Iterator[Tuple[bytes, Any]]:
        for k, v in self.iterate(prefix):
            yield k, json.loads(v.decode("utf-8"))


class NamespaceAllocator:
    """Hands out disjoint StorageHandles from one shared backing store."""

    def __init__(self, store: BackingStore) -> None:
        self._store = store

    @property
    def store(self) -> BackingStore:
        return self._store

    def allocate(self, names: Sequence[str]) -> Dict[str, StorageHandle]:
        """Allocate one handle per requested name.

        The request is validated as a whole before anything is reserved, so a
        failed request leaves the namespace table unchanged.
        """
        if isinstance(names, str):
            names = [names]

        seen = set()
        for raw in names:
            name = validate_namespace_name(raw)
            if name in seen:
                raise ConfigurationError("duplicate_namespace", "namespace_requested_twice", {"name": name})
            if self._store.has_namespace(name):
                raise ConfigurationError("duplicate_namespace", "namespace_already_allocated", {"name": name})
            seen.add(name)

        out: Dict[str, StorageHandle] = {}
        for name in names:
            self._store.reserve_namespace(name)
            out[name] = StorageHandle(name=name, prefix=name.encode("utf-8") + _SEP, _store=self._store)
        return out

    def allocate_one(self, name: str) -> StorageHandle:
        return self.allocate([name])[name]

from __future__ import annotations

"""Directory Forwarding Table: naming key -> IPC process address.

The store is lock-striped. Each stripe owns a lock, the entries whose keys
hash to it, and the highest version ever accepted for those keys (kept after
removal so late, lower-versioned updates stay ignored). Operations on keys in
different stripes never contend.

Version rule for a candidate entry:
- higher version than the current entry (or the last seen version) wins;
- at equal version a LOCAL entry replaces a REMOTE one, never the reverse;
- everything else is stale and leaves the store unchanged.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from threading import Lock
from typing import Any, Iterator

from ipcdir.naming import InvalidKeyError, NamingKey

logger = logging.getLogger("ipcdir.store")

DEFAULT_STRIPES = 64
UINT64_MAX = (1 << 64) - 1


class Origin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class DirectoryEntry:
    key: NamingKey
    address: int
    origin: Origin = Origin.REMOTE
    version: int = 0

    def validate(self) -> None:
        """Raise InvalidKeyError if the key, address or version is malformed."""
        if not isinstance(self.key, NamingKey):
            raise InvalidKeyError("entry key must be a NamingKey")
        self.key.validate()
        if not isinstance(self.origin, Origin):
            raise InvalidKeyError(f"invalid origin: {self.origin!r}")
        for name in ("address", "version"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidKeyError(f"{name} must be an integer")
            if not 0 <= value <= UINT64_MAX:
                raise InvalidKeyError(f"{name} out of range: {value}")

    def with_origin(self, origin: Origin) -> "DirectoryEntry":
        return replace(self, origin=origin)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "address": self.address,
            "origin": self.origin.value,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Any, *, origin: Origin | None = None) -> "DirectoryEntry":
        """Build an entry from its JSON mapping.

        When `origin` is given it overrides whatever the mapping carries;
        entries received from peers are always REMOTE on this side.
        """
        if not isinstance(data, dict):
            raise InvalidKeyError("directory entry must be an object")
        if origin is None:
            try:
                origin = Origin(data.get("origin", Origin.REMOTE.value))
            except ValueError as exc:
                raise InvalidKeyError(f"invalid origin: {data.get('origin')!r}") from exc
        entry = cls(
            key=NamingKey.from_dict(data.get("key")),
            address=data.get("address"),
            origin=origin,
            version=data.get("version", 0),
        )
        entry.validate()
        return entry


def _supersedes(candidate: DirectoryEntry, current: DirectoryEntry | None, last_version: int | None) -> bool:
    if current is None:
        return last_version is None or candidate.version > last_version
    if candidate.version != current.version:
        return candidate.version > current.version
    return candidate.origin is Origin.LOCAL and current.origin is Origin.REMOTE


@dataclass
class _Stripe:
    lock: Lock = field(default_factory=Lock)
    entries: dict[NamingKey, DirectoryEntry] = field(default_factory=dict)
    versions: dict[NamingKey, int] = field(default_factory=dict)


class DirectoryEntryStore:
    """Concurrency-safe DFT shared by registration, sync and lookups."""

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise ValueError(f"stripes must be >= 1, got {stripes}")
        self._stripes = [_Stripe() for _ in range(int(stripes))]

    def _stripe(self, key: NamingKey) -> _Stripe:
        return self._stripes[hash(key) % len(self._stripes)]

    def put(self, entry: DirectoryEntry) -> bool:
        """Install or update the entry for entry.key; return whether the store changed."""
        stripe = self._stripe(entry.key)
        with stripe.lock:
            current = stripe.entries.get(entry.key)
            if not _supersedes(entry, current, stripe.versions.get(entry.key)):
                return False
            stripe.entries[entry.key] = entry
            stripe.versions[entry.key] = max(entry.version, stripe.versions.get(entry.key, 0))
        logger.debug("dft put %s -> %d (%s v%d)", entry.key, entry.address, entry.origin.value, entry.version)
        return True

    def claim_local(self, key: NamingKey, address: int) -> DirectoryEntry:
        """Install a LOCAL entry one version above anything seen for key."""
        stripe = self._stripe(key)
        with stripe.lock:
            last = stripe.versions.get(key)
            entry = DirectoryEntry(
                key=key,
                address=address,
                origin=Origin.LOCAL,
                version=0 if last is None else last + 1,
            )
            stripe.entries[key] = entry
            stripe.versions[key] = entry.version
        logger.debug("dft claim %s -> %d (v%d)", key, address, entry.version)
        return entry

    def get(self, key: NamingKey) -> DirectoryEntry | None:
        stripe = self._stripe(key)
        with stripe.lock:
            return stripe.entries.get(key)

    def get_address(self, key: NamingKey) -> int | None:
        entry = self.get(key)
        return None if entry is None else entry.address

    def last_version(self, key: NamingKey) -> int | None:
        stripe = self._stripe(key)
        with stripe.lock:
            return stripe.versions.get(key)

    def remove(self, key: NamingKey, origin: Origin, *, version: int | None = None) -> bool:
        """Remove the entry for key only if it was recorded with `origin`.

        With `version`, entries newer than that version are kept; the
        version is remembered so a delayed announcement of it stays ignored.
        """
        stripe = self._stripe(key)
        with stripe.lock:
            current = stripe.entries.get(key)
            if current is None or current.origin is not origin:
                return False
            if version is not None:
                if current.version > version:
                    return False
                stripe.versions[key] = max(version, stripe.versions.get(key, 0))
            del stripe.entries[key]
        logger.debug("dft remove %s (%s)", key, origin.value)
        return True

    def discard(self, key: NamingKey) -> DirectoryEntry | None:
        """Remove the entry for key whatever its origin; return what was removed."""
        stripe = self._stripe(key)
        with stripe.lock:
            removed = stripe.entries.pop(key, None)
        if removed is not None:
            logger.debug("dft discard %s (%s)", key, removed.origin.value)
        return removed

    def entries(self) -> list[DirectoryEntry]:
        out: list[DirectoryEntry] = []
        for stripe in self._stripes:
            with stripe.lock:
                out.extend(stripe.entries.values())
        return out

    def clear(self) -> None:
        for stripe in self._stripes:
            with stripe.lock:
                stripe.entries.clear()
                stripe.versions.clear()

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, NamingKey):
            return False
        return self.get(key) is not None

    def __len__(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                total += len(stripe.entries)
        return total

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(self.entries())

from __future__ import annotations

"""Typed results returned by directory and registration operations."""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from ipcdir.naming import NamingKey
    from ipcdir.store import DirectoryEntry


class Status(str, Enum):
    OK = "ok"
    PENDING = "pending"
    INVALID_KEY = "invalid_key"
    ALREADY_REGISTERED = "already_registered"
    NOT_REGISTERED = "not_registered"
    NOT_FOUND = "not_found"
    STALE_UPDATE = "stale_update"
    TRANSITION_TIMEOUT = "transition_timeout"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Outcome:
    status: Status
    key: Optional["NamingKey"] = None
    entry: Optional["DirectoryEntry"] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    def to_dict(self) -> dict:
        out: dict = {"status": self.status.value}
        if self.key is not None:
            out["key"] = self.key.to_dict()
        if self.entry is not None:
            out["entry"] = self.entry.to_dict()
        if self.message:
            out["message"] = self.message
        return out


class NotificationKind(str, Enum):
    REGISTRATION = "registration"
    UNREGISTRATION = "unregistration"


@dataclass(frozen=True)
class Notification:
    """Result of a registration or unregistration, sent to the registrant."""

    kind: NotificationKind
    key: "NamingKey"
    status: Status
    entry: Optional["DirectoryEntry"] = None

    @property
    def ok(self) -> bool:
        return self.status is Status.OK


NotifyHandle = Callable[[Notification], None]

"""ipcdir — directory and application registration for IPC processes."""

from . import naming
from . import outcomes
from . import store
from . import registrations
from . import sync
from . import manager
from . import config
from . import transport
from . import serve
from . import mgmt
from . import client
from . import syncrpc

from .manager import RegistrationManager, RegistrationRequested, UnregistrationRequested
from .naming import InvalidKeyError, NamingKey
from .outcomes import Notification, Outcome, Status
from .registrations import RegState
from .store import DirectoryEntry, DirectoryEntryStore, Origin
from .sync import DirectorySyncAdapter

__all__ = [
    "naming",
    "outcomes",
    "store",
    "registrations",
    "sync",
    "manager",
    "config",
    "transport",
    "serve",
    "mgmt",
    "client",
    "syncrpc",
    "DirectoryEntry",
    "DirectoryEntryStore",
    "DirectorySyncAdapter",
    "InvalidKeyError",
    "NamingKey",
    "Notification",
    "Origin",
    "Outcome",
    "RegState",
    "RegistrationManager",
    "RegistrationRequested",
    "Status",
    "UnregistrationRequested",
]

from __future__ import annotations

"""Client for the directory management service."""

from typing import Any

import grpc

from ipcdir.mgmt import SERVICE_NAME, decode_message, encode_message
from ipcdir.naming import NamingKey
from ipcdir.store import DirectoryEntry
from ipcdir.transport import grpc_target, parse_uri


def dial(address: str) -> grpc.Channel:
    """Dial a host:port or unix: gRPC address."""
    return grpc.insecure_channel(address)


def dial_uri(uri: str) -> grpc.Channel:
    """Dial a tcp:// or unix:// transport URI."""
    return dial(grpc_target(parse_uri(uri)))


def _key_param(key: NamingKey | str) -> Any:
    if isinstance(key, NamingKey):
        return key.to_dict()
    return key


class DirectoryClient:
    """Calls /dft.v1.Directory methods; failures raise grpc.RpcError."""

    def __init__(self, target: str | grpc.Channel, *, timeout: float = 5.0):
        if isinstance(target, str):
            self._channel = dial_uri(target) if "://" in target else dial(target)
            self._owned = True
        else:
            self._channel = target
            self._owned = False
        self._timeout = timeout

    def close(self) -> None:
        if self._owned:
            self._channel.close()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        stub = self._channel.unary_unary(
            f"/{SERVICE_NAME}/{method}",
            request_serializer=encode_message,
            response_deserializer=decode_message,
        )
        return stub(payload, timeout=self._timeout)

    def get_address(self, key: NamingKey | str) -> int:
        return int(self._call("GetAddress", {"key": _key_param(key)})["address"])

    def get_entry(self, key: NamingKey | str) -> DirectoryEntry:
        return DirectoryEntry.from_dict(self._call("GetEntry", {"key": _key_param(key)})["entry"])

    def add_entry(self, entry: DirectoryEntry) -> dict[str, Any]:
        return self._call("AddEntry", {"entry": entry.to_dict()})

    def remove_entry(self, key: NamingKey | str) -> dict[str, Any]:
        return self._call("RemoveEntry", {"key": _key_param(key)})

    def list_entries(self) -> list[DirectoryEntry]:
        out = self._call("ListEntries", {})
        return [DirectoryEntry.from_dict(raw) for raw in out.get("entries", [])]

    def register(self, key: NamingKey | str) -> dict[str, Any]:
        return self._call("Register", {"key": _key_param(key)})

    def unregister(self, key: NamingKey | str) -> dict[str, Any]:
        return self._call("Unregister", {"key": _key_param(key)})

    def state(self, key: NamingKey | str) -> str:
        return str(self._call("State", {"key": _key_param(key)})["state"])

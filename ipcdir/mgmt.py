from __future__ import annotations

"""Management service for the directory (gRPC, JSON-encoded messages).

Methods of /dft.v1.Directory:
    GetAddress   {key}          -> {address}
    GetEntry     {key}          -> {entry}
    AddEntry     {entry}        -> outcome
    RemoveEntry  {key}          -> outcome
    ListEntries  {}             -> {entries: [...]}
    Register     {key}          -> outcome
    Unregister   {key}          -> outcome
    State        {key}          -> {state}

Keys are either naming-key objects or their slash-separated string form.
Failed outcomes are reported as gRPC status codes.
"""

import json
import logging
from typing import Any, Callable

import grpc

from ipcdir.manager import RegistrationManager
from ipcdir.naming import InvalidKeyError, NamingKey
from ipcdir.outcomes import Notification, Outcome, Status
from ipcdir.store import DirectoryEntry

logger = logging.getLogger("ipcdir.mgmt")

SERVICE_NAME = "dft.v1.Directory"

_STATUS_CODES = {
    Status.INVALID_KEY: grpc.StatusCode.INVALID_ARGUMENT,
    Status.NOT_FOUND: grpc.StatusCode.NOT_FOUND,
    Status.ALREADY_REGISTERED: grpc.StatusCode.ALREADY_EXISTS,
    Status.NOT_REGISTERED: grpc.StatusCode.FAILED_PRECONDITION,
    Status.STALE_UPDATE: grpc.StatusCode.FAILED_PRECONDITION,
    Status.TRANSITION_TIMEOUT: grpc.StatusCode.DEADLINE_EXCEEDED,
    Status.REJECTED: grpc.StatusCode.PERMISSION_DENIED,
}


def decode_message(raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}

    payload = json.loads(raw.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("message must be a JSON object")
    return payload


def encode_message(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def key_from_request(raw: Any) -> NamingKey:
    if isinstance(raw, str):
        return NamingKey.parse(raw)
    return NamingKey.from_dict(raw)


Method = Callable[[dict[str, Any], grpc.ServicerContext], dict[str, Any]]


class DirectoryHandler(grpc.GenericRpcHandler):
    def __init__(self, manager: RegistrationManager):
        self._manager = manager
        self._methods: dict[str, Method] = {
            f"/{SERVICE_NAME}/GetAddress": self._get_address,
            f"/{SERVICE_NAME}/GetEntry": self._get_entry,
            f"/{SERVICE_NAME}/AddEntry": self._add_entry,
            f"/{SERVICE_NAME}/RemoveEntry": self._remove_entry,
            f"/{SERVICE_NAME}/ListEntries": self._list_entries,
            f"/{SERVICE_NAME}/Register": self._register,
            f"/{SERVICE_NAME}/Unregister": self._unregister,
            f"/{SERVICE_NAME}/State": self._state,
        }

    def service(self, handler_call_details: grpc.HandlerCallDetails):
        method = self._methods.get(handler_call_details.method)
        if method is None:
            return None

        def handle(raw: bytes, context: grpc.ServicerContext) -> dict[str, Any]:
            try:
                request = decode_message(raw)
            except ValueError as exc:
                context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"malformed request: {exc}")
            return method(request, context)

        return grpc.unary_unary_rpc_method_handler(handle, response_serializer=encode_message)

    def _key(self, request: dict[str, Any], context: grpc.ServicerContext) -> NamingKey:
        try:
            return key_from_request(request.get("key"))
        except InvalidKeyError as exc:
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(exc))

    def _reply(self, outcome: Outcome, context: grpc.ServicerContext) -> dict[str, Any]:
        code = _STATUS_CODES.get(outcome.status)
        if code is not None:
            details = outcome.message or outcome.status.value
            if outcome.key is not None:
                details = f"{outcome.key}: {details}"
            context.abort(code, details)
        return outcome.to_dict()

    def _get_address(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        address = self._manager.get_address(key)
        if address is None:
            context.abort(grpc.StatusCode.NOT_FOUND, f"no directory entry for {key}")
        return {"address": address}

    def _get_entry(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        entry = self._manager.get_dft_entry(key)
        if entry is None:
            context.abort(grpc.StatusCode.NOT_FOUND, f"no directory entry for {key}")
        return {"entry": entry.to_dict()}

    def _add_entry(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        try:
            entry = DirectoryEntry.from_dict(request.get("entry"))
        except InvalidKeyError as exc:
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(exc))
        return self._reply(self._manager.add_dft_entry(entry), context)

    def _remove_entry(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        return self._reply(self._manager.remove_dft_entry(key), context)

    def _list_entries(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        entries = sorted(self._manager.dft_entries(), key=lambda e: str(e.key))
        return {"entries": [entry.to_dict() for entry in entries]}

    def _register(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        return self._reply(self._manager.process_registration_request(key, _log_notification), context)

    def _unregister(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        return self._reply(self._manager.process_unregistration_request(key), context)

    def _state(self, request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        key = self._key(request, context)
        return {"key": key.to_dict(), "state": self._manager.registration_state(key).value}


def register(manager: RegistrationManager) -> Callable[[grpc.Server], None]:
    """Return a register function for serve.start()/run_with_options()."""

    def _register(server: grpc.Server) -> None:
        server.add_generic_rpc_handlers([DirectoryHandler(manager)])

    return _register


def _log_notification(notification: Notification) -> None:
    logger.info(
        "%s of %s via management: %s",
        notification.kind.value,
        notification.key,
        notification.status.value,
    )

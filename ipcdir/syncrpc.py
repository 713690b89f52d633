from __future__ import annotations

"""Directory synchronization over JSON-RPC 2.0 on WebSocket.

Protocol constraints:
- WebSocket subprotocol: dft-sync
- JSON-RPC version field: "2.0"
- Announcements and withdrawals are notifications (no "id"); the hub
  relays each one to every other connected IPC process.
- dft.Snapshot is a request answered by the hub with every entry it
  relayed and has not seen withdrawn.

Methods:
    dft.Announce   {key, address, version}
    dft.Withdraw   {key, version?}
    dft.Snapshot   {} -> {entries: [...]}
    rpc.heartbeat  {} -> {}
"""

from collections.abc import Awaitable, Callable, Coroutine
import asyncio
from dataclasses import dataclass, field
import inspect
import itertools
import json
import logging
import random
import threading
from typing import Any, Optional, Union
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ipcdir.naming import InvalidKeyError, NamingKey
from ipcdir.store import DirectoryEntry, DirectoryEntryStore, Origin

logger = logging.getLogger("ipcdir.syncrpc")

JsonObject = dict[str, Any]
NotificationHandler = Callable[[JsonObject], Union[None, Awaitable[None]]]

SUBPROTOCOL = "dft-sync"
ANNOUNCE = "dft.Announce"
WITHDRAW = "dft.Withdraw"
SNAPSHOT = "dft.Snapshot"
HEARTBEAT = "rpc.heartbeat"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

_MAX_SYNC_MESSAGE_BYTES = 1 << 20
_JOIN_BACKLOG = 64


class SyncRPCError(Exception):
    """Raised when a JSON-RPC error response is received."""

    def __init__(self, code: int, message: str, data: Any | None = None):
        super().__init__(f"rpc error {code}: {message}")
        self.code = int(code)
        self.message = str(message)
        self.data = data

    def to_dict(self) -> JsonObject:
        err: JsonObject = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err


def encode_withdrawal(key: NamingKey, version: int | None = None) -> JsonObject:
    params: JsonObject = {"key": key.to_dict()}
    if version is not None:
        params["version"] = version
    return params


def decode_withdrawal(params: JsonObject) -> tuple[NamingKey, int | None]:
    key = NamingKey.from_dict(params.get("key"))
    version = params.get("version")
    if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version < 0):
        raise InvalidKeyError(f"invalid version: {version!r}")
    return key, version


def _frame(**fields: Any) -> str:
    return json.dumps({"jsonrpc": "2.0", **fields}, separators=(",", ":"))


def _parse_frame(raw: Any) -> JsonObject | None:
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class SyncRPCClient:
    """Connection of one IPC process to the sync hub.

    Sends notifications and requests, hands inbound notifications to the
    registered handlers, checks the hub with heartbeats and reconnects with
    exponential backoff. `on_connect` runs after every (re)connect.
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = 15.0,
        heartbeat_timeout: float = 5.0,
        reconnect_min_delay: float = 0.5,
        reconnect_max_delay: float = 30.0,
        reconnect_factor: float = 2.0,
        reconnect_jitter: float = 0.1,
        on_connect: Callable[[], Awaitable[None]] | None = None,
    ):
        self.heartbeat_interval = float(heartbeat_interval)
        self.heartbeat_timeout = float(heartbeat_timeout)
        self.reconnect_min_delay = float(reconnect_min_delay)
        self.reconnect_max_delay = float(reconnect_max_delay)
        self.reconnect_factor = float(reconnect_factor)
        self.reconnect_jitter = float(reconnect_jitter)

        self._on_connect = on_connect
        self._handlers: dict[str, NotificationHandler] = {}
        self._waiters: dict[str, asyncio.Future[JsonObject]] = {}
        self._ids = itertools.count(1)

        self._url: str | None = None
        self._ws: Any | None = None
        self._online = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._closed = False
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._online.is_set()

    def register(self, method: str, handler: NotificationHandler) -> None:
        """Handle notifications of `method` pushed by the hub."""
        if not method:
            raise ValueError("method is required")
        self._handlers[method] = handler

    async def connect(self, url: str) -> None:
        """Connect once; raises if the hub is unreachable."""
        self._url = url
        self._closed = False
        await self._open()

    def connect_later(self, url: str) -> None:
        """Keep trying to connect in the background; must run on the client's loop."""
        self._url = url
        self._closed = False
        self._spawn("reconnect", self._reconnect_loop())

    async def invoke(self, method: str, params: JsonObject | None = None, *, timeout: float | None = None) -> JsonObject:
        """Send a request and wait for the hub's result."""
        if not method:
            raise ValueError("method is required")
        ws = await self._wait_online()

        req_id = f"c{next(self._ids)}"
        waiter: asyncio.Future[JsonObject] = asyncio.get_running_loop().create_future()
        self._waiters[req_id] = waiter
        try:
            await self._send(ws, _frame(id=req_id, method=method, params=params or {}))
            return await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            self._waiters.pop(req_id, None)

    async def notify(self, method: str, params: JsonObject | None = None) -> None:
        """Send a notification; raises ConnectionError when offline."""
        if not method:
            raise ValueError("method is required")
        if not self.connected:
            raise ConnectionError("dft-sync client is not connected")
        await self._send(self._ws, _frame(method=method, params=params or {}))

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await self._drop_connection(ConnectionError("dft-sync client closed"))

    # --- connection lifecycle ---

    async def _open(self) -> None:
        assert self._url is not None
        ws = await websockets.connect(
            self._url,
            subprotocols=[SUBPROTOCOL],
            ping_interval=None,
            ping_timeout=None,
            max_size=_MAX_SYNC_MESSAGE_BYTES,
        )
        if ws.subprotocol != SUBPROTOCOL:
            await ws.close(code=1002, reason="missing dft-sync subprotocol")
            raise ConnectionError("hub did not negotiate dft-sync subprotocol")

        self._ws = ws
        self._online.set()
        logger.debug("dft-sync connected to %s", self._url)

        self._spawn("receive", self._receive_loop(ws), replace=True)
        self._spawn("heartbeat", self._heartbeat_loop(ws), replace=True)
        if self._on_connect is not None:
            try:
                await self._on_connect()
            except Exception as exc:
                logger.warning("dft-sync on-connect hook failed: %s", exc)

    async def _drop_connection(self, reason: Exception) -> None:
        ws, self._ws = self._ws, None
        self._online.clear()
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("dft-sync close: %s", exc)

        waiters = list(self._waiters.values())
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(reason)

    async def _lost(self, ws: Any, reason: str) -> None:
        if ws is not self._ws:
            return
        logger.info("dft-sync connection lost: %s", reason)
        await self._drop_connection(ConnectionError(f"dft-sync connection lost: {reason}"))
        if not self._closed:
            self._spawn("reconnect", self._reconnect_loop())

    async def _wait_online(self) -> Any:
        if self.connected:
            return self._ws
        if self._closed:
            raise ConnectionError("dft-sync client is closed")
        await asyncio.wait_for(self._online.wait(), timeout=self.reconnect_max_delay + 5.0)
        if self._ws is None:
            raise ConnectionError("connection unavailable")
        return self._ws

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None], *, replace: bool = False) -> None:
        running = self._tasks.get(name)
        if running is not None and not running.done() and running is not asyncio.current_task():
            if not replace:
                coro.close()
                return
            running.cancel()
        self._tasks[name] = asyncio.create_task(coro, name=f"dft-sync-{name}")

    def _backoff(self, attempt: int) -> float:
        base = min(self.reconnect_min_delay * self.reconnect_factor**attempt, self.reconnect_max_delay)
        return base * (1.0 + random.random() * self.reconnect_jitter)

    async def _reconnect_loop(self) -> None:
        for attempt in itertools.count():
            if self._closed or self.connected:
                return
            try:
                await self._open()
                return
            except (OSError, ConnectionError, WebSocketException, asyncio.TimeoutError) as exc:
                logger.debug("dft-sync reconnect failed: %s", exc)
            await asyncio.sleep(self._backoff(attempt))

    async def _heartbeat_loop(self, ws: Any) -> None:
        while not self._closed and ws is self._ws:
            await asyncio.sleep(self.heartbeat_interval)
            if self._closed or ws is not self._ws:
                return
            try:
                await self.invoke(HEARTBEAT, timeout=self.heartbeat_timeout)
            except (ConnectionError, ConnectionClosed, asyncio.TimeoutError, SyncRPCError) as exc:
                await self._lost(ws, f"heartbeat failed: {exc!r}")
                return

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                frame = _parse_frame(raw)
                if frame is None or frame.get("jsonrpc") != "2.0":
                    continue
                if "method" in frame:
                    await self._on_inbound(frame)
                else:
                    self._on_reply(frame)
        except ConnectionClosed as exc:
            await self._lost(ws, str(exc))
            return
        await self._lost(ws, "closed by hub")

    async def _on_inbound(self, frame: JsonObject) -> None:
        method = frame.get("method")
        req_id = frame.get("id")

        if method == HEARTBEAT:
            if req_id is not None:
                await self._send(self._ws, _frame(id=req_id, result={}))
            return

        handler = self._handlers.get(method) if isinstance(method, str) else None
        params = frame.get("params", {})
        err = None
        if handler is None:
            err = SyncRPCError(METHOD_NOT_FOUND, f"method {method!r} not found")
        elif not isinstance(params, dict):
            err = SyncRPCError(INVALID_PARAMS, "params must be an object")
        if err is not None:
            if req_id is not None:
                await self._send(self._ws, _frame(id=req_id, error=err.to_dict()))
            return

        try:
            result = handler(params)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("dft-sync handler %s failed: %s", method, exc)
            return
        if req_id is not None:
            await self._send(self._ws, _frame(id=req_id, result={}))

    def _on_reply(self, frame: JsonObject) -> None:
        waiter = self._waiters.get(str(frame.get("id")))
        if waiter is None or waiter.done():
            return
        error = frame.get("error")
        if error is not None:
            error = error if isinstance(error, dict) else {}
            waiter.set_exception(
                SyncRPCError(error.get("code", -32603), error.get("message", "internal error"), error.get("data"))
            )
            return
        result = frame.get("result")
        waiter.set_result(result if isinstance(result, dict) else {"value": result})

    async def _send(self, ws: Any, text: str) -> None:
        if ws is None:
            raise ConnectionError("dft-sync client is not connected")
        async with self._send_lock:
            await ws.send(text)


@dataclass
class _Peer:
    id: str
    websocket: Any
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, text: str) -> None:
        async with self.send_lock:
            await self.websocket.send(text)


def _request_path(websocket: Any) -> str | None:
    request = getattr(websocket, "request", None)
    if request is not None:
        return getattr(request, "path", None)
    return getattr(websocket, "path", None)


class SyncHub:
    """Relay between IPC processes of one DIF.

    Keeps the latest relayed entry per key (by version) to answer
    snapshots for processes that join late.
    """

    def __init__(self, url: str = "ws://127.0.0.1:0/dft", *, ssl_context: Any | None = None):
        parsed = urlparse(url)
        self._url = url
        self._scheme = parsed.scheme
        self._host = parsed.hostname or "127.0.0.1"
        self._port = parsed.port
        self._path = parsed.path or "/dft"
        self._ssl_context = ssl_context

        self._peers: dict[str, _Peer] = {}
        self._joined: "asyncio.Queue[str]" = asyncio.Queue(maxsize=_JOIN_BACKLOG)
        self._peer_ids = itertools.count(1)
        self._entries = DirectoryEntryStore()
        self._server: Any | None = None
        self.address = url

    def client_ids(self) -> list[str]:
        return list(self._peers)

    def entries(self) -> list[DirectoryEntry]:
        return self._entries.entries()

    async def wait_for_client(self, timeout: float = 5.0) -> str:
        """Wait for the next peer to join; return its id."""
        return await asyncio.wait_for(self._joined.get(), timeout=timeout)

    def _note_join(self, peer_id: str) -> None:
        # Only the most recent joins are kept when nobody waits for them.
        if self._joined.full():
            self._joined.get_nowait()
        self._joined.put_nowait(peer_id)

    async def start(self) -> str:
        """Listen and return the bound ws:// or wss:// address."""
        if self._server is not None:
            return self.address
        if self._scheme not in ("ws", "wss"):
            raise ValueError(f"dft-sync hub requires ws:// or wss:// URL, got {self._url!r}")
        if self._scheme == "wss" and self._ssl_context is None:
            raise ValueError("wss:// dft-sync hub requires ssl_context")

        port = self._port if self._port is not None else (443 if self._scheme == "wss" else 80)
        self._server = await websockets.serve(
            self._serve_peer,
            self._host,
            port,
            subprotocols=[SUBPROTOCOL],
            ping_interval=None,
            ping_timeout=None,
            max_size=_MAX_SYNC_MESSAGE_BYTES,
            ssl=self._ssl_context if self._scheme == "wss" else None,
        )
        for sock in getattr(self._server, "sockets", None) or ():
            port = sock.getsockname()[1]
            break
        self.address = f"{self._scheme}://{self._host}:{port}{self._path}"
        logger.info("dft-sync hub listening on %s", self.address)
        return self.address

    async def close(self) -> None:
        peers = list(self._peers.values())
        self._peers.clear()
        for peer in peers:
            try:
                await peer.websocket.close(code=1001, reason="hub shutdown")
            except Exception as exc:
                logger.debug("closing peer %s: %s", peer.id, exc)

        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()

    async def _serve_peer(self, websocket: Any) -> None:
        path = _request_path(websocket) or self._path
        if path != self._path:
            await websocket.close(code=1008, reason="invalid path")
            return
        if websocket.subprotocol != SUBPROTOCOL:
            await websocket.close(code=1002, reason="missing dft-sync subprotocol")
            return

        peer = _Peer(id=f"p{next(self._peer_ids)}", websocket=websocket)
        self._peers[peer.id] = peer
        self._note_join(peer.id)
        logger.debug("dft-sync peer %s joined", peer.id)
        try:
            async for raw in websocket:
                await self._on_frame(peer, raw)
        except ConnectionClosed:
            pass
        finally:
            self._peers.pop(peer.id, None)
            logger.debug("dft-sync peer %s left", peer.id)

    async def _on_frame(self, peer: _Peer, raw: Any) -> None:
        frame = _parse_frame(raw)
        if frame is None:
            await peer.send(_frame(id=None, error=SyncRPCError(PARSE_ERROR, "parse error").to_dict()))
            return
        if "method" not in frame:
            # Replies from peers are never expected; drop them.
            return

        req_id = frame.get("id")
        try:
            method, params = self._check_request(frame)
            result = await self._dispatch(peer, method, params)
        except SyncRPCError as exc:
            if req_id is not None:
                await peer.send(_frame(id=req_id, error=exc.to_dict()))
            else:
                logger.debug("dropping notification from %s: %s", peer.id, exc)
            return
        if req_id is not None:
            await peer.send(_frame(id=req_id, result=result))

    @staticmethod
    def _check_request(frame: JsonObject) -> tuple[str, JsonObject]:
        method = frame.get("method")
        if frame.get("jsonrpc") != "2.0" or not isinstance(method, str) or not method:
            raise SyncRPCError(INVALID_REQUEST, "invalid request")
        params = frame.get("params", {})
        if not isinstance(params, dict):
            raise SyncRPCError(INVALID_PARAMS, "params must be an object")
        return method, params

    async def _dispatch(self, peer: _Peer, method: str, params: JsonObject) -> JsonObject:
        if method == HEARTBEAT:
            return {}

        if method == SNAPSHOT:
            entries = sorted(self._entries.entries(), key=lambda e: str(e.key))
            return {"entries": [entry.to_dict() for entry in entries]}

        if method == ANNOUNCE:
            try:
                entry = DirectoryEntry.from_dict(params, origin=Origin.REMOTE)
            except InvalidKeyError as exc:
                raise SyncRPCError(INVALID_PARAMS, str(exc)) from exc
            if self._entries.put(entry):
                await self._relay(peer, ANNOUNCE, entry.to_dict())
            else:
                logger.debug("hub dropping stale announcement of %s (v%d)", entry.key, entry.version)
            return {}

        if method == WITHDRAW:
            try:
                key, version = decode_withdrawal(params)
            except InvalidKeyError as exc:
                raise SyncRPCError(INVALID_PARAMS, str(exc)) from exc
            if self._entries.remove(key, Origin.REMOTE, version=version):
                await self._relay(peer, WITHDRAW, encode_withdrawal(key, version))
            return {}

        raise SyncRPCError(METHOD_NOT_FOUND, f"method {method!r} not found")

    async def _relay(self, source: _Peer, method: str, params: JsonObject) -> None:
        text = _frame(method=method, params=params)
        for peer in [p for p in self._peers.values() if p.id != source.id]:
            try:
                await peer.send(text)
            except ConnectionClosed:
                logger.debug("relay to %s failed: peer gone", peer.id)


class WebSocketPublisher:
    """Publisher that propagates directory changes through a SyncHub.

    Runs a SyncRPCClient on a private event loop thread. Locally owned
    entries are remembered and re-announced after every (re)connect, as are
    withdrawals that could not be sent, so announcements are delivered at
    least once. Entries received from the hub are applied through
    `on_announce` / `on_withdraw`, normally a DirectorySyncAdapter's
    apply_remote / apply_withdrawal.
    """

    def __init__(
        self,
        url: str,
        *,
        on_announce: Callable[[DirectoryEntry], Any] | None = None,
        on_withdraw: Callable[[NamingKey, int | None], Any] | None = None,
        connect_timeout: float = 5.0,
        **client_options: Any,
    ):
        self._url = url
        self._on_announce = on_announce
        self._on_withdraw = on_withdraw
        self._connect_timeout = connect_timeout
        self._client_options = client_options

        self._owned: dict[NamingKey, DirectoryEntry] = {}
        self._unsent_withdrawals: dict[NamingKey, Optional[int]] = {}
        self._lock = threading.Lock()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._client: SyncRPCClient | None = None
        self._ready = threading.Event()

    def bind(
        self,
        on_announce: Callable[[DirectoryEntry], Any],
        on_withdraw: Callable[[NamingKey, int | None], Any],
    ) -> None:
        self._on_announce = on_announce
        self._on_withdraw = on_withdraw

    def start(self) -> None:
        """Start the loop thread and connect; a failed first connect keeps retrying."""
        if self._thread is not None:
            return

        def _run() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._loop = loop
            loop.run_until_complete(self._setup())
            self._ready.set()
            loop.run_forever()

        self._thread = threading.Thread(target=_run, name="dft-sync-publisher", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=self._connect_timeout + 1.0)

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    def announce(self, entry: DirectoryEntry) -> None:
        with self._lock:
            self._owned[entry.key] = entry
            self._unsent_withdrawals.pop(entry.key, None)
        self._submit(self._send_announce(entry))

    def withdraw(self, key: NamingKey, version: int | None = None) -> None:
        with self._lock:
            self._owned.pop(key, None)
            self._unsent_withdrawals[key] = version
        self._submit(self._send_withdraw(key, version))

    def close(self) -> None:
        loop = self._loop
        if loop is None or self._thread is None:
            return
        client = self._client
        if client is not None:
            fut = asyncio.run_coroutine_threadsafe(client.close(), loop)
            try:
                fut.result(timeout=5.0)
            except Exception as exc:
                logger.debug("dft-sync close failed: %s", exc)
        loop.call_soon_threadsafe(loop.stop)
        self._thread.join(timeout=5.0)
        self._thread = None

    async def _setup(self) -> None:
        client = SyncRPCClient(on_connect=self._resync, **self._client_options)
        client.register(ANNOUNCE, self._handle_announce)
        client.register(WITHDRAW, self._handle_withdraw)
        self._client = client
        try:
            await asyncio.wait_for(client.connect(self._url), timeout=self._connect_timeout)
        except Exception as exc:
            logger.warning("dft-sync hub %s unreachable: %s; retrying in background", self._url, exc)
            client.connect_later(self._url)

    def _submit(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop
        if loop is None:
            coro.close()
            logger.debug("dft-sync publisher not started; change kept for resync")
            return
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        fut.add_done_callback(_log_failure)

    async def _send_announce(self, entry: DirectoryEntry) -> None:
        client = self._client
        try:
            if client is None:
                raise ConnectionError("dft-sync client not ready")
            await client.notify(ANNOUNCE, entry.to_dict())
        except (ConnectionError, ConnectionClosed) as exc:
            logger.debug("announcement of %s deferred: %s", entry.key, exc)

    async def _send_withdraw(self, key: NamingKey, version: int | None) -> None:
        client = self._client
        try:
            if client is None:
                raise ConnectionError("dft-sync client not ready")
            await client.notify(WITHDRAW, encode_withdrawal(key, version))
        except (ConnectionError, ConnectionClosed) as exc:
            logger.debug("withdrawal of %s deferred: %s", key, exc)
            return
        with self._lock:
            if key in self._unsent_withdrawals and self._unsent_withdrawals[key] == version:
                del self._unsent_withdrawals[key]

    async def _resync(self) -> None:
        client = self._client
        assert client is not None

        snapshot = await client.invoke(SNAPSHOT, {}, timeout=self._connect_timeout)
        received = snapshot.get("entries", [])
        for raw in received:
            await self._handle_announce(raw)

        with self._lock:
            owned = list(self._owned.values())
            withdrawals = list(self._unsent_withdrawals.items())
        for entry in owned:
            await self._send_announce(entry)
        for key, version in withdrawals:
            await self._send_withdraw(key, version)
        logger.info("dft-sync resynced: %d received, %d announced", len(received), len(owned))

    async def _handle_announce(self, params: JsonObject) -> None:
        try:
            entry = DirectoryEntry.from_dict(params, origin=Origin.REMOTE)
        except InvalidKeyError as exc:
            logger.debug("ignoring malformed announcement: %s", exc)
            return
        if self._on_announce is not None:
            self._on_announce(entry)

    async def _handle_withdraw(self, params: JsonObject) -> None:
        try:
            key, version = decode_withdrawal(params)
        except InvalidKeyError as exc:
            logger.debug("ignoring malformed withdrawal: %s", exc)
            return
        if self._on_withdraw is not None:
            self._on_withdraw(key, version)


def _log_failure(fut: "asyncio.Future[Any] | Any") -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.warning("dft-sync publish failed: %s", exc)

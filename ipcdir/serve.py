from __future__ import annotations

"""gRPC server runner for the directory management service."""

import logging
import signal
import sys
from concurrent import futures
from typing import Callable, Sequence

import grpc
from grpc_reflection.v1alpha import reflection

from ipcdir.transport import DEFAULT_URI, grpc_target, parse_uri

logger = logging.getLogger("ipcdir.serve")

RegisterFunc = Callable[[grpc.Server], None]
_MAX_GRPC_MESSAGE_BYTES = 1 << 20


def parse_flags(args: list[str]) -> str:
    """Extract --listen or --port from command-line args."""
    for i, arg in enumerate(args):
        if arg == "--listen" and i + 1 < len(args):
            return args[i + 1]
        if arg == "--port" and i + 1 < len(args):
            return f"tcp://:{args[i + 1]}"
    return DEFAULT_URI


def start(
    listen_uri: str,
    register_fn: RegisterFunc,
    *,
    reflect: bool = False,
    service_names: Sequence[str] = (),
    max_workers: int = 10,
) -> tuple[grpc.Server, str]:
    """Start a gRPC server without blocking; return it and its bound URI."""
    parsed = parse_uri(listen_uri)

    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=max_workers),
        options=[
            ("grpc.max_receive_message_length", _MAX_GRPC_MESSAGE_BYTES),
            ("grpc.max_send_message_length", _MAX_GRPC_MESSAGE_BYTES),
        ],
    )
    register_fn(server)

    if reflect:
        reflection.enable_server_reflection((*service_names, reflection.SERVICE_NAME), server)

    port = server.add_insecure_port(grpc_target(parsed, listening=True))
    if parsed.scheme == "tcp":
        if port == 0:
            raise OSError(f"failed to bind {listen_uri}")
        actual_uri = f"tcp://{parsed.host or '0.0.0.0'}:{port}"
    else:
        actual_uri = listen_uri

    server.start()
    mode = "reflection ON" if reflect else "reflection OFF"
    logger.info("gRPC server listening on %s (%s)", actual_uri, mode)
    return server, actual_uri


def run(listen_uri: str, register_fn: RegisterFunc) -> None:
    """Start a gRPC server with reflection enabled."""
    run_with_options(listen_uri, register_fn, reflect=True)


def run_with_options(
    listen_uri: str,
    register_fn: RegisterFunc,
    reflect: bool = True,
    service_names: Sequence[str] = (),
    max_workers: int = 10,
    on_listen: Callable[[str], None] | None = None,
    on_stop: Callable[[], None] | None = None,
) -> None:
    """Serve on the given transport URI until SIGTERM/SIGINT."""
    server, actual_uri = start(
        listen_uri,
        register_fn,
        reflect=reflect,
        service_names=service_names,
        max_workers=max_workers,
    )

    if on_listen is not None:
        on_listen(actual_uri)

    def _shutdown(*_args):
        logger.info("shutting down gRPC server")
        server.stop(10)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    mode = "reflection ON" if reflect else "reflection OFF"
    print(f"gRPC server listening on {actual_uri} ({mode})", file=sys.stderr)

    try:
        server.wait_for_termination()
    finally:
        if on_stop is not None:
            on_stop()

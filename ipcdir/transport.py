from __future__ import annotations

"""Transport URIs for the directory management service.

Supported transport URIs:
    tcp://<host>:<port>   — TCP socket (default: tcp://127.0.0.1:32766)
    unix://<path>         — Unix domain socket
"""

from dataclasses import dataclass

DEFAULT_PORT = 32766
DEFAULT_URI = f"tcp://127.0.0.1:{DEFAULT_PORT}"


@dataclass(frozen=True)
class ParsedURI:
    raw: str
    scheme: str
    host: str | None = None
    port: int | None = None
    path: str | None = None


def scheme(uri: str) -> str:
    """Extract the transport scheme from a URI."""
    idx = uri.find("://")
    return uri[:idx] if idx >= 0 else uri


def parse_uri(uri: str) -> ParsedURI:
    """Parse a transport URI into a normalized structure."""
    s = scheme(uri)

    if s == "tcp":
        addr = uri[6:]
        host, port = _split_host_port(addr, default_port=DEFAULT_PORT)
        return ParsedURI(raw=uri, scheme="tcp", host=host, port=port)

    if s == "unix":
        path = uri[7:]
        if not path:
            raise ValueError(f"invalid unix:// URI: {uri!r}")
        return ParsedURI(raw=uri, scheme="unix", path=path)

    raise ValueError(f"unsupported transport URI: {uri!r} (expected tcp:// or unix://)")


def grpc_target(parsed: ParsedURI, *, listening: bool = False) -> str:
    """Render a parsed URI as a gRPC address.

    Listening on an empty host binds every interface; dialing it means the
    loopback interface.
    """
    if parsed.scheme == "unix":
        return f"unix:{parsed.path}"
    host = parsed.host or ("0.0.0.0" if listening else "127.0.0.1")
    if not listening and host == "0.0.0.0":
        host = "127.0.0.1"
    return f"{host}:{parsed.port}"


def _split_host_port(addr: str, default_port: int) -> tuple[str, int]:
    if not addr:
        return "", default_port

    if ":" not in addr:
        return addr, default_port

    host, _, port = addr.rpartition(":")
    try:
        return host, int(port) if port else default_port
    except ValueError as exc:
        raise ValueError(f"invalid port in {addr!r}") from exc

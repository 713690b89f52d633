"""Tests for ipcdir.transport — URI parsing and gRPC targets."""

import pytest

from ipcdir.transport import DEFAULT_PORT, DEFAULT_URI, ParsedURI, grpc_target, parse_uri, scheme


def test_scheme_extraction():
    assert scheme("tcp://:9090") == "tcp"
    assert scheme("unix:///tmp/x.sock") == "unix"
    assert scheme("ws://host:8080") == "ws"
    assert scheme("plain") == "plain"


def test_default_uri():
    assert DEFAULT_URI == f"tcp://127.0.0.1:{DEFAULT_PORT}"


def test_parse_uri_tcp():
    parsed = parse_uri("tcp://127.0.0.1:9090")
    assert parsed == ParsedURI(raw="tcp://127.0.0.1:9090", scheme="tcp", host="127.0.0.1", port=9090)


def test_parse_uri_tcp_defaults():
    assert parse_uri("tcp://:9090").host == ""
    assert parse_uri("tcp://").port == DEFAULT_PORT
    assert parse_uri("tcp://localhost").port == DEFAULT_PORT


def test_parse_uri_tcp_bad_port():
    with pytest.raises(ValueError, match="invalid port"):
        parse_uri("tcp://127.0.0.1:http")


def test_parse_uri_unix():
    parsed = parse_uri("unix:///tmp/ipcp.sock")
    assert parsed == ParsedURI(raw="unix:///tmp/ipcp.sock", scheme="unix", path="/tmp/ipcp.sock")
    with pytest.raises(ValueError, match="invalid unix"):
        parse_uri("unix://")


def test_parse_uri_unsupported_scheme():
    try:
        parse_uri("ftp://host")
        assert False, "should have raised"
    except ValueError as e:
        assert "unsupported transport URI" in str(e)


def test_grpc_target():
    assert grpc_target(parse_uri("tcp://127.0.0.1:9090")) == "127.0.0.1:9090"
    assert grpc_target(parse_uri("tcp://:9090")) == "127.0.0.1:9090"
    assert grpc_target(parse_uri("tcp://:9090"), listening=True) == "0.0.0.0:9090"
    assert grpc_target(parse_uri("tcp://0.0.0.0:9090")) == "127.0.0.1:9090"
    assert grpc_target(parse_uri("tcp://0.0.0.0:9090"), listening=True) == "0.0.0.0:9090"
    assert grpc_target(parse_uri("unix:///tmp/ipcp.sock")) == "unix:/tmp/ipcp.sock"

from __future__ import annotations

"""IPC process directory daemon.

    python -m ipcdir.daemon serve --config ipcp.yaml [--listen URI] [--sync URL]
    python -m ipcdir.daemon hub [--listen ws://127.0.0.1:8765/dft]

`serve` runs the registration manager and its management service; `hub`
runs a directory sync hub for the IPC processes of one DIF.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Callable, Sequence

from ipcdir import mgmt
from ipcdir.config import IPCProcessConfig, load_config
from ipcdir.manager import RegistrationManager
from ipcdir.serve import run_with_options
from ipcdir.store import DirectoryEntryStore
from ipcdir.sync import DirectorySyncAdapter
from ipcdir.syncrpc import SyncHub, WebSocketPublisher

logger = logging.getLogger("ipcdir.daemon")

DEFAULT_HUB_URL = "ws://127.0.0.1:8765/dft"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(argv: Sequence[str]) -> dict[str, Any]:
    args = list(argv)
    command = "serve"
    if args and args[0] in {"serve", "hub"}:
        command = args[0]
        args = args[1:]

    out: dict[str, Any] = {
        "command": command,
        "config": None,
        "listen_uri": None,
        "sync_url": None,
        "address": None,
        "log_level": None,
    }

    i = 0
    while i < len(args):
        token = args[i]
        value = args[i + 1] if i + 1 < len(args) else None

        if token == "--config" and value is not None:
            out["config"] = value
        elif token == "--listen" and value is not None:
            out["listen_uri"] = value
        elif token == "--port" and value is not None:
            out["listen_uri"] = f"tcp://127.0.0.1:{value}"
        elif token == "--sync" and value is not None:
            out["sync_url"] = value
        elif token == "--log-level" and value is not None:
            out["log_level"] = value.upper()
        elif token == "--address" and value is not None:
            try:
                out["address"] = int(value, 0)
            except ValueError:
                raise ValueError(f"invalid --address {value!r}") from None
        else:
            i += 1
            continue
        i += 2

    return out


def resolve_config(args: dict[str, Any]) -> IPCProcessConfig:
    """Load the config file (if any) and apply command-line overrides."""
    if args["config"]:
        config = load_config(args["config"])
    elif args["address"] is not None:
        config = IPCProcessConfig(address=args["address"])
    else:
        raise ValueError("either --config or --address is required")

    if args["address"] is not None:
        config.address = args["address"]
    if args["listen_uri"]:
        config.listen = args["listen_uri"]
    if args["sync_url"]:
        config.sync_url = args["sync_url"]
    if args["log_level"]:
        config.log_level = args["log_level"]
    return config


def build_manager(config: IPCProcessConfig) -> RegistrationManager:
    """Wire store, sync adapter and manager; load the static entries."""
    store = DirectoryEntryStore(stripes=config.stripes)

    publisher = None
    if config.sync_url:
        publisher = WebSocketPublisher(config.sync_url)
    sync = DirectorySyncAdapter(store, publisher)
    if publisher is not None:
        publisher.bind(sync.apply_remote, sync.apply_withdrawal)

    manager = RegistrationManager(
        config.address,
        store,
        sync,
        auto_confirm=config.auto_confirm,
        transition_timeout=config.transition_timeout,
    )

    for entry in config.static_entries:
        outcome = manager.add_dft_entry(entry)
        if not outcome.ok:
            logger.warning("static entry %s not loaded: %s", entry.key, outcome.status.value)

    if publisher is not None:
        publisher.start()
    sync.start()
    return manager


def serve(argv: Sequence[str] | None = None, on_listen: Callable[[str], None] | None = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    config = resolve_config(args)
    logging.basicConfig(level=config.log_level, format=_LOG_FORMAT)

    manager = build_manager(config)
    logger.info("IPC process %s/%s at address %d (DIF %s)", config.process_name, config.process_instance, config.address, config.dif or "-")

    run_with_options(
        config.listen,
        mgmt.register(manager),
        reflect=False,
        service_names=(mgmt.SERVICE_NAME,),
        on_listen=on_listen or _announce,
        on_stop=manager.close,
    )


def run_hub(argv: Sequence[str] | None = None, on_listen: Callable[[str], None] | None = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=args["log_level"] or "INFO", format=_LOG_FORMAT)
    asyncio.run(_serve_hub(args["listen_uri"] or DEFAULT_HUB_URL, on_listen or _announce))


async def _serve_hub(url: str, on_listen: Callable[[str], None]) -> None:
    hub = SyncHub(url)
    address = await hub.start()
    on_listen(address)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("shutting down dft-sync hub")
        await hub.close()


def _announce(uri: str) -> None:
    print(uri, flush=True)


def main() -> None:
    argv = sys.argv[1:]
    try:
        if argv and argv[0] == "hub":
            run_hub(argv)
        else:
            serve(argv)
    except Exception as exc:  # pragma: no cover - CLI guard
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()

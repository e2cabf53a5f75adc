from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tokenrelay.server.runtime import ServerRuntime

log = logging.getLogger("tokenrelay.cmd.server")


def load_config(config_path: Optional[Path], listen: Optional[str] = None) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if config_path is not None:
        config = yaml.safe_load(config_path.read_text()) or {}
    listen = listen or os.getenv("TOKENRELAY_LISTEN")
    if listen:
        config["listen"] = listen
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()
        log.info("Relay stopped")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Short-token WebSocket relay")
    parser.add_argument("--config", help="Path to relay YAML config")
    parser.add_argument("--listen", help="host:port to bind, overrides the config file")
    parser.add_argument(
        "--log-level",
        default=os.getenv("TOKENRELAY_LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(Path(args.config) if args.config else None, args.listen)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
GiftLedger server runner: starts the gift ledger node with:
  - In-memory custody service, optionally persisted to SQLite
  - REST API for initialize / add / remove / claim

Usage:
    python run_server.py --config giftledger.toml --port 8080 \\
                         --fund admin=100000

Environment variables (alternative to flags):
    GIFTLEDGER_HOST, GIFTLEDGER_PORT, GIFTLEDGER_DB_PATH, GIFTLEDGER_LOG_LEVEL, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from giftledger_core.api import APIServer  # noqa: E402
from giftledger_core.config import load_config  # noqa: E402
from giftledger_core.logging_config import setup_logging  # noqa: E402
from giftledger_core.node import GiftNode  # noqa: E402

logger = logging.getLogger("giftledger")


def _parse_fund(values: list[str]) -> dict[str, int]:
    funds: dict[str, int] = {}
    for item in values:
        address, sep, amount = item.partition("=")
        if not sep or not address:
            raise SystemExit(f"--fund expects address=amount, got {item!r}")
        funds[address] = int(amount)
    return funds


def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="GiftLedger server")
    p.add_argument("--config", default=None, help="Path to giftledger.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--fund", action="append", default=[], metavar="ADDRESS=AMOUNT",
                   help="Credit an account on startup (repeatable)")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None):
    args = parse_args(argv)

    # Config: TOML + env, then CLI flags on top
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    node = GiftNode(cfg)
    node.start()
    for address, amount in _parse_fund(args.fund).items():
        node.fund(address, amount)
        logger.info(f"Funded {address} with {amount} {node.currency}")

    api = None
    if cfg.api.enabled:
        api = APIServer(node, cfg.api.host, cfg.api.port, api_config=cfg.api)
        await api.start()
        if not cfg.api.api_key:
            logger.warning("API key is empty; POST endpoints are unauthenticated")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        if api is not None:
            await api.stop()
        node.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()

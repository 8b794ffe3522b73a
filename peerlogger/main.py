"""
peerlogger — Ethereum execution-layer peer crawler.

Entry point for the crawler. Initializes all subsystems:
  1. Parse CLI arguments
  2. Load the configuration (fatal on failure)
  3. Open the node store, GeoIP databases and the saved node set
  4. Start discv4 discovery
  5. Start the status API (optional)
  6. Run crawl rounds until SIGINT / SIGTERM
  7. Wait for the in-flight round, then close everything
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sqlite3
import sys
from pathlib import Path
from typing import Optional

from peerlogger.common.config import DEFAULT_CONFIG_FILE, FatalConfigError
from peerlogger.common.crypto import private_key_to_public_key
from peerlogger.common.enr import ENRError, Node, parse_node
from peerlogger.crawler.blacklist import BlacklistFilter
from peerlogger.crawler.geo import GeoIP
from peerlogger.crawler.registry import (
    STDOUT_PATH,
    IntegrityError,
    NodeRegistry,
    SnapshotError,
    load_nodes_json,
)
from peerlogger.crawler.scheduler import CrawlScheduler
from peerlogger.networking.discv4.discovery import Discv4Discovery
from peerlogger.rpc.server import StatusServer
from peerlogger.storage.sqlite_store import SQLiteStore


logger = logging.getLogger("peerlogger")

# ---------------------------------------------------------------------------
# Default bootnodes
# ---------------------------------------------------------------------------

MAINNET_BOOTNODES = [
    # Ethereum Foundation bootnodes
    "enode://d860a01f9722d78051619d1e2351aba3f43f943f6f00718d1b9baa4101932a1f5011f16bb2b1bb35db20d6fe28fa0bf09636d26a87d31de9ec6203eeedb1f666@18.138.108.67:30303",
    "enode://22a8232c3abc76a16ae9d6c3b164f98775fe226f0917b0ca871128a74a8e9630b458460865bab457221f1d448dd9791d24c4e5d88786180ac185df813a68d4de@3.209.45.79:30303",
]

SEPOLIA_BOOTNODES = [
    # EF DevOps bootnodes (go-ethereum)
    "enode://4e5e92199ee224a01932a377160aa432f31d0b351f84ab413a8e0a42f4f36476f8fb1cbe914af0d9aef0d51665c214cf653c651c4bbd9d5550a934f241f1682b@138.197.51.181:30303",
    "enode://143e11fb766781d22d92a2e33f8f104cddae4411a122295ed1fdb6638de96a6ce65f5b7c964ba3763bba27961738fef7d3ecc739268f3e5e771fb4c87b6234ba@146.190.1.103:30303",
    "enode://8b61dc2d06c3f96fddcbebb0efb29d60d3598650275dc469c22229d3e5620369b0d3dedafd929835fe7f489618f19f456fe7c0df572bf2d914a9f4e006f783a9@170.64.250.88:30303",
    "enode://10d62eff032205fcef19497f35ca8477bea0eadfff6d769a147e895d8b2b8f8ae6341630c645c30f5df6e67547c03494ced3d9c5764e8622a26587b083b028e8@139.59.49.206:30303",
    "enode://9e9492e2e8836114cc75f5b929784f4f46c324ad01daf87d956f98b3b6c5fcba95524d6e5cf9861dc96a2c8a171ea7105bb554a197455058de185fa870970c7c@138.68.123.152:30303",
]

HOLESKY_BOOTNODES = [
    "enode://ac906289e4b7f12df423d654c5a962b6ebe5b3a74cc9e06292a85221f9a64a6f1cfdd6b714ed6dacef51578f92b34c60ee91e9ede9c7f8fadc4d347326d95e2b@146.190.13.128:30303",
    "enode://a3435a0155a3e837c02f5e7f5662a2f1fbc25b48e4dc232016e1c51b544cb5b4510ef633ea3278c0e970fa8ad8141e2d4d0f9f95456c537ff05fdf9b31c15072@178.128.136.233:30303",
]

NETWORK_BOOTNODES = {
    "mainnet": MAINNET_BOOTNODES,
    "sepolia": SEPOLIA_BOOTNODES,
    "holesky": HOLESKY_BOOTNODES,
}


def parse_bootnodes(entries: list[str]) -> list[Node]:
    """Parse enode/enr strings, skipping the ones that don't parse."""
    nodes = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            nodes.append(parse_node(entry))
        except ENRError as e:
            logger.warning("Ignoring bootnode %r: %s", entry[:40], e)
    return nodes


def load_registry(path: Optional[str]) -> NodeRegistry:
    """Load the saved node set; a missing file starts an empty registry."""
    if not path or path == STDOUT_PATH or not Path(path).exists():
        return NodeRegistry()
    registry = load_nodes_json(path)
    logger.info("Loaded %d nodes from %s", len(registry), path)
    return registry


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------

class Crawler:
    """Owns the long-lived subsystems and their shutdown order."""

    def __init__(
        self,
        scheduler: CrawlScheduler,
        api_port: Optional[int] = None,
    ) -> None:
        self.scheduler = scheduler
        self.api_port = api_port
        self.status = StatusServer(scheduler)
        self._api_server = None
        self._api_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        discovery = self.scheduler.discovery
        await discovery.start()

        if self.api_port:
            import uvicorn
            config = uvicorn.Config(
                self.status.app,
                host="0.0.0.0",
                port=self.api_port,
                log_level="warning",
                loop="asyncio",
            )
            self._api_server = uvicorn.Server(config)
            self._api_server.config.setup_event_loop = lambda: None
            self._api_task = asyncio.create_task(self._api_server.serve())
            logger.info("  Status API port: %d", self.api_port)

    async def stop(self) -> None:
        logger.info("Shutting down...")
        if self._api_server is not None:
            self._api_server.should_exit = True
        if self._api_task is not None:
            await self._api_task
        await self.scheduler.discovery.stop()
        if self.scheduler.store is not None:
            self.scheduler.store.close()
        if self.scheduler.geoip is not None:
            self.scheduler.geoip.close()
        logger.info("Crawler stopped")

    async def run_once(self) -> None:
        await self.start()
        try:
            await self.scheduler.run_round()
        finally:
            await self.stop()

    async def run_until_stopped(self) -> None:
        """Run rounds until a shutdown signal is received."""
        stop_event = asyncio.Event()

        def _signal_handler():
            logger.info("Shutdown requested, finishing current round")
            stop_event.set()

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await self.start()
        try:
            task = asyncio.create_task(self.scheduler.start(stop_event))
            await self.scheduler.wait_stopped()
            await task
        finally:
            await self.stop()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peerlogger",
        description="peerlogger — Ethereum execution-layer peer crawler",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_FILE,
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--db",
        type=str,
        default="peerlogger.db",
        help="SQLite database path (default: peerlogger.db)",
    )
    parser.add_argument(
        "--nodes",
        type=str,
        default=None,
        help="Node set snapshot, loaded at start and rewritten after every round ('-' for stdout)",
    )
    parser.add_argument(
        "--geoip-city",
        type=str,
        default="",
        help="MaxMind GeoLite2-City database",
    )
    parser.add_argument(
        "--geoip-asn",
        type=str,
        default="",
        help="MaxMind GeoLite2-ASN database",
    )
    parser.add_argument(
        "--network",
        choices=sorted(NETWORK_BOOTNODES),
        default="mainnet",
        help="Network whose bootnodes are used (default: mainnet)",
    )
    parser.add_argument(
        "--bootnodes",
        type=str,
        default=None,
        help="Comma-separated enode/enr URLs for bootstrap",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=30303,
        help="Discovery UDP port (default: 30303)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Serve the status API on this port",
    )
    parser.add_argument(
        "--private-key",
        type=str,
        default=None,
        help="Hex-encoded private key for node identity (generated if not set)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Initial logging level (default: INFO)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single crawl round and exit",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Private key
    if args.private_key:
        private_key = bytes.fromhex(args.private_key.removeprefix("0x"))
    else:
        private_key = os.urandom(32)
        logger.info("Generated new node identity")

    # Boot nodes
    if args.bootnodes:
        bootnodes = parse_bootnodes(args.bootnodes.split(","))
    else:
        bootnodes = parse_bootnodes(NETWORK_BOOTNODES[args.network])

    try:
        registry = load_registry(args.nodes)
    except (SnapshotError, IntegrityError) as e:
        logger.error("Cannot load node set: %s", e)
        sys.exit(1)

    blacklist = BlacklistFilter()
    scheduler = CrawlScheduler(
        blacklist=blacklist,
        discovery=Discv4Discovery(private_key, listen_port=args.port, bootnodes=bootnodes),
        registry=registry,
        config_path=args.config,
        bootnodes=bootnodes,
        nodes_path=args.nodes or "",
    )
    try:
        scheduler.bootstrap()
    except FatalConfigError as e:
        logger.error("Cannot load configuration: %s", e)
        sys.exit(1)

    try:
        scheduler.store = SQLiteStore(args.db)
        scheduler.geoip = GeoIP(args.geoip_city, args.geoip_asn)
    except (OSError, RuntimeError, sqlite3.Error) as e:
        logger.error("Cannot open databases: %s", e)
        sys.exit(1)

    node_id = private_key_to_public_key(private_key).hex()
    logger.info("Starting peerlogger")
    logger.info("  Node ID: %s...", node_id[:32])
    logger.info("  Network: %s (%d bootnodes)", args.network, len(bootnodes))
    logger.info("  Discovery port: %d", args.port)

    crawler = Crawler(scheduler, api_port=args.api_port)
    try:
        if args.once:
            asyncio.run(crawler.run_once())
        else:
            asyncio.run(crawler.run_until_stopped())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

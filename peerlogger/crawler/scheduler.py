"""
Crawl scheduler — runs crawl rounds on a fixed interval.

Each round first re-reads the configuration file. When its content hash
changed, a new EffectiveConfig is built and the blacklist is reloaded before
any discovery work starts, so a round always runs against one consistent
set of rules. A new interval takes effect from the next wait.

The loop body runs inside a single task, so rounds never overlap. The stop
event is only checked between rounds; an in-flight round always completes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from peerlogger.common.config import (
    DEFAULT_CONFIG_FILE,
    EffectiveConfig,
    FatalConfigError,
    apply_log_level,
    load_config,
)
from peerlogger.common.enr import Node
from peerlogger.common.types import GeoData
from peerlogger.crawler.blacklist import BlacklistFilter
from peerlogger.crawler.discovery import Discovery, run_discovery
from peerlogger.crawler.geo import GeoIP
from peerlogger.crawler.registry import NodeRegistry, PeerRecord
from peerlogger.storage.store import NodeStore, node_upsert_from_record

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class RoundError(Exception):
    """A crawl round failed; the scheduler carries on with the next one."""


@dataclass
class RoundStats:
    round: int
    started_at: float
    duration: float = 0.0
    config_changed: bool = False
    candidates: int = 0
    found: int = 0
    checked: int = 0
    alive: int = 0
    blacklisted: int = 0
    stored: int = 0
    store_errors: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


class CrawlScheduler:
    """Drives periodic crawl rounds and keeps the configuration current.

    The scheduler task is the only writer of the active EffectiveConfig and
    the only caller of BlacklistFilter.reload.
    """

    def __init__(
        self,
        blacklist: BlacklistFilter,
        discovery: Discovery,
        registry: Optional[NodeRegistry] = None,
        store: Optional[NodeStore] = None,
        geoip: Optional[GeoIP] = None,
        config_path: str = DEFAULT_CONFIG_FILE,
        config: Optional[EffectiveConfig] = None,
        bootnodes: Optional[list[Node]] = None,
        nodes_path: str = "",
    ) -> None:
        self.blacklist = blacklist
        self.discovery = discovery
        self.registry = registry if registry is not None else NodeRegistry()
        self.store = store
        self.geoip = geoip
        self.config_path = config_path
        self.config = config
        self.bootnodes = list(bootnodes or [])
        self.nodes_path = nodes_path

        self.state = SchedulerState.IDLE
        self.done = asyncio.Event()
        self.rounds = 0
        self.last_round: Optional[RoundStats] = None

    # -----------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------

    def bootstrap(self) -> EffectiveConfig:
        """First configuration load. Raises FatalConfigError on failure."""
        cfg, digest = load_config(self.config_path)
        self._apply_config(EffectiveConfig.from_app_config(cfg, digest))
        return self.config

    def _apply_config(self, config: EffectiveConfig) -> None:
        self.blacklist.reload(config.ip_blacklist, config.pubkey_blacklist)
        apply_log_level(config.log_level)
        self.config = config
        logger.info(
            "Configuration applied: hash=%s interval=%.0fs timeout=%.1fs workers=%d",
            config.config_hash.hex()[:16], config.crawl_interval,
            config.discovery_timeout, config.max_parallel_crawls,
        )

    def reload_config(self) -> bool:
        """Re-read the config file and apply it if its hash changed.

        Returns True when a new configuration was adopted. Once a valid
        configuration exists, a broken file is logged and ignored.
        """
        if self.config is None:
            self.bootstrap()
            return True
        try:
            cfg, digest = load_config(self.config_path)
        except FatalConfigError as e:
            logger.warning("Ignoring config reload, keeping previous configuration: %s", e)
            return False
        if digest == self.config.config_hash:
            return False
        self._apply_config(EffectiveConfig.from_app_config(cfg, digest))
        return True

    # -----------------------------------------------------------------
    # Rounds
    # -----------------------------------------------------------------

    def _candidates(self, config: EffectiveConfig) -> list[Node]:
        working = self.registry
        if config.nodes_top_n > 0:
            working = working.top_n(config.nodes_top_n)
        nodes = working.nodes()
        known = {n.id_hex for n in nodes}
        nodes.extend(n for n in self.bootnodes if n.id_hex not in known)
        return nodes

    def _lookup(self, record: PeerRecord) -> GeoData:
        if self.geoip is None or not record.node.ip:
            return GeoData()
        try:
            return self.geoip.lookup(record.node.ip)
        except Exception as e:
            logger.debug("GeoIP lookup failed for %s: %s", record.node.ip, e)
            return GeoData()

    async def _crawl(self, config: EffectiveConfig, stats: RoundStats) -> None:
        result = await run_discovery(
            self.discovery,
            self._candidates(config),
            self.blacklist,
            timeout=config.discovery_timeout,
            max_workers=config.max_parallel_crawls,
        )
        stats.candidates = result.candidates
        stats.found = result.found
        stats.blacklisted = result.blacklisted
        stats.checked = len(result.checks)

        # Fresh records may have moved onto a blacklisted address.
        checks = []
        for check in result.checks:
            if check.ok and check.node is not None and self.blacklist.is_node_blacklisted(check.node):
                stats.blacklisted += 1
                continue
            checks.append(check)

        alive = self.registry.apply_checks(checks)
        stats.alive = len(alive)

        # Known nodes that failed their check are stored as offline.
        to_store = list(alive)
        for check in checks:
            if not check.ok:
                record = self.registry.get(check.node_id)
                if record is not None:
                    to_store.append(record)

        store_error: Optional[Exception] = None
        if self.store is not None:
            for record in to_store:
                try:
                    self.store.upsert_node(node_upsert_from_record(record, self._lookup(record)))
                except Exception as e:
                    logger.warning("Failed to store node %s: %s", record.id[:16], e)
                    stats.store_errors += 1
                    if store_error is None:
                        store_error = e
                    continue
                stats.stored += 1

        if self.nodes_path:
            self.registry.write_nodes_json(self.nodes_path)

        if result.error is not None:
            raise RoundError(f"discovery incomplete: {result.error!r}") from result.error
        if store_error is not None:
            raise RoundError(
                f"{stats.store_errors} node writes failed: {store_error}"
            ) from store_error

    async def _run(self, stats: RoundStats) -> None:
        try:
            stats.config_changed = self.reload_config()
            await self._crawl(self.config, stats)
        except (FatalConfigError, RoundError):
            raise
        except Exception as e:
            raise RoundError(str(e) or type(e).__name__) from e

    async def run_round(self) -> RoundStats:
        """Run one crawl round. Failures are logged and reported in the stats."""
        self.rounds += 1
        stats = RoundStats(round=self.rounds, started_at=time.time())
        logger.info("Starting crawl round %d", stats.round)
        try:
            await self._run(stats)
        except RoundError as e:
            stats.error = str(e)
            logger.exception("Crawl round %d failed", stats.round)
        stats.duration = time.time() - stats.started_at
        self.last_round = stats
        logger.info(
            "Crawl round %d completed: candidates=%d alive=%d blacklisted=%d stored=%d (%.1fs)",
            stats.round, stats.candidates, stats.alive, stats.blacklisted,
            stats.stored, stats.duration,
        )
        return stats

    # -----------------------------------------------------------------
    # Loop
    # -----------------------------------------------------------------

    def _until_next_tick(self, tick: float, now: float) -> float:
        """Seconds from `now` until the next interval boundary after `tick`.

        Rounds start on a fixed grid. Boundaries that passed while a round
        was still running are skipped, not made up.
        """
        interval = self.config.crawl_interval
        next_tick = tick + interval
        if next_tick <= now:
            next_tick += ((now - next_tick) // interval + 1) * interval
        return next_tick - now

    async def start(self, stop_event: asyncio.Event) -> None:
        """Run rounds until `stop_event` is set.

        The first round starts immediately. `done` is set once the loop has
        fully stopped.
        """
        logger.info("Starting node crawler")
        loop = asyncio.get_running_loop()
        try:
            if self.config is None:
                self.bootstrap()
            while not stop_event.is_set():
                tick = loop.time()
                self.state = SchedulerState.RUNNING
                await self.run_round()
                self.state = SchedulerState.IDLE
                try:
                    await asyncio.wait_for(stop_event.wait(), self._until_next_tick(tick, loop.time()))
                except asyncio.TimeoutError:
                    pass
            logger.info("Stopping node crawler")
        finally:
            self.state = SchedulerState.STOPPED
            self.done.set()

    async def wait_stopped(self) -> None:
        await self.done.wait()

"""
Read-only HTTP status API for the crawler.

Serves the registry, blacklist and round statistics as JSON, plus a
Prometheus text exposition on /metrics.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.responses import PlainTextResponse

from peerlogger.crawler.scheduler import CrawlScheduler

logger = logging.getLogger(__name__)


class StatusServer:
    """FastAPI app exposing scheduler state."""

    def __init__(self, scheduler: CrawlScheduler) -> None:
        self.scheduler = scheduler
        self.started_at = time.time()
        self.app = FastAPI(title="peerlogger status", docs_url=None, redoc_url=None)
        self._setup_routes()

    def metrics(self) -> dict[str, float | int]:
        sched = self.scheduler
        stats = sched.blacklist.get_stats()
        metrics: dict[str, float | int] = {
            "peerlogger_uptime_seconds": round(time.time() - self.started_at, 3),
            "peerlogger_rounds_total": sched.rounds,
            "peerlogger_registry_nodes": len(sched.registry),
            "peerlogger_blacklist_ips": stats.ips,
            "peerlogger_blacklist_networks": stats.networks,
            "peerlogger_blacklist_pubkeys": stats.pubkeys,
        }
        last = sched.last_round
        if last is not None:
            metrics["peerlogger_last_round_candidates"] = last.candidates
            metrics["peerlogger_last_round_alive"] = last.alive
            metrics["peerlogger_last_round_blacklisted"] = last.blacklisted
            metrics["peerlogger_last_round_store_errors"] = last.store_errors
            metrics["peerlogger_last_round_duration_seconds"] = round(last.duration, 3)
            metrics["peerlogger_last_round_ok"] = int(last.ok)
        if sched.store is not None:
            metrics["peerlogger_store_online_nodes"] = sched.store.get_online_nodes_count()
        return metrics

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def handle_health() -> dict:
            return {"status": "ok", "state": self.scheduler.state.value}

        @self.app.get("/nodes")
        async def handle_nodes(limit: int = Query(100, ge=1, le=10000)) -> dict:
            records = self.scheduler.registry.all_records()[:limit]
            return {r.id: r.to_json() for r in records}

        @self.app.get("/nodes/top")
        async def handle_top(n: int = Query(10, ge=1, le=10000)) -> dict:
            top = self.scheduler.registry.top_n(n)
            return {r.id: r.to_json() for r in top.all_records()}

        @self.app.get("/blacklist")
        async def handle_blacklist() -> dict:
            return dataclasses.asdict(self.scheduler.blacklist.get_stats())

        @self.app.get("/stats")
        async def handle_stats() -> dict:
            sched = self.scheduler
            config = sched.config
            body: dict = {
                "state": sched.state.value,
                "rounds": sched.rounds,
                "registry_size": len(sched.registry),
                "config_hash": config.config_hash.hex() if config is not None else None,
                "last_round": dataclasses.asdict(sched.last_round) if sched.last_round else None,
            }
            if sched.store is not None:
                body["store"] = sched.store.get_node_stats()
                body["clients"] = sched.store.get_client_distribution()
                body["countries"] = sched.store.get_country_distribution()
            return body

        @self.app.get("/metrics")
        async def handle_metrics() -> PlainTextResponse:
            lines: list[str] = []
            try:
                for key, value in self.metrics().items():
                    lines.append(f"{key} {value}")
            except Exception as exc:
                logger.debug("metrics error: %s", exc)
            return PlainTextResponse("\n".join(lines) + ("\n" if lines else ""))

"""
Discovery collaborator contract and the per-round liveness pass.

A Discovery implementation knows how to find candidate nodes and how to
contact a single node. `run_discovery` fans the checks out over a bounded
number of concurrent workers and hands back the raw results; merging them
into the registry is left to the caller so it happens in one step.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from peerlogger.common.enr import Node
from peerlogger.crawler.blacklist import BlacklistFilter
from peerlogger.crawler.registry import CheckResult

logger = logging.getLogger(__name__)

# Slack on top of the check budget before a check is abandoned
CHECK_GRACE = 0.5


class Discovery(ABC):
    """Source of candidate nodes and per-node liveness checks."""

    async def start(self) -> None:
        """Acquire network resources. Default: no-op."""

    async def stop(self) -> None:
        """Release network resources. Default: no-op."""

    @abstractmethod
    async def find_nodes(self, timeout: float) -> list[Node]:
        """Return nodes discovered within roughly `timeout` seconds."""
        ...

    @abstractmethod
    async def check_node(self, node: Node, timeout: float) -> CheckResult:
        """Contact one node.

        On success the result carries the freshest record the node served.
        Implementations must finish within `timeout` overall; checks that
        overrun it by more than CHECK_GRACE are abandoned. May raise; the
        caller treats any exception as a failed check.
        """
        ...


@dataclass
class DiscoveryResult:
    """Everything one discovery pass produced, possibly partial."""
    checks: list[CheckResult] = field(default_factory=list)
    candidates: int = 0
    found: int = 0
    blacklisted: int = 0
    error: Optional[BaseException] = None


async def _check_one(
    discovery: Discovery, node: Node, timeout: float, sem: asyncio.Semaphore,
) -> CheckResult:
    async with sem:
        try:
            return await asyncio.wait_for(discovery.check_node(node, timeout), timeout + CHECK_GRACE)
        except asyncio.TimeoutError:
            return CheckResult(node_id=node.id_hex, ok=False, error="timeout")
        except Exception as e:
            logger.debug("Check failed for %s: %s", node.id_hex[:16], e)
            return CheckResult(node_id=node.id_hex, ok=False, error=str(e) or type(e).__name__)


async def run_discovery(
    discovery: Discovery,
    known: Iterable[Node],
    blacklist: BlacklistFilter,
    timeout: float,
    max_workers: int,
) -> DiscoveryResult:
    """Find new nodes, then check every admissible candidate.

    Candidates are the known nodes plus whatever `find_nodes` returns;
    blacklisted candidates are dropped before any contact is made.
    """
    result = DiscoveryResult()
    candidates: dict[str, Node] = {}
    for node in known:
        candidates[node.id_hex] = node

    try:
        found = await asyncio.wait_for(discovery.find_nodes(timeout), timeout)
    except asyncio.TimeoutError as e:
        logger.warning("Node discovery timed out after %.1fs", timeout)
        result.error = e
        found = []
    except Exception as e:
        logger.warning("Node discovery failed: %s", e)
        result.error = e
        found = []
    result.found = len(found)
    for node in found:
        candidates.setdefault(node.id_hex, node)

    admitted: list[Node] = []
    for node in candidates.values():
        if blacklist.is_node_blacklisted(node):
            result.blacklisted += 1
            continue
        admitted.append(node)
    result.candidates = len(admitted)

    sem = asyncio.Semaphore(max(1, max_workers))
    result.checks = list(await asyncio.gather(
        *(_check_one(discovery, node, timeout, sem) for node in admitted)
    ))
    return result

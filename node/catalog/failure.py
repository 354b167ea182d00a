# liveness probing + health map + cluster status routes
import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

import httpx
from fastapi import APIRouter, Request

from .models import HealthRecord, HealthStats, Node, utcnow
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)

router = APIRouter()

HEALTH_PATH = "/health"
HEALTH_CHECK_HEADERS = {"X-Health-Check": "true"}


async def probe_node(client: httpx.AsyncClient, node: Node, timeout: float) -> bool:
    """
    GET the node's health endpoint and record the outcome on the node.
    Never raises: a timeout, network error or non-2xx only marks it unhealthy.

    `timeout` bounds the whole exchange, body included; httpx on its own
    only bounds each connect/read/write step.
    """
    started = time.monotonic()
    try:
        resp = await asyncio.wait_for(
            client.get(
                f"{node.url}{HEALTH_PATH}",
                headers=HEALTH_CHECK_HEADERS,
                timeout=timeout,
            ),
            timeout,
        )
    except Exception as exc:
        elapsed = (time.monotonic() - started) * 1000
        error = describe_failure(exc, timeout)
        node.mark_unhealthy(error, elapsed)
        logger.warning("%s: UNHEALTHY (%dms) - %s", node.id, elapsed, error)
        return False

    elapsed = (time.monotonic() - started) * 1000
    if resp.is_success:
        node.mark_healthy(elapsed)
        logger.info("%s: HEALTHY (%dms)", node.id, elapsed)
        return True

    node.mark_unhealthy(f"HTTP {resp.status_code}", elapsed)
    logger.warning("%s: UNHEALTHY (%dms) - HTTP %s", node.id, elapsed, resp.status_code)
    return False


def describe_failure(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"Timed out after {timeout}s"
    return str(exc) or type(exc).__name__


async def probe_nodes(
    nodes: Sequence[Node],
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """One probing round: all probes in flight at once, returns when all settled."""
    if not nodes:
        return
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        await asyncio.gather(*(probe_node(client, n, timeout) for n in nodes))


def healthy_nodes(nodes: Sequence[Node]) -> List[Node]:
    return [n for n in nodes if n.is_healthy]


def primary_node(nodes: Sequence[Node]) -> Optional[Node]:
    # min() keeps the first of equal keys, so ties go to configuration order
    return min(healthy_nodes(nodes), key=lambda n: n.priority, default=None)


def health_stats(nodes: Sequence[Node]) -> HealthStats:
    total = len(nodes)
    healthy = len(healthy_nodes(nodes))
    return HealthStats(
        total=total,
        healthy_count=healthy,
        unhealthy_count=total - healthy,
        healthy_percentage=(healthy / total) * 100 if total > 0 else 0.0,
    )


class HealthMonitor:
    """
    Best-effort liveness view of the cluster, seen from one node.

    Peers are probed over HTTP; the local node is refreshed as healthy on
    every round since the process answering is, by definition, alive.
    """

    def __init__(
        self,
        local_node_id: str,
        nodes: Sequence[Node],
        probe_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.local_node_id = local_node_id
        self.nodes: List[Node] = list(nodes)
        self.probe_timeout = probe_timeout
        self._transport = transport
        self._task: Optional[PeriodicTask] = None

    @property
    def peers(self) -> List[Node]:
        return [n for n in self.nodes if n.id != self.local_node_id]

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    def start(self, interval: float = 30.0) -> None:
        if self.running:
            logger.info("Health checks already running")
            return
        logger.info("Starting health checks every %ss", interval)
        self._task = PeriodicTask(self.probe_all, interval, name="health-monitor").start()

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        await task.stop()
        logger.info("Stopped health checks")

    async def probe_all(self) -> None:
        local = self.get_node(self.local_node_id)
        if local is not None:
            local.mark_healthy()
        await probe_nodes(self.peers, self.probe_timeout, self._transport)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_records(self) -> List[HealthRecord]:
        return [n.health_record() for n in self.nodes]

    def get_healthy(self) -> List[Node]:
        return healthy_nodes(self.nodes)

    def get_primary(self) -> Optional[Node]:
        return primary_node(self.nodes)

    def get_stats(self) -> HealthStats:
        return health_stats(self.nodes)


def _dump(model) -> Dict:
    return model.model_dump(mode="json", by_alias=True)


@router.get("/health")
def health(request: Request):
    return {
        "status": "healthy",
        "nodeId": request.app.state.settings.node_id,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/cluster/status")
def cluster_status(request: Request):
    monitor: HealthMonitor = request.app.state.monitor
    current = monitor.get_node(monitor.local_node_id)
    return {
        "currentNode": _dump(current) if current else None,
        "healthRecords": [_dump(r) for r in monitor.get_records()],
        "stats": _dump(monitor.get_stats()),
        "timestamp": utcnow().isoformat(),
    }


@router.get("/cluster/healthy-nodes")
def cluster_healthy_nodes(request: Request):
    monitor: HealthMonitor = request.app.state.monitor
    primary = monitor.get_primary()
    return {
        "healthyNodes": [_dump(n.health_record()) for n in monitor.get_healthy()],
        "primaryNode": _dump(primary.health_record()) if primary else None,
        "timestamp": utcnow().isoformat(),
    }

"""
Client-side routing with failover.

A ``ClientRouter`` keeps its own copy of the cluster's node list, probes
every node on a timer, and sends each API call to the node it currently
targets. Node failures (5xx, timeouts, network errors) mark that node
unhealthy and move the router to the next healthy node; 4xx answers are the
caller's problem and are raised as-is without touching node health.
"""
import asyncio
import logging
import time
from typing import Any, Callable, List, Optional, Sequence

import httpx

from .failure import describe_failure, health_stats, healthy_nodes, primary_node, probe_nodes
from .models import HealthStats, Node
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)

SwitchListener = Callable[[Node, Node], None]


class RouterError(Exception):
    pass


class NoHealthyNodesError(RouterError):
    def __init__(self):
        super().__init__("No healthy nodes available")


class AllNodesFailedError(RouterError):
    def __init__(self, last_error: Optional[BaseException] = None):
        self.last_error = last_error
        message = "All nodes failed"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class ClientRequestError(RouterError):
    """A 4xx answer. The node is fine, the request is not."""

    def __init__(self, status_code: int, message: str, body: Any = None):
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(message)


class NodeFailure(Exception):
    """Non-2xx, non-4xx answer from a node; drives failover."""

    def __init__(self, node: Node, status_code: int):
        self.node = node
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} from {node.id}")


def _error_message(resp: httpx.Response) -> tuple:
    try:
        body = resp.json()
    except ValueError:
        body = resp.text or None

    message = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
    if not isinstance(message, str):
        message = f"HTTP {resp.status_code}: {resp.reason_phrase}"
    return message, body


class ClientRouter:
    def __init__(
        self,
        nodes: Sequence[Node],
        preferred_node_id: Optional[str] = None,
        request_timeout: float = 10.0,
        probe_timeout: float = 5.0,
        switch_debounce: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not nodes:
            raise ValueError("ClientRouter needs at least one node")
        # private copies: the router's view of health is its own
        self.nodes: List[Node] = [n.model_copy() for n in nodes]
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.switch_debounce = switch_debounce
        self._transport = transport

        self.current_index = 0
        self._last_switch: Optional[float] = None
        self._switching = False
        self._listeners: List[SwitchListener] = []
        self._health_task: Optional[PeriodicTask] = None

        if preferred_node_id is not None:
            self._use_preferred(preferred_node_id)

    def _use_preferred(self, node_id: str) -> None:
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                self.current_index = i
                logger.info("Using preferred node: %s", node.name)
                return
        logger.warning("Unknown preferred node %r, keeping %s", node_id, self.current_node.name)

    # ----------- health -----------

    def start_health_checks(self, interval: float = 30.0) -> None:
        if self._health_task is not None and self._health_task.running:
            return
        self._health_task = PeriodicTask(self.check_all, interval, name="client-health").start()

    async def stop_health_checks(self) -> None:
        if self._health_task is not None:
            task, self._health_task = self._health_task, None
            await task.stop()

    async def check_all(self) -> None:
        await probe_nodes(self.nodes, self.probe_timeout, self._transport)

    @property
    def current_node(self) -> Node:
        return self.nodes[self.current_index]

    def get_all_nodes(self) -> List[Node]:
        return list(self.nodes)

    def get_healthy(self) -> List[Node]:
        return healthy_nodes(self.nodes)

    def get_primary(self) -> Optional[Node]:
        return primary_node(self.nodes)

    def get_stats(self) -> HealthStats:
        return health_stats(self.nodes)

    # ----------- switching -----------

    def on_server_switch(self, callback: SwitchListener) -> Callable[[], None]:
        """Call `callback(previous, new)` after every actual switch. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _debounced(self) -> bool:
        if self._last_switch is None:
            return False
        return time.monotonic() - self._last_switch < self.switch_debounce

    def _next_healthy(self, healthy: List[Node]) -> Node:
        ordered = sorted(healthy, key=lambda n: n.priority)
        current_priority = self.current_node.priority
        for node in ordered:
            if node.priority > current_priority:
                return node
        return ordered[0]

    def switch_to_next_server(self) -> bool:
        """
        Move to the next healthy node (by priority, wrapping around).

        Returns False only when no node is healthy. While another switch is
        running, or within `switch_debounce` seconds of the last one, the
        call does nothing and returns True.
        """
        healthy = self.get_healthy()
        if not healthy:
            logger.error("No healthy nodes available")
            return False

        if self._switching or self._debounced():
            return True

        self._switching = True
        try:
            previous = self.current_node
            target = self._next_healthy(healthy)
            if target.id == previous.id:
                return True

            self.current_index = self.nodes.index(target)
            self._last_switch = time.monotonic()
            logger.info("Switched from %s to %s", previous.name, target.name)

            for listener in list(self._listeners):
                try:
                    listener(previous, target)
                except Exception:
                    logger.exception("Server switch listener failed")
            return True
        finally:
            self._switching = False

    # ----------- requests -----------

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        max_retries: Optional[int] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Send `method endpoint` to the current node, failing over on node
        errors. Extra keyword arguments go to ``httpx.AsyncClient.request``.

        Each attempt is bounded by `request_timeout` as a whole. A 2xx
        answer must carry a JSON body (or none); anything else is treated
        as a broken node and fails over like a 5xx.
        """
        if max_retries is None:
            max_retries = len(self.nodes)

        last_error: Optional[BaseException] = None
        attempt = 0
        async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
            while attempt < max_retries:
                node = self.current_node

                if not node.is_healthy:
                    logger.info("Current node %s is unhealthy, switching", node.name)
                    if not self.switch_to_next_server():
                        raise NoHealthyNodesError()
                    if not self.current_node.is_healthy:
                        # switch was debounced; wait the window out and try again
                        await asyncio.sleep(self._debounce_remaining())
                    continue

                attempt += 1
                try:
                    return await self._send(client, node, method, endpoint, **kwargs)
                except ClientRequestError:
                    raise
                except Exception as exc:
                    last_error = exc
                    error = describe_failure(exc, self.request_timeout)
                    logger.error("Request failed on %s: %s", node.name, error)
                    node.mark_unhealthy(error)
                    if not self.switch_to_next_server():
                        break

        raise AllNodesFailedError(last_error)

    def _debounce_remaining(self) -> float:
        if self._last_switch is None:
            return 0.0
        return max(0.0, self.switch_debounce - (time.monotonic() - self._last_switch))

    async def _send(self, client: httpx.AsyncClient, node: Node, method: str, endpoint: str, **kwargs: Any) -> Any:
        logger.debug("Making request to %s: %s %s", node.name, method, endpoint)
        resp = await asyncio.wait_for(
            client.request(method, f"{node.url}{endpoint}", **kwargs),
            self.request_timeout,
        )

        if resp.is_success:
            if not resp.content:
                return None
            return resp.json()

        if resp.is_client_error:
            message, body = _error_message(resp)
            raise ClientRequestError(resp.status_code, message, body)

        raise NodeFailure(node, resp.status_code)
